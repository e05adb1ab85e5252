"""Deterministic echo engine used for development and tests."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

from inferra.core.settings import ModelSettings

from . import EngineError, TokenCallback
from .gguf import read_gguf_header

ENGINE_NAME = "inferra-mock"
EMBEDDING_DIMENSIONS = 16


class MockEngine:
    """Echoes the last user turn back one word at a time."""

    def __init__(self) -> None:
        self._model_path: str | None = None
        self._projector_path: str | None = None

    @property
    def model_path(self) -> str | None:
        return self._model_path

    @property
    def projector_path(self) -> str | None:
        return self._projector_path

    def is_initialized(self) -> bool:
        return self._model_path is not None

    def load_model(self, path: str, projector_path: str | None = None) -> None:
        if not Path(path).is_file():
            raise EngineError(f"model file not found: {path}")
        if projector_path is not None and not Path(projector_path).is_file():
            raise EngineError(f"projector file not found: {projector_path}")
        self._model_path = path
        self._projector_path = projector_path

    def unload_model(self) -> None:
        self._model_path = None
        self._projector_path = None

    def generate_response(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        if self._model_path is None:
            raise EngineError("no model loaded")

        resolved = settings or ModelSettings()
        prompt = ""
        for message in reversed(messages):
            if message.get("role") == "user":
                prompt = message.get("content", "")
                break

        words = prompt.split()[: max(resolved.max_tokens, 0)]
        emitted: list[str] = []
        for index, word in enumerate(words):
            token = word if index == 0 else f" {word}"
            if any(stop and stop in token for stop in resolved.stop_words):
                break
            emitted.append(token)
            if on_token is not None and on_token(token) is False:
                break
        return "".join(emitted)

    def load_model_info(self, path: str) -> dict[str, Any]:
        info = read_gguf_header(path)
        info["engine"] = ENGINE_NAME
        return info

    def embed(self, text: str) -> list[float]:
        if self._model_path is None:
            raise EngineError("no model loaded")
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [round(byte / 255.0, 6) for byte in digest[:EMBEDDING_DIMENSIONS]]
