"""llama.cpp engine adapter backed by the optional llama-cpp-python package."""

from __future__ import annotations

import logging
import os
from typing import Any

from inferra.core.settings import ModelSettings

from . import DependencyMissingError, EngineError, TokenCallback
from .gguf import read_gguf_header

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_SIZE = 4096


class LlamaCppEngine:
    """Runs GGUF models in-process through llama-cpp-python."""

    def __init__(self, *, n_ctx: int | None = None, n_gpu_layers: int | None = None) -> None:
        self._n_ctx = n_ctx or int(os.environ.get("INFERRA_CONTEXT_SIZE", DEFAULT_CONTEXT_SIZE))
        self._n_gpu_layers = n_gpu_layers if n_gpu_layers is not None else 0
        self._llama: Any | None = None
        self._model_path: str | None = None
        self._projector_path: str | None = None

    @property
    def model_path(self) -> str | None:
        return self._model_path

    @property
    def projector_path(self) -> str | None:
        return self._projector_path

    def is_initialized(self) -> bool:
        return self._llama is not None

    def load_model(self, path: str, projector_path: str | None = None) -> None:
        llama_cpp = _import_llama_cpp()
        chat_handler = None
        if projector_path is not None:
            from llama_cpp.llama_chat_format import Llava15ChatHandler

            chat_handler = Llava15ChatHandler(clip_model_path=projector_path, verbose=False)

        self.unload_model()
        try:
            self._llama = llama_cpp.Llama(
                model_path=path,
                n_ctx=self._n_ctx,
                n_gpu_layers=self._n_gpu_layers,
                chat_handler=chat_handler,
                verbose=False,
            )
        except (OSError, ValueError, RuntimeError) as exc:
            raise EngineError(f"failed to load {path}: {exc}") from exc
        self._model_path = path
        self._projector_path = projector_path
        logger.info("llama.cpp loaded %s (projector=%s)", path, projector_path)

    def unload_model(self) -> None:
        llama = self._llama
        self._llama = None
        self._model_path = None
        self._projector_path = None
        if llama is not None:
            close = getattr(llama, "close", None)
            if callable(close):
                close()

    def generate_response(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        if self._llama is None:
            raise EngineError("no model loaded")

        resolved = settings or ModelSettings()
        try:
            stream = self._llama.create_chat_completion(
                messages=messages,
                stream=True,
                **self._completion_kwargs(resolved),
            )
            pieces: list[str] = []
            for chunk in stream:
                delta = chunk["choices"][0].get("delta", {})
                token = delta.get("content")
                if not token:
                    continue
                pieces.append(token)
                if on_token is not None and on_token(token) is False:
                    break
        except (KeyError, IndexError, ValueError, RuntimeError) as exc:
            raise EngineError(f"generation failed: {exc}") from exc
        return "".join(pieces)

    def load_model_info(self, path: str) -> dict[str, Any]:
        info = read_gguf_header(path)
        if self._llama is not None and path == self._model_path:
            metadata = getattr(self._llama, "metadata", None)
            if isinstance(metadata, dict):
                info["metadata"] = dict(metadata)
        return info

    def embed(self, text: str) -> list[float]:
        if self._llama is None:
            raise EngineError("no model loaded")
        try:
            vector = self._llama.embed(text)
        except (RuntimeError, ValueError) as exc:
            raise EngineError(f"embedding failed: {exc}") from exc
        if vector and isinstance(vector[0], list):
            vector = vector[0]
        return [float(value) for value in vector]

    def _completion_kwargs(self, settings: ModelSettings) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "top_k": settings.top_k,
            "min_p": settings.min_p,
            "typical_p": settings.typical_p,
            "max_tokens": settings.max_tokens if settings.max_tokens > 0 else None,
            "stop": list(settings.stop_words),
            "repeat_penalty": settings.penalty_repeat,
            "frequency_penalty": settings.penalty_freq,
            "presence_penalty": settings.penalty_present,
            "mirostat_mode": settings.mirostat,
            "mirostat_tau": settings.mirostat_tau,
            "mirostat_eta": settings.mirostat_eta,
        }
        if settings.seed >= 0:
            kwargs["seed"] = settings.seed
        if settings.logit_bias:
            kwargs["logit_bias"] = {int(token): float(bias) for token, bias in settings.logit_bias}
        if settings.grammar:
            llama_cpp = _import_llama_cpp()
            kwargs["grammar"] = llama_cpp.LlamaGrammar.from_string(settings.grammar, verbose=False)
        return kwargs


def _import_llama_cpp() -> Any:
    try:
        import llama_cpp
    except ModuleNotFoundError as exc:
        raise DependencyMissingError(
            "missing optional llama.cpp engine dependency "
            f"({exc.name or 'llama_cpp'}); install it with `pip install -e \".[llama]\"`",
        ) from exc
    return llama_cpp
