"""Inference engine interface and implementations for inferra."""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any, Protocol

from inferra.core.settings import ModelSettings

TokenCallback = Callable[[str], bool | None]


class EngineError(RuntimeError):
    """Raised when the engine cannot load a model or generate a response."""


class DependencyMissingError(EngineError):
    """Raised when an optional engine backend is not installed."""


class InferenceEngine(Protocol):
    """Single-context inference engine; callers serialize access to it."""

    @property
    def model_path(self) -> str | None: ...

    @property
    def projector_path(self) -> str | None: ...

    def is_initialized(self) -> bool: ...

    def load_model(self, path: str, projector_path: str | None = None) -> None: ...

    def unload_model(self) -> None: ...

    def generate_response(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        """Generate a reply; returning ``False`` from ``on_token`` stops generation."""
        ...

    def load_model_info(self, path: str) -> dict[str, Any]: ...

    def embed(self, text: str) -> list[float]: ...


def create_default_engine() -> InferenceEngine:
    """Build the engine selected by ``INFERRA_ENGINE`` (``mock`` or ``llama_cpp``)."""
    selected = os.environ.get("INFERRA_ENGINE", "mock").strip().lower()
    if selected in {"llama_cpp", "llama", "llama.cpp"}:
        from .llama_cpp import LlamaCppEngine

        return LlamaCppEngine()
    if selected in {"", "mock"}:
        from .mock import MockEngine

        return MockEngine()
    raise EngineError(f"unknown INFERRA_ENGINE value: {selected!r}")


__all__ = [
    "DependencyMissingError",
    "EngineError",
    "InferenceEngine",
    "TokenCallback",
    "create_default_engine",
]
