"""Single-slot handle for the model held by the inference engine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from inferra.core.settings import ModelSettings
from inferra.engine import InferenceEngine, TokenCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedModel:
    """The model currently occupying the engine slot."""

    name: str
    path: str
    projector_path: str | None
    loaded_at: datetime


class ModelSlot:
    """Owns load/unload transitions and serializes access to the engine.

    The engine context is not reentrant, so loading and generation share one lock;
    concurrent requests queue behind whichever call holds it.
    """

    def __init__(self, engine: InferenceEngine) -> None:
        self._engine = engine
        self._lock = threading.RLock()
        self._active: LoadedModel | None = None

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    def current(self) -> LoadedModel | None:
        with self._lock:
            if self._active is None and self._engine.is_initialized():
                path = self._engine.model_path
                if path:
                    self._active = LoadedModel(
                        name=Path(path).name,
                        path=path,
                        projector_path=self._engine.projector_path,
                        loaded_at=datetime.now(UTC),
                    )
            elif self._active is not None and not self._engine.is_initialized():
                self._active = None
            return self._active

    def load(self, name: str, path: str, projector_path: str | None = None) -> LoadedModel:
        """Load ``path`` unless it already occupies the slot; engine errors propagate."""
        with self._lock:
            active = self.current()
            if (
                active is not None
                and active.path == path
                and active.projector_path == projector_path
            ):
                return active
            logger.info("loading model %s", path)
            self._engine.load_model(path, projector_path)
            self._active = LoadedModel(
                name=name,
                path=path,
                projector_path=projector_path,
                loaded_at=datetime.now(UTC),
            )
            return self._active

    def unload(self) -> LoadedModel | None:
        with self._lock:
            previous = self.current()
            if previous is None:
                return None
            self._engine.unload_model()
            self._active = None
            logger.info("unloaded model %s", previous.path)
            return previous

    def reload(self) -> LoadedModel:
        with self._lock:
            active = self.current()
            if active is None:
                raise LookupError("no model loaded")
            self._engine.unload_model()
            self._active = None
            return self.load(active.name, active.path, active.projector_path)

    def generate(
        self,
        name: str,
        path: str,
        projector_path: str | None,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        """Generate against ``path``, reloading it if another request swapped models."""
        with self.exclusive():
            self.load(name, path, projector_path)
            return self._engine.generate_response(messages, on_token, settings)

    @contextmanager
    def exclusive(self) -> Iterator[InferenceEngine]:
        with self._lock:
            yield self._engine


def to_utc_iso(value: datetime | None) -> str | None:
    """Convert a datetime to RFC3339-like UTC timestamp with Z suffix."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
