"""Per-model settings overrides persisted in the key-value store."""

from __future__ import annotations

import logging
import threading

from pydantic import BaseModel, ConfigDict, ValidationError

from .settings import ModelSettings
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

MODEL_SETTINGS_KEY = "model_settings"


class PerModelSettings(BaseModel):
    """Whether a model follows the global baseline, and its own settings if not."""

    model_config = ConfigDict(extra="ignore")

    use_global_settings: bool = True
    custom_settings: ModelSettings | None = None


class ModelSettingsStore:
    """Read and write per-model settings keyed by model path."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._cache: dict[str, PerModelSettings] = {}

    def get(self, model_path: str) -> PerModelSettings:
        with self._lock:
            cached = self._cache.get(model_path)
            if cached is not None:
                return cached
            raw = self._read_all().get(model_path)
            try:
                loaded = PerModelSettings.model_validate(raw or {})
            except ValidationError:
                logger.warning("ignoring invalid per-model settings for %s", model_path)
                loaded = PerModelSettings()
            self._cache[model_path] = loaded
            return loaded

    def set(self, model_path: str, settings: PerModelSettings) -> None:
        with self._lock:
            payload = self._read_all()
            payload[model_path] = settings.model_dump(mode="json")
            self._store.set(MODEL_SETTINGS_KEY, payload)
            self._cache[model_path] = settings

    def delete(self, model_path: str) -> None:
        with self._lock:
            payload = self._read_all()
            if payload.pop(model_path, None) is not None:
                self._store.set(MODEL_SETTINGS_KEY, payload)
            self._cache.pop(model_path, None)

    def effective(self, model_path: str | None, baseline: ModelSettings) -> ModelSettings:
        """Settings a generation for ``model_path`` should start from."""
        if model_path is None:
            return baseline
        config = self.get(model_path)
        if config.use_global_settings or config.custom_settings is None:
            return baseline
        return config.custom_settings.model_copy(deep=True)

    def _read_all(self) -> dict[str, object]:
        value = self._store.get(MODEL_SETTINGS_KEY, {})
        return dict(value) if isinstance(value, dict) else {}
