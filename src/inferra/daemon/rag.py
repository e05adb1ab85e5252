"""Retrieval toggles exposed through ``/api/rag``."""

from __future__ import annotations

import logging
import threading
from typing import Any, Literal

from inferra.core.storage import KeyValueStore
from inferra.engine.remote import normalize_remote_provider

logger = logging.getLogger(__name__)

RAG_ENABLED_KEY = "rag_enabled"
RAG_STORAGE_KEY = "rag_storage"
RAG_STORAGE_TYPES = ("memory", "persistent")

StorageType = Literal["memory", "persistent"]


class RagState:
    """Persisted enable/storage flags plus the in-process readiness of the index."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._ready = False
        self._provider: str | None = None

    def is_enabled(self) -> bool:
        return self._store.get(RAG_ENABLED_KEY, False) is True

    def set_enabled(self, enabled: bool) -> None:
        self._store.set(RAG_ENABLED_KEY, enabled)
        if not enabled:
            self.clear()

    def storage_type(self) -> StorageType:
        value = self._store.get(RAG_STORAGE_KEY, "memory")
        return value if value in RAG_STORAGE_TYPES else "memory"

    def set_storage_type(self, storage: StorageType) -> None:
        if storage not in RAG_STORAGE_TYPES:
            raise ValueError(f"unsupported RAG storage type: {storage!r}")
        if storage != self.storage_type():
            self.clear()
        self._store.set(RAG_STORAGE_KEY, storage)

    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    @property
    def provider(self) -> str | None:
        with self._lock:
            return self._provider

    def initialize(self, provider: Any = None) -> None:
        """Prepare the index for ``provider`` (a remote tag) or the local model."""
        resolved = normalize_remote_provider(provider) or "local"
        with self._lock:
            self._provider = resolved
            self._ready = True
        logger.info("rag initialized with %s provider (%s)", resolved, self.storage_type())

    def clear(self) -> None:
        with self._lock:
            self._ready = False
            self._provider = None

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.is_enabled(),
            "storage": self.storage_type(),
            "ready": self.is_ready(),
        }
