"""Stored model registry backed by the models directory and an external-link list."""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field

from .capabilities import (
    ModelType,
    compatible_projectors,
    is_projection_model,
    recommend_projector,
)
from .storage import InferraPaths, KeyValueStore

logger = logging.getLogger(__name__)

EXTERNAL_MODELS_KEY = "external_models"
STORED_MODELS_KEY = "stored_models"
_IGNORED_SUFFIXES = (".tmp", ".part", ".download")

ChangeListener = Callable[[str, dict[str, Any]], None]


class StoredModel(BaseModel):
    """One known local model file."""

    model_config = ConfigDict(extra="ignore")

    name: str
    path: str
    size: int = 0
    modified: str
    is_external: bool = False
    model_type: ModelType = ModelType.LLM
    capabilities: list[str] = Field(default_factory=list)
    supports_multimodal: bool = False
    compatible_projection_models: list[str] = Field(default_factory=list)
    default_projection_model: str | None = None


class RegistryError(RuntimeError):
    """Base error for registry mutations."""


class ModelExistsError(RegistryError):
    """Raised when a model name is already taken."""


class InvalidModelNameError(RegistryError, ValueError):
    """Raised when a model name could escape the models directory."""


class UnsupportedSourceError(RegistryError):
    """Raised when an operation cannot apply to the given model."""


class StoredModelNotFoundError(LookupError):
    """Raised when a model identifier matches no stored model."""


class ModelRegistry:
    """Owns the list of stored models and every mutation of it."""

    def __init__(
        self,
        paths: InferraPaths,
        store: KeyValueStore,
        *,
        on_change: ChangeListener | None = None,
    ) -> None:
        self._paths = paths
        self._store = store
        self._on_change = on_change
        self._lock = threading.RLock()
        self._type_cache: dict[str, ModelType] = {}
        self._known_names: set[str] | None = None

    @property
    def models_dir(self) -> Path:
        return self._paths.models_dir

    def get_stored_models(self) -> list[StoredModel]:
        """Scan the models directory, merge external links, and refresh the cache."""
        with self._lock:
            entries = self._scan_internal()
            taken = {item.name for item in entries}
            for entry in self._load_external():
                if entry.name in taken:
                    logger.warning("ignoring external model %s: name already in use", entry.name)
                    continue
                taken.add(entry.name)
                entries.append(entry)
            models = self._attach_projectors(entries)
            models.sort(key=lambda item: item.name)
            self._persist_cache(models)
            return models

    def find_model(
        self,
        identifier: str,
        models: list[StoredModel] | None = None,
    ) -> StoredModel | None:
        """Match by name, name alias before ``:``, path, then basename."""
        normalized = identifier.strip().lower()
        if not normalized:
            return None
        candidates = models if models is not None else self.get_stored_models()

        for model in candidates:
            name = model.name.lower()
            if name == normalized or name.split(":", 1)[0] == normalized:
                return model
        for model in candidates:
            if model.path.lower() == normalized:
                return model
        basename = normalized.replace("\\", "/").rsplit("/", 1)[-1]
        for model in candidates:
            if model.name.lower() == basename:
                return model
        return None

    def delete_model(self, identifier: str) -> StoredModel:
        """Remove an internal file, or only the reference for an external model."""
        with self._lock:
            target = self.find_model(identifier)
            if target is None:
                raise StoredModelNotFoundError(identifier)

            if target.is_external:
                external = [
                    item
                    for item in self._read_external_records()
                    if item.get("name") != target.name
                ]
                self._store.set(EXTERNAL_MODELS_KEY, external)
                logger.info("unlinked external model %s", target.name)
            else:
                Path(target.path).unlink(missing_ok=True)
                logger.info("deleted model file %s", target.path)
            self._type_cache.pop(target.name, None)
            self.get_stored_models()

        self._emit("models.deleted", {"name": target.name, "path": target.path})
        return target

    def link_external_model(
        self,
        source: str,
        name: str | None = None,
        *,
        copy: bool = False,
    ) -> StoredModel:
        """Reference a model file outside the models directory.

        With ``copy=True`` the file is copied into the models directory and recorded
        as internal, for sources that may not stay readable at their original location.
        """
        source_path = _path_from_uri(source)
        model_name = _validate_model_name(name or source_path.name)

        with self._lock:
            models = self.get_stored_models()
            if any(item.name == model_name for item in models):
                raise ModelExistsError(f"model {model_name!r} already exists")
            if self._paths.model_path(model_name).exists():
                raise ModelExistsError(f"model {model_name!r} already exists")
            if not source_path.is_file():
                raise FileNotFoundError(f"model file not found: {source_path}")

            if copy:
                destination = self._paths.model_path(model_name)
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source_path, destination)
                logger.info("imported %s into %s", source_path, destination)
            else:
                external = self._read_external_records()
                external.append({"name": model_name, "path": str(source_path.resolve())})
                self._store.set(EXTERNAL_MODELS_KEY, external)
                logger.info("linked external model %s -> %s", model_name, source_path)

            linked = self._require(model_name)

        self._emit("models.linked", {"name": linked.name, "is_external": linked.is_external})
        return linked

    def copy_model(self, source: str, destination: str) -> StoredModel:
        """Duplicate an internal model under a new name in the models directory."""
        destination_name = _validate_model_name(destination)
        with self._lock:
            source_model = self.find_model(source)
            if source_model is None:
                raise StoredModelNotFoundError(source)
            if source_model.is_external:
                raise UnsupportedSourceError(f"model {source_model.name!r} is external")

            models = self.get_stored_models()
            destination_path = self._paths.model_path(destination_name)
            if destination_path.exists() or any(item.name == destination_name for item in models):
                raise ModelExistsError(f"model {destination_name!r} already exists")

            shutil.copyfile(source_model.path, destination_path)
            copied = self._require(destination_name)

        self._emit("models.copied", {"source": source_model.name, "destination": copied.name})
        return copied

    def adopt_download(self, downloaded: Path) -> StoredModel:
        """Move a finished download into the models directory."""
        model_name = _validate_model_name(downloaded.name)
        with self._lock:
            destination = self._paths.model_path(model_name)
            destination.parent.mkdir(parents=True, exist_ok=True)
            if downloaded.resolve() != destination.resolve():
                linked = {item.get("name") for item in self._read_external_records()}
                if destination.exists() or model_name in linked:
                    raise ModelExistsError(f"model {model_name!r} already exists")
                downloaded.replace(destination)
            self._type_cache.pop(model_name, None)
            adopted = self._require(model_name)

        self._emit("models.downloaded", {"name": adopted.name, "size": adopted.size})
        return adopted

    def refresh(self) -> list[StoredModel]:
        """Rescan and return models that appeared since the previous refresh."""
        with self._lock:
            models = self.get_stored_models()
            names = {item.name for item in models}
            previous = self._known_names
            self._known_names = names
        if previous is None:
            return []

        added = [item for item in models if item.name not in previous]
        for model in added:
            self._emit("models.downloaded", {"name": model.name, "size": model.size})
        if added or names != previous:
            self._emit("models.changed", {"count": len(models)})
        return added

    def _require(self, name: str) -> StoredModel:
        for model in self.get_stored_models():
            if model.name == name:
                return model
        raise StoredModelNotFoundError(name)

    def _scan_internal(self) -> list[StoredModel]:
        models_dir = self._paths.models_dir
        if not models_dir.exists():
            return []

        entries: list[StoredModel] = []
        for path in sorted(models_dir.iterdir()):
            if not path.is_file() or path.name.startswith("."):
                continue
            if path.name.endswith(_IGNORED_SUFFIXES):
                continue
            entries.append(self._model_from_file(path, is_external=False))
        return entries

    def _load_external(self) -> list[StoredModel]:
        records = self._read_external_records()
        kept: list[dict[str, Any]] = []
        entries: list[StoredModel] = []
        for record in records:
            path = Path(str(record.get("path", "")))
            name = record.get("name")
            if not isinstance(name, str) or not path.is_file():
                logger.warning("dropping dangling external model reference %r", record)
                continue
            kept.append(record)
            entry = self._model_from_file(path, is_external=True)
            entries.append(entry.model_copy(update={"name": name}))
        if len(kept) != len(records):
            self._store.set(EXTERNAL_MODELS_KEY, kept)
        return entries

    def _read_external_records(self) -> list[dict[str, Any]]:
        value = self._store.get(EXTERNAL_MODELS_KEY, [])
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    def _model_from_file(self, path: Path, *, is_external: bool) -> StoredModel:
        stat = path.stat()
        return StoredModel(
            name=path.name,
            path=str(path),
            size=stat.st_size,
            modified=_to_iso(stat.st_mtime),
            is_external=is_external,
            model_type=self._classify(path.name),
        )

    def _classify(self, filename: str) -> ModelType:
        cached = self._type_cache.get(filename)
        if cached is None:
            cached = ModelType.PROJECTION if is_projection_model(filename) else ModelType.LLM
            self._type_cache[filename] = cached
        return cached

    def _attach_projectors(self, entries: list[StoredModel]) -> list[StoredModel]:
        projectors = [item.name for item in entries if item.model_type is ModelType.PROJECTION]
        models: list[StoredModel] = []
        for entry in entries:
            if entry.model_type is ModelType.PROJECTION:
                models.append(entry.model_copy(update={"capabilities": ["projection"]}))
                continue
            compatible = compatible_projectors(entry.name, projectors)
            if not compatible:
                models.append(entry.model_copy(update={"capabilities": ["chat", "completion"]}))
                continue
            models.append(
                entry.model_copy(
                    update={
                        "model_type": ModelType.VISION,
                        "capabilities": ["chat", "completion", "vision"],
                        "supports_multimodal": True,
                        "compatible_projection_models": compatible,
                        "default_projection_model": recommend_projector(entry.name, compatible),
                    },
                ),
            )
        return models

    def _persist_cache(self, models: list[StoredModel]) -> None:
        payload = [item.model_dump(mode="json") for item in models]
        if self._store.get(STORED_MODELS_KEY) != payload:
            self._store.set(STORED_MODELS_KEY, payload)

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(event, data)
        except Exception:  # noqa: BLE001
            logger.exception("registry change listener failed for %s", event)


def _validate_model_name(name: str) -> str:
    normalized = name.strip()
    if not normalized or "/" in normalized or "\\" in normalized or ".." in normalized:
        raise InvalidModelNameError(f"invalid model name: {name!r}")
    return normalized


def _path_from_uri(source: str) -> Path:
    parsed = urlsplit(source)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path)).expanduser()
    return Path(source).expanduser()


def _to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat().replace("+00:00", "Z")
