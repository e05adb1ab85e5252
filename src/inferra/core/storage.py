"""Local filesystem layout and persisted key-value state for inferra."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class InferraPaths:
    """Filesystem layout for local inferra state."""

    base_dir: Path

    @classmethod
    def default(cls) -> InferraPaths:
        override = os.environ.get("INFERRA_HOME")
        if override:
            return cls(base_dir=Path(override).expanduser())
        return cls(base_dir=Path.home() / ".inferra")

    @property
    def models_dir(self) -> Path:
        return self.base_dir / "models"

    @property
    def downloads_dir(self) -> Path:
        return self.base_dir / "downloads"

    @property
    def state_path(self) -> Path:
        return self.base_dir / "state.json"

    @property
    def journal_path(self) -> Path:
        return self.base_dir / "transfers.json"

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"

    def model_path(self, name: str) -> Path:
        return self.models_dir / name

    def download_path(self, key: str) -> Path:
        return self.downloads_dir / key


class StateFileError(RuntimeError):
    """Raised when the persisted state file cannot be parsed."""


class KeyValueStore:
    """JSON-file backed key-value store with atomic writes."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            payload = self._read()
            payload[key] = value
            write_json_atomic(self._path, payload)

    def delete(self, key: str) -> bool:
        with self._lock:
            payload = self._read()
            if key not in payload:
                return False
            del payload[key]
            write_json_atomic(self._path, payload)
            return True

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateFileError(f"invalid JSON in {self._path}: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise StateFileError(f"invalid state content: {self._path}")
        return payload


def write_json_atomic(path: Path, payload: Any) -> None:
    """Atomically write JSON using a .tmp file then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    temp_path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    temp_path.replace(path)
