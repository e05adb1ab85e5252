"""Persistent inferra configuration defaults."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from .storage import InferraPaths, write_json_atomic


class ServerDefaults(BaseModel):
    """Daemon bind and response defaults."""

    model_config = ConfigDict(extra="forbid", strict=True)

    host: StrictStr | None = None
    port: StrictInt | None = Field(default=None, gt=0, le=65535)
    cors: StrictBool = True


class PullDefaults(BaseModel):
    """Defaults applied to model downloads."""

    model_config = ConfigDict(extra="forbid", strict=True)

    backend: Literal["range", "managed"] = "range"
    chunk_size: StrictInt = Field(default=1024 * 1024, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    hf_token: StrictStr | None = None


class RemoteProviderDefaults(BaseModel):
    """Per-provider model name and endpoint overrides."""

    model_config = ConfigDict(extra="forbid", strict=True)

    model: StrictStr | None = None
    base_url: StrictStr | None = None


class RemoteDefaults(BaseModel):
    """Remote provider configuration."""

    model_config = ConfigDict(extra="forbid", strict=True)

    timeout_seconds: float = Field(default=60.0, gt=0)
    providers: dict[StrictStr, RemoteProviderDefaults] = Field(default_factory=dict)


class InferraConfig(BaseModel):
    """Top-level persisted inferra config."""

    model_config = ConfigDict(extra="forbid", strict=True)

    version: StrictInt = 1
    server: ServerDefaults = Field(default_factory=ServerDefaults)
    pull: PullDefaults = Field(default_factory=PullDefaults)
    remote: RemoteDefaults = Field(default_factory=RemoteDefaults)


CONFIG_KEY_DESCRIPTIONS: dict[str, str] = {
    "server.host": "Default host used by the daemon when INFERRA_HOST is unset.",
    "server.port": "Default port used by the daemon when INFERRA_PORT is unset.",
    "server.cors": "Send permissive CORS headers on API responses.",
    "pull.backend": "Transfer backend used for downloads: range or managed.",
    "pull.chunk_size": "Bytes read per chunk while streaming a download.",
    "pull.timeout_seconds": "HTTP timeout applied to download requests.",
    "pull.hf_token": "Default Hugging Face token for huggingface.co downloads.",
    "remote.timeout_seconds": "HTTP timeout applied to remote provider requests.",
}


class ConfigFileError(RuntimeError):
    """Raised when the persisted config cannot be parsed or validated."""


def load_config(paths: InferraPaths) -> InferraConfig:
    """Load config file or return defaults when missing."""
    config_path = paths.config_path
    if not config_path.exists():
        return InferraConfig()

    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigFileError(f"invalid JSON in {config_path}: {exc.msg}") from exc
    except OSError as exc:
        raise ConfigFileError(f"unable to read {config_path}: {exc}") from exc

    try:
        return InferraConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config in {config_path}: {exc}") from exc


def save_config(paths: InferraPaths, config: InferraConfig) -> None:
    """Atomically persist config."""
    write_json_atomic(paths.config_path, config.model_dump(mode="json"))


def update_config(paths: InferraPaths, updates: dict[str, Any]) -> InferraConfig:
    """Apply partial updates and persist the resulting config."""
    current = load_config(paths)
    merged = current.model_dump(mode="json")
    _deep_merge_dict(merged, updates)
    try:
        updated = InferraConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config update: {exc}") from exc
    save_config(paths, updated)
    return updated


class ConfigProvider:
    """Read-through cache for inferra config with mtime invalidation."""

    def __init__(self, paths: InferraPaths) -> None:
        self._paths = paths
        self._lock = threading.Lock()
        self._cached_config: InferraConfig | None = None
        self._cached_mtime_ns: int | None = None

    def get(self) -> InferraConfig:
        with self._lock:
            config_path: Path = self._paths.config_path
            if not config_path.exists():
                if self._cached_config is not None and self._cached_mtime_ns is None:
                    return self._cached_config
                self._cached_config = InferraConfig()
                self._cached_mtime_ns = None
                return self._cached_config

            mtime_ns = config_path.stat().st_mtime_ns
            if self._cached_config is not None and self._cached_mtime_ns == mtime_ns:
                return self._cached_config

            loaded = load_config(self._paths)
            self._cached_config = loaded
            self._cached_mtime_ns = mtime_ns
            return loaded


def _deep_merge_dict(target: dict[str, Any], updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _deep_merge_dict(existing, value)
            continue
        target[key] = value
