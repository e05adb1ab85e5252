"""Resolve request model identifiers to a stored model or a provider tag."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from inferra.core.registry import ModelRegistry, StoredModel
from inferra.core.settings import ModelSettings
from inferra.engine import EngineError, TokenCallback
from inferra.engine.on_device import ON_DEVICE_PROVIDER, OnDeviceProvider
from inferra.engine.remote import RemoteProviders, normalize_remote_provider

from .errors import StatusError
from .loaded_models import ModelSlot

logger = logging.getLogger(__name__)

LOCAL_PROVIDER = "local"


class ModelResolutionError(StatusError):
    status = 500
    code = "model_resolution_failed"


class ModelNotFoundError(ModelResolutionError):
    status = 404
    code = "model_not_found"


class ModelNotLoadedError(ModelResolutionError):
    status = 503
    code = "model_not_loaded"


class RemoteModelsDisabledError(ModelResolutionError):
    status = 409
    code = "remote_models_disabled"


class ApiKeyMissingError(ModelResolutionError):
    status = 422
    code = "api_key_missing"


class OnDeviceUnavailableError(ModelResolutionError):
    status = 503
    code = "apple_foundation_not_available"


class ModelLoadError(ModelResolutionError):
    status = 500
    code = "model_load_failed"


@dataclass(frozen=True)
class ResolvedModel:
    """Target of one chat or generate request."""

    name: str
    provider: str = LOCAL_PROVIDER
    path: str | None = None
    projector_path: str | None = None
    stored: StoredModel | None = None

    @property
    def is_local(self) -> bool:
        return self.provider == LOCAL_PROVIDER


class ModelResolver:
    """Maps identifiers onto the model slot, a remote provider, or the on-device provider."""

    def __init__(
        self,
        registry: ModelRegistry,
        slot: ModelSlot,
        remote: RemoteProviders,
        on_device: OnDeviceProvider,
    ) -> None:
        self._registry = registry
        self._slot = slot
        self._remote = remote
        self._on_device = on_device

    def ensure_model_loaded(self, identifier: str | None = None) -> ResolvedModel:
        normalized = identifier.strip() if isinstance(identifier, str) else ""
        if not normalized:
            return self._current()

        if normalized.lower() == ON_DEVICE_PROVIDER:
            if not self._on_device.is_ready():
                raise OnDeviceUnavailableError()
            return ResolvedModel(name=ON_DEVICE_PROVIDER, provider=ON_DEVICE_PROVIDER)

        provider = normalize_remote_provider(normalized)
        if provider is not None and self._registry.find_model(normalized) is None:
            if not self._remote.enabled():
                raise RemoteModelsDisabledError()
            if self._remote.api_key(provider) is None:
                raise ApiKeyMissingError()
            logger.debug("routing %s to remote provider %s", normalized, provider)
            return ResolvedModel(name=provider, provider=provider)

        stored = self._registry.find_model(normalized)
        if stored is None:
            raise ModelNotFoundError(f"model {normalized!r} not found")
        projector = self._projector_path(stored)
        try:
            self._slot.load(stored.name, stored.path, projector)
        except EngineError as exc:
            raise ModelLoadError(str(exc)) from exc
        return ResolvedModel(
            name=stored.name,
            path=stored.path,
            projector_path=projector,
            stored=stored,
        )

    def generate(
        self,
        resolved: ResolvedModel,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        """Run one generation against whichever backend ``resolved`` points at."""
        if resolved.provider == ON_DEVICE_PROVIDER:
            return self._on_device.generate(messages, on_token, settings)
        if not resolved.is_local:
            return self._remote.generate(resolved.provider, messages, on_token, settings)
        if resolved.path is None:
            raise ModelNotLoadedError()
        return self._slot.generate(
            resolved.name,
            resolved.path,
            resolved.projector_path,
            messages,
            on_token,
            settings,
        )

    def _current(self) -> ResolvedModel:
        active = self._slot.current()
        if active is None:
            raise ModelNotLoadedError()
        stored = self._registry.find_model(active.path)
        return ResolvedModel(
            name=stored.name if stored is not None else active.name,
            path=active.path,
            projector_path=active.projector_path,
            stored=stored,
        )

    def _projector_path(self, model: StoredModel) -> str | None:
        if not model.supports_multimodal or model.default_projection_model is None:
            return None
        projector = self._registry.find_model(model.default_projection_model)
        return projector.path if projector is not None else None
