"""FastAPI application for the inferra local HTTP API."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from importlib import metadata
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTasks
from starlette.exceptions import HTTPException as StarletteHTTPException

from inferra.core.chats import Chat, ChatNotFoundError, ChatStore, message_from_payload
from inferra.core.config import ConfigFileError, ConfigProvider, InferraConfig
from inferra.core.messages import ParsedMessages, parse_messages, parse_messages_or_prompt
from inferra.core.model_settings import ModelSettingsStore
from inferra.core.registry import (
    InvalidModelNameError,
    ModelExistsError,
    ModelRegistry,
    StoredModel,
    StoredModelNotFoundError,
    UnsupportedSourceError,
)
from inferra.core.settings import SettingsState, build_custom_settings
from inferra.core.storage import InferraPaths, KeyValueStore
from inferra.engine import InferenceEngine, create_default_engine
from inferra.engine.on_device import OnDeviceProvider
from inferra.engine.remote import REMOTE_PROVIDERS, RemoteProviders, normalize_remote_provider
from inferra.transfer import (
    HttpRangeBackend,
    ManagedTransferBackend,
    TransferBackend,
    TransferCallbacks,
    TransferManager,
    TransferNotFoundError,
    canonical_model_key,
)
from inferra.transfer.progress import DownloadProgress

from .errors import (
    ApiError,
    StatusError,
    first_nonempty_str,
    json_body,
    json_value_body,
    log_failure,
    optional_json_body,
    optional_nonempty_str,
    parse_http_error,
    sanitize_message,
)
from .loaded_models import ModelSlot, to_utc_iso
from .rag import RAG_STORAGE_TYPES, RagState
from .resolution import ModelResolver, ResolvedModel
from .sse import EventStream
from .streaming import (
    ABANDONED_STREAM_STATUS,
    NDJSON_MEDIA_TYPE,
    SSE_MEDIA_TYPE,
    FinishOnce,
    stream_chat_response,
    utc_now_iso,
)

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("inferra.daemon.requests")

HF_TOKEN_ENV_KEYS = ("INFERRA_HF_TOKEN", "HF_TOKEN")
HF_HOSTS = ("huggingface.co", "hf.co")
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Accept",
}
REMOTE_ENABLED_MESSAGE = "Remote models are enabled."
REMOTE_DISABLED_MESSAGE = "Enable remote models in settings to activate providers."


@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.started_at = datetime.now(UTC)
    try:
        app.state.registry.refresh()
    except Exception as exc:  # noqa: BLE001
        log_failure("registry_refresh_failed", exc)
    app.state.transfers.synchronize_with_active_transfers()
    yield
    app.state.transfers.close()
    app.state.slot.unload()


def create_app(
    *,
    paths: InferraPaths | None = None,
    engine: InferenceEngine | None = None,
    backend: TransferBackend | None = None,
    on_device: OnDeviceProvider | None = None,
    remote_transport: Any = None,
) -> FastAPI:
    """Create a configured FastAPI daemon app."""
    package_version = _resolve_package_version()
    resolved_paths = paths or InferraPaths.default()
    config_provider = ConfigProvider(resolved_paths)
    config = _load_config_or_default(config_provider)
    store = KeyValueStore(resolved_paths.state_path)

    app = FastAPI(title="inferra daemon", version=package_version, lifespan=_lifespan)
    app.state.paths = resolved_paths
    app.state.config_provider = config_provider
    app.state.store = store
    app.state.started_at = datetime.now(UTC)
    app.state.host_binding = optional_nonempty_str(
        os.environ.get("INFERRA_EFFECTIVE_HOST_BINDING"),
    )
    app.state.event_stream = EventStream()
    app.state.registry = ModelRegistry(
        resolved_paths,
        store,
        on_change=lambda event, data: app.state.event_stream.publish(event, data),
    )
    app.state.settings_state = SettingsState()
    app.state.model_settings = ModelSettingsStore(store)
    app.state.slot = ModelSlot(engine or create_default_engine())
    app.state.remote = RemoteProviders(
        store,
        model_overrides={
            name: item.model for name, item in config.remote.providers.items() if item.model
        },
        base_url_overrides={
            name: item.base_url
            for name, item in config.remote.providers.items()
            if item.base_url
        },
        timeout=config.remote.timeout_seconds,
        transport=remote_transport,
    )
    app.state.on_device = on_device or OnDeviceProvider()
    app.state.resolver = ModelResolver(
        app.state.registry,
        app.state.slot,
        app.state.remote,
        app.state.on_device,
    )
    app.state.rag = RagState(store)
    app.state.chats = ChatStore(
        store,
        on_change=lambda event, data: app.state.event_stream.publish(event, data),
    )
    app.state.transfers = TransferManager(
        backend or _build_backend(config, resolved_paths),
        callbacks=_transfer_callbacks(app),
    )

    cors_enabled = config.server.cors

    @app.middleware("http")
    async def _log_requests(request: Request, call_next: Callable[..., Any]) -> Response:
        method = request.method
        path = request.url.path
        if method == "OPTIONS":
            response: Response = Response(status_code=204, headers=CORS_HEADERS)
            request_logger.info("%s %s %d", method, path, response.status_code)
            return response

        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            log_failure("api_unhandled", exc)
            response = JSONResponse(status_code=500, content={"error": "server_error"})
        if cors_enabled:
            response.headers.update(CORS_HEADERS)
        deferred = getattr(request.state, "deferred_log", None)
        if deferred is None:
            request_logger.info("%s %s %d", method, path, response.status_code)
        else:
            response.background = _finish_after_send(response.background, deferred)
        return response

    @app.exception_handler(StatusError)
    async def _status_error_handler(_request: Request, exc: StatusError) -> JSONResponse:
        return JSONResponse(status_code=exc.status, content={"error": exc.code})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(
        _request: Request,
        exc: StarletteHTTPException,
    ) -> JSONResponse:
        code = {404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "server_error")
        return JSONResponse(status_code=exc.status_code, content={"error": code})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(
        _request: Request,
        _exc: RequestValidationError,
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "invalid_request"})

    @app.get("/api/version")
    def version() -> dict[str, str]:
        return {"version": package_version}

    @app.get("/api/status")
    def status() -> dict[str, Any]:
        started_at = app.state.started_at
        active = app.state.slot.current()
        return {
            "server": {
                "status": "running",
                "version": package_version,
                "started_at": to_utc_iso(started_at),
                "uptime_seconds": _uptime_seconds(started_at),
                "host_binding": app.state.host_binding,
                "event_subscribers": app.state.event_stream.subscriber_count(),
            },
            "model": {
                "loaded": active is not None,
                "path": active.path if active is not None else None,
            },
            "rag": {"ready": app.state.rag.is_ready()},
        }

    @app.post("/api/chat", response_model=None)
    def chat(request: Request, payload: dict[str, Any] = Depends(json_body)) -> Any:
        return _handle_generation(app, request, payload, parse_messages(payload), "api_chat")

    @app.post("/api/generate", response_model=None)
    def generate(request: Request, payload: dict[str, Any] = Depends(json_body)) -> Any:
        parsed = parse_messages_or_prompt(payload)
        return _handle_generation(app, request, payload, parsed, "api_generate")

    @app.post("/api/show")
    def show(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        identifier = first_nonempty_str(payload, "name", "model", "path")
        if identifier is None:
            raise ApiError(400, "model_required")

        registry: ModelRegistry = app.state.registry
        try:
            target = registry.find_model(identifier)
            if target is None:
                raise ApiError(404, "model_not_found")
            info = _model_info_or_empty(app, target)
            settings = app.state.model_settings.get(target.path)
        except StatusError:
            raise
        except Exception as exc:  # noqa: BLE001
            log_failure("api_show_failed", exc)
            raise ApiError(500, "model_info_failed") from exc

        return {
            "name": target.name,
            "path": target.path,
            "size": target.size,
            "modified_at": target.modified,
            "is_external": target.is_external,
            "model_type": target.model_type.value,
            "capabilities": list(target.capabilities),
            "multimodal": target.supports_multimodal,
            "default_projection_model": target.default_projection_model,
            "settings": settings.model_dump(mode="json"),
            "info": info,
        }

    @app.get("/api/ps")
    def ps() -> dict[str, list[dict[str, Any]]]:
        try:
            active = app.state.slot.current()
            if active is None:
                return {"models": []}
            target = app.state.registry.find_model(active.path)
            name = target.name if target is not None else (Path(active.path).name or "model")
            size = target.size if target is not None else _file_size(active.path)
            return {
                "models": [
                    {
                        "name": name,
                        "model": target.path if target is not None else active.path,
                        "size": size,
                        "is_external": target.is_external if target is not None else False,
                        "model_type": target.model_type.value if target is not None else None,
                        "loaded_at": to_utc_iso(active.loaded_at),
                    },
                ],
            }
        except Exception as exc:  # noqa: BLE001
            log_failure("api_ps_failed", exc)
            raise ApiError(500, "ps_failed") from exc

    @app.get("/api/tags")
    def tags() -> dict[str, list[dict[str, Any]]]:
        try:
            models = app.state.registry.get_stored_models()
        except Exception as exc:  # noqa: BLE001
            log_failure("api_tags_failed", exc)
            raise ApiError(500, "models_unavailable") from exc
        return {"models": [_to_tag_model(model) for model in models]}

    @app.post("/api/pull")
    def pull(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        url = optional_nonempty_str(payload.get("url"))
        model = first_nonempty_str(payload, "model", "name")
        if url is None or model is None or not canonical_model_key(model):
            raise ApiError(400, "missing_parameters")
        if not url.startswith(("http://", "https://")):
            raise ApiError(400, "unsupported_url")

        key = canonical_model_key(model)
        try:
            token = _resolve_pull_token(app, payload, url)
            download_id = app.state.transfers.initiate_transfer(
                model,
                url,
                app.state.paths.download_path(key),
                auth_token=token,
            )
        except Exception as exc:  # noqa: BLE001
            log_failure("api_pull_failed", exc)
            raise ApiError(500, "download_failed") from exc
        return {"status": "downloading", "model": model, "downloadId": download_id}

    @app.delete("/api/delete")
    def delete(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        identifier = first_nonempty_str(payload, "path", "name")
        if identifier is None:
            raise ApiError(400, "missing_parameters")

        registry: ModelRegistry = app.state.registry
        try:
            target = registry.find_model(identifier)
            if target is None:
                raise ApiError(404, "model_not_found")
            active = app.state.slot.current()
            if active is not None and active.path == target.path:
                app.state.slot.unload()
            registry.delete_model(target.path)
            app.state.model_settings.delete(target.path)
        except StatusError:
            raise
        except StoredModelNotFoundError as exc:
            raise ApiError(404, "model_not_found") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_delete_failed", exc)
            raise ApiError(500, "delete_failed") from exc
        return {"status": "deleted", "name": target.name}

    @app.post("/api/copy")
    def copy(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        source = first_nonempty_str(payload, "source", "name", "model")
        destination = first_nonempty_str(payload, "destination", "target")
        if source is None or destination is None:
            raise ApiError(400, "missing_parameters")
        if "/" in destination or "\\" in destination or ".." in destination:
            raise ApiError(400, "invalid_destination")

        try:
            copied = app.state.registry.copy_model(source, destination)
        except StoredModelNotFoundError as exc:
            raise ApiError(404, "model_not_found") from exc
        except UnsupportedSourceError as exc:
            raise ApiError(400, "unsupported_source") from exc
        except ModelExistsError as exc:
            raise ApiError(409, "destination_exists") from exc
        except InvalidModelNameError as exc:
            raise ApiError(400, "invalid_destination") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_copy_failed", exc)
            raise ApiError(500, "copy_failed") from exc
        return {"status": "copied", "source": source, "destination": copied.name}

    @app.post("/api/embeddings")
    def embeddings(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        raw_input = payload.get("input")
        if raw_input is None:
            raw_input = payload.get("prompt")
        if raw_input is None:
            raw_input = payload.get("text")
        if isinstance(raw_input, str):
            inputs = [raw_input]
        elif isinstance(raw_input, list):
            inputs = [item for item in raw_input if isinstance(item, str)]
        else:
            inputs = []
        if not inputs:
            raise ApiError(400, "input_required")

        resolved = _resolve_or_raise(app, payload.get("model"), "api_embeddings_model")
        if not resolved.is_local:
            raise ApiError(400, "embeddings_unsupported")
        try:
            with app.state.slot.exclusive() as engine:
                vectors = [engine.embed(text) for text in inputs]
        except Exception as exc:  # noqa: BLE001
            log_failure("api_embeddings_failed", exc)
            raise ApiError(500, "embedding_failed") from exc

        response: dict[str, Any] = {"model": resolved.name, "created_at": utc_now_iso()}
        if len(vectors) == 1:
            response["embedding"] = vectors[0]
        else:
            response["embeddings"] = vectors
        return response

    @app.post("/api/models")
    def models_action(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        action = payload.get("action") if isinstance(payload.get("action"), str) else ""
        slot: ModelSlot = app.state.slot

        if action == "load":
            resolved = _resolve_or_raise(app, payload.get("model"), "api_models_load")
            return {
                "status": "loaded",
                "model": {
                    "name": resolved.name,
                    "path": resolved.path,
                    "projector": resolved.projector_path,
                },
            }
        if action == "unload":
            try:
                slot.unload()
            except Exception as exc:  # noqa: BLE001
                log_failure("api_models_unload_failed", exc)
                raise ApiError(500, "model_unload_failed") from exc
            return {"status": "unloaded"}
        if action == "reload":
            if slot.current() is None:
                raise ApiError(503, "model_not_loaded")
            try:
                reloaded = slot.reload()
            except Exception as exc:  # noqa: BLE001
                log_failure("api_models_reload_failed", exc)
                raise ApiError(500, "model_reload_failed") from exc
            return {"status": "reloaded", "path": reloaded.path}
        raise ApiError(400, "invalid_action")

    @app.post("/api/models/link")
    def link_model(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        source = first_nonempty_str(payload, "path", "uri")
        if source is None:
            raise ApiError(400, "missing_parameters")
        name = optional_nonempty_str(payload.get("name"))
        try:
            linked = app.state.registry.link_external_model(
                source,
                name,
                copy=payload.get("copy") is True,
            )
        except ModelExistsError as exc:
            raise ApiError(409, "model_exists") from exc
        except FileNotFoundError as exc:
            raise ApiError(404, "file_not_found") from exc
        except InvalidModelNameError as exc:
            raise ApiError(400, "invalid_name") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_link_failed", exc)
            raise ApiError(500, "link_failed") from exc
        return {"status": "linked", "model": linked.model_dump(mode="json")}

    @app.get("/api/models/remote")
    def remote_models() -> dict[str, Any]:
        remote: RemoteProviders = app.state.remote
        enabled = remote.enabled()
        return {
            "enabled": enabled,
            "providers": [remote.summary(provider) for provider in REMOTE_PROVIDERS],
            "message": REMOTE_ENABLED_MESSAGE if enabled else REMOTE_DISABLED_MESSAGE,
        }

    @app.get("/api/models/remote/{provider}")
    def remote_model(provider: str) -> dict[str, Any]:
        remote: RemoteProviders = app.state.remote
        resolved = normalize_remote_provider(provider)
        if resolved is None:
            raise ApiError(404, "provider_not_found")
        enabled = remote.enabled()
        return {
            "enabled": enabled,
            "provider": remote.summary(resolved),
            "message": REMOTE_ENABLED_MESSAGE if enabled else REMOTE_DISABLED_MESSAGE,
        }

    @app.post("/api/models/remote", response_model=None)
    def check_remote_model(payload: dict[str, Any] = Depends(optional_json_body)) -> Any:
        provider = normalize_remote_provider(payload.get("provider"))
        if "provider" not in payload:
            return _remote_readiness(app, None, missing="provider_required")
        return _remote_readiness(app, provider, missing="invalid_provider")

    @app.post("/api/models/remote/{provider}", response_model=None)
    def check_remote_provider(
        provider: str,
        _payload: dict[str, Any] = Depends(optional_json_body),
    ) -> Any:
        resolved = normalize_remote_provider(provider)
        if resolved is None:
            raise ApiError(404, "provider_not_found")
        return _remote_readiness(app, resolved, missing="invalid_provider")

    @app.get("/api/models/apple-foundation")
    def on_device_status() -> dict[str, Any]:
        return app.state.on_device.summary()

    @app.post("/api/models/apple-foundation", response_model=None)
    def check_on_device(_payload: dict[str, Any] = Depends(optional_json_body)) -> Any:
        provider: OnDeviceProvider = app.state.on_device
        if not provider.is_available():
            return _error_with_message(
                501,
                "apple_foundation_unavailable",
                "Apple Foundation is not available on this device.",
            )
        if not provider.meets_requirements():
            return _error_with_message(
                428,
                "requirements_not_met",
                "Update the device to meet Apple Intelligence requirements.",
            )
        if not provider.is_enabled():
            return _error_with_message(
                409,
                "apple_foundation_disabled",
                "Enable Apple Foundation in settings on this device.",
            )
        return {"status": "ready"}

    @app.get("/api/downloads")
    def downloads() -> dict[str, list[dict[str, Any]]]:
        active = app.state.transfers.get_active_transfers()
        return {"downloads": [item.to_dict() for item in active]}

    @app.post("/api/downloads/{model}/pause")
    def pause_download(model: str) -> dict[str, Any]:
        try:
            paused = app.state.transfers.pause_transfer(model)
        except TransferNotFoundError as exc:
            raise ApiError(404, "download_not_found") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_download_pause_failed", exc)
            raise ApiError(500, "download_pause_failed") from exc
        return {"status": "paused", "download": paused.to_dict()}

    @app.post("/api/downloads/{model}/resume")
    def resume_download(model: str) -> dict[str, Any]:
        try:
            resumed = app.state.transfers.resume_transfer(model)
        except TransferNotFoundError as exc:
            raise ApiError(404, "download_not_found") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_download_resume_failed", exc)
            raise ApiError(500, "download_resume_failed") from exc
        return {"status": "downloading", "download": resumed.to_dict()}

    @app.delete("/api/downloads/{model}")
    def cancel_download(model: str) -> dict[str, Any]:
        try:
            app.state.transfers.abort_transfer(model)
        except TransferNotFoundError as exc:
            raise ApiError(404, "download_not_found") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_download_cancel_failed", exc)
            raise ApiError(500, "download_cancel_failed") from exc
        return {"status": "cancelled", "model": canonical_model_key(model)}

    @app.get("/api/rag")
    def rag_status() -> dict[str, Any]:
        try:
            return app.state.rag.status()
        except Exception as exc:  # noqa: BLE001
            log_failure("api_rag_status_failed", exc)
            raise ApiError(500, "rag_status_failed") from exc

    @app.post("/api/rag")
    def rag_update(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        rag: RagState = app.state.rag
        enabled = payload.get("enabled")
        storage = payload.get("storage")
        try:
            if isinstance(enabled, bool):
                rag.set_enabled(enabled)
            if storage in RAG_STORAGE_TYPES:
                rag.set_storage_type(storage)
            if payload.get("initialize"):
                rag.initialize(payload.get("provider"))
            return rag.status()
        except Exception as exc:  # noqa: BLE001
            log_failure("api_rag_update_failed", exc)
            raise ApiError(500, "rag_update_failed") from exc

    @app.post("/api/rag/reset")
    def rag_reset() -> dict[str, str]:
        try:
            app.state.rag.clear()
        except Exception as exc:  # noqa: BLE001
            log_failure("api_rag_reset_failed", exc)
            raise ApiError(500, "rag_reset_failed") from exc
        return {"status": "cleared"}

    @app.get("/api/settings")
    def settings() -> dict[str, Any]:
        return {"settings": app.state.settings_state.snapshot().model_dump(mode="json")}

    @app.post("/api/settings/thinking")
    def update_thinking(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        enabled = payload.get("enabled")
        if not isinstance(enabled, bool):
            raise ApiError(400, "enabled_required")
        try:
            app.state.settings_state.update(enable_thinking=enabled)
        except Exception as exc:  # noqa: BLE001
            log_failure("api_thinking_update_failed", exc)
            raise ApiError(500, "thinking_update_failed") from exc
        return {"status": "updated", "enabled": enabled}

    @app.get("/api/chats")
    def list_chats() -> dict[str, Any]:
        try:
            chats = app.state.chats.list_chats()
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_list_failed", exc)
            raise ApiError(500, "chat_list_failed") from exc
        return {"chats": [chat.to_dict(include_messages=False) for chat in chats]}

    @app.post("/api/chats", status_code=201)
    def create_chat(payload: dict[str, Any] = Depends(json_body)) -> dict[str, Any]:
        entries = payload.get("messages")
        messages = [
            message_from_payload(entry)
            for entry in (entries if isinstance(entries, list) else [])
            if isinstance(entry, dict) and isinstance(entry.get("content"), str)
        ]
        title = payload.get("title")
        try:
            chat = app.state.chats.create_chat(
                title=title if isinstance(title, str) and title else None,
                messages=messages,
            )
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_create_failed", exc)
            raise ApiError(500, "chat_create_failed") from exc
        return {"chat": chat.to_dict(include_messages=True)}

    @app.get("/api/chats/{chat_id}")
    def get_chat(chat_id: str) -> dict[str, Any]:
        return {"chat": _chat_or_404(app, chat_id).to_dict(include_messages=True)}

    @app.delete("/api/chats/{chat_id}")
    def delete_chat(chat_id: str) -> dict[str, Any]:
        try:
            deleted = app.state.chats.delete_chat(chat_id)
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_delete_failed", exc)
            raise ApiError(500, "chat_delete_failed") from exc
        if not deleted:
            raise ApiError(404, "chat_not_found")
        return {"status": "deleted", "chatId": chat_id}

    @app.get("/api/chats/{chat_id}/messages")
    def list_chat_messages(chat_id: str) -> dict[str, Any]:
        chat = _chat_or_404(app, chat_id)
        return {"messages": [message.to_dict() for message in chat.messages]}

    @app.post("/api/chats/{chat_id}/messages", status_code=201)
    def append_chat_messages(
        chat_id: str,
        payload: Any = Depends(json_value_body),
    ) -> dict[str, Any]:
        if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
            entries = payload["messages"]
        elif isinstance(payload, list):
            entries = payload
        else:
            entries = [payload]
        try:
            created = app.state.chats.append_messages(
                chat_id,
                [message_from_payload(entry) for entry in entries],
            )
        except ChatNotFoundError as exc:
            raise ApiError(404, "chat_not_found") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_message_append_failed", exc)
            raise ApiError(500, "chat_message_append_failed") from exc
        return {"messages": [message.to_dict() for message in created]}

    @app.put("/api/chats/{chat_id}/messages/{message_id}")
    def update_chat_message(
        chat_id: str,
        message_id: str,
        payload: dict[str, Any] = Depends(json_body),
    ) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        if isinstance(payload.get("role"), str):
            updates["role"] = payload["role"]
        if isinstance(payload.get("content"), str):
            updates["content"] = payload["content"]
        for field, kind in (("thinking", str), ("stats", dict)):
            if field in payload and (payload[field] is None or isinstance(payload[field], kind)):
                updates[field] = payload[field]
        try:
            updated = app.state.chats.update_message(chat_id, message_id, **updates)
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_message_update_failed", exc)
            raise ApiError(500, "message_update_failed") from exc
        if not updated:
            raise ApiError(404, "message_not_found")
        return {"status": "updated", "chatId": chat_id, "messageId": message_id}

    @app.delete("/api/chats/{chat_id}/messages/{message_id}")
    def delete_chat_message(chat_id: str, message_id: str) -> dict[str, Any]:
        try:
            removed = app.state.chats.remove_message(chat_id, message_id)
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_message_delete_failed", exc)
            raise ApiError(500, "message_delete_failed") from exc
        if not removed:
            raise ApiError(404, "message_not_found")
        return {"status": "deleted", "chatId": chat_id, "messageId": message_id}

    @app.post("/api/chats/{chat_id}/title")
    def update_chat_title(
        chat_id: str,
        payload: dict[str, Any] = Depends(json_body),
    ) -> dict[str, Any]:
        chats: ChatStore = app.state.chats
        title = optional_nonempty_str(payload.get("title"))
        try:
            if title is not None:
                if not chats.set_title(chat_id, title):
                    raise ApiError(404, "chat_not_found")
                return {"title": title, "generated": False}
            generated = chats.generate_title(chat_id, optional_nonempty_str(payload.get("prompt")))
        except StatusError:
            raise
        except ChatNotFoundError as exc:
            raise ApiError(404, "chat_not_found") from exc
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_title_failed", exc)
            raise ApiError(500, "title_update_failed") from exc
        if generated is None:
            raise ApiError(422, "title_generation_failed")
        return {"title": generated, "generated": True}

    @app.post("/api/chats/{chat_id}/model")
    def update_chat_model(
        chat_id: str,
        payload: dict[str, Any] = Depends(json_body),
    ) -> dict[str, Any]:
        model_path = optional_nonempty_str(payload.get("path"))
        try:
            updated = app.state.chats.set_model_path(chat_id, model_path)
        except Exception as exc:  # noqa: BLE001
            log_failure("api_chat_model_update_failed", exc)
            raise ApiError(500, "chat_model_update_failed") from exc
        if not updated:
            raise ApiError(404, "chat_not_found")
        return {"status": "updated", "chatId": chat_id, "modelPath": model_path}

    @app.get("/api/events")
    def events(
        topics: str | None = None,
        heartbeat: float = 15.0,
        max_events: int | None = None,
    ) -> StreamingResponse:
        if heartbeat <= 0 or (max_events is not None and max_events <= 0):
            raise ApiError(400, "invalid_request")
        selected = set(topics.split(",")) if topics else None
        stream: EventStream = app.state.event_stream
        subscription = stream.subscribe(topics=selected)
        return StreamingResponse(
            stream.iter_sse_lines(
                subscription=subscription,
                heartbeat_seconds=heartbeat,
                max_events=max_events,
            ),
            media_type=SSE_MEDIA_TYPE,
        )

    return app


def _handle_generation(
    app: FastAPI,
    request: Request,
    payload: dict[str, Any],
    parsed: ParsedMessages,
    label: str,
) -> Any:
    if parsed.error is not None:
        raise ApiError(400, parsed.error)

    resolved = _resolve_or_raise(app, payload.get("model"), f"{label}_model")
    baseline = app.state.model_settings.effective(
        resolved.path,
        app.state.settings_state.snapshot(),
    )
    settings = build_custom_settings(payload.get("options"), baseline) or baseline
    messages = [message.to_dict() for message in parsed.messages]
    resolver: ModelResolver = app.state.resolver

    if payload.get("stream") is True:
        method = request.method
        path = request.url.path
        sse = _wants_sse(request, payload)
        finish = FinishOnce(lambda status: request_logger.info("%s %s %d", method, path, status))
        request.state.deferred_log = finish

        return StreamingResponse(
            stream_chat_response(
                model=resolved.name,
                generate=lambda on_token: resolver.generate(
                    resolved,
                    messages,
                    on_token,
                    settings,
                ),
                sse=sse,
                failure_label=f"{label}_failed",
                on_finish=finish,
            ),
            media_type=SSE_MEDIA_TYPE if sse else NDJSON_MEDIA_TYPE,
        )

    try:
        text = resolver.generate(resolved, messages, None, settings)
    except Exception as exc:  # noqa: BLE001
        log_failure(f"{label}_failed", exc)
        raise ApiError(500, "generation_failed") from exc
    return {
        "model": resolved.name,
        "created_at": utc_now_iso(),
        "response": text,
        "done": True,
    }


def _finish_after_send(background: Any, finish: FinishOnce) -> BackgroundTasks:
    # Also reports streams whose client disconnected before the first chunk.
    tasks = BackgroundTasks()
    if background is not None:
        tasks.add_task(background)
    tasks.add_task(finish, ABANDONED_STREAM_STATUS)
    return tasks


def _resolve_or_raise(app: FastAPI, identifier: Any, label: str) -> ResolvedModel:
    try:
        return app.state.resolver.ensure_model_loaded(
            identifier if isinstance(identifier, str) else None,
        )
    except Exception as exc:  # noqa: BLE001
        parsed = parse_http_error(exc)
        logger.error("%s:%s", label, sanitize_message(parsed.message))
        raise ApiError(parsed.status, parsed.code) from exc


def _chat_or_404(app: FastAPI, chat_id: str) -> Chat:
    try:
        chat = app.state.chats.get_chat(chat_id)
    except Exception as exc:  # noqa: BLE001
        log_failure("api_chat_load_failed", exc)
        raise ApiError(500, "chat_load_failed") from exc
    if chat is None:
        raise ApiError(404, "chat_not_found")
    return chat


def _wants_sse(request: Request, payload: dict[str, Any]) -> bool:
    if payload.get("format") == "sse":
        return True
    return SSE_MEDIA_TYPE in request.headers.get("accept", "")


def _remote_readiness(app: FastAPI, provider: str | None, *, missing: str) -> Any:
    remote: RemoteProviders = app.state.remote
    if not remote.enabled():
        return _error_with_message(
            409,
            "remote_models_disabled",
            "Enable remote models in settings on the device.",
        )
    if provider is None:
        raise ApiError(400, missing)
    if remote.api_key(provider) is None:
        label = remote.summary(provider)["label"]
        return _error_with_message(
            422,
            "api_key_missing",
            f"Add a {label} API key in settings before using this provider.",
        )
    return {"status": "ready", "provider": remote.summary(provider)}


def _error_with_message(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": code, "message": message})


def _transfer_callbacks(app: FastAPI) -> TransferCallbacks:
    def publish(event: str, data: dict[str, Any]) -> None:
        app.state.event_stream.publish(event, data)

    def on_start(model: str, download_id: str) -> None:
        publish("transfer.started", {"model": model, "download_id": download_id})

    def on_progress(model: str, progress: DownloadProgress) -> None:
        publish("transfer.progress", {"model": model, **progress.to_dict()})

    def on_complete(model: str, destination: Path) -> None:
        try:
            stored = app.state.registry.adopt_download(destination)
        except ModelExistsError as exc:
            logger.warning("download %s not adopted: %s", model, exc)
            publish("transfer.failed", {"model": model, "message": "model_exists"})
            return
        except Exception as exc:  # noqa: BLE001
            log_failure("transfer_adopt_failed", exc)
            publish("transfer.failed", {"model": model, "message": "adopt_failed"})
            return
        publish("transfer.completed", {"model": model, "name": stored.name, "size": stored.size})

    def on_error(model: str, message: str) -> None:
        publish("transfer.failed", {"model": model, "message": message})

    def on_cancelled(model: str) -> None:
        publish("transfer.cancelled", {"model": model})

    def on_paused(model: str, progress: DownloadProgress) -> None:
        publish("transfer.paused", {"model": model, **progress.to_dict()})

    return TransferCallbacks(
        on_start=on_start,
        on_progress=on_progress,
        on_complete=on_complete,
        on_error=on_error,
        on_cancelled=on_cancelled,
        on_paused=on_paused,
    )


def _build_backend(config: InferraConfig, paths: InferraPaths) -> TransferBackend:
    pull = config.pull
    if pull.backend == "managed":
        return ManagedTransferBackend(
            KeyValueStore(paths.journal_path),
            chunk_size=pull.chunk_size,
            timeout=pull.timeout_seconds,
        )
    return HttpRangeBackend(chunk_size=pull.chunk_size, timeout=pull.timeout_seconds)


def _resolve_pull_token(app: FastAPI, payload: dict[str, Any], url: str) -> str | None:
    explicit = optional_nonempty_str(payload.get("token"))
    if explicit is not None:
        return explicit
    if not any(host in url for host in HF_HOSTS):
        return None
    for key in HF_TOKEN_ENV_KEYS:
        value = optional_nonempty_str(os.environ.get(key))
        if value is not None:
            return value
    return _load_config_or_default(app.state.config_provider).pull.hf_token


def _model_info_or_empty(app: FastAPI, model: StoredModel) -> dict[str, Any]:
    try:
        with app.state.slot.exclusive() as engine:
            return dict(engine.load_model_info(model.path))
    except Exception as exc:  # noqa: BLE001
        logger.debug("model info unavailable for %s: %s", model.path, exc)
        return {}


def _to_tag_model(model: StoredModel) -> dict[str, Any]:
    return {
        "name": model.name,
        "modified_at": model.modified,
        "size": model.size,
        "digest": None,
        "model_type": model.model_type.value,
        "is_external": model.is_external,
    }


def _file_size(path: str | None) -> int:
    if not path:
        return 0
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


def _load_config_or_default(provider: ConfigProvider) -> InferraConfig:
    try:
        return provider.get()
    except ConfigFileError as exc:
        logger.warning("using default config: %s", exc)
        return InferraConfig()


def _uptime_seconds(started_at: datetime | None) -> int:
    if started_at is None:
        return 0
    return max(int((datetime.now(UTC) - started_at).total_seconds()), 0)


def _resolve_package_version() -> str:
    try:
        return metadata.version("inferra")
    except metadata.PackageNotFoundError:
        return "0.0.0"
