"""HTTP client helpers for talking to the inferra daemon."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote

import httpx

from inferra.daemon.main import DEFAULT_DAEMON_HOST, DEFAULT_DAEMON_PORT

DEFAULT_BASE_URL = f"http://localhost:{DEFAULT_DAEMON_PORT}"
DEFAULT_TIMEOUT_SECONDS = 10.0

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_DAEMON_HOST",
    "DEFAULT_DAEMON_PORT",
    "DEFAULT_TIMEOUT_SECONDS",
    "DaemonHTTPError",
    "InferraClient",
]


class DaemonHTTPError(RuntimeError):
    """HTTP status error returned by the daemon."""

    def __init__(self, *, action: str, status_code: int, detail: str) -> None:
        super().__init__(f"{action} failed with HTTP {status_code}: {detail}")
        self.action = action
        self.status_code = status_code
        self.detail = detail

    @property
    def code(self) -> str | None:
        """The daemon's ``error`` code, when the body carried one."""
        try:
            payload = json.loads(self.detail)
        except json.JSONDecodeError:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            return payload["error"]
        return None


class InferraClient:
    """Minimal client for inferra daemon HTTP endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def version(self) -> dict[str, Any]:
        return self._request_json("GET", "/api/version", action="fetch daemon version")

    def status(self) -> dict[str, Any]:
        return self._request_json("GET", "/api/status", action="fetch daemon status")

    def list_tags(self) -> dict[str, Any]:
        """Fetch installed model tags from the daemon."""
        return self._request_json("GET", "/api/tags", action="list model tags")

    def list_running(self) -> dict[str, Any]:
        """Fetch the loaded model from the daemon."""
        return self._request_json("GET", "/api/ps", action="list loaded models")

    def show_model(self, name: str) -> dict[str, Any]:
        return self._request_json(
            "POST",
            "/api/show",
            json_payload={"name": name},
            action=f"show model {name!r}",
        )

    def pull_model(self, url: str, name: str, *, token: str | None = None) -> dict[str, Any]:
        """Start a download; progress is reported through :meth:`list_downloads`."""
        payload: dict[str, Any] = {"url": url, "model": name}
        if token is not None:
            payload["token"] = token
        return self._request_json(
            "POST",
            "/api/pull",
            json_payload=payload,
            action=f"pull model {name!r}",
        )

    def remove_model(self, name: str) -> dict[str, Any]:
        return self._request_json(
            "DELETE",
            "/api/delete",
            json_payload={"name": name},
            action=f"remove model {name!r}",
        )

    def copy_model(self, source: str, destination: str) -> dict[str, Any]:
        return self._request_json(
            "POST",
            "/api/copy",
            json_payload={"source": source, "destination": destination},
            action=f"copy model {source!r}",
        )

    def link_model(
        self,
        path: str,
        *,
        name: str | None = None,
        copy: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"path": path, "copy": copy}
        if name is not None:
            payload["name"] = name
        return self._request_json(
            "POST",
            "/api/models/link",
            json_payload=payload,
            action=f"link model {path!r}",
        )

    def manage_model(self, action: str, model: str | None = None) -> dict[str, Any]:
        """Send a load, unload, or reload action to ``POST /api/models``."""
        payload: dict[str, Any] = {"action": action}
        if model is not None:
            payload["model"] = model
        return self._request_json(
            "POST",
            "/api/models",
            json_payload=payload,
            action=f"{action} model",
        )

    def chat(
        self,
        payload: dict[str, Any],
        *,
        stream: bool = True,
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """Submit a chat request; streamed records are returned in order."""
        request_payload = dict(payload)
        request_payload["stream"] = stream
        action = f"chat with model {request_payload.get('model')!r}"
        if stream:
            return self._request_ndjson(
                "POST",
                "/api/chat",
                json_payload=request_payload,
                action=action,
            )
        return self._request_json(
            "POST",
            "/api/chat",
            json_payload=request_payload,
            action=action,
        )

    def list_downloads(self) -> dict[str, Any]:
        return self._request_json("GET", "/api/downloads", action="list downloads")

    def pause_download(self, model: str) -> dict[str, Any]:
        return self._request_json(
            "POST",
            f"/api/downloads/{quote(model, safe='')}/pause",
            action=f"pause download {model!r}",
        )

    def resume_download(self, model: str) -> dict[str, Any]:
        return self._request_json(
            "POST",
            f"/api/downloads/{quote(model, safe='')}/resume",
            action=f"resume download {model!r}",
        )

    def cancel_download(self, model: str) -> dict[str, Any]:
        return self._request_json(
            "DELETE",
            f"/api/downloads/{quote(model, safe='')}",
            action=f"cancel download {model!r}",
        )

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        action: str,
    ) -> dict[str, Any]:
        response = self._send_request(method, path, json_payload=json_payload, action=action)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RuntimeError("daemon returned non-JSON response") from exc
        if not isinstance(payload, dict):
            raise RuntimeError("daemon returned unexpected JSON payload")
        return payload

    def _request_ndjson(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        action: str,
    ) -> list[dict[str, Any]]:
        response = self._send_request(method, path, json_payload=json_payload, action=action)
        entries: list[dict[str, Any]] = []
        for raw_line in response.text.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise RuntimeError("daemon returned non-NDJSON response") from exc
            if not isinstance(payload, dict):
                raise RuntimeError("daemon returned unexpected NDJSON payload")
            entries.append(payload)
        return entries

    def _send_request(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        action: str,
    ) -> httpx.Response:
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=json_payload)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{action} failed: {exc}") from exc

        if response.is_error:
            raise DaemonHTTPError(
                action=action,
                status_code=response.status_code,
                detail=response.text,
            )
        return response
