"""Error envelope, request-body parsing, and failure logging for the daemon API."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from fastapi import Request

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class StatusError(RuntimeError):
    """Error that carries the HTTP status and machine-readable code it maps to."""

    status: int = 500
    code: str = "server_error"

    def __init__(self, message: str = "", *, status: int | None = None, code: str | None = None):
        super().__init__(message or (code or self.code))
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code


class ApiError(StatusError):
    """Raised by handlers to short-circuit with ``{"error": code}``."""

    def __init__(self, status: int, code: str, message: str = "") -> None:
        super().__init__(message or code, status=status, code=code)


@dataclass(frozen=True)
class HttpError:
    status: int
    code: str
    message: str


def parse_http_error(exc: BaseException) -> HttpError:
    """Map any exception onto a status, code, and log-safe message."""
    message = compact_exception_message(exc)
    if isinstance(exc, StatusError):
        return HttpError(status=exc.status, code=exc.code, message=message)
    return HttpError(status=500, code="server_error", message=message)


def sanitize_message(message: str) -> str:
    return _WHITESPACE.sub("_", message.strip())


def compact_exception_message(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def log_failure(label: str, exc: BaseException) -> None:
    logger.error("%s:%s", label, sanitize_message(compact_exception_message(exc)))


async def json_body(request: Request) -> dict[str, Any]:
    """Read a JSON object body; empty and malformed bodies are 400s."""
    payload = await json_value_body(request)
    if not isinstance(payload, dict):
        raise ApiError(400, "invalid_json")
    return payload


async def json_value_body(request: Request) -> Any:
    """Read any JSON body (object, array, or scalar); empty and malformed bodies are 400s."""
    raw = await request.body()
    if not raw.strip():
        raise ApiError(400, "empty_body")
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ApiError(400, "invalid_json") from exc
    return payload


async def optional_json_body(request: Request) -> dict[str, Any]:
    """Like :func:`json_body` but an empty body reads as ``{}``."""
    raw = await request.body()
    if not raw.strip():
        return {}
    return await json_body(request)


def optional_nonempty_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


def first_nonempty_str(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = optional_nonempty_str(payload.get(key))
        if value is not None:
            return value
    return None
