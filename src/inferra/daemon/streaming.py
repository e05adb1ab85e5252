"""NDJSON and SSE framing for token-streamed chat responses."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from queue import Queue
from typing import Any

from inferra.engine import TokenCallback

from .errors import log_failure
from .sse import format_sse_data

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
SSE_MEDIA_TYPE = "text/event-stream"

Generate = Callable[[TokenCallback], str]
FinishCallback = Callable[[int], None]

ABANDONED_STREAM_STATUS = 500


def to_ndjson_line(payload: dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True) + "\n"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class FinishOnce:
    """Forwards the first reported status to ``callback`` and drops later reports."""

    def __init__(self, callback: FinishCallback) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._finished = False

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def __call__(self, status: int) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
        self._callback(status)


def stream_chat_response(
    *,
    model: str,
    generate: Generate,
    sse: bool = False,
    failure_label: str = "stream_generation_failed",
    on_finish: FinishCallback | None = None,
) -> Iterator[str]:
    """Yield one record per token, then exactly one ``done: true`` record.

    ``generate`` runs on a worker thread and receives the token callback. When the
    consumer closes this iterator the callback starts returning ``False`` so the
    engine stops producing tokens.
    """
    items: Queue[tuple[str, Any]] = Queue()
    cancelled = threading.Event()
    started = time.monotonic()

    def on_token(token: str) -> bool:
        if cancelled.is_set():
            return False
        items.put(("token", token))
        return True

    def run() -> None:
        try:
            output = generate(on_token)
        except Exception as exc:  # noqa: BLE001
            items.put(("error", exc))
            return
        items.put(("done", output))

    worker = threading.Thread(target=run, name=f"generate-{model}", daemon=True)
    worker.start()

    def frame(payload: dict[str, Any]) -> str:
        return format_sse_data(payload) if sse else to_ndjson_line(payload)

    status = 500
    try:
        while True:
            kind, value = items.get()
            if kind == "token":
                yield frame(
                    {
                        "model": model,
                        "created_at": utc_now_iso(),
                        "response": value,
                        "done": False,
                    },
                )
                continue

            if kind == "done":
                status = 200
                yield frame(
                    {
                        "model": model,
                        "created_at": utc_now_iso(),
                        "response": "",
                        "done": True,
                        "total_duration_ms": int((time.monotonic() - started) * 1000),
                        "output": value,
                    },
                )
            else:
                log_failure(failure_label, value)
                yield frame(
                    {
                        "model": model,
                        "created_at": utc_now_iso(),
                        "error": "generation_failed",
                        "done": True,
                    },
                )
            if sse:
                yield format_sse_data("[DONE]")
            break
    except GeneratorExit:
        cancelled.set()
        status = 500
        logger.warning("stream for %s closed by client before completion", model)
        raise
    finally:
        if on_finish is not None:
            on_finish(status)
