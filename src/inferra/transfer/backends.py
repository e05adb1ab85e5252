"""Transfer backends that stream model files to disk and report raw events."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

import httpx

from inferra.core.storage import KeyValueStore

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], None]

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT_SECONDS = 30.0
STOP_JOIN_TIMEOUT_SECONDS = 10.0
JOURNAL_KEY = "transfers"


@dataclass(frozen=True)
class TransferRequest:
    """Everything a backend needs to fetch one file."""

    download_id: str
    model: str
    url: str
    destination: Path
    auth_token: str | None = None
    offset: int = 0


@dataclass(frozen=True)
class OngoingTransfer:
    """A transfer the backend is still tracking, possibly from a previous process."""

    download_id: str
    model: str
    url: str
    destination: str
    offset: int = 0
    bytes_written: int = 0
    total_bytes: int = -1
    paused: bool = False


class TransferBackend(ABC):
    """Platform transfer primitive driven by the transfer manager."""

    def __init__(self) -> None:
        self._listener: EventSink | None = None

    def set_listener(self, listener: EventSink) -> None:
        self._listener = listener

    @abstractmethod
    def begin(self, request: TransferRequest) -> None: ...

    @abstractmethod
    def pause(self, download_id: str) -> None: ...

    @abstractmethod
    def resume(self, request: TransferRequest) -> None:
        """Continue a paused transfer; ``request.offset`` holds the manager's snapshot."""

    @abstractmethod
    def cancel(self, download_id: str) -> None: ...

    def ongoing(self) -> list[OngoingTransfer]:
        return []

    def close(self) -> None:
        return None

    def _emit(self, payload: dict[str, Any]) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            listener(payload)
        except Exception:  # noqa: BLE001
            logger.exception("transfer listener failed for %s event", payload.get("kind"))


class _Worker:
    """One streaming thread plus the reason it was asked to stop."""

    def __init__(self, request: TransferRequest) -> None:
        self.request = request
        self.stop_event = threading.Event()
        self.stop_reason: str | None = None
        self.thread: threading.Thread | None = None

    def stop(self, reason: str) -> None:
        self.stop_reason = reason
        self.stop_event.set()

    def join(self) -> None:
        thread = self.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=STOP_JOIN_TIMEOUT_SECONDS)


class StreamingBackend(TransferBackend):
    """Shared worker-thread machinery for httpx-based backends."""

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__()
        self._chunk_size = chunk_size
        self._client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )
        self._lock = threading.Lock()
        self._workers: dict[str, _Worker] = {}

    def pause(self, download_id: str) -> None:
        worker = self._stop_worker(download_id, reason="pause")
        if worker is not None:
            worker.join()

    def cancel(self, download_id: str) -> None:
        worker = self._stop_worker(download_id, reason="cancel")
        if worker is not None:
            worker.join()
            return
        self._on_cancel_idle(download_id)
        self._emit({"kind": "cancelled", "download_id": download_id})

    def close(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.stop("pause")
        for worker in workers:
            worker.join()
        self._client.close()

    def is_running(self, download_id: str) -> bool:
        with self._lock:
            return download_id in self._workers

    def _start_worker(self, request: TransferRequest) -> None:
        worker = _Worker(request)
        with self._lock:
            if request.download_id in self._workers:
                raise RuntimeError(f"transfer {request.download_id} is already running")
            self._workers[request.download_id] = worker
        worker.thread = threading.Thread(
            target=self._run_worker,
            args=(worker,),
            name=f"transfer-{request.download_id}",
            daemon=True,
        )
        worker.thread.start()

    def _stop_worker(self, download_id: str, *, reason: str) -> _Worker | None:
        with self._lock:
            worker = self._workers.get(download_id)
        if worker is not None:
            worker.stop(reason)
        return worker

    def _run_worker(self, worker: _Worker) -> None:
        request = worker.request
        written = 0
        offset = request.offset
        try:
            offset, written, finished = self._stream(worker)
        except Exception as exc:  # noqa: BLE001
            logger.warning("transfer %s failed: %s", request.download_id, exc)
            self._forget(request.download_id)
            self._on_failed(request)
            self._emit(
                {
                    "kind": "error",
                    "download_id": request.download_id,
                    "message": _compact_exception_message(exc),
                },
            )
            return

        self._forget(request.download_id)
        if finished:
            self._on_complete(request)
            self._emit(
                {
                    "kind": "complete",
                    "download_id": request.download_id,
                    "destination": str(request.destination),
                },
            )
        elif worker.stop_reason == "cancel":
            request.destination.unlink(missing_ok=True)
            self._on_cancel_idle(request.download_id)
            self._emit({"kind": "cancelled", "download_id": request.download_id})
        else:
            self._on_paused(request, offset + written)
            self._emit(
                {
                    "kind": "paused",
                    "download_id": request.download_id,
                    "bytes_written": offset + written,
                },
            )

    def _stream(self, worker: _Worker) -> tuple[int, int, bool]:
        request = worker.request
        headers: dict[str, str] = {}
        if request.auth_token:
            headers["Authorization"] = f"Bearer {request.auth_token}"
        if request.offset > 0:
            headers["Range"] = f"bytes={request.offset}-"

        request.destination.parent.mkdir(parents=True, exist_ok=True)
        with self._client.stream("GET", request.url, headers=headers) as response:
            if response.status_code == 416 and request.offset > 0:
                self._emit(
                    {
                        "kind": "begin",
                        "download_id": request.download_id,
                        "offset": request.offset,
                        "content_length": 0,
                    },
                )
                return request.offset, 0, True
            response.raise_for_status()

            offset = request.offset if response.status_code == 206 else 0
            content_length = _content_length(response)
            self._emit(
                {
                    "kind": "begin",
                    "download_id": request.download_id,
                    "offset": offset,
                    "content_length": content_length,
                },
            )

            written = 0
            mode = "r+b" if offset > 0 and request.destination.exists() else "wb"
            with request.destination.open(mode) as handle:
                if mode == "r+b":
                    handle.truncate(offset)
                    handle.seek(offset)
                for chunk in response.iter_bytes(self._chunk_size):
                    if worker.stop_event.is_set():
                        return offset, written, False
                    handle.write(chunk)
                    written += len(chunk)
                    self._emit(
                        {
                            "kind": "progress",
                            "download_id": request.download_id,
                            "bytes_written": written,
                            "total_bytes": content_length if content_length is not None else -1,
                            "model": request.model,
                            "destination": str(request.destination),
                            "url": request.url,
                        },
                    )
        return offset, written, not worker.stop_event.is_set()

    def _forget(self, download_id: str) -> None:
        with self._lock:
            self._workers.pop(download_id, None)

    def _on_complete(self, request: TransferRequest) -> None:
        return None

    def _on_failed(self, request: TransferRequest) -> None:
        return None

    def _on_paused(self, request: TransferRequest, bytes_on_disk: int) -> None:
        return None

    def _on_cancel_idle(self, download_id: str) -> None:
        return None


class HttpRangeBackend(StreamingBackend):
    """Resumable file-download primitive; the manager drives resume via ``Range``."""

    def begin(self, request: TransferRequest) -> None:
        self._start_worker(replace(request, offset=0))

    def resume(self, request: TransferRequest) -> None:
        self._start_worker(request)


class ManagedTransferBackend(StreamingBackend):
    """Backend owning its transfer registry, resuming natively and surviving restarts.

    Transfers are journaled in the key-value store so a new process can report and
    restart them through :meth:`ongoing`.
    """

    def __init__(
        self,
        journal: KeyValueStore,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(chunk_size=chunk_size, timeout=timeout, transport=transport)
        self._journal = journal
        self._journal_lock = threading.Lock()

    def begin(self, request: TransferRequest) -> None:
        fresh = replace(request, offset=0)
        self._record(fresh, paused=False)
        self._start_worker(fresh)

    def resume(self, request: TransferRequest) -> None:
        entry = self._entries().get(request.download_id)
        destination = Path(entry["destination"]) if entry else request.destination
        on_disk = destination.stat().st_size if destination.exists() else 0
        resumed = replace(request, destination=destination, offset=on_disk)
        self._record(resumed, paused=False)
        self._start_worker(resumed)

    def ongoing(self) -> list[OngoingTransfer]:
        """Journaled transfers; unpaused ones not running here are restarted."""
        transfers: list[OngoingTransfer] = []
        for download_id, entry in self._entries().items():
            destination = Path(entry["destination"])
            on_disk = destination.stat().st_size if destination.exists() else 0
            paused = bool(entry.get("paused"))
            transfers.append(
                OngoingTransfer(
                    download_id=download_id,
                    model=entry["model"],
                    url=entry["url"],
                    destination=str(destination),
                    offset=on_disk,
                    bytes_written=0,
                    total_bytes=-1,
                    paused=paused,
                ),
            )
            if not paused and not self.is_running(download_id):
                request = TransferRequest(
                    download_id=download_id,
                    model=entry["model"],
                    url=entry["url"],
                    destination=destination,
                    auth_token=entry.get("auth_token"),
                    offset=on_disk,
                )
                logger.info("restarting journaled transfer %s at %d bytes", download_id, on_disk)
                self._start_worker(request)
        return transfers

    def _on_complete(self, request: TransferRequest) -> None:
        self._drop(request.download_id)

    def _on_failed(self, request: TransferRequest) -> None:
        self._drop(request.download_id)

    def _on_paused(self, request: TransferRequest, bytes_on_disk: int) -> None:
        self._record(replace(request, offset=bytes_on_disk), paused=True)

    def _on_cancel_idle(self, download_id: str) -> None:
        entry = self._entries().get(download_id)
        if entry is not None:
            Path(entry["destination"]).unlink(missing_ok=True)
        self._drop(download_id)

    def _entries(self) -> dict[str, dict[str, Any]]:
        value = self._journal.get(JOURNAL_KEY, {})
        if not isinstance(value, dict):
            return {}
        return {
            key: item
            for key, item in value.items()
            if isinstance(item, dict) and {"model", "url", "destination"} <= item.keys()
        }

    def _record(self, request: TransferRequest, *, paused: bool) -> None:
        entry = asdict(request)
        entry["destination"] = str(request.destination)
        entry["paused"] = paused
        entry.pop("download_id")
        with self._journal_lock:
            entries = self._entries()
            entries[request.download_id] = entry
            self._journal.set(JOURNAL_KEY, entries)

    def _drop(self, download_id: str) -> None:
        with self._journal_lock:
            entries = self._entries()
            if entries.pop(download_id, None) is not None:
                self._journal.set(JOURNAL_KEY, entries)


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


def _compact_exception_message(exc: Exception) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__
