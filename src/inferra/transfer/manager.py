"""Per-model transfer state machine over a pluggable transfer backend."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from .backends import OngoingTransfer, TransferBackend, TransferRequest
from .events import (
    TransferBegin,
    TransferCancelled,
    TransferComplete,
    TransferEvent,
    TransferFailed,
    TransferPaused,
    TransferProgress,
    parse_transfer_event,
)
from .progress import CALCULATING_ETA, DownloadProgress, compute_progress

logger = logging.getLogger(__name__)


class TransferError(RuntimeError):
    """Raised when a transfer operation cannot be performed."""


class TransferNotFoundError(TransferError, LookupError):
    """Raised when no active transfer exists for a model."""


@dataclass(frozen=True)
class TransferState:
    is_downloading: bool = False
    is_paused: bool = False
    is_cancelling: bool = False
    progress: DownloadProgress = field(default_factory=DownloadProgress)


@dataclass(frozen=True)
class TransferStatus:
    """Read-only view of one active transfer."""

    model: str
    download_id: str
    url: str
    destination: str
    state: TransferState

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "download_id": self.download_id,
            "url": self.url,
            "destination": self.destination,
            "is_downloading": self.state.is_downloading,
            "is_paused": self.state.is_paused,
            "is_cancelling": self.state.is_cancelling,
            "progress": self.state.progress.to_dict(),
        }


@dataclass
class DownloadJob:
    model: str
    download_id: str
    url: str
    destination: Path
    auth_token: str | None = None
    state: TransferState = field(default_factory=TransferState)
    resume_offset: int = 0
    paused_bytes: int = 0
    last_bytes_written: int = 0
    last_update_time: float = 0.0

    def status(self) -> TransferStatus:
        return TransferStatus(
            model=self.model,
            download_id=self.download_id,
            url=self.url,
            destination=str(self.destination),
            state=self.state,
        )


@dataclass
class TransferCallbacks:
    """Consumer hooks; each is invoked outside the manager lock, in event order."""

    on_start: Callable[[str, str], None] | None = None
    on_progress: Callable[[str, DownloadProgress], None] | None = None
    on_complete: Callable[[str, Path], None] | None = None
    on_error: Callable[[str, str], None] | None = None
    on_cancelled: Callable[[str], None] | None = None
    on_paused: Callable[[str, DownloadProgress], None] | None = None


def canonical_model_key(model: str) -> str:
    """Key shared by the job map and the destination filename."""
    return PurePosixPath(model.replace("\\", "/")).name


class TransferManager:
    """Owns the active-transfer map; all mutation goes through its methods."""

    def __init__(
        self,
        backend: TransferBackend,
        *,
        callbacks: TransferCallbacks | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._callbacks = callbacks or TransferCallbacks()
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, DownloadJob] = {}
        self._by_download_id: dict[str, str] = {}
        backend.set_listener(self.handle_backend_event)

    @property
    def backend(self) -> TransferBackend:
        return self._backend

    def initiate_transfer(
        self,
        model: str,
        url: str,
        destination: Path,
        auth_token: str | None = None,
    ) -> str:
        """Start a transfer, or return the id of the one already running for ``model``."""
        key = canonical_model_key(model)
        if not key:
            raise TransferError(f"invalid model name: {model!r}")

        with self._lock:
            existing = self._jobs.get(key)
            if existing is not None:
                return existing.download_id
            job = DownloadJob(
                model=key,
                download_id=uuid4().hex,
                url=url,
                destination=destination,
                auth_token=auth_token,
                state=TransferState(is_downloading=True),
                last_update_time=self._clock(),
            )
            self._jobs[key] = job
            self._by_download_id[job.download_id] = key

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            self._backend.begin(self._request_for(job, offset=0))
        except Exception as exc:
            self._remove(job.download_id)
            raise TransferError(f"failed to start transfer for {key}: {exc}") from exc

        logger.info("transfer started for %s (%s)", key, job.download_id)
        self._invoke("on_start", key, job.download_id)
        return job.download_id

    def pause_transfer(self, model: str) -> TransferStatus:
        key = canonical_model_key(model)
        with self._lock:
            job = self._require(key)
            if job.state.is_paused:
                return job.status()
            job.paused_bytes = job.state.progress.bytes_downloaded
            download_id = job.download_id

        self._backend.pause(download_id)

        with self._lock:
            job = self._require(key)
            # the backend may already have reported the pause from its worker
            reported = job.state.is_paused
            job.state = replace(job.state, is_paused=True, is_downloading=False)
            progress = job.state.progress
            status = job.status()
        if not reported:
            logger.info("transfer paused for %s at %d bytes", key, job.paused_bytes)
            self._invoke("on_paused", key, progress)
        return status

    def resume_transfer(self, model: str) -> TransferStatus:
        key = canonical_model_key(model)
        with self._lock:
            job = self._require(key)
            if not job.state.is_paused:
                return job.status()
            offset = job.paused_bytes
            job.state = replace(job.state, is_paused=False, is_downloading=True)
            job.resume_offset = offset
            job.last_bytes_written = offset
            job.last_update_time = self._clock()
            request = self._request_for(job, offset=offset)

        try:
            self._backend.resume(request)
        except Exception as exc:
            with self._lock:
                job.state = replace(job.state, is_paused=True, is_downloading=False)
            raise TransferError(f"failed to resume transfer for {key}: {exc}") from exc

        logger.info("transfer resumed for %s from %d bytes", key, offset)
        with self._lock:
            return job.status()

    def abort_transfer(self, model: str) -> None:
        key = canonical_model_key(model)
        with self._lock:
            job = self._require(key)
            job.state = replace(job.state, is_cancelling=True)
            download_id = job.download_id

        try:
            self._backend.cancel(download_id)
        finally:
            self._finish_cancelled(download_id)

    def get_active_transfers(self) -> list[TransferStatus]:
        with self._lock:
            return [job.status() for job in sorted(self._jobs.values(), key=lambda j: j.model)]

    def get_transfer(self, model: str) -> TransferStatus | None:
        with self._lock:
            job = self._jobs.get(canonical_model_key(model))
            return job.status() if job is not None else None

    def is_active(self, model: str) -> bool:
        with self._lock:
            return canonical_model_key(model) in self._jobs

    def synchronize_with_active_transfers(self) -> list[str]:
        """Adopt backend transfers missing from the map, such as ones from a prior process."""
        try:
            ongoing = self._backend.ongoing()
        except Exception:  # noqa: BLE001
            logger.exception("failed to query ongoing transfers")
            return []

        recovered: list[str] = []
        for transfer in ongoing:
            job = self._job_from_ongoing(transfer)
            with self._lock:
                if job.model in self._jobs or job.download_id in self._by_download_id:
                    continue
                self._jobs[job.model] = job
                self._by_download_id[job.download_id] = job.model
            recovered.append(job.model)
            logger.info("recovered transfer for %s (%s)", job.model, job.download_id)
        return recovered

    def close(self) -> None:
        self._backend.close()

    def handle_backend_event(self, payload: dict[str, Any]) -> None:
        """Backend listener; never raises back into the backend."""
        try:
            event = parse_transfer_event(payload)
        except ValidationError as exc:
            logger.warning("ignoring malformed transfer event %r: %s", payload, exc.errors())
            return
        try:
            self._dispatch(event)
        except Exception:  # noqa: BLE001
            logger.exception("transfer event handler failed for %s", event.kind)

    def _dispatch(self, event: TransferEvent) -> None:
        if isinstance(event, TransferBegin):
            self._on_begin(event)
        elif isinstance(event, TransferProgress):
            self._on_progress(event)
        elif isinstance(event, TransferPaused):
            self._on_paused(event)
        elif isinstance(event, TransferCancelled):
            self._finish_cancelled(event.download_id)
        elif isinstance(event, TransferComplete):
            self._on_complete(event)
        elif isinstance(event, TransferFailed):
            self._on_failed(event)

    def _on_begin(self, event: TransferBegin) -> None:
        with self._lock:
            job = self._job_for(event.download_id)
            if job is None:
                return
            job.resume_offset = event.offset
            job.last_bytes_written = event.offset
            job.last_update_time = self._clock()
            total = event.offset + event.content_length if event.content_length is not None else 0
            job.state = replace(
                job.state,
                progress=replace(
                    job.state.progress,
                    bytes_downloaded=event.offset,
                    bytes_total=total,
                    eta=CALCULATING_ETA,
                ),
            )

    def _on_progress(self, event: TransferProgress) -> None:
        with self._lock:
            job = self._job_for(event.download_id)
            if job is None or job.state.is_paused or job.state.is_cancelling:
                return
            now = self._clock()
            written = job.resume_offset + event.bytes_written
            if event.total_bytes > 0:
                total = job.resume_offset + event.total_bytes
            else:
                total = job.state.progress.bytes_total
            progress = compute_progress(
                bytes_written=written,
                total_bytes=total,
                previous_bytes=job.last_bytes_written,
                elapsed_seconds=now - job.last_update_time,
                fallback_percent=event.progress,
            )
            job.state = replace(job.state, progress=progress)
            job.last_bytes_written = written
            job.last_update_time = now
            key = job.model
        self._invoke("on_progress", key, progress)

    def _on_paused(self, event: TransferPaused) -> None:
        with self._lock:
            job = self._job_for(event.download_id)
            if job is None or job.state.is_paused:
                return
            if event.bytes_written is not None:
                job.paused_bytes = event.bytes_written
            else:
                job.paused_bytes = job.state.progress.bytes_downloaded
            job.state = replace(job.state, is_paused=True, is_downloading=False)
            key = job.model
            progress = job.state.progress
        self._invoke("on_paused", key, progress)

    def _on_complete(self, event: TransferComplete) -> None:
        job = self._remove(event.download_id)
        if job is None:
            logger.debug("ignoring duplicate completion for %s", event.download_id)
            return
        if job.state.is_cancelling:
            self._report_cancelled(job)
            return
        logger.info("transfer complete for %s", job.model)
        self._invoke("on_complete", job.model, job.destination)

    def _on_failed(self, event: TransferFailed) -> None:
        job = self._remove(event.download_id)
        if job is None:
            return
        if job.state.is_cancelling:
            self._report_cancelled(job)
            return
        logger.warning("transfer failed for %s: %s", job.model, event.message)
        self._invoke("on_error", job.model, event.message)

    def _finish_cancelled(self, download_id: str) -> None:
        job = self._remove(download_id)
        if job is None:
            return
        self._report_cancelled(job)

    def _report_cancelled(self, job: DownloadJob) -> None:
        try:
            job.destination.unlink(missing_ok=True)
        except OSError:
            logger.warning("could not remove partial download %s", job.destination)
        logger.info("transfer cancelled for %s", job.model)
        self._invoke("on_cancelled", job.model)

    def _remove(self, download_id: str) -> DownloadJob | None:
        with self._lock:
            key = self._by_download_id.pop(download_id, None)
            if key is None:
                return None
            return self._jobs.pop(key, None)

    def _job_for(self, download_id: str) -> DownloadJob | None:
        key = self._by_download_id.get(download_id)
        if key is None:
            return None
        return self._jobs.get(key)

    def _require(self, key: str) -> DownloadJob:
        job = self._jobs.get(key)
        if job is None:
            raise TransferNotFoundError(f"no active transfer for {key!r}")
        return job

    def _request_for(self, job: DownloadJob, *, offset: int) -> TransferRequest:
        return TransferRequest(
            download_id=job.download_id,
            model=job.model,
            url=job.url,
            destination=job.destination,
            auth_token=job.auth_token,
            offset=offset,
        )

    def _job_from_ongoing(self, transfer: OngoingTransfer) -> DownloadJob:
        written = transfer.offset + transfer.bytes_written
        total = transfer.offset + transfer.total_bytes if transfer.total_bytes > 0 else 0
        progress = compute_progress(
            bytes_written=written,
            total_bytes=total,
            previous_bytes=written,
            elapsed_seconds=0.0,
        )
        return DownloadJob(
            model=canonical_model_key(transfer.model),
            download_id=transfer.download_id,
            url=transfer.url,
            destination=Path(transfer.destination),
            state=TransferState(
                is_downloading=not transfer.paused,
                is_paused=transfer.paused,
                progress=replace(progress, eta=CALCULATING_ETA),
            ),
            resume_offset=transfer.offset,
            paused_bytes=written if transfer.paused else 0,
            last_bytes_written=written,
            last_update_time=self._clock(),
        )

    def _invoke(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("transfer callback %s failed", name)
