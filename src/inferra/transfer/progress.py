"""Throughput, ETA, and percent computation for transfer progress."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")
CALCULATING_ETA = "calculating"


@dataclass(frozen=True)
class DownloadProgress:
    """Progress snapshot reported to callbacks and the API."""

    bytes_downloaded: int = 0
    bytes_total: int = 0
    progress: int = 0
    speed: str = "0 B/s"
    eta: str = CALCULATING_ETA
    raw_speed: float = 0.0
    raw_eta: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def format_file_size(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    index = int(math.floor(math.log(num_bytes, 1024))) if num_bytes >= 1 else 0
    index = max(0, min(index, len(SIZE_UNITS) - 1))
    return f"{num_bytes / (1024**index):.2f} {SIZE_UNITS[index]}"


def format_speed(bytes_per_second: float) -> str:
    if bytes_per_second <= 0:
        return "0 B/s"
    return f"{format_file_size(bytes_per_second)}/s"


def format_eta(bytes_transferred: int, total_bytes: int, bytes_per_second: float) -> str:
    if bytes_per_second <= 0 or bytes_transferred >= total_bytes:
        return "0 sec"
    eta_seconds = (total_bytes - bytes_transferred) / bytes_per_second
    if eta_seconds < 60:
        return f"{round(eta_seconds)} sec"
    if eta_seconds < 3600:
        return f"{round(eta_seconds / 60)} min"
    return f"{round(eta_seconds / 3600)} hr"


def percent_complete(
    bytes_written: int,
    total_bytes: int,
    fallback: float | None = None,
) -> int:
    """Percent done from byte counts, or the backend-reported value when total is unknown."""
    if total_bytes > 0:
        return min(round(bytes_written / total_bytes * 100), 100)
    if fallback is not None and math.isfinite(fallback):
        return max(0, min(round(fallback), 100))
    return 0


def compute_progress(
    *,
    bytes_written: int,
    total_bytes: int,
    previous_bytes: int,
    elapsed_seconds: float,
    fallback_percent: float | None = None,
) -> DownloadProgress:
    """Build a progress snapshot using the instantaneous rate since the previous tick."""
    speed = 0.0
    if elapsed_seconds > 0:
        speed = max(bytes_written - previous_bytes, 0) / elapsed_seconds
    remaining = total_bytes - bytes_written
    return DownloadProgress(
        bytes_downloaded=bytes_written,
        bytes_total=total_bytes,
        progress=percent_complete(bytes_written, total_bytes, fallback_percent),
        speed=format_speed(speed),
        eta=format_eta(bytes_written, total_bytes, speed),
        raw_speed=speed,
        raw_eta=remaining / speed if remaining > 0 and speed > 0 else 0.0,
    )
