"""Minimal GGUF header reader for model introspection."""

from __future__ import annotations

import struct
from pathlib import Path
from typing import Any

GGUF_MAGIC = b"GGUF"
_HEADER_SIZE = 24


def read_gguf_header(path: str | Path) -> dict[str, Any]:
    """Return format, version and table counts; ``format`` is ``unknown`` for non-GGUF."""
    with Path(path).open("rb") as handle:
        header = handle.read(_HEADER_SIZE)
    if len(header) < _HEADER_SIZE or header[:4] != GGUF_MAGIC:
        return {"format": "unknown"}
    version, tensor_count, kv_count = struct.unpack("<IQQ", header[4:_HEADER_SIZE])
    return {
        "format": "gguf",
        "gguf_version": version,
        "tensor_count": tensor_count,
        "metadata_count": kv_count,
    }
