"""Model file transfers with pause, resume, and cancel."""

from .backends import (
    HttpRangeBackend,
    ManagedTransferBackend,
    OngoingTransfer,
    TransferBackend,
    TransferRequest,
)
from .events import TransferEvent, parse_transfer_event
from .manager import (
    TransferCallbacks,
    TransferError,
    TransferManager,
    TransferNotFoundError,
    TransferStatus,
    canonical_model_key,
)
from .progress import DownloadProgress

__all__ = [
    "DownloadProgress",
    "HttpRangeBackend",
    "ManagedTransferBackend",
    "OngoingTransfer",
    "TransferBackend",
    "TransferCallbacks",
    "TransferError",
    "TransferEvent",
    "TransferManager",
    "TransferNotFoundError",
    "TransferRequest",
    "TransferStatus",
    "canonical_model_key",
    "parse_transfer_event",
]
