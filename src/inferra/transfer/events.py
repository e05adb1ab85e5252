"""Tagged transfer events emitted by backends and validated on ingress."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, TypeAdapter


class _TransferEventBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    download_id: StrictStr = Field(min_length=1)


class TransferBegin(_TransferEventBase):
    """A request started; ``offset`` bytes were already on disk for it."""

    kind: Literal["begin"] = "begin"
    offset: StrictInt = Field(default=0, ge=0)
    content_length: StrictInt | None = Field(default=None, ge=0)


class TransferProgress(_TransferEventBase):
    """Bytes written for the current request, excluding its offset."""

    kind: Literal["progress"] = "progress"
    bytes_written: StrictInt = Field(ge=0)
    total_bytes: StrictInt = -1
    progress: float | None = None
    model: StrictStr | None = None
    destination: StrictStr | None = None
    url: StrictStr | None = None


class TransferComplete(_TransferEventBase):
    kind: Literal["complete"] = "complete"
    destination: StrictStr | None = None


class TransferFailed(_TransferEventBase):
    kind: Literal["error"] = "error"
    message: StrictStr = "transfer failed"


class TransferCancelled(_TransferEventBase):
    kind: Literal["cancelled"] = "cancelled"


class TransferPaused(_TransferEventBase):
    kind: Literal["paused"] = "paused"
    bytes_written: StrictInt | None = Field(default=None, ge=0)


TransferEvent = Annotated[
    TransferBegin
    | TransferProgress
    | TransferComplete
    | TransferFailed
    | TransferCancelled
    | TransferPaused,
    Field(discriminator="kind"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(TransferEvent)


def parse_transfer_event(payload: Any) -> TransferEvent:
    """Validate one raw backend payload; raises ``pydantic.ValidationError``."""
    return _EVENT_ADAPTER.validate_python(payload)
