"""In-process event bus and SSE framing for daemon streams."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any
from uuid import uuid4

_CLOSE_SENTINEL = object()


@dataclass(frozen=True, slots=True)
class EventRecord:
    """One event published on the daemon bus."""

    event_id: str
    sequence: int
    event: str
    timestamp: str
    data: dict[str, Any]


@dataclass(slots=True)
class EventSubscription:
    token: int
    topics: frozenset[str] | None
    queue: Queue[Any]

    def accepts(self, event: str) -> bool:
        """Match exact names, or a ``prefix.*`` topic against dotted event names."""
        if self.topics is None:
            return True
        if event in self.topics:
            return True
        return any(
            topic.endswith(".*") and event.startswith(topic[:-1]) for topic in self.topics
        )


class EventStream:
    """Thread-safe pub/sub for transfer lifecycle and registry change events.

    Slow subscribers never block publishers: a full queue drops its oldest record.
    """

    def __init__(self, *, max_queue_size: int = 256) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be greater than zero")
        self._max_queue_size = max_queue_size
        self._lock = Lock()
        self._sequence = 0
        self._next_token = 1
        self._subscriptions: dict[int, EventSubscription] = {}

    def subscribe(self, *, topics: set[str] | None = None) -> EventSubscription:
        normalized: frozenset[str] | None = None
        if topics is not None:
            normalized = frozenset(
                item.strip() for item in topics if isinstance(item, str) and item.strip()
            )
            if not normalized:
                normalized = None

        with self._lock:
            token = self._next_token
            self._next_token += 1
            subscription = EventSubscription(
                token=token,
                topics=normalized,
                queue=Queue(maxsize=self._max_queue_size),
            )
            self._subscriptions[token] = subscription
            return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        with self._lock:
            existing = self._subscriptions.pop(subscription.token, None)
        if existing is None:
            return
        self._enqueue(existing.queue, _CLOSE_SENTINEL)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: str, data: dict[str, Any]) -> EventRecord:
        if not event.strip():
            raise ValueError("event must be a non-empty string")

        with self._lock:
            self._sequence += 1
            sequence = self._sequence
            subscribers = list(self._subscriptions.values())

        record = EventRecord(
            event_id=uuid4().hex,
            sequence=sequence,
            event=event.strip(),
            timestamp=_utc_now_iso(),
            data=dict(data),
        )
        for subscription in subscribers:
            if subscription.accepts(record.event):
                self._enqueue(subscription.queue, record)
        return record

    def iter_sse_lines(
        self,
        *,
        subscription: EventSubscription,
        heartbeat_seconds: float = 15.0,
        max_events: int | None = None,
    ) -> Iterator[str]:
        if heartbeat_seconds <= 0:
            raise ValueError("heartbeat_seconds must be greater than zero")
        if max_events is not None and max_events <= 0:
            raise ValueError("max_events must be greater than zero when provided")

        yield "retry: 3000\n\n"

        emitted = 0
        try:
            while True:
                try:
                    item = subscription.queue.get(timeout=heartbeat_seconds)
                except Empty:
                    yield format_sse_comment("keepalive")
                    continue

                if item is _CLOSE_SENTINEL:
                    break
                if not isinstance(item, EventRecord):
                    continue

                yield format_sse_event(
                    event=item.event,
                    data=event_payload(item),
                    event_id=item.event_id,
                )
                emitted += 1
                if max_events is not None and emitted >= max_events:
                    break
        finally:
            self.unsubscribe(subscription)

    def _enqueue(self, queue: Queue[Any], item: Any) -> None:
        try:
            queue.put_nowait(item)
        except Full:
            self._drop_one(queue)
            try:
                queue.put_nowait(item)
            except Full:
                return

    @staticmethod
    def _drop_one(queue: Queue[Any]) -> None:
        try:
            queue.get_nowait()
        except Empty:
            return


def event_payload(record: EventRecord) -> dict[str, Any]:
    return {
        "event_id": record.event_id,
        "sequence": record.sequence,
        "timestamp": record.timestamp,
        "event": record.event,
        "data": record.data,
    }


def format_sse_event(*, event: str, data: dict[str, Any], event_id: str | None = None) -> str:
    lines: list[str] = []
    if event_id is not None and event_id.strip():
        lines.append(f"id: {event_id.strip()}")
    lines.append(f"event: {event}")
    serialized = json.dumps(data, separators=(",", ":"), sort_keys=True)
    lines.append(f"data: {serialized}")
    return "\n".join(lines) + "\n\n"


def format_sse_data(data: dict[str, Any] | str) -> str:
    """Frame an unnamed ``data:`` event, as used by streamed chat responses."""
    if isinstance(data, str):
        return f"data: {data}\n\n"
    return f"data: {json.dumps(data, separators=(',', ':'), sort_keys=True)}\n\n"


def format_sse_comment(text: str = "keepalive") -> str:
    return f": {text}\n\n"


def _utc_now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
