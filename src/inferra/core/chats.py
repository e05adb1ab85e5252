"""Chat history persisted in the key-value store."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .storage import KeyValueStore

logger = logging.getLogger(__name__)

CHATS_KEY = "chats"
DEFAULT_CHAT_TITLE = "New Chat"
TITLE_MAX_LENGTH = 40
MESSAGE_ROLES = ("user", "assistant", "system")

MessageRole = Literal["user", "assistant", "system"]
ChangeListener = Callable[[str, dict[str, Any]], None]

_UNSET: Any = object()


def _new_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatMessage(BaseModel):
    """One stored chat turn."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    role: MessageRole = "user"
    content: str = ""
    thinking: str | None = None
    stats: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Chat(BaseModel):
    """A titled conversation, optionally pinned to a model path."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_CHAT_TITLE
    timestamp: int = Field(default_factory=_now_ms)
    model_path: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)

    def to_dict(self, *, include_messages: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "timestamp": self.timestamp,
            "modelPath": self.model_path,
            "messageCount": len(self.messages),
        }
        if include_messages:
            payload["messages"] = [message.to_dict() for message in self.messages]
        return payload


class ChatNotFoundError(LookupError):
    """Raised when a chat id matches no stored chat."""


def message_from_payload(item: Any) -> ChatMessage:
    """Build a message from a loosely typed request entry, defaulting bad fields."""
    entry = item if isinstance(item, dict) else {}
    role = entry.get("role")
    return ChatMessage(
        id=entry["id"] if isinstance(entry.get("id"), str) and entry["id"] else _new_id(),
        role=role if role in MESSAGE_ROLES else "user",
        content=entry["content"] if isinstance(entry.get("content"), str) else "",
        thinking=entry["thinking"] if isinstance(entry.get("thinking"), str) else None,
        stats=entry["stats"] if isinstance(entry.get("stats"), dict) else None,
    )


def derive_title(text: str) -> str | None:
    """Collapse ``text`` to a short single-line title, cut at a word boundary."""
    collapsed = " ".join(text.split())
    if not collapsed:
        return None
    if len(collapsed) <= TITLE_MAX_LENGTH:
        return collapsed
    cut = collapsed[:TITLE_MAX_LENGTH].rsplit(" ", 1)[0] or collapsed[:TITLE_MAX_LENGTH]
    return f"{cut.rstrip()}..."


class ChatStore:
    """Owns every read and mutation of the stored chat list."""

    def __init__(self, store: KeyValueStore, *, on_change: ChangeListener | None = None) -> None:
        self._store = store
        self._on_change = on_change
        self._lock = threading.Lock()

    def list_chats(self) -> list[Chat]:
        """Chats ordered newest first."""
        with self._lock:
            chats = self._read_all()
        return sorted(chats, key=lambda chat: chat.timestamp, reverse=True)

    def get_chat(self, chat_id: str) -> Chat | None:
        with self._lock:
            return _find(self._read_all(), chat_id)

    def create_chat(
        self,
        *,
        title: str | None = None,
        messages: Iterable[ChatMessage] = (),
    ) -> Chat:
        chat = Chat(title=title or DEFAULT_CHAT_TITLE, messages=list(messages))
        with self._lock:
            chats = self._read_all()
            chats.append(chat)
            self._write_all(chats)
        logger.info("created chat %s", chat.id)
        self._emit("chats.created", {"chat_id": chat.id})
        return chat

    def delete_chat(self, chat_id: str) -> bool:
        with self._lock:
            chats = self._read_all()
            kept = [chat for chat in chats if chat.id != chat_id]
            if len(kept) == len(chats):
                return False
            self._write_all(kept)
        logger.info("deleted chat %s", chat_id)
        self._emit("chats.deleted", {"chat_id": chat_id})
        return True

    def append_messages(self, chat_id: str, messages: Iterable[ChatMessage]) -> list[ChatMessage]:
        """Append in order and bump the chat timestamp; raises ``ChatNotFoundError``."""
        created = list(messages)
        with self._lock:
            chats = self._read_all()
            chat = _find(chats, chat_id)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            chat.messages.extend(created)
            chat.timestamp = _now_ms()
            self._write_all(chats)
        self._emit("chats.updated", {"chat_id": chat_id})
        return created

    def update_message(
        self,
        chat_id: str,
        message_id: str,
        *,
        role: str | None = None,
        content: str | None = None,
        thinking: Any = _UNSET,
        stats: Any = _UNSET,
    ) -> bool:
        """Patch one message. ``thinking``/``stats`` accept ``None`` to clear them."""
        with self._lock:
            chats = self._read_all()
            chat = _find(chats, chat_id)
            message = _find_message(chat, message_id)
            if chat is None or message is None:
                return False
            if role in MESSAGE_ROLES:
                message.role = role
            if content is not None:
                message.content = content
            if thinking is not _UNSET:
                message.thinking = thinking
            if stats is not _UNSET:
                message.stats = stats
            self._write_all(chats)
        self._emit("chats.updated", {"chat_id": chat_id})
        return True

    def remove_message(self, chat_id: str, message_id: str) -> bool:
        with self._lock:
            chats = self._read_all()
            chat = _find(chats, chat_id)
            if chat is None or _find_message(chat, message_id) is None:
                return False
            chat.messages = [message for message in chat.messages if message.id != message_id]
            self._write_all(chats)
        self._emit("chats.updated", {"chat_id": chat_id})
        return True

    def set_title(self, chat_id: str, title: str) -> bool:
        return self._update_chat(chat_id, title=title)

    def generate_title(self, chat_id: str, prompt: str | None = None) -> str | None:
        """Title from ``prompt``, or else from the chat's first user message."""
        chat = self.get_chat(chat_id)
        if chat is None:
            raise ChatNotFoundError(chat_id)
        source = prompt
        if source is None:
            source = next(
                (message.content for message in chat.messages if message.role == "user"),
                "",
            )
        title = derive_title(source)
        if title is None:
            return None
        self.set_title(chat_id, title)
        return title

    def set_model_path(self, chat_id: str, model_path: str | None) -> bool:
        return self._update_chat(chat_id, model_path=model_path)

    def _update_chat(self, chat_id: str, **fields: Any) -> bool:
        with self._lock:
            chats = self._read_all()
            chat = _find(chats, chat_id)
            if chat is None:
                return False
            for name, value in fields.items():
                setattr(chat, name, value)
            self._write_all(chats)
        self._emit("chats.updated", {"chat_id": chat_id})
        return True

    def _read_all(self) -> list[Chat]:
        value = self._store.get(CHATS_KEY, [])
        if not isinstance(value, list):
            return []
        chats: list[Chat] = []
        for record in value:
            try:
                chats.append(Chat.model_validate(record))
            except ValidationError:
                logger.warning("skipping invalid stored chat record")
        return chats

    def _write_all(self, chats: list[Chat]) -> None:
        self._store.set(CHATS_KEY, [chat.model_dump(mode="json") for chat in chats])

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(event, data)
        except Exception:  # noqa: BLE001
            logger.exception("chat change listener failed for %s", event)


def _find(chats: list[Chat], chat_id: str) -> Chat | None:
    for chat in chats:
        if chat.id == chat_id:
            return chat
    return None


def _find_message(chat: Chat | None, message_id: str) -> ChatMessage | None:
    if chat is None:
        return None
    for message in chat.messages:
        if message.id == message_id:
            return message
    return None
