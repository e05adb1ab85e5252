"""Normalize chat and generate request payloads into canonical message lists."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ChatMessage:
    """One canonical chat turn."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ParsedMessages:
    """Parser result: messages plus an error code when nothing usable was found."""

    messages: list[ChatMessage] = field(default_factory=list)
    error: str | None = None


def flatten_content(content: Any) -> str:
    """Flatten message content into a single string."""
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    if isinstance(content, list):
        fragments: list[str] = []
        for item in content:
            if isinstance(item, str):
                text = item
            elif isinstance(item, Mapping) and isinstance(item.get("text"), str):
                text = item["text"]
            else:
                continue
            if text:
                fragments.append(text)
        return " ".join(fragments)
    if isinstance(content, Mapping):
        text = content.get("text")
        if isinstance(text, str):
            return text
        return json.dumps(content, separators=(",", ":"), default=str)
    if isinstance(content, bool):
        return "true" if content else "false"
    return str(content)


def parse_messages(payload: Mapping[str, Any]) -> ParsedMessages:
    """Parse a chat payload that must carry a ``messages`` array."""
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list):
        return ParsedMessages(error="messages_required")

    messages = _system_messages(payload) + _convert_messages(raw_messages)
    if not messages:
        return ParsedMessages(error="messages_required")
    return ParsedMessages(messages=messages)


def parse_messages_or_prompt(payload: Mapping[str, Any]) -> ParsedMessages:
    """Parse a generate payload, falling back to ``prompt`` when ``messages`` is empty."""
    raw_messages = payload.get("messages")
    if isinstance(raw_messages, list) and raw_messages:
        turns = _convert_messages(raw_messages)
    else:
        prompt = payload.get("prompt")
        turns = [ChatMessage(role="user", content=prompt)] if isinstance(prompt, str) else []

    messages = _system_messages(payload) + turns
    if not messages:
        return ParsedMessages(error="prompt_required")
    return ParsedMessages(messages=messages)


def _system_messages(payload: Mapping[str, Any]) -> list[ChatMessage]:
    # payload.system must stay the very first message; options.system_prompt follows it.
    collected: list[str] = []
    options = payload.get("options")
    if isinstance(options, Mapping):
        option_prompt = options.get("system_prompt")
        if isinstance(option_prompt, str) and option_prompt:
            collected.append(option_prompt)
    system = payload.get("system")
    if isinstance(system, str) and system:
        collected.append(system)

    prepended: list[ChatMessage] = []
    for content in collected:
        prepended.insert(0, ChatMessage(role="system", content=content))
    return prepended


def _convert_messages(raw_messages: list[Any]) -> list[ChatMessage]:
    converted: list[ChatMessage] = []
    for entry in raw_messages:
        if not isinstance(entry, Mapping):
            continue
        role = entry.get("role")
        if not isinstance(role, str) or not role:
            continue
        converted.append(ChatMessage(role=role, content=flatten_content(entry.get("content"))))
    return converted
