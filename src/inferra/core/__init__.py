"""Core types, parsing, and persisted state for inferra."""

from .messages import ChatMessage, ParsedMessages, parse_messages, parse_messages_or_prompt
from .registry import ModelRegistry, StoredModel
from .settings import ModelSettings, SettingsState, build_custom_settings
from .storage import InferraPaths, KeyValueStore

__all__ = [
    "ChatMessage",
    "InferraPaths",
    "KeyValueStore",
    "ModelRegistry",
    "ModelSettings",
    "ParsedMessages",
    "SettingsState",
    "StoredModel",
    "build_custom_settings",
    "parse_messages",
    "parse_messages_or_prompt",
]
