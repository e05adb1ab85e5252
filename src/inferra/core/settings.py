"""Model sampling settings and request-scoped override merging."""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, honest, and safe AI assistant. Answer clearly and concisely, "
    "say when you are unsure, and decline requests that could cause harm."
)
DEFAULT_STOP_WORDS = (
    "<|end|>",
    "<end_of_turn>",
    "<|im_end|>",
    "<|endoftext|>",
    "<end_of_utterance>",
)


class ModelSettings(BaseModel):
    """Full sampling and generation configuration handed to the engine."""

    model_config = ConfigDict(extra="forbid")

    max_tokens: int = 1200
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    min_p: float = 0.05
    stop_words: list[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    jinja: bool = True
    grammar: str = ""
    n_probs: int = 0
    penalty_last_n: int = 64
    penalty_repeat: float = 1.0
    penalty_freq: float = 0.0
    penalty_present: float = 0.0
    mirostat: int = 2
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    dry_multiplier: float = 0.0
    dry_base: float = 1.75
    dry_allowed_length: int = 2
    dry_penalty_last_n: int = -1
    dry_sequence_breakers: list[str] = Field(default_factory=lambda: ["\n", ":", '"', "*"])
    ignore_eos: bool = False
    logit_bias: list[list[float]] = Field(default_factory=list)
    seed: int = -1
    xtc_probability: float = 0.0
    xtc_threshold: float = 0.1
    typical_p: float = 1.0
    enable_thinking: bool = True


_FLOAT_KEYS: dict[str, str] = {
    "temperature": "temperature",
    "temp": "temperature",
    "top_p": "top_p",
    "min_p": "min_p",
    "repeat_penalty": "penalty_repeat",
    "penalty_repeat": "penalty_repeat",
    "frequency_penalty": "penalty_freq",
    "penalty_freq": "penalty_freq",
    "presence_penalty": "penalty_present",
    "penalty_present": "penalty_present",
    "mirostat_tau": "mirostat_tau",
    "mirostat_eta": "mirostat_eta",
    "typical_p": "typical_p",
    "dry_multiplier": "dry_multiplier",
    "dry_base": "dry_base",
    "xtc_probability": "xtc_probability",
    "xtc_threshold": "xtc_threshold",
}
_INT_KEYS: dict[str, str] = {
    "top_k": "top_k",
    "max_tokens": "max_tokens",
    "num_predict": "max_tokens",
    "seed": "seed",
    "penalty_last_n": "penalty_last_n",
    "repeat_last_n": "penalty_last_n",
    "mirostat": "mirostat",
    "dry_allowed_length": "dry_allowed_length",
    "dry_penalty_last_n": "dry_penalty_last_n",
    "n_probs": "n_probs",
}
_BOOL_KEYS: dict[str, str] = {
    "jinja": "jinja",
    "ignore_eos": "ignore_eos",
    "enable_thinking": "enable_thinking",
    "think": "enable_thinking",
}
_STR_KEYS: dict[str, str] = {
    "grammar": "grammar",
    "system_prompt": "system_prompt",
}
_STOP_KEYS = ("stop", "stop_words")


def build_custom_settings(
    options: Any,
    baseline: ModelSettings,
) -> ModelSettings | None:
    """Overlay recognized, well-typed option keys onto a copy of ``baseline``.

    Returns ``None`` when no recognized key carried a usable value, so callers keep
    using the unmodified baseline. Mistyped values are skipped one field at a time.
    """
    if not isinstance(options, Mapping):
        return None

    updates: dict[str, Any] = {}
    for key, field_name in _FLOAT_KEYS.items():
        value = _finite_number(options.get(key))
        if value is not None:
            updates[field_name] = float(value)
    for key, field_name in _INT_KEYS.items():
        value = _integral_number(options.get(key))
        if value is not None:
            updates[field_name] = value
    for key, field_name in _BOOL_KEYS.items():
        value = options.get(key)
        if isinstance(value, bool):
            updates[field_name] = value
    for key, field_name in _STR_KEYS.items():
        value = options.get(key)
        if isinstance(value, str):
            updates[field_name] = value

    for key in _STOP_KEYS:
        stop_words = _string_list(options.get(key))
        if stop_words:
            updates["stop_words"] = stop_words

    breakers = options.get("dry_sequence_breakers")
    if isinstance(breakers, list):
        filtered = [item for item in breakers if isinstance(item, str)]
        if filtered:
            updates["dry_sequence_breakers"] = filtered

    logit_bias = _logit_bias(options.get("logit_bias"))
    if logit_bias is not None:
        updates["logit_bias"] = logit_bias

    if not updates:
        return None
    return baseline.model_copy(deep=True, update=updates)


class SettingsState:
    """Process-wide baseline settings; requests only ever read copies."""

    def __init__(self, baseline: ModelSettings | None = None) -> None:
        self._lock = threading.Lock()
        self._baseline = baseline or ModelSettings()

    def snapshot(self) -> ModelSettings:
        with self._lock:
            return self._baseline.model_copy(deep=True)

    def update(self, **changes: Any) -> ModelSettings:
        unknown = set(changes) - set(ModelSettings.model_fields)
        if unknown:
            raise KeyError(f"unknown settings fields: {sorted(unknown)}")
        with self._lock:
            merged = self._baseline.model_dump()
            merged.update(changes)
            self._baseline = ModelSettings.model_validate(merged)
            return self._baseline.model_copy(deep=True)


def _finite_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _integral_number(value: Any) -> int | None:
    number = _finite_number(value)
    if number is None:
        return None
    if isinstance(number, float):
        if not number.is_integer():
            return None
        return int(number)
    return number


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str) and item]
    return []


def _logit_bias(value: Any) -> list[list[float]] | None:
    if not isinstance(value, list):
        return None
    pairs: list[list[float]] = []
    for item in value:
        if not isinstance(item, list) or len(item) != 2:
            continue
        token, bias = (_finite_number(part) for part in item)
        if token is None or bias is None:
            continue
        pairs.append([token, bias])
    return pairs or None
