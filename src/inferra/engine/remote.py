"""Cloud chat providers reachable through the local API."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from inferra.core.settings import ModelSettings
from inferra.core.storage import KeyValueStore

from . import EngineError, TokenCallback

logger = logging.getLogger(__name__)

REMOTE_PROVIDERS = ("gemini", "chatgpt", "deepseek", "claude")
REMOTE_MODELS_PREF_KEY = "remote_models_enabled"
PROVIDER_LABELS = {
    "gemini": "Gemini",
    "chatgpt": "OpenAI",
    "deepseek": "DeepSeek",
    "claude": "Anthropic Claude",
}
DEFAULT_MODELS = {
    "gemini": "gemini-1.5-flash",
    "chatgpt": "gpt-4o-mini",
    "deepseek": "deepseek-chat",
    "claude": "claude-3-5-haiku-latest",
}
DEFAULT_BASE_URLS = {
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "chatgpt": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com",
    "claude": "https://api.anthropic.com/v1",
}
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_SECONDS = 60.0


class RemoteProviderError(EngineError):
    """Raised when a remote provider call fails."""


def normalize_remote_provider(value: Any) -> str | None:
    """Map provider tags and common aliases onto a canonical provider name."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in REMOTE_PROVIDERS:
        return normalized
    if normalized == "openai" or normalized.startswith("gpt"):
        return "chatgpt"
    if normalized == "anthropic" or normalized.startswith("claude"):
        return "claude"
    if normalized.startswith("gemini"):
        return "gemini"
    if normalized.startswith("deepseek"):
        return "deepseek"
    return None


def api_key_store_key(provider: str) -> str:
    return f"api_key:{provider}"


def model_store_key(provider: str) -> str:
    return f"remote_model:{provider}"


class RemoteProviders:
    """Preferences, credentials, and chat calls for the cloud providers."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        model_overrides: dict[str, str] | None = None,
        base_url_overrides: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._store = store
        self._model_overrides = dict(model_overrides or {})
        self._base_url_overrides = dict(base_url_overrides or {})
        self._timeout = timeout
        self._transport = transport

    def enabled(self) -> bool:
        return str(self._store.get(REMOTE_MODELS_PREF_KEY, "false")).lower() == "true"

    def set_enabled(self, enabled: bool) -> None:
        self._store.set(REMOTE_MODELS_PREF_KEY, "true" if enabled else "false")

    def api_key(self, provider: str) -> str | None:
        stored = self._store.get(api_key_store_key(provider))
        if isinstance(stored, str) and stored.strip():
            return stored.strip()
        env_value = os.environ.get(f"INFERRA_{provider.upper()}_API_KEY", "").strip()
        return env_value or None

    def model_name(self, provider: str) -> str:
        stored = self._store.get(model_store_key(provider))
        if isinstance(stored, str) and stored.strip():
            return stored.strip()
        return self._model_overrides.get(provider) or DEFAULT_MODELS[provider]

    def summary(self, provider: str) -> dict[str, Any]:
        model = self.model_name(provider)
        return {
            "provider": provider,
            "label": PROVIDER_LABELS[provider],
            "configured": self.api_key(provider) is not None,
            "model": model,
            "using_default_model": model == DEFAULT_MODELS[provider],
        }

    def generate(
        self,
        provider: str,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        """Send one buffered chat call and report the reply as a single token."""
        api_key = self.api_key(provider)
        if api_key is None:
            raise RemoteProviderError(f"no API key stored for {provider}")
        resolved = settings or ModelSettings()
        base_url = self._base_url_overrides.get(provider) or DEFAULT_BASE_URLS[provider]
        model = self.model_name(provider)

        if provider == "claude":
            request = _anthropic_request(base_url, api_key, model, messages, resolved)
        elif provider == "gemini":
            request = _gemini_request(base_url, api_key, model, messages, resolved)
        else:
            request = _openai_request(base_url, api_key, model, messages, resolved)

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    request["url"],
                    headers=request["headers"],
                    json=request["json"],
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteProviderError(
                f"{provider} returned HTTP {exc.response.status_code}",
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteProviderError(f"{provider} request failed: {exc}") from exc

        text = _extract_text(provider, payload)
        if text and on_token is not None:
            on_token(text)
        return text


def _openai_request(
    base_url: str,
    api_key: str,
    model: str,
    messages: list[dict[str, str]],
    settings: ModelSettings,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "max_tokens": settings.max_tokens,
        "frequency_penalty": settings.penalty_freq,
        "presence_penalty": settings.penalty_present,
    }
    if settings.stop_words:
        body["stop"] = settings.stop_words[:4]
    return {
        "url": f"{base_url.rstrip('/')}/chat/completions",
        "headers": {"Authorization": f"Bearer {api_key}"},
        "json": body,
    }


def _anthropic_request(
    base_url: str,
    api_key: str,
    model: str,
    messages: list[dict[str, str]],
    settings: ModelSettings,
) -> dict[str, Any]:
    system_parts = [item["content"] for item in messages if item.get("role") == "system"]
    turns = [item for item in messages if item.get("role") != "system"]
    body: dict[str, Any] = {
        "model": model,
        "messages": turns,
        "max_tokens": settings.max_tokens,
        "temperature": min(settings.temperature, 1.0),
        "top_p": settings.top_p,
    }
    if system_parts:
        body["system"] = "\n\n".join(system_parts)
    return {
        "url": f"{base_url.rstrip('/')}/messages",
        "headers": {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
        "json": body,
    }


def _gemini_request(
    base_url: str,
    api_key: str,
    model: str,
    messages: list[dict[str, str]],
    settings: ModelSettings,
) -> dict[str, Any]:
    system_parts = [item["content"] for item in messages if item.get("role") == "system"]
    contents = [
        {
            "role": "model" if item.get("role") == "assistant" else "user",
            "parts": [{"text": item.get("content", "")}],
        }
        for item in messages
        if item.get("role") != "system"
    ]
    body: dict[str, Any] = {
        "contents": contents,
        "generationConfig": {
            "temperature": settings.temperature,
            "topP": settings.top_p,
            "topK": settings.top_k,
            "maxOutputTokens": settings.max_tokens,
        },
    }
    if system_parts:
        body["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
    return {
        "url": f"{base_url.rstrip('/')}/models/{model}:generateContent",
        "headers": {"x-goog-api-key": api_key},
        "json": body,
    }


def _extract_text(provider: str, payload: Any) -> str:
    try:
        if provider == "claude":
            return "".join(
                block.get("text", "")
                for block in payload["content"]
                if isinstance(block, dict) and block.get("type") == "text"
            )
        if provider == "gemini":
            parts = payload["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        content = payload["choices"][0]["message"]["content"]
        return content if isinstance(content, str) else ""
    except (KeyError, IndexError, TypeError) as exc:
        raise RemoteProviderError(f"{provider} returned an unexpected payload") from exc
