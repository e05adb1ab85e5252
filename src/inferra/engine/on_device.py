"""On-device platform AI provider routed under the ``apple-foundation`` tag."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from inferra.core.settings import ModelSettings

from . import EngineError, TokenCallback

ON_DEVICE_PROVIDER = "apple-foundation"

Generator = Callable[[list[dict[str, str]], TokenCallback | None, ModelSettings | None], str]


class OnDeviceProvider:
    """Wraps a platform generator; unavailable unless one is supplied."""

    def __init__(
        self,
        *,
        generator: Generator | None = None,
        enabled: bool = True,
        requirements_met: bool = True,
    ) -> None:
        self._generator = generator
        self._enabled = enabled
        self._requirements_met = requirements_met

    def is_available(self) -> bool:
        return self._generator is not None

    def meets_requirements(self) -> bool:
        return self.is_available() and self._requirements_met

    def is_enabled(self) -> bool:
        return self.is_available() and self._enabled

    def is_ready(self) -> bool:
        return self.meets_requirements() and self.is_enabled()

    def summary(self) -> dict[str, Any]:
        available = self.is_available()
        enabled = self.is_enabled()
        requirements_met = self.meets_requirements()
        if not available:
            message = "Apple Foundation is only available on supported Apple devices."
        elif not requirements_met:
            message = "Update the device to meet Apple Intelligence requirements."
        elif not enabled:
            message = "Enable Apple Foundation in settings before using this endpoint."
        else:
            message = "Apple Foundation is ready to use."
        return {
            "available": available,
            "requirements_met": requirements_met,
            "enabled": enabled,
            "status": "ready" if available and enabled else "configure",
            "message": message,
        }

    def generate(
        self,
        messages: list[dict[str, str]],
        on_token: TokenCallback | None = None,
        settings: ModelSettings | None = None,
    ) -> str:
        if self._generator is None or not self.is_ready():
            raise EngineError("on-device provider is not available")
        return self._generator(messages, on_token, settings)
