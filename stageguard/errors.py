"""Error types raised by stageguard."""

from __future__ import annotations


class GuardrailError(Exception):
    """Base class for stageguard errors."""


class ConfigError(GuardrailError, ValueError):
    """Raised when a guardrail configuration cannot be loaded or built."""


class GuardrailBackendError(GuardrailError):
    """Transport or protocol failure while talking to a moderation backend."""

    def __init__(self, backend: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.status_code = status_code


__all__ = ["ConfigError", "GuardrailBackendError", "GuardrailError"]
