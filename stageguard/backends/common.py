"""httpx plumbing and helpers shared by backend adapters."""

from __future__ import annotations

import json
import math
import os
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import httpx

from ..config import GuardrailConfig
from ..content import extract_text
from ..errors import GuardrailBackendError
from ..models import Message

_ConfigT = TypeVar("_ConfigT", bound=GuardrailConfig)

_ROLE_ALIASES = {"toolResult": "tool", "tool": "tool"}


def normalize_base_url(url: str) -> str:
    return url.strip().rstrip("/")


def first_env(env: Mapping[str, str] | None, *names: str) -> str | None:
    """First non-blank value among ``names`` in ``env`` (``os.environ`` by default)."""

    source = os.environ if env is None else env
    for name in names:
        value = (source.get(name) or "").strip()
        if value:
            return value
    return None


def clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def as_finite_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def require_config(config: GuardrailConfig, expected: type[_ConfigT]) -> _ConfigT:
    if isinstance(config, expected):
        return config
    return expected.model_validate(config.model_dump())


def convert_messages(messages: Sequence[Message], allowed_roles: frozenset[str]) -> list[dict[str, str]]:
    """Role-tagged plain-text messages for moderation APIs."""

    converted: list[dict[str, str]] = []
    for message in messages:
        if not isinstance(message, Mapping):
            continue
        role = message.get("role")
        role = _ROLE_ALIASES.get(role, role) if isinstance(role, str) else None
        if role not in allowed_roles:
            continue
        text = extract_text(message.get("content")).strip()
        if text:
            converted.append({"role": role, "content": text})
    return converted


@asynccontextmanager
async def client_context(client: httpx.AsyncClient | None, timeout_s: float | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout_s) as owned:
        yield owned


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, Mapping):
        return None
    error = payload.get("error")
    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    detail = payload.get("detail")
    if isinstance(detail, str) and detail.strip():
        return detail.strip()
    return None


def raise_for_status(response: httpx.Response, *, backend: str) -> None:
    if 200 <= response.status_code < 300:
        return
    detail = _error_detail(response)
    detail_text = f": {detail}" if detail else ""
    raise GuardrailBackendError(
        backend,
        f"request failed ({response.status_code}){detail_text}",
        status_code=response.status_code,
    )


def error_message(response: httpx.Response) -> str | None:
    return _error_detail(response)


def decode_json_object(response: httpx.Response, *, backend: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise GuardrailBackendError(backend, "response is not valid JSON", status_code=response.status_code) from exc
    if not isinstance(payload, Mapping):
        raise GuardrailBackendError(backend, "response is not a JSON object", status_code=response.status_code)
    return dict(payload)


def timeout_seconds(config: GuardrailConfig, default_ms: float) -> float:
    return (config.timeout_ms or default_ms) / 1000


__all__ = [
    "as_finite_float",
    "clamp_unit",
    "client_context",
    "convert_messages",
    "decode_json_object",
    "error_message",
    "first_env",
    "normalize_base_url",
    "raise_for_status",
    "require_config",
    "timeout_seconds",
]
