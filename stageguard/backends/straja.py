"""Straja Guard API and Toolgate adapter."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import Field

from ..config import GuardrailConfig
from ..evaluation import BaseEvaluator
from ..models import Evaluation, Stage
from ..protocols import EvaluationRequest
from ..sessions import SessionCorrelationMap
from .common import (
    client_context,
    convert_messages,
    decode_json_object,
    error_message,
    first_env,
    normalize_base_url,
    raise_for_status,
    require_config,
    timeout_seconds,
)

logger = logging.getLogger("stageguard.backends.straja")

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_TIMEOUT_MS = 15_000.0
SOURCE = "stageguard"

_GUARD_ROLES = frozenset({"system", "developer", "user", "assistant", "tool"})


class StrajaConfig(GuardrailConfig):
    base_url: str | None = None
    api_key: str | None = None
    timeout_ms: float | None = Field(default=DEFAULT_TIMEOUT_MS, gt=0)


def resolve_action(data: Mapping[str, Any]) -> str:
    """Map a guard response onto ``allow``, ``block`` or ``modify``."""

    action = str(data.get("action") or "").strip()
    if action in ("allow", "block", "modify"):
        return action
    decision = str(data.get("decision") or "").strip()
    if decision == "redact":
        return "modify"
    if decision == "block":
        return "block"
    return "allow"


def summarize_decision(data: Mapping[str, Any]) -> str:
    for reason in data.get("reasons") or ():
        if isinstance(reason, Mapping) and str(reason.get("rule") or "").strip():
            return str(reason["rule"])
    for hit in data.get("policy_hits") or ():
        if isinstance(hit, Mapping) and str(hit.get("details") or "").strip():
            return str(hit["details"])
    return str(data.get("decision") or "blocked")


def _categories(data: Mapping[str, Any]) -> list[str]:
    categories: list[str] = []
    for key in ("reasons", "policy_hits", "hits"):
        for item in data.get(key) or ():
            if isinstance(item, Mapping) and item.get("category"):
                categories.append(str(item["category"]))
    return categories


class StrajaEvaluator(BaseEvaluator):
    """Pre-model and post-model guard checks plus Toolgate for tool calls.

    The request id returned by the pre-model check is kept per session key so
    the post-model check can be correlated with it.
    """

    name = "straja"
    supported_stages = frozenset({Stage.BEFORE_REQUEST, Stage.BEFORE_TOOL_CALL, Stage.AFTER_RESPONSE})

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        env: Mapping[str, str] | None = None,
        sessions: SessionCorrelationMap[str] | None = None,
    ) -> None:
        self.client = client
        self.env = env
        self.sessions: SessionCorrelationMap[str] = sessions if sessions is not None else SessionCorrelationMap()

    def base_url(self, config: StrajaConfig) -> str:
        base = (
            (config.base_url or "").strip()
            or first_env(self.env, "STRAJA_GUARD_BASE_URL", "STRAJA_BASE_URL")
            or DEFAULT_BASE_URL
        )
        return normalize_base_url(base)

    def api_key(self, config: StrajaConfig) -> str | None:
        key = (config.api_key or "").strip()
        return key or first_env(self.env, "STRAJA_GUARD_API_KEY", "STRAJA_API_KEY", "STRAJA_KEY")

    async def _post(self, config: StrajaConfig, path: str, body: dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        api_key = self.api_key(config)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        async with client_context(self.client, timeout_seconds(config, DEFAULT_TIMEOUT_MS)) as client:
            response = await client.post(f"{self.base_url(config)}{path}", json=body, headers=headers)
        return response

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        config = require_config(request.config, StrajaConfig)
        if request.stage is Stage.BEFORE_REQUEST:
            return await self._check_request(request, config)
        if request.stage is Stage.AFTER_RESPONSE:
            return await self._check_response(request, config)
        if request.stage is Stage.BEFORE_TOOL_CALL:
            return await self._check_tool(request, config)
        return None

    def _metadata(self, session_key: str | None) -> dict[str, Any]:
        metadata: dict[str, Any] = {"source": SOURCE}
        if session_key:
            metadata["session_id"] = session_key
        return metadata

    async def _check_request(self, request: EvaluationRequest, config: StrajaConfig) -> Evaluation:
        session_key = (request.context.session_key or "").strip() or None
        body = {
            "input_text": request.content,
            "messages": convert_messages(request.messages, _GUARD_ROLES),
            "metadata": self._metadata(session_key),
        }
        response = await self._post(config, "/v1/guard/request", body)
        if response.status_code == 403:
            if session_key:
                await self.sessions.pop(session_key)
            return Evaluation(safe=False, reason=error_message(response) or "Request blocked.")
        raise_for_status(response, backend=self.name)
        data = decode_json_object(response, backend=self.name)

        request_id = str(data.get("request_id") or "").strip()
        action = resolve_action(data)
        if action == "block":
            if session_key:
                await self.sessions.pop(session_key)
            return self._blocked(data)
        if request_id and session_key:
            await self.sessions.put(session_key, request_id)
        return self._allowed_or_modified(data, action, request.content, stage=request.stage)

    async def _check_response(self, request: EvaluationRequest, config: StrajaConfig) -> Evaluation:
        session_key = (request.context.session_key or "").strip() or None
        request_id = await self.sessions.pop(session_key) if session_key else None
        body = {
            "request_id": request_id or f"{SOURCE}-{uuid.uuid4()}",
            "output_text": request.content,
            "metadata": self._metadata(session_key),
        }
        response = await self._post(config, "/v1/guard/response", body)
        if response.status_code == 403:
            return Evaluation(safe=False, reason=error_message(response) or "Response blocked.")
        raise_for_status(response, backend=self.name)
        data = decode_json_object(response, backend=self.name)
        action = resolve_action(data)
        if action == "block":
            return self._blocked(data)
        return self._allowed_or_modified(data, action, request.content, stage=request.stage)

    async def _check_tool(self, request: EvaluationRequest, config: StrajaConfig) -> Evaluation:
        body = {
            "tool_name": request.tool_name,
            "args": dict(request.params or {}),
            "context": {"source": SOURCE},
        }
        response = await self._post(config, "/v1/toolgate/check", body)
        if response.status_code == 403:
            return Evaluation(safe=False, reason=error_message(response) or "Tool blocked.")
        raise_for_status(response, backend=self.name)
        data = decode_json_object(response, backend=self.name)
        decision = str(data.get("decision") or "").strip() or "allow"
        details = {"decision": decision, "categories": _categories(data)}
        if decision == "block":
            return Evaluation(safe=False, reason="Tool call blocked.", details=details)
        if decision == "warn":
            logger.warning("straja_toolgate_warning", extra={"tool_name": request.tool_name})
        return Evaluation(safe=True, details=details)

    def _blocked(self, data: Mapping[str, Any]) -> Evaluation:
        return Evaluation(
            safe=False,
            reason=summarize_decision(data),
            details={"decision": data.get("decision"), "categories": _categories(data)},
        )

    def _allowed_or_modified(self, data: Mapping[str, Any], action: str, original: str, *, stage: Stage) -> Evaluation:
        details = {"decision": data.get("decision"), "categories": _categories(data)}
        if action == "modify":
            sanitized = data.get("sanitized_text")
            return Evaluation(
                safe=True,
                reason=summarize_decision(data),
                details=details,
                sanitized=sanitized if isinstance(sanitized, str) else original,
            )
        if data.get("decision") == "warn":
            logger.warning("straja_guard_warning", extra={"stage": stage.value, "reason": summarize_decision(data)})
        return Evaluation(safe=True, details=details)

    def format_violation(self, evaluation: Evaluation, location: str) -> str:
        del location
        return evaluation.reason or "Blocked by Straja Guard."


__all__ = [
    "DEFAULT_BASE_URL",
    "StrajaConfig",
    "StrajaEvaluator",
    "resolve_action",
    "summarize_decision",
]
