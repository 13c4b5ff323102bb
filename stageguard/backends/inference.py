"""Model-provider abstraction used by local-inference classifiers."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx
from pydantic import Field

from ..config import GuardrailConfig
from ..errors import GuardrailBackendError
from ..evaluation import BaseEvaluator
from ..scratch import generate_session_id, scratch_directory
from .common import client_context, decode_json_object, normalize_base_url, raise_for_status, require_config

logger = logging.getLogger("stageguard.backends.inference")

PROVIDER_BASE_URLS: dict[str, str] = {
    "ollama": "http://localhost:11434/v1",
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


@dataclass(slots=True, frozen=True)
class CompletionRequest:
    prompt: str
    model: str
    max_tokens: int
    timeout_s: float | None
    session_id: str
    workdir: Path


class ModelRunner(Protocol):
    """Runs one single-turn completion against a classifier model."""

    async def complete(self, request: CompletionRequest) -> str: ...


class LocalInferenceConfig(GuardrailConfig):
    """Options shared by classifiers served through a model provider."""

    provider: str = "ollama"
    model: str
    base_url: str | None = None
    api_key: str | None = None
    max_tokens: int = Field(default=100, ge=1)


def provider_problems(config: LocalInferenceConfig) -> list[str]:
    if config.base_url or config.provider in PROVIDER_BASE_URLS:
        return []
    return [f"Unknown provider '{config.provider}' and no baseUrl configured"]


def _collect_text(data: Mapping[str, Any]) -> str:
    texts: list[str] = []
    for choice in data.get("choices") or ():
        if not isinstance(choice, Mapping):
            continue
        message = choice.get("message")
        content = message.get("content") if isinstance(message, Mapping) else choice.get("text")
        if isinstance(content, str):
            texts.append(content)
    return "\n".join(texts).strip()


@dataclass(slots=True)
class OpenAICompatibleRunner:
    """Chat-completions client for Ollama or any OpenAI-compatible endpoint.

    Each exchange is recorded to ``session.json`` in the invocation's scratch
    directory.
    """

    base_url: str
    api_key: str | None = None
    client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls, config: LocalInferenceConfig, *, client: httpx.AsyncClient | None = None
    ) -> OpenAICompatibleRunner:
        base_url = config.base_url or PROVIDER_BASE_URLS.get(config.provider)
        if not base_url:
            raise GuardrailBackendError(config.provider, "no base URL configured")
        return cls(base_url=normalize_base_url(base_url), api_key=config.api_key, client=client)

    async def complete(self, request: CompletionRequest) -> str:
        body = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "max_tokens": request.max_tokens,
            "stream": False,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        async with client_context(self.client, request.timeout_s) as client:
            response = await client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
            raise_for_status(response, backend=request.model)
            data = decode_json_object(response, backend=request.model)

        text = _collect_text(data)
        transcript = {"session_id": request.session_id, "request": body, "response": text}
        await asyncio.to_thread(
            (request.workdir / "session.json").write_text, json.dumps(transcript), encoding="utf-8"
        )
        logger.debug("classifier_completion", extra={"model": request.model, "session_id": request.session_id})
        return text


class ClassifierEvaluator(BaseEvaluator):
    """Base for evaluators that prompt a classifier model through a ``ModelRunner``."""

    config_type: type[LocalInferenceConfig] = LocalInferenceConfig
    scratch_prefix = "classifier"

    def __init__(self, *, runner: ModelRunner | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.runner = runner
        self.client = client

    def check_config(self, config: GuardrailConfig) -> list[str]:
        if self.runner is not None:
            return []
        return provider_problems(require_config(config, self.config_type))

    def _resolve_runner(self, config: LocalInferenceConfig) -> ModelRunner:
        if self.runner is not None:
            return self.runner
        return OpenAICompatibleRunner.from_config(config, client=self.client)

    async def classify(self, prompt: str, config: LocalInferenceConfig) -> str:
        """Run ``prompt`` inside a fresh scratch directory; an empty reply is an error."""

        runner = self._resolve_runner(config)
        async with scratch_directory(self.scratch_prefix) as workdir:
            text = await runner.complete(
                CompletionRequest(
                    prompt=prompt,
                    model=config.model,
                    max_tokens=config.max_tokens,
                    timeout_s=config.timeout_ms / 1000 if config.timeout_ms else None,
                    session_id=generate_session_id(self.scratch_prefix),
                    workdir=workdir,
                )
            )
        text = (text or "").strip()
        if not text:
            raise GuardrailBackendError(self.name, "classifier returned an empty response")
        return text


__all__ = [
    "ClassifierEvaluator",
    "CompletionRequest",
    "LocalInferenceConfig",
    "ModelRunner",
    "OpenAICompatibleRunner",
    "PROVIDER_BASE_URLS",
    "provider_problems",
]
