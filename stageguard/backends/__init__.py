"""Backend registry: build guardrails and dispatchers from configuration entries."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import GuardrailConfig, load_guardrail_file
from ..dispatcher import HookDispatcher
from ..errors import ConfigError
from ..guardrail import Guardrail
from ..protocols import Evaluator
from .grayswan import GraySwanConfig, GraySwanEvaluator
from .inference import ModelRunner
from .llamaguard import LlamaGuardConfig, LlamaGuardEvaluator
from .local import (
    InjectionConfig,
    SecretRedactionConfig,
    ToolAllowlistConfig,
    allowlist_evaluator,
    injection_evaluator,
    secret_evaluator,
)
from .safeguard import SafeguardConfig, SafeguardEvaluator
from .straja import StrajaConfig, StrajaEvaluator


@dataclass(slots=True, frozen=True)
class BuildOptions:
    """Shared collaborators handed to every backend factory."""

    runner: ModelRunner | None = None
    client: httpx.AsyncClient | None = None
    env: Mapping[str, str] | None = None


@dataclass(slots=True, frozen=True)
class BackendSpec:
    config_type: type[GuardrailConfig]
    factory: Callable[[Any, BuildOptions], Evaluator]


BACKENDS: dict[str, BackendSpec] = {
    "grayswan": BackendSpec(
        GraySwanConfig,
        lambda config, opts: GraySwanEvaluator(client=opts.client, env=opts.env),
    ),
    "straja": BackendSpec(
        StrajaConfig,
        lambda config, opts: StrajaEvaluator(client=opts.client, env=opts.env),
    ),
    "llamaguard": BackendSpec(
        LlamaGuardConfig,
        lambda config, opts: LlamaGuardEvaluator(runner=opts.runner, client=opts.client),
    ),
    "safeguard": BackendSpec(
        SafeguardConfig,
        lambda config, opts: SafeguardEvaluator(runner=opts.runner, client=opts.client),
    ),
    "injection": BackendSpec(InjectionConfig, lambda config, opts: injection_evaluator(config)),
    "secrets": BackendSpec(SecretRedactionConfig, lambda config, opts: secret_evaluator(config)),
    "tool_allowlist": BackendSpec(ToolAllowlistConfig, lambda config, opts: allowlist_evaluator(config)),
}


def parse_config(entry: Mapping[str, Any]) -> GuardrailConfig:
    backend = entry.get("backend")
    spec = BACKENDS.get(backend) if isinstance(backend, str) else None
    if spec is None:
        known = ", ".join(sorted(BACKENDS))
        raise ConfigError(f"Unknown guardrail backend {backend!r} (expected one of: {known})")
    try:
        return spec.config_type.model_validate(dict(entry))
    except ValidationError as exc:
        name = entry.get("name", backend)
        raise ConfigError(f"Invalid configuration for guardrail {name!r}: {exc}") from exc


def build_guardrail(
    entry: Mapping[str, Any] | GuardrailConfig,
    *,
    runner: ModelRunner | None = None,
    client: httpx.AsyncClient | None = None,
    env: Mapping[str, str] | None = None,
) -> Guardrail:
    config = entry if isinstance(entry, GuardrailConfig) else parse_config(entry)
    spec = BACKENDS.get(config.backend or "")
    if spec is None:
        raise ConfigError(f"Unknown guardrail backend {config.backend!r}")
    evaluator = spec.factory(config, BuildOptions(runner=runner, client=client, env=env))
    return Guardrail(config, evaluator, name=config.name or config.backend)


def build_dispatcher(
    entries: Iterable[Mapping[str, Any] | GuardrailConfig],
    *,
    dispatcher: HookDispatcher | None = None,
    runner: ModelRunner | None = None,
    client: httpx.AsyncClient | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[HookDispatcher, list[Guardrail]]:
    """Build every guardrail and register its enabled stages on one dispatcher."""

    dispatcher = dispatcher or HookDispatcher()
    guardrails = [build_guardrail(entry, runner=runner, client=client, env=env) for entry in entries]
    for guardrail in guardrails:
        guardrail.register(dispatcher)
    return dispatcher, guardrails


def load_dispatcher(
    path: str | Path,
    *,
    env: str | None = None,
    runner: ModelRunner | None = None,
    client: httpx.AsyncClient | None = None,
) -> tuple[HookDispatcher, list[Guardrail]]:
    return build_dispatcher(load_guardrail_file(path, env=env), runner=runner, client=client)


__all__ = [
    "BACKENDS",
    "BackendSpec",
    "BuildOptions",
    "build_dispatcher",
    "build_guardrail",
    "load_dispatcher",
    "parse_config",
]
