"""Guardrail configuration models, stage resolution and file loading."""

from __future__ import annotations

import math
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Generic, Literal, TypeVar

import yaml  # type: ignore[import-untyped,unused-ignore]
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ConfigError
from .models import Stage

BlockMode = Literal["replace", "append"]
StageMode = Literal["block", "monitor"]

_T = TypeVar("_T")


class StageConfig(BaseModel):
    """Per-stage options shared by every backend.

    A stage is enabled by the mere presence of its entry; ``enabled: false``
    switches it off explicitly.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")

    enabled: bool | None = None
    mode: StageMode = "block"
    block_mode: BlockMode | None = None
    include_history: bool = True


StageConfigT = TypeVar("StageConfigT", bound=StageConfig)


class StagesConfig(BaseModel, Generic[StageConfigT]):
    """Stage entries keyed by stage. A missing entry disables that stage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")

    before_request: StageConfigT | None = None
    before_tool_call: StageConfigT | None = None
    after_tool_call: StageConfigT | None = None
    after_response: StageConfigT | None = None


class GuardrailConfig(BaseModel):
    """Configuration for one guardrail instance."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")

    name: str | None = None
    backend: str | None = None
    enabled: bool = True
    fail_open: bool = True
    priority: int = 50
    timeout_ms: float | None = Field(default=None, gt=0)
    stages: StagesConfig[StageConfig] = Field(default_factory=StagesConfig[StageConfig])


def resolve_stage_config(stages: StagesConfig[Any] | None, stage: Stage | str) -> Any | None:
    """Return the stage entry, or ``None`` when the map or the entry is absent."""

    if stages is None:
        return None
    return getattr(stages, Stage(stage).value, None)


def is_stage_enabled(stage_config: StageConfig | None) -> bool:
    if stage_config is None:
        return False
    return stage_config.enabled is not False


def resolve_block_mode(stage: Stage | str, stage_config: StageConfig | None) -> BlockMode:
    """Explicit ``block_mode`` wins, otherwise tool results get ``append`` and the rest ``replace``."""

    if stage_config is not None and stage_config.block_mode:
        return stage_config.block_mode
    if Stage(stage) is Stage.AFTER_TOOL_CALL:
        return "append"
    return "replace"


def _is_defined(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return True


def resolve_option(stage_value: _T | None, instance_value: _T | None, default: _T) -> _T:
    """Stage value, else instance value, else ``default``.

    Non-finite floats count as undefined at either level.
    """

    if _is_defined(stage_value):
        return stage_value  # type: ignore[return-value]
    if _is_defined(instance_value):
        return instance_value  # type: ignore[return-value]
    return default


def load_guardrail_file(path: str | Path, *, env: str | None = None) -> list[dict[str, Any]]:
    """Load guardrail entries from YAML, applying the ``environments[env]`` overlay."""

    source = Path(path)
    try:
        raw = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read guardrail file {source}: {exc}") from exc
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError("Guardrail file must be a mapping")

    entries = _validate_entries(data.get("guardrails"), where="guardrails")
    if env is not None:
        envs = data.get("environments")
        if not isinstance(envs, Mapping) or env not in envs:
            raise ConfigError(f"Unknown environment: {env}")
        overlay = envs[env]
        if not isinstance(overlay, Mapping):
            raise ConfigError(f"environments.{env} must be a mapping")
        if "guardrails" in overlay:
            overlay_entries = _validate_entries(overlay["guardrails"], where=f"environments.{env}.guardrails")
            entries = _merge_entries(entries, overlay_entries)

    names = [entry["name"] for entry in entries]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate guardrail names: {', '.join(duplicates)}")
    return entries


def _validate_entries(value: Any, *, where: str) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    entries: list[dict[str, Any]] = []
    for index, entry in enumerate(value):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"{where}[{index}] must be a mapping")
        payload = dict(entry)
        name = payload.get("name", payload.get("backend"))
        if not isinstance(name, str) or not name:
            raise ConfigError(f"{where}[{index}] requires a string 'name' or 'backend'")
        payload["name"] = name
        entries.append(payload)
    return entries


def _merge_entries(base: list[dict[str, Any]], overlay: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged = list(base)
    positions = {entry["name"]: index for index, entry in enumerate(merged)}
    for entry in overlay:
        index = positions.get(entry["name"])
        if index is None:
            positions[entry["name"]] = len(merged)
            merged.append(entry)
        else:
            merged[index] = _deep_merge(merged[index], entry)
    return merged


def _deep_merge(base: Mapping[str, Any], overlay: Any) -> dict[str, Any]:
    merged = dict(base)
    if not isinstance(overlay, Mapping):
        return merged
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


__all__ = [
    "BlockMode",
    "GuardrailConfig",
    "StageConfig",
    "StageConfigT",
    "StageMode",
    "StagesConfig",
    "is_stage_enabled",
    "load_guardrail_file",
    "resolve_block_mode",
    "resolve_option",
    "resolve_stage_config",
]
