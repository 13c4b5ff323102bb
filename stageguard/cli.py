"""stageguard command-line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import click

from .backends import build_dispatcher, build_guardrail
from .config import is_stage_enabled, load_guardrail_file, resolve_block_mode
from .errors import ConfigError
from .models import (
    AfterResponsePayload,
    AfterToolCallPayload,
    BeforeRequestPayload,
    BeforeToolCallPayload,
    HookContext,
    Stage,
    StagePayload,
    ToolResult,
)


@click.group()
@click.version_option(package_name="stageguard")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for guardrail events.",
)
def app(log_level: str) -> None:
    """stageguard CLI - validate and exercise guardrail configurations."""
    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s %(message)s")


@app.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--env", "env_name", default=None, help="Environment overlay to apply.")
def validate(config_path: str, env_name: str | None) -> None:
    """Validate CONFIG_PATH and print the effective stage settings."""
    try:
        entries = load_guardrail_file(config_path, env=env_name)
        guardrails = [build_guardrail(entry) for entry in entries]
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    for guardrail in guardrails:
        config = guardrail.config
        state = "enabled" if config.enabled else "disabled"
        click.echo(
            f"{guardrail.name} ({config.backend}): {state}, priority={config.priority}, "
            f"fail_open={str(config.fail_open).lower()}"
        )
        for problem in guardrail.problems:
            click.echo(f"  ! {problem}")
        active = set(guardrail.active_stages())
        for stage in Stage:
            stage_config = guardrail.stage_config(stage)
            if not is_stage_enabled(stage_config):
                continue
            marker = "+" if stage in active else "-"
            click.echo(
                f"  {marker} {stage.value}: mode={stage_config.mode}, "
                f"block_mode={resolve_block_mode(stage, stage_config)}, "
                f"include_history={str(stage_config.include_history).lower()}"
            )


def _build_payload(stage: Stage, text: str, tool_name: str) -> StagePayload:
    messages = [{"role": "user", "content": text}]
    if stage is Stage.BEFORE_REQUEST:
        return BeforeRequestPayload(prompt=text, messages=messages)
    if stage is Stage.BEFORE_TOOL_CALL:
        try:
            params = json.loads(text)
        except json.JSONDecodeError:
            params = {"input": text}
        if not isinstance(params, dict):
            params = {"input": params}
        return BeforeToolCallPayload(tool_name=tool_name, tool_call_id="cli-call", params=params, messages=messages)
    if stage is Stage.AFTER_TOOL_CALL:
        return AfterToolCallPayload(
            tool_name=tool_name,
            tool_call_id="cli-call",
            result=ToolResult(content=[{"type": "text", "text": text}]),
        )
    return AfterResponsePayload(assistant_texts=[text], messages=messages)


def _describe(outcome: Any) -> dict[str, Any]:
    payload = outcome.payload
    summary: dict[str, Any] = {
        "stage": outcome.stage.value,
        "state": outcome.state.value,
        "blocked_by": outcome.blocked_by,
        "handlers_run": list(outcome.handlers_run),
    }
    if outcome.block_response is not None:
        summary["block_response"] = outcome.block_response
    if outcome.block_reason is not None:
        summary["block_reason"] = outcome.block_reason
    if isinstance(payload, BeforeRequestPayload):
        summary["prompt"] = payload.prompt
    elif isinstance(payload, BeforeToolCallPayload):
        summary["params"] = dict(payload.params)
    elif isinstance(payload, AfterToolCallPayload):
        summary["result"] = payload.result.to_dict()
    elif isinstance(payload, AfterResponsePayload):
        summary["assistant_texts"] = list(payload.assistant_texts)
    return summary


@app.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--stage",
    "stage_name",
    type=click.Choice([stage.value for stage in Stage]),
    default=Stage.BEFORE_REQUEST.value,
    show_default=True,
    help="Stage to dispatch.",
)
@click.option("--text", required=True, help="Prompt, tool arguments (JSON), tool output or response text.")
@click.option("--tool-name", default="cli_tool", show_default=True, help="Tool name for tool stages.")
@click.option("--session-key", default=None, help="Session key passed to guardrails.")
@click.option("--env", "env_name", default=None, help="Environment overlay to apply.")
def check(
    config_path: str,
    stage_name: str,
    text: str,
    tool_name: str,
    session_key: str | None,
    env_name: str | None,
) -> None:
    """Run one synthetic payload through the configured pipeline and print the outcome."""
    stage = Stage(stage_name)
    try:
        entries = load_guardrail_file(config_path, env=env_name)
        dispatcher, _ = build_dispatcher(entries)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    payload = _build_payload(stage, text, tool_name)
    outcome = asyncio.run(dispatcher.dispatch(payload, HookContext(session_key=session_key)))
    click.echo(json.dumps(_describe(outcome), indent=2, ensure_ascii=False))
    if outcome.blocked:
        sys.exit(2)


__all__ = ["app"]
