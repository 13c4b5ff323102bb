from __future__ import annotations

import asyncio

import pytest

from stageguard.dispatcher import HookDispatcher
from stageguard.merge import apply_result
from stageguard.models import (
    AfterResponsePayload,
    AfterResponseResult,
    AfterToolCallPayload,
    AfterToolCallResult,
    BeforeRequestPayload,
    BeforeRequestResult,
    BeforeToolCallPayload,
    BeforeToolCallResult,
    DispatchState,
    HookContext,
    Stage,
    ToolResult,
)


def _recorder(log: list[str], label: str, result=None):
    async def handler(payload, ctx):
        del payload, ctx
        log.append(label)
        return result

    return handler


@pytest.mark.asyncio
async def test_handlers_run_by_descending_priority_with_stable_ties() -> None:
    dispatcher = HookDispatcher()
    order: list[str] = []
    dispatcher.on_before_request(_recorder(order, "low"), priority=10, name="low")
    dispatcher.on_before_request(_recorder(order, "tie-a"), priority=50, name="tie-a")
    dispatcher.on_before_request(_recorder(order, "high"), priority=90, name="high")
    dispatcher.on_before_request(_recorder(order, "tie-b"), priority=50, name="tie-b")

    outcome = await dispatcher.dispatch(BeforeRequestPayload(prompt="hi"))

    assert order == ["high", "tie-a", "tie-b", "low"]
    assert outcome.handlers_run == ("high", "tie-a", "tie-b", "low")
    assert outcome.state is DispatchState.COMPLETED
    assert [entry.name for entry in dispatcher.registrations(Stage.BEFORE_REQUEST)] == order


_BLOCKING_CASES = [
    (Stage.BEFORE_REQUEST, BeforeRequestPayload(prompt="hi"), BeforeRequestResult(block=True, block_response="no")),
    (
        Stage.BEFORE_TOOL_CALL,
        BeforeToolCallPayload(tool_name="shell", params={"cmd": "ls"}),
        BeforeToolCallResult(block=True, block_reason="no"),
    ),
    (
        Stage.AFTER_TOOL_CALL,
        AfterToolCallPayload(tool_name="fetch", result=ToolResult(content=[{"type": "text", "text": "raw"}])),
        AfterToolCallResult(block=True, result=ToolResult(content=[{"type": "text", "text": "withheld"}])),
    ),
    (Stage.AFTER_RESPONSE, AfterResponsePayload(assistant_texts=["done"]), AfterResponseResult(block=True)),
]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stage, payload, block", _BLOCKING_CASES, ids=[case[0].value for case in _BLOCKING_CASES]
)
async def test_block_short_circuits_later_handlers(stage: Stage, payload, block) -> None:
    dispatcher = HookDispatcher()
    order: list[str] = []
    dispatcher.register(stage, _recorder(order, "blocker", block), priority=80, name="blocker")
    dispatcher.register(stage, _recorder(order, "spy"), priority=10, name="spy")

    outcome = await dispatcher.dispatch(payload)

    assert order == ["blocker"]
    assert outcome.blocked
    assert outcome.state is DispatchState.BLOCKED
    assert outcome.blocked_by == "blocker"
    assert outcome.handlers_run == ("blocker",)


@pytest.mark.asyncio
async def test_request_block_carries_block_response() -> None:
    dispatcher = HookDispatcher()
    dispatcher.on_before_request(
        _recorder([], "blocker", BeforeRequestResult(block=True, block_response="no")), name="blocker"
    )

    outcome = await dispatcher.dispatch(BeforeRequestPayload(prompt="hi"))

    assert outcome.block_response == "no"


@pytest.mark.asyncio
async def test_unregistered_stage_returns_payload_unchanged() -> None:
    dispatcher = HookDispatcher()
    payload = AfterResponsePayload(assistant_texts=["done"])

    outcome = await dispatcher.dispatch(payload)

    assert outcome.payload is payload
    assert outcome.state is DispatchState.COMPLETED
    assert outcome.handlers_run == ()
    assert not dispatcher.has_handlers(Stage.AFTER_RESPONSE)


@pytest.mark.asyncio
async def test_none_results_preserve_payload_identity() -> None:
    dispatcher = HookDispatcher()
    dispatcher.on_before_tool_call(_recorder([], "a"), name="a")
    dispatcher.on_before_tool_call(_recorder([], "b"), name="b")
    payload = BeforeToolCallPayload(tool_name="search", params={"q": "x"})

    outcome = await dispatcher.dispatch(payload)

    assert outcome.payload is payload
    assert outcome.payload.params is payload.params


@pytest.mark.asyncio
async def test_later_handlers_see_earlier_mutations() -> None:
    dispatcher = HookDispatcher()
    seen: list[str] = []

    async def rewrite(payload: BeforeRequestPayload, ctx: HookContext) -> BeforeRequestResult:
        del ctx
        return BeforeRequestResult(prompt=payload.prompt.upper())

    async def observe(payload: BeforeRequestPayload, ctx: HookContext) -> None:
        del ctx
        seen.append(payload.prompt)

    dispatcher.on_before_request(rewrite, priority=60, name="rewrite")
    dispatcher.on_before_request(observe, priority=40, name="observe")
    messages = [{"role": "user", "content": "hello"}]

    outcome = await dispatcher.dispatch(BeforeRequestPayload(prompt="hello", messages=messages))

    assert seen == ["HELLO"]
    assert outcome.payload.prompt == "HELLO"
    assert outcome.payload.messages is messages


@pytest.mark.asyncio
async def test_after_tool_call_block_carries_replacement_result() -> None:
    dispatcher = HookDispatcher()
    replacement = ToolResult(content=[{"type": "text", "text": "withheld"}])

    async def block(payload: AfterToolCallPayload, ctx: HookContext) -> AfterToolCallResult:
        del payload, ctx
        return AfterToolCallResult(block=True, result=replacement)

    dispatcher.on_after_tool_call(block, name="block")
    original = ToolResult(content=[{"type": "text", "text": "raw"}])

    outcome = await dispatcher.dispatch(AfterToolCallPayload(tool_name="fetch", result=original))

    assert outcome.blocked
    assert outcome.payload.result is replacement
    assert outcome.tool_result is replacement


@pytest.mark.asyncio
async def test_handler_exceptions_propagate() -> None:
    dispatcher = HookDispatcher()

    async def explode(payload, ctx):
        raise RuntimeError("handler broke")

    dispatcher.on_after_response(explode, name="explode")

    with pytest.raises(RuntimeError, match="handler broke"):
        await dispatcher.dispatch(AfterResponsePayload(assistant_texts=["x"]))


@pytest.mark.asyncio
async def test_wrong_stage_result_is_rejected() -> None:
    dispatcher = HookDispatcher()
    dispatcher.on_before_request(_recorder([], "confused", AfterResponseResult(block=True)), name="confused")

    with pytest.raises(TypeError, match="after_response result"):
        await dispatcher.dispatch(BeforeRequestPayload(prompt="hi"))


@pytest.mark.asyncio
async def test_cancellation_stops_the_stage() -> None:
    dispatcher = HookDispatcher()
    started = asyncio.Event()
    order: list[str] = []

    async def slow(payload, ctx):
        started.set()
        await asyncio.sleep(10)

    dispatcher.on_before_request(slow, priority=90, name="slow")
    dispatcher.on_before_request(_recorder(order, "after"), priority=10, name="after")

    task = asyncio.create_task(dispatcher.dispatch(BeforeRequestPayload(prompt="hi")))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert order == []


@pytest.mark.asyncio
async def test_context_reaches_handlers() -> None:
    dispatcher = HookDispatcher()
    received: list[str | None] = []

    async def capture(payload, ctx: HookContext):
        received.append(ctx.session_key)

    dispatcher.on_before_request(capture)
    await dispatcher.dispatch(BeforeRequestPayload(prompt="hi"), HookContext(session_key="s-1"))
    await dispatcher.dispatch(BeforeRequestPayload(prompt="hi"))

    assert received == ["s-1", None]


def test_apply_result_only_replaces_fields_that_are_set() -> None:
    messages = [{"role": "user", "content": "hi"}]
    payload = BeforeRequestPayload(prompt="hi", messages=messages, system_prompt="sys")

    updated = apply_result(payload, BeforeRequestResult(prompt="hello"))

    assert updated.prompt == "hello"
    assert updated.messages is messages
    assert updated.system_prompt == "sys"
    assert apply_result(payload, BeforeRequestResult()) is payload
    assert apply_result(payload, None) is payload


def test_apply_result_rejects_block_without_replacement_tool_result() -> None:
    payload = AfterToolCallPayload(tool_name="fetch", result=ToolResult())
    with pytest.raises(ValueError, match="replacement result"):
        apply_result(payload, AfterToolCallResult(block=True))


def test_apply_result_rejects_mismatched_result() -> None:
    with pytest.raises(TypeError):
        apply_result(BeforeRequestPayload(prompt="hi"), BeforeToolCallResult(params={}))
