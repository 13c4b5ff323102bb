"""Priority-ordered, sequential hook dispatch per stage."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .merge import apply_result
from .models import (
    AfterResponsePayload,
    AfterResponseResult,
    AfterToolCallPayload,
    AfterToolCallResult,
    BeforeRequestPayload,
    BeforeRequestResult,
    BeforeToolCallPayload,
    BeforeToolCallResult,
    DispatchState,
    HandlerResult,
    HookContext,
    Stage,
    StagePayload,
    ToolResult,
)

logger = logging.getLogger("stageguard.dispatcher")

DEFAULT_PRIORITY = 50

Handler = Callable[[Any, HookContext], Awaitable[HandlerResult | None]]
BeforeRequestHandler = Callable[[BeforeRequestPayload, HookContext], Awaitable[BeforeRequestResult | None]]
BeforeToolCallHandler = Callable[[BeforeToolCallPayload, HookContext], Awaitable[BeforeToolCallResult | None]]
AfterToolCallHandler = Callable[[AfterToolCallPayload, HookContext], Awaitable[AfterToolCallResult | None]]
AfterResponseHandler = Callable[[AfterResponsePayload, HookContext], Awaitable[AfterResponseResult | None]]


@dataclass(slots=True, frozen=True)
class HandlerRegistration:
    stage: Stage
    handler: Handler
    priority: int
    name: str
    sequence: int


@dataclass(slots=True)
class StageOutcome:
    """Terminal state of one dispatch and the payload that continues downstream."""

    stage: Stage
    state: DispatchState
    payload: StagePayload
    result: HandlerResult | None = None
    blocked_by: str | None = None
    handlers_run: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return self.state is DispatchState.BLOCKED

    @property
    def block_response(self) -> str | None:
        if isinstance(self.result, BeforeRequestResult | AfterResponseResult):
            return self.result.block_response
        return None

    @property
    def block_reason(self) -> str | None:
        if isinstance(self.result, BeforeToolCallResult):
            return self.result.block_reason
        return None

    @property
    def tool_result(self) -> ToolResult | None:
        if isinstance(self.result, BeforeToolCallResult):
            return self.result.tool_result
        if isinstance(self.result, AfterToolCallResult):
            return self.result.result
        return None


class HookDispatcher:
    """Runs the handlers of a stage in descending priority order.

    Handlers run one after another; each sees the payload as mutated by the
    handlers before it. The first block directive ends the stage. Handler
    exceptions are not caught here.
    """

    def __init__(self) -> None:
        self._registrations: dict[Stage, list[HandlerRegistration]] = {stage: [] for stage in Stage}
        self._sequence = itertools.count()

    def register(
        self,
        stage: Stage | str,
        handler: Handler,
        *,
        priority: int = DEFAULT_PRIORITY,
        name: str | None = None,
    ) -> HandlerRegistration:
        stage = Stage(stage)
        registration = HandlerRegistration(
            stage=stage,
            handler=handler,
            priority=int(priority),
            name=name or getattr(handler, "__qualname__", repr(handler)),
            sequence=next(self._sequence),
        )
        entries = self._registrations[stage]
        entries.append(registration)
        entries.sort(key=lambda entry: (-entry.priority, entry.sequence))
        logger.debug(
            "hook_registered",
            extra={"stage": stage.value, "handler": registration.name, "priority": registration.priority},
        )
        return registration

    def on_before_request(
        self, handler: BeforeRequestHandler, *, priority: int = DEFAULT_PRIORITY, name: str | None = None
    ) -> HandlerRegistration:
        return self.register(Stage.BEFORE_REQUEST, handler, priority=priority, name=name)

    def on_before_tool_call(
        self, handler: BeforeToolCallHandler, *, priority: int = DEFAULT_PRIORITY, name: str | None = None
    ) -> HandlerRegistration:
        return self.register(Stage.BEFORE_TOOL_CALL, handler, priority=priority, name=name)

    def on_after_tool_call(
        self, handler: AfterToolCallHandler, *, priority: int = DEFAULT_PRIORITY, name: str | None = None
    ) -> HandlerRegistration:
        return self.register(Stage.AFTER_TOOL_CALL, handler, priority=priority, name=name)

    def on_after_response(
        self, handler: AfterResponseHandler, *, priority: int = DEFAULT_PRIORITY, name: str | None = None
    ) -> HandlerRegistration:
        return self.register(Stage.AFTER_RESPONSE, handler, priority=priority, name=name)

    def registrations(self, stage: Stage | str) -> list[HandlerRegistration]:
        return list(self._registrations[Stage(stage)])

    def has_handlers(self, stage: Stage | str) -> bool:
        return bool(self._registrations[Stage(stage)])

    async def dispatch(self, payload: StagePayload, ctx: HookContext | None = None) -> StageOutcome:
        stage = payload.stage
        context = ctx or HookContext()
        entries = list(self._registrations[stage])
        working: StagePayload = payload
        handlers_run: list[str] = []
        state = DispatchState.PENDING
        if entries:
            state = DispatchState.RUNNING
        logger.debug("stage_dispatch", extra={"stage": stage.value, "state": state.value, "handlers": len(entries)})

        for entry in entries:
            result = await entry.handler(working, context)
            handlers_run.append(entry.name)
            if result is None:
                continue
            if result.stage is not stage:
                raise TypeError(f"Handler {entry.name!r} returned a {result.stage.value} result for {stage.value}")
            working = apply_result(working, result)
            if result.block:
                logger.info(
                    "stage_blocked",
                    extra={"stage": stage.value, "handler": entry.name, "session_key": context.session_key},
                )
                return StageOutcome(
                    stage=stage,
                    state=DispatchState.BLOCKED,
                    payload=working,
                    result=result,
                    blocked_by=entry.name,
                    handlers_run=tuple(handlers_run),
                )

        return StageOutcome(
            stage=stage,
            state=DispatchState.COMPLETED,
            payload=working,
            handlers_run=tuple(handlers_run),
        )


__all__ = [
    "DEFAULT_PRIORITY",
    "Handler",
    "HandlerRegistration",
    "HookDispatcher",
    "StageOutcome",
]
