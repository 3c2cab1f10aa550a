"""Streaming coach reply: one upstream call, at most one tool, best-effort logging.

A background pump task owns the upstream iterator and feeds a queue; the
consumer side reads that queue against a wall-clock deadline, which keeps
timeouts and caller aborts independent of how the upstream client awaits I/O.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from aura_coach.core.prompts import build_upstream_messages, latest_user_text
from aura_coach.core.safety import crisis_reply, detect_crisis_flags
from aura_coach.core.wire import ConversationRequest, encode_tool_block
from aura_coach.services.conversation_log import ExchangeRecord
from aura_coach.services.llm import (
    ModelConfig,
    StreamingLLMClient,
    TextDelta,
    ToolCallDelta,
    TurnEnd,
    UpstreamError,
    UpstreamTimeout,
)
from aura_coach.services.tools import ToolContext, ToolFailure, ToolRegistry

logger = logging.getLogger("uvicorn.error")
COACH_STREAM_TIMEOUT_SECONDS = float(os.getenv("COACH_STREAM_TIMEOUT_SECONDS", "30"))


class StreamState(str, Enum):
    idle = "idle"
    requesting = "requesting"
    streaming = "streaming"
    tool_executing = "tool_executing"
    finalizing = "finalizing"
    closed = "closed"
    aborted = "aborted"


ALLOWED_TRANSITIONS: dict[StreamState, set[StreamState]] = {
    StreamState.idle: {StreamState.requesting},
    StreamState.requesting: {StreamState.streaming, StreamState.aborted},
    StreamState.streaming: {StreamState.tool_executing, StreamState.finalizing, StreamState.aborted},
    StreamState.tool_executing: {StreamState.finalizing, StreamState.aborted},
    StreamState.finalizing: {StreamState.closed},
    StreamState.closed: set(),
    StreamState.aborted: set(),
}


class InvalidStateTransition(RuntimeError):
    pass


@dataclass
class _ToolCallBuffer:
    index: int
    call_id: Optional[str] = None
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    def feed(self, delta: ToolCallDelta) -> None:
        if delta.call_id:
            self.call_id = delta.call_id
        if delta.name:
            # Some servers resend the full name on every fragment.
            if self.name and delta.name.startswith(self.name):
                self.name = delta.name
            else:
                self.name += delta.name
        if delta.arguments:
            self.fragments.append(delta.arguments)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


class _Signal(Enum):
    END = "end"
    ABORT = "abort"


@dataclass(frozen=True)
class _PumpFailure:
    error: BaseException


class StreamOrchestrator:
    def __init__(
        self,
        llm: StreamingLLMClient,
        registry: ToolRegistry,
        config: ModelConfig,
        user_id: int,
        log_writer: Optional[Callable[[ExchangeRecord], None]] = None,
        timeout_seconds: float = COACH_STREAM_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.config = config
        self.user_id = user_id
        self.log_writer = log_writer
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.state = StreamState.idle
        self.tool_name: Optional[str] = None
        self.dropped_tool_calls = 0
        self._request: Optional[ConversationRequest] = None
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._held: Any = None
        self._deadline = 0.0
        self._abort_requested = False
        self._crisis = False

    def _transition(self, target: StreamState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"{self.state.value} -> {target.value}")
        self.state = target

    @property
    def is_terminal(self) -> bool:
        return self.state in (StreamState.closed, StreamState.aborted)

    def abort(self) -> None:
        """Cooperatively cancel an in-flight generation. Quota already consumed stays consumed."""
        if self.is_terminal or self.state == StreamState.finalizing:
            return
        self._abort_requested = True
        if self._queue is not None:
            self._queue.put_nowait(_Signal.ABORT)

    async def _pump(self, upstream: AsyncIterator[Any]) -> None:
        assert self._queue is not None
        try:
            async for event in upstream:
                await self._queue.put(event)
            await self._queue.put(_Signal.END)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Re-raised on the consumer side.
            await self._queue.put(_PumpFailure(exc))

    async def _stop_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _enter_aborted(self, reason: str) -> None:
        if not self.is_terminal and StreamState.aborted in ALLOWED_TRANSITIONS[self.state]:
            logger.info(
                "coach_stream_aborted user_id=%s reason=%s from_state=%s", self.user_id, reason, self.state.value
            )
            self.state = StreamState.aborted
        await self._stop_pump()

    async def _next_event(self) -> Any:
        assert self._queue is not None
        if self._abort_requested:
            await self._enter_aborted("caller_abort")
            return _Signal.ABORT
        if self._held is not None:
            held, self._held = self._held, None
            return held
        remaining = self._deadline - self._clock()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError()
            item = await asyncio.wait_for(self._queue.get(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(
                "coach_stream_timeout user_id=%s model=%s timeout_s=%s", self.user_id, self.config.model, self.timeout_seconds
            )
            await self._enter_aborted("timeout")
            raise UpstreamTimeout(
                self.config.provider, self.config.model, f"No complete reply within {self.timeout_seconds:g}s"
            )
        if item is _Signal.ABORT or self._abort_requested:
            await self._enter_aborted("caller_abort")
            return _Signal.ABORT
        if isinstance(item, _PumpFailure):
            logger.warning("coach_stream_upstream_error user_id=%s detail=%s", self.user_id, str(item.error)[:220])
            await self._enter_aborted("upstream_error")
            if isinstance(item.error, (UpstreamError, UpstreamTimeout)):
                raise item.error
            raise UpstreamError(
                self.config.provider, self.config.model, f"Upstream stream failed: {str(item.error)[:220]}"
            ) from item.error
        return item

    async def open(self, request: ConversationRequest) -> None:
        """Idle -> Requesting -> Streaming. Waits for the first upstream event."""
        self._transition(StreamState.requesting)
        self._request = request
        self._queue = asyncio.Queue()
        if self._abort_requested:
            await self._enter_aborted("caller_abort")
            return
        if detect_crisis_flags(latest_user_text(request.messages)):
            logger.warning("coach_stream_crisis_language user_id=%s", self.user_id)
            self._crisis = True
            self._transition(StreamState.streaming)
            return

        self._deadline = self._clock() + self.timeout_seconds
        upstream = self.llm.stream_chat(
            self.config,
            build_upstream_messages(request.messages, request.lang),
            self.registry.provider_tools(),
        )
        self._pump_task = asyncio.create_task(self._pump(upstream))
        first = await self._next_event()
        if first is _Signal.ABORT:
            return
        self._held = first
        self._transition(StreamState.streaming)

    async def chunks(self) -> AsyncIterator[str]:
        """Streaming -> ToolExecuting -> Finalizing -> Closed, yielding text as it arrives."""
        if self.state == StreamState.aborted:
            return
        if self.state != StreamState.streaming or self._request is None:
            raise InvalidStateTransition(f"chunks() requires streaming state, got {self.state.value}")
        request = self._request
        prose: list[str] = []
        tool_block: Optional[str] = None
        try:
            if self._crisis:
                reply = crisis_reply(request.lang)
                prose.append(reply)
                yield reply
            else:
                calls: dict[int, _ToolCallBuffer] = {}
                turn_ended = False
                while True:
                    event = await self._next_event()
                    if event is _Signal.ABORT:
                        return
                    if event is _Signal.END:
                        break
                    if isinstance(event, TextDelta):
                        if event.text:
                            prose.append(event.text)
                            yield event.text
                    elif isinstance(event, ToolCallDelta):
                        calls.setdefault(event.index, _ToolCallBuffer(event.index)).feed(event)
                    elif isinstance(event, TurnEnd):
                        turn_ended = True
                        break
                if not turn_ended:
                    await self._enter_aborted("no_end_of_turn")
                    raise UpstreamError(
                        self.config.provider, self.config.model, "Upstream stream ended before end of turn"
                    )
                await self._stop_pump()
                tool_block = self._run_tool(calls, request)
                if self._abort_requested:
                    await self._enter_aborted("caller_abort")
                    return
                if tool_block:
                    yield tool_block
            await self._finalize(request, "".join(prose) + (tool_block or ""))
        finally:
            if not self.is_terminal and self.state != StreamState.finalizing:
                await self._enter_aborted("consumer_closed")
            await self._stop_pump()

    async def generate(self, request: ConversationRequest) -> AsyncIterator[str]:
        await self.open(request)
        async for chunk in self.chunks():
            yield chunk

    def _run_tool(self, calls: dict[int, _ToolCallBuffer], request: ConversationRequest) -> Optional[str]:
        proposed = [calls[idx] for idx in sorted(calls) if calls[idx].name]
        if not proposed:
            return None
        self._transition(StreamState.tool_executing)
        if len(proposed) > 1:
            self.dropped_tool_calls = len(proposed) - 1
            logger.warning(
                "coach_stream_multiple_tool_calls user_id=%s count=%s executed=%s dropped=%s",
                self.user_id,
                len(proposed),
                proposed[0].name,
                ",".join(call.name for call in proposed[1:]),
            )
        call = proposed[0]
        context = ToolContext(lang=request.lang, user_text=latest_user_text(request.messages))
        try:
            result = self.registry.execute(call.name, call.arguments, context)
            block = encode_tool_block(result)
        except ToolFailure as exc:
            logger.warning("coach_stream_tool_failure user_id=%s tool=%s detail=%s", self.user_id, call.name, str(exc))
            return None
        except (TypeError, ValueError) as exc:
            logger.warning("coach_stream_tool_unserializable user_id=%s tool=%s detail=%s", self.user_id, call.name, str(exc))
            return None
        self.tool_name = call.name
        return block

    async def _finalize(self, request: ConversationRequest, full_text: str) -> None:
        self._transition(StreamState.finalizing)
        if self.log_writer is not None:
            record = ExchangeRecord(
                user_id=self.user_id,
                lang=request.lang,
                user_message=latest_user_text(request.messages),
                assistant_text=full_text,
                tool_name=self.tool_name,
            )
            try:
                await asyncio.to_thread(self.log_writer, record)
            except Exception:
                logger.exception("coach_stream_persist_failed user_id=%s", self.user_id)
        self._transition(StreamState.closed)
