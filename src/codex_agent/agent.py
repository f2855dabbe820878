"""Agentic request/stream/execute loop over the stateless Responses endpoint."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable, Mapping
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
import inspect
import logging
from typing import Any, Literal, TypeVar

from .exceptions import CodexAgentError, CodexStreamError, RunCancelledError
from .session import AgentSession
from .stream_events import (
    ItemDone,
    ResponseFailed,
    SSEParser,
    StreamEvent,
    TextDelta,
    UnknownEvent,
    aiter_events,
)
from .tool_calls import ToolCall, ToolCallAccumulator
from .tooling import AwaitingInput, ToolOutcome, error_outcome
from .transcript import Transcript

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ITERATION_LIMIT_ADVISORY = (
    "\n\n[Stopped after reaching the maximum of {limit} tool iterations.]"
)
_STREAM_QUEUE_SIZE = 256


class LoopState(str, Enum):
    SENDING = "sending"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_INPUT = "awaiting_input"
    DONE = "done"
    ERROR = "error"


class CancellationHandle:
    """Cooperative cancellation for one agent run.

    Network reads, tool batches and input waits are raced against the handle;
    whichever loses is cancelled so resources are released promptly.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class AgentResult:
    """Terminal outcome of a run; ``text`` is never retracted by ``error``."""

    text: str
    iterations: int
    tool_calls: int
    reached_iteration_limit: bool
    transcript: Transcript
    error: CodexAgentError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AgentEvent:
    """A single typed notification yielded while an agent run progresses."""

    kind: Literal["text", "tool_call", "tool_result", "awaiting_input", "done", "error"]
    text: str = ""
    call_id: str = ""
    tool_name: str = ""
    tool_args: dict[str, Any] = field(default_factory=dict)
    tool_result: Any = None
    correlation_id: str = ""
    result: AgentResult | None = None
    error: CodexAgentError | None = None


@dataclass
class AgentCallbacks:
    """Optional (sync or async) hooks used by :meth:`AgentLoop.run_to_completion`."""

    on_text: Callable[[str], Any] | None = None
    on_tool_call: Callable[[AgentEvent], Any] | None = None
    on_tool_result: Callable[[AgentEvent], Any] | None = None
    # Must eventually call ``session.input_broker.resolve``; without a handler
    # paused calls are answered with an error outcome.
    on_awaiting_input: Callable[[AgentEvent], Any] | None = None


@dataclass
class _StreamEnd:
    pass


@dataclass
class _StreamFailure:
    exc: BaseException


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class AgentLoop:
    """Drive SENDING → STREAMING → (EXECUTING_TOOLS → SENDING) | DONE | ERROR."""

    def __init__(self, session: AgentSession, max_iterations: int | None = None) -> None:
        self.session = session
        self.max_iterations = max(1, max_iterations or session.max_iterations)
        self.state = LoopState.DONE
        self.iterations = 0

    def _transition(self, new_state: LoopState, iteration: int) -> None:
        LOGGER.debug(
            "agent.state.transition",
            extra={
                "event": "agent.state.transition",
                "from_state": self.state.value,
                "to_state": new_state.value,
                "iteration": iteration,
            },
        )
        self.state = new_state

    def build_request(self, transcript: Transcript) -> dict[str, Any]:
        tools = self.session.registry.build_tools_list()
        body: dict[str, Any] = {
            "model": self.session.model,
            "instructions": self.session.instructions,
            "input": transcript.to_input(),
            "tools": tools,
            "stream": True,
            "store": False,
        }
        if tools:
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = True
        return body

    async def _race(self, awaitable: Awaitable[T], cancel: CancellationHandle) -> T:
        """Await ``awaitable`` unless ``cancel`` fires first."""
        if cancel.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelledError("Agent run cancelled")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelledError("Agent run cancelled")

    async def _pump(
        self, body: dict[str, Any], queue: asyncio.Queue[Any]
    ) -> None:
        """Own the HTTP stream for one turn and feed decoded events into ``queue``."""
        parser = SSEParser()
        chunks = self.session.client.stream_response(body)
        try:
            try:
                async with aclosing(aiter_events(chunks, parser)) as events:
                    async for event in events:
                        await queue.put(event)
            finally:
                await chunks.aclose()
        except Exception as exc:  # noqa: BLE001 - re-raised by the consumer.
            await queue.put(_StreamFailure(exc))
            return
        if parser.skipped_frames:
            LOGGER.info(
                "agent.stream.frames_skipped",
                extra={
                    "event": "agent.stream.frames_skipped",
                    "count": parser.skipped_frames,
                },
            )
        await queue.put(_StreamEnd())

    async def _stream_turn(
        self, body: dict[str, Any], cancel: CancellationHandle
    ) -> AsyncGenerator[StreamEvent, None]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=_STREAM_QUEUE_SIZE)
        pump = asyncio.create_task(self._pump(body, queue))
        try:
            while True:
                item = await self._race(queue.get(), cancel)
                if isinstance(item, _StreamEnd):
                    return
                if isinstance(item, _StreamFailure):
                    raise item.exc
                yield item
        finally:
            if not pump.done():
                pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def run(
        self,
        messages: Iterable[Mapping[str, Any]] | Transcript,
        cancel: CancellationHandle | None = None,
    ) -> AsyncGenerator[AgentEvent, None]:
        """Run the loop, yielding typed events; the last event is ``done`` or ``error``.

        ``messages`` are prior ``{role, text}`` chat records (the last one is
        normally the new user prompt) or an existing transcript to continue.
        """
        transcript = (
            messages
            if isinstance(messages, Transcript)
            else Transcript.from_messages(messages)
        )
        handle = cancel or CancellationHandle()
        text_parts: list[str] = []
        iterations = 0
        tool_call_count = 0
        limit_reached = False

        def _result(error: CodexAgentError | None = None) -> AgentResult:
            return AgentResult(
                text="".join(text_parts),
                iterations=iterations,
                tool_calls=tool_call_count,
                reached_iteration_limit=limit_reached,
                transcript=transcript,
                error=error,
            )

        try:
            while True:
                self._transition(LoopState.SENDING, iterations + 1)
                transcript.ensure_balanced()
                if handle.cancelled:
                    raise RunCancelledError("Agent run cancelled")
                iterations += 1
                self.iterations = iterations
                body = self.build_request(transcript)
                LOGGER.info(
                    "agent.request",
                    extra={
                        "event": "agent.request",
                        "iteration": iterations,
                        "model": self.session.model,
                        "input_items": len(transcript),
                    },
                )

                self._transition(LoopState.STREAMING, iterations)
                accumulator = ToolCallAccumulator()
                turn_text: list[str] = []
                streamed_items: set[str] = set()
                async with aclosing(self._stream_turn(body, handle)) as stream:
                    async for event in stream:
                        if isinstance(event, TextDelta):
                            if not event.delta:
                                continue
                            streamed_items.add(event.item_id)
                            turn_text.append(event.delta)
                            text_parts.append(event.delta)
                            yield AgentEvent(kind="text", text=event.delta)
                        elif isinstance(event, ItemDone):
                            # Finalized text is only used for items that were not streamed.
                            # Deltas without an item id cover every item of the turn.
                            if (
                                event.item_id in streamed_items
                                or "" in streamed_items
                                or (not event.item_id and streamed_items)
                            ):
                                continue
                            for text in event.texts:
                                turn_text.append(text)
                                text_parts.append(text)
                                yield AgentEvent(kind="text", text=text)
                        elif isinstance(event, ResponseFailed):
                            raise CodexStreamError(event.message)
                        elif isinstance(event, UnknownEvent):
                            continue
                        else:
                            accumulator.handle(event)

                calls = list(accumulator.finalized)
                if accumulator.pending:
                    LOGGER.warning(
                        "agent.tool_calls.unfinished",
                        extra={
                            "event": "agent.tool_calls.unfinished",
                            "count": len(accumulator.pending),
                        },
                    )
                if turn_text:
                    transcript.append_assistant("".join(turn_text))
                if not calls:
                    break

                self._transition(LoopState.EXECUTING_TOOLS, iterations)
                tool_call_count += len(calls)
                async with aclosing(
                    self._execute_tools(calls, transcript, handle)
                ) as tool_events:
                    async for tool_event in tool_events:
                        yield tool_event

                if iterations >= self.max_iterations:
                    limit_reached = True
                    advisory = ITERATION_LIMIT_ADVISORY.format(limit=self.max_iterations)
                    text_parts.append(advisory)
                    LOGGER.warning(
                        "agent.iteration_limit",
                        extra={
                            "event": "agent.iteration_limit",
                            "limit": self.max_iterations,
                        },
                    )
                    yield AgentEvent(kind="text", text=advisory)
                    break
        except CodexAgentError as exc:
            self._transition(LoopState.ERROR, iterations)
            LOGGER.warning(
                "agent.run.failed",
                extra={
                    "event": "agent.run.failed",
                    "iteration": iterations,
                    "error_type": type(exc).__name__,
                },
            )
            result = _result(exc)
            yield AgentEvent(kind="error", text=result.text, error=exc, result=result)
            return
        except asyncio.CancelledError:
            self._transition(LoopState.ERROR, iterations)
            LOGGER.info("agent.run.cancelled", extra={"event": "agent.run.cancelled"})
            raise

        self._transition(LoopState.DONE, iterations)
        result = _result()
        LOGGER.info(
            "agent.run.completed",
            extra={
                "event": "agent.run.completed",
                "iterations": iterations,
                "tool_calls": tool_call_count,
                "reached_iteration_limit": limit_reached,
            },
        )
        yield AgentEvent(kind="done", text=result.text, result=result)

    async def _execute_tools(
        self,
        calls: list[ToolCall],
        transcript: Transcript,
        cancel: CancellationHandle,
    ) -> AsyncGenerator[AgentEvent, None]:
        registry = self.session.registry
        for call in calls:
            LOGGER.info(
                "agent.tool.call",
                extra={"event": "agent.tool.call", "tool": call.name, "call_id": call.call_id},
            )
            yield AgentEvent(
                kind="tool_call",
                call_id=call.call_id,
                tool_name=call.name,
                tool_args=call.arguments,
            )

        outcomes = await self._race(registry.execute_many(calls), cancel)

        # Resolve in emission order; paused calls suspend the loop one at a time.
        for call, outcome in zip(calls, outcomes):
            resolved: ToolOutcome = outcome
            if isinstance(outcome, AwaitingInput):
                self._transition(LoopState.AWAITING_INPUT, self.iterations)
                self.session.input_broker.open(outcome.correlation_id)
                yield AgentEvent(
                    kind="awaiting_input",
                    call_id=call.call_id,
                    tool_name=call.name,
                    tool_args=call.arguments,
                    text=outcome.prompt,
                    tool_result=outcome.payload,
                    correlation_id=outcome.correlation_id,
                )
                resolved = await self._race(
                    self.session.input_broker.wait(outcome.correlation_id), cancel
                )
                self._transition(LoopState.EXECUTING_TOOLS, self.iterations)
            transcript.append_invocation(call)
            transcript.append_result(call.call_id, registry.serialize_outcome(resolved))
            yield AgentEvent(
                kind="tool_result",
                call_id=call.call_id,
                tool_name=call.name,
                tool_args=call.arguments,
                tool_result=resolved,
            )

    async def run_to_completion(
        self,
        messages: Iterable[Mapping[str, Any]] | Transcript,
        callbacks: AgentCallbacks | None = None,
        cancel: CancellationHandle | None = None,
    ) -> AgentResult:
        """Drive :meth:`run` to its terminal event, dispatching to callbacks."""
        hooks = callbacks or AgentCallbacks()
        final: AgentResult | None = None
        async for event in self.run(messages, cancel=cancel):
            if event.kind == "text" and hooks.on_text is not None:
                await _maybe_await(hooks.on_text(event.text))
            elif event.kind == "tool_call" and hooks.on_tool_call is not None:
                await _maybe_await(hooks.on_tool_call(event))
            elif event.kind == "tool_result" and hooks.on_tool_result is not None:
                await _maybe_await(hooks.on_tool_result(event))
            elif event.kind == "awaiting_input":
                if hooks.on_awaiting_input is not None:
                    await _maybe_await(hooks.on_awaiting_input(event))
                else:
                    self.session.input_broker.resolve(
                        event.correlation_id,
                        error_outcome("No input handler is available to answer this request."),
                    )
            elif event.kind in ("done", "error"):
                final = event.result
        if final is None:
            raise RuntimeError("Agent run ended without a terminal event.")
        return final
