"""Incremental SSE decoding into typed Responses API stream events.

The completion endpoint answers with ``data: <json>`` lines. Bytes arrive at
arbitrary boundaries, so the parser keeps a rolling text buffer and only
decodes complete lines. Every payload is validated at this boundary and turned
into one member of a closed set of event dataclasses; anything unrecognised
becomes an :class:`UnknownEvent` instead of leaking raw dicts downstream.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
import codecs
from dataclasses import dataclass, field
import json
import logging
from typing import Any, Union

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

TEXT_DELTA = "response.output_text.delta"
OUTPUT_ITEM_ADDED = "response.output_item.added"
OUTPUT_ITEM_DONE = "response.output_item.done"
ARGUMENTS_DELTA = "response.function_call_arguments.delta"
ARGUMENTS_DONE = "response.function_call_arguments.done"
RESPONSE_COMPLETED = "response.completed"
FAILURE_TYPES = frozenset({"response.failed", "response.incomplete", "error"})


@dataclass(frozen=True)
class TextDelta:
    delta: str
    item_id: str = ""
    type: str = TEXT_DELTA


@dataclass(frozen=True)
class ToolCallOpened:
    item_id: str
    call_id: str
    name: str
    type: str = OUTPUT_ITEM_ADDED


@dataclass(frozen=True)
class ToolCallArgumentsDelta:
    item_id: str
    delta: str
    type: str = ARGUMENTS_DELTA


@dataclass(frozen=True)
class ToolCallDone:
    """A finalized tool call; ``arguments`` is None when the event carried none."""

    item_id: str
    call_id: str
    name: str
    arguments: str | None
    type: str = OUTPUT_ITEM_DONE


@dataclass(frozen=True)
class ItemDone:
    """A completed non-tool output item with its finalized text parts."""

    texts: tuple[str, ...]
    item_id: str = ""
    type: str = OUTPUT_ITEM_DONE


@dataclass(frozen=True)
class ResponseCompleted:
    response_id: str = ""
    type: str = RESPONSE_COMPLETED


@dataclass(frozen=True)
class ResponseFailed:
    message: str
    type: str = "response.failed"


@dataclass(frozen=True)
class UnknownEvent:
    type: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


StreamEvent = Union[
    TextDelta,
    ToolCallOpened,
    ToolCallArgumentsDelta,
    ToolCallDone,
    ItemDone,
    ResponseCompleted,
    ResponseFailed,
    UnknownEvent,
]


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _first_str(mapping: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _is_function_call_item(item: dict[str, Any]) -> bool:
    item_type = item.get("type")
    if item_type is not None:
        return item_type == "function_call"
    return bool(_str(item.get("name")))


def _tool_call_done_from_item(item: dict[str, Any]) -> ToolCallDone:
    item_id = _first_str(item, "id", "call_id")
    arguments = item.get("arguments")
    return ToolCallDone(
        item_id=item_id,
        call_id=_first_str(item, "call_id", "id"),
        name=_str(item.get("name")),
        arguments=arguments if isinstance(arguments, str) else None,
    )


def _item_texts(item: dict[str, Any]) -> tuple[str, ...]:
    content = item.get("content")
    if not isinstance(content, list):
        return ()
    texts: list[str] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "output_text":
            text = part.get("text")
            if isinstance(text, str) and text:
                texts.append(text)
    return tuple(texts)


def _failure_message(payload: dict[str, Any]) -> str:
    candidates: list[Any] = [payload.get("error"), payload.get("message")]
    response = payload.get("response")
    if isinstance(response, dict):
        candidates.insert(0, response.get("error"))
        details = response.get("incomplete_details")
        if isinstance(details, dict):
            candidates.append(details.get("reason"))
    for candidate in candidates:
        if isinstance(candidate, dict):
            message = _first_str(candidate, "message", "code")
            if message:
                return message
        elif isinstance(candidate, str) and candidate:
            return candidate
    return str(payload.get("type", "stream failure"))


def parse_event(payload: dict[str, Any]) -> StreamEvent:
    """Map one decoded JSON payload onto the stream event union."""
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        return UnknownEvent(type="", payload=payload)

    if event_type == TEXT_DELTA:
        delta = payload.get("delta")
        if isinstance(delta, str):
            return TextDelta(delta=delta, item_id=_str(payload.get("item_id")))

    elif event_type == OUTPUT_ITEM_ADDED:
        item = payload.get("item")
        if isinstance(item, dict) and _is_function_call_item(item):
            item_id = _first_str(item, "id", "call_id")
            if item_id:
                return ToolCallOpened(
                    item_id=item_id,
                    call_id=_first_str(item, "call_id", "id"),
                    name=_str(item.get("name")),
                )

    elif event_type == ARGUMENTS_DELTA:
        item_id = _first_str(payload, "item_id", "call_id", "callId")
        delta = payload.get("delta")
        if item_id and isinstance(delta, str):
            return ToolCallArgumentsDelta(item_id=item_id, delta=delta)

    elif event_type == ARGUMENTS_DONE:
        item_id = _first_str(payload, "item_id", "call_id", "callId")
        arguments = payload.get("arguments")
        if item_id:
            return ToolCallDone(
                item_id=item_id,
                call_id=_first_str(payload, "call_id", "callId"),
                name=_str(payload.get("name")),
                arguments=arguments if isinstance(arguments, str) else None,
                type=ARGUMENTS_DONE,
            )

    elif event_type == OUTPUT_ITEM_DONE:
        item = payload.get("item")
        if isinstance(item, dict):
            if _is_function_call_item(item):
                done = _tool_call_done_from_item(item)
                if done.item_id:
                    return done
            else:
                return ItemDone(texts=_item_texts(item), item_id=_str(item.get("id")))

    elif event_type == RESPONSE_COMPLETED:
        response = payload.get("response")
        response_id = _str(response.get("id")) if isinstance(response, dict) else ""
        return ResponseCompleted(response_id=response_id)

    elif event_type in FAILURE_TYPES:
        return ResponseFailed(message=_failure_message(payload), type=event_type)

    return UnknownEvent(type=event_type, payload=payload)


class SSEParser:
    """Turn arbitrarily split byte chunks into stream events.

    Only complete lines are decoded; the trailing partial line is kept until
    the next ``feed`` call. ``close`` discards an unterminated last line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.skipped_frames = 0

    @property
    def buffered(self) -> str:
        """Return the incomplete trailing line held for the next chunk."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            event = self._parse_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def close(self) -> list[StreamEvent]:
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer.strip():
            LOGGER.debug(
                "stream.partial_line.discarded",
                extra={
                    "event": "stream.partial_line.discarded",
                    "length": len(self._buffer),
                },
            )
        self._buffer = ""
        return []

    def _parse_line(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return None
        try:
            payload = json.loads(data)
        except ValueError:
            self._skip("invalid_json")
            return None
        if not isinstance(payload, dict):
            self._skip("not_an_object")
            return None
        return parse_event(payload)

    def _skip(self, reason: str) -> None:
        self.skipped_frames += 1
        LOGGER.debug(
            "stream.frame.skipped",
            extra={"event": "stream.frame.skipped", "reason": reason},
        )


async def aiter_events(
    chunks: AsyncIterable[bytes], parser: SSEParser | None = None
) -> AsyncIterator[StreamEvent]:
    """Drive an :class:`SSEParser` over an async byte source.

    Stops at the ``[DONE]`` sentinel; pass ``parser`` to inspect its counters
    afterwards.
    """
    parser = parser if parser is not None else SSEParser()
    async for chunk in chunks:
        for event in parser.feed(chunk):
            yield event
        if parser.done:
            return
    for event in parser.close():
        yield event
