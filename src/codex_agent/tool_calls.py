"""Reassembly of streamed tool-call argument fragments into finalized calls."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any

from .stream_events import StreamEvent, ToolCallArgumentsDelta, ToolCallDone, ToolCallOpened

LOGGER = logging.getLogger(__name__)


@dataclass
class PendingToolCall:
    """A tool call whose arguments are still streaming in."""

    item_id: str
    call_id: str
    name: str
    buffer: str = ""


@dataclass(frozen=True)
class ToolCall:
    """A finalized tool call, ready to execute."""

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode a tool argument payload, defaulting to ``{}`` on any failure.

    Malformed arguments still reach the tool so that it can report its own
    validation error to the model.
    """
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        LOGGER.warning(
            "tool_calls.arguments.invalid_json",
            extra={"event": "tool_calls.arguments.invalid_json", "length": len(raw)},
        )
        return {}
    if not isinstance(parsed, dict):
        return {}
    return parsed


class ToolCallAccumulator:
    """Collect tool-call events for one streaming turn."""

    def __init__(self) -> None:
        self._pending: dict[str, PendingToolCall] = {}
        self._finalized_ids: set[str] = set()
        self.finalized: list[ToolCall] = []

    @property
    def pending(self) -> list[PendingToolCall]:
        return list(self._pending.values())

    def buffer_for(self, item_id: str) -> str | None:
        entry = self._pending.get(item_id)
        return entry.buffer if entry is not None else None

    def reset(self) -> None:
        self._pending.clear()
        self._finalized_ids.clear()
        self.finalized = []

    def handle(self, event: StreamEvent) -> ToolCall | None:
        """Apply one stream event; return the call it finalized, if any."""
        if isinstance(event, ToolCallOpened):
            self._open(event)
        elif isinstance(event, ToolCallArgumentsDelta):
            self._append(event)
        elif isinstance(event, ToolCallDone):
            return self._finalize(event)
        return None

    def _open(self, event: ToolCallOpened) -> None:
        if event.item_id in self._pending or event.item_id in self._finalized_ids:
            LOGGER.warning(
                "tool_calls.duplicate_open",
                extra={"event": "tool_calls.duplicate_open", "item_id": event.item_id},
            )
            return
        self._pending[event.item_id] = PendingToolCall(
            item_id=event.item_id,
            call_id=event.call_id or event.item_id,
            name=event.name,
        )

    def _append(self, event: ToolCallArgumentsDelta) -> None:
        entry = self._pending.get(event.item_id)
        if entry is None:
            if event.item_id in self._finalized_ids:
                return
            LOGGER.debug(
                "tool_calls.delta.unopened",
                extra={"event": "tool_calls.delta.unopened", "item_id": event.item_id},
            )
            entry = PendingToolCall(
                item_id=event.item_id, call_id=event.item_id, name=""
            )
            self._pending[event.item_id] = entry
        entry.buffer += event.delta

    def _finalize(self, event: ToolCallDone) -> ToolCall | None:
        if event.item_id in self._finalized_ids:
            return None
        entry = self._pending.pop(event.item_id, None)
        raw = event.arguments
        if raw is None:
            raw = entry.buffer if entry is not None else ""
        name = event.name or (entry.name if entry is not None else "")
        call_id = event.call_id or (entry.call_id if entry is not None else event.item_id)
        call = ToolCall(
            call_id=call_id,
            name=name,
            arguments=parse_arguments(raw),
            raw_arguments=raw,
        )
        self._finalized_ids.add(event.item_id)
        self.finalized.append(call)
        LOGGER.debug(
            "tool_calls.finalized",
            extra={"event": "tool_calls.finalized", "tool": name, "call_id": call_id},
        )
        return call
