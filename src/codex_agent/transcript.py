"""Append-only conversation transcript replayed in full on every request."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import json
import logging
from typing import Any, Union

from .exceptions import TranscriptError
from .tool_calls import ToolCall

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserText:
    text: str


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class ToolInvocation:
    call_id: str
    name: str
    arguments_json: str


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    output_json: str


ConversationItem = Union[UserText, AssistantText, ToolInvocation, ToolResult]


def render_item(item: ConversationItem) -> dict[str, Any]:
    """Render one item in Responses API ``input`` form."""
    if isinstance(item, UserText):
        return {"role": "user", "content": [{"type": "input_text", "text": item.text}]}
    if isinstance(item, AssistantText):
        return {
            "role": "assistant",
            "content": [{"type": "output_text", "text": item.text}],
        }
    if isinstance(item, ToolInvocation):
        return {
            "type": "function_call",
            "call_id": item.call_id,
            "name": item.name,
            "arguments": item.arguments_json,
        }
    if isinstance(item, ToolResult):
        return {
            "type": "function_call_output",
            "call_id": item.call_id,
            "output": item.output_json,
        }
    raise TypeError(f"Unsupported conversation item: {item!r}")


class Transcript:
    """Ordered conversation items; items are only ever appended.

    Every tool invocation must be answered by exactly one result before the
    transcript is sent again (see :meth:`ensure_balanced`).
    """

    def __init__(self, items: Iterable[ConversationItem] = ()) -> None:
        self._items: list[ConversationItem] = []
        self._open_calls: dict[str, str] = {}
        for item in items:
            self._append(item)

    @classmethod
    def from_messages(cls, messages: Iterable[Mapping[str, Any]]) -> Transcript:
        """Seed a transcript from ``{role, text}`` chat records.

        ``content`` is accepted in place of ``text``; roles other than user
        and assistant, and empty texts, are skipped.
        """
        transcript = cls()
        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            raw = message.get("text", message.get("content", ""))
            text = raw if isinstance(raw, str) else str(raw or "")
            if not text.strip():
                continue
            if role == "user":
                transcript.append_user(text)
            elif role == "assistant":
                transcript.append_assistant(text)
        return transcript

    @property
    def items(self) -> tuple[ConversationItem, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def append_user(self, text: str) -> None:
        self._append(UserText(text=text))

    def append_assistant(self, text: str) -> None:
        self._append(AssistantText(text=text))

    def append_invocation(self, call: ToolCall) -> ToolInvocation:
        arguments_json = call.raw_arguments or json.dumps(
            call.arguments, ensure_ascii=False
        )
        item = ToolInvocation(
            call_id=call.call_id, name=call.name, arguments_json=arguments_json
        )
        self._append(item)
        return item

    def append_result(self, call_id: str, output_json: str) -> ToolResult:
        item = ToolResult(call_id=call_id, output_json=output_json)
        self._append(item)
        return item

    def unanswered_call_ids(self) -> list[str]:
        return list(self._open_calls)

    def ensure_balanced(self) -> None:
        """Raise if any tool invocation still lacks its result."""
        if self._open_calls:
            raise TranscriptError(
                "Tool invocations without results: "
                + ", ".join(sorted(self._open_calls))
            )

    def to_input(self) -> list[dict[str, Any]]:
        """Render the complete transcript (never a delta) for a request body."""
        return [render_item(item) for item in self._items]

    def _append(self, item: ConversationItem) -> None:
        if isinstance(item, ToolInvocation):
            if item.call_id in self._open_calls:
                raise TranscriptError(f"Tool call id {item.call_id!r} is already open.")
            self._open_calls[item.call_id] = item.name
        elif isinstance(item, ToolResult):
            if item.call_id not in self._open_calls:
                raise TranscriptError(
                    f"Tool result for unknown or answered call {item.call_id!r}."
                )
            del self._open_calls[item.call_id]
        self._items.append(item)
