"""Tool registry for agent-loop tool calling."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from inspect import Parameter, iscoroutinefunction, isawaitable, signature
import json
import logging
from typing import Any, Union
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from .exceptions import ToolRegistrationError
from .tool_calls import ToolCall

LOGGER = logging.getLogger(__name__)

ToolExecutor = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class AwaitingInput:
    """Tool outcome asking the loop to pause until a human resolves it.

    The registry fills in ``correlation_id`` when the executor leaves it empty.
    """

    prompt: str
    payload: dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""


ToolOutcome = Union[dict[str, Any], list[Any], str, int, float, bool, None, AwaitingInput]


@dataclass(frozen=True)
class ToolDescriptor:
    """A named, schema-described capability the model may invoke."""

    name: str
    description: str
    input_schema: dict[str, Any]
    executor: ToolExecutor
    params_model: type[BaseModel] | None = None

    def as_responses_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema,
            "strict": False,
        }


def error_outcome(message: str) -> dict[str, str]:
    return {"error": message}


def _truncate_output(text: str, max_lines: int, max_bytes: int) -> tuple[str, bool]:
    """Apply deterministic truncation by byte and line limits."""
    truncated = False
    result = text

    if max_bytes > 0:
        encoded = result.encode("utf-8", errors="ignore")
        if len(encoded) > max_bytes:
            truncated = True
            clipped = encoded[:max_bytes]
            result = clipped.decode("utf-8", errors="ignore")
            result += "\n... [truncated by byte limit]"

    if max_lines > 0:
        lines = result.splitlines()
        if len(lines) > max_lines:
            truncated = True
            result = "\n".join(lines[:max_lines] + ["... [truncated by line limit]"])

    return result, truncated


def _annotation_to_json_type(annotation: Any) -> str:
    if annotation is Parameter.empty:
        return "string"
    ann_str = str(annotation).lower()
    # Containers first so that e.g. ``list[int]`` is not mistaken for an int.
    if "list" in ann_str or "sequence" in ann_str:
        return "array"
    if "dict" in ann_str or "mapping" in ann_str:
        return "object"
    if "bool" in ann_str:
        return "boolean"
    if "int" in ann_str:
        return "integer"
    if "float" in ann_str or "number" in ann_str:
        return "number"
    return "string"


def schema_from_signature(fn: Callable[..., Any]) -> dict[str, Any]:
    """Build a JSON schema for ``fn``'s keyword parameters by introspection."""
    params: dict[str, Any] = {
        "type": "object",
        "properties": {},
        "required": [],
        "additionalProperties": False,
    }
    for param_name, param in signature(fn).parameters.items():
        if param_name in ("self", "cls") or param.kind in (
            Parameter.VAR_POSITIONAL,
            Parameter.VAR_KEYWORD,
        ):
            continue
        params["properties"][param_name] = {
            "type": _annotation_to_json_type(param.annotation),
            "description": param_name,
        }
        if param.default is Parameter.empty:
            params["required"].append(param_name)
    return params


class ToolRegistry:
    """Registry of tools available to the model during an agent loop."""

    def __init__(
        self,
        max_concurrency: int = 4,
        max_output_lines: int = 2_000,
        max_output_bytes: int = 100_000,
    ) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self.max_concurrency = max(1, max_concurrency)
        self.max_output_lines = max_output_lines
        self.max_output_bytes = max_output_bytes

    @classmethod
    def from_config(cls, tools_config: dict[str, Any]) -> ToolRegistry:
        return cls(
            max_concurrency=int(tools_config.get("max_concurrency", 4)),
            max_output_lines=int(tools_config.get("max_output_lines", 2_000)),
            max_output_bytes=int(tools_config.get("max_output_bytes", 100_000)),
        )

    def register(self, descriptor: ToolDescriptor) -> None:
        """Register a descriptor; names are registered once and never replaced."""
        name = descriptor.name.strip()
        if not name:
            raise ToolRegistrationError("Tool name must not be empty.")
        if name in self._tools:
            raise ToolRegistrationError(f"Tool {name!r} is already registered.")
        self._tools[name] = descriptor
        LOGGER.debug(
            "tools.registered",
            extra={"event": "tools.registered", "tool": name},
        )

    def register_function(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
    ) -> ToolDescriptor:
        """Register a plain (sync or async) function called with keyword arguments.

        The function name is used as the tool name unless ``name`` is given.
        """
        tool_name = name or fn.__name__

        if iscoroutinefunction(fn):

            async def executor(args: dict[str, Any]) -> Any:
                return await fn(**args)

        else:

            def executor(args: dict[str, Any]) -> Any:
                return fn(**args)

        descriptor = ToolDescriptor(
            name=tool_name,
            description=(description or fn.__doc__ or tool_name).strip(),
            input_schema=schema_from_signature(fn),
            executor=executor,
        )
        self.register(descriptor)
        return descriptor

    def register_model(
        self,
        name: str,
        description: str,
        params_model: type[BaseModel],
        executor: Callable[[Any], Any],
    ) -> ToolDescriptor:
        """Register a tool whose arguments are validated by a pydantic model.

        ``executor`` receives the validated model instance.
        """
        descriptor = ToolDescriptor(
            name=name,
            description=description,
            input_schema=params_model.model_json_schema(),
            executor=executor,
            params_model=params_model,
        )
        self.register(descriptor)
        return descriptor

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def list_tool_names(self) -> list[str]:
        return sorted(self._tools)

    @property
    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    @property
    def is_empty(self) -> bool:
        """Return True when no tools are registered."""
        return not self._tools

    def build_tools_list(self) -> list[dict[str, Any]]:
        """Return Responses-API tool schemas in registration order."""
        return [descriptor.as_responses_tool() for descriptor in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolOutcome:
        """Execute a named tool and return its outcome.

        Never raises for unknown tools or failing executors: both become an
        ``{"error": ...}`` outcome that is fed back to the model. Sync
        executors run in a worker thread so they cannot block the event loop.
        """
        descriptor = self._tools.get(name)
        if descriptor is None:
            LOGGER.warning(
                "tools.unknown",
                extra={"event": "tools.unknown", "tool": name},
            )
            return error_outcome(f"Unknown tool: {name}")

        call_arg: Any = arguments
        if descriptor.params_model is not None:
            try:
                call_arg = descriptor.params_model.model_validate(arguments)
            except ValidationError as exc:
                return error_outcome(f"Invalid arguments for {name}: {exc}")

        try:
            if iscoroutinefunction(descriptor.executor):
                result = await descriptor.executor(call_arg)
            else:
                result = await asyncio.to_thread(descriptor.executor, call_arg)
                if isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - tool functions can fail arbitrarily.
            LOGGER.warning(
                "tools.execute.failed",
                extra={
                    "event": "tools.execute.failed",
                    "tool": name,
                    "error_type": type(exc).__name__,
                },
            )
            return error_outcome(str(exc))

        if isinstance(result, AwaitingInput) and not result.correlation_id:
            result.correlation_id = uuid4().hex
        return result

    async def execute_many(self, calls: Sequence[ToolCall]) -> list[ToolOutcome]:
        """Execute calls concurrently; outcomes keep the calls' original order."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _run(call: ToolCall) -> ToolOutcome:
            async with semaphore:
                return await self.execute(call.name, call.arguments)

        return list(await asyncio.gather(*(_run(call) for call in calls)))

    def serialize_outcome(self, outcome: ToolOutcome) -> str:
        """JSON-encode an outcome for the transcript, applying output limits.

        Over-limit output is clipped as text and wrapped in
        ``{"output": ..., "truncated": true}`` so the result stays valid JSON.
        """
        if isinstance(outcome, AwaitingInput):
            raise TypeError("AwaitingInput must be resolved before serialization.")
        try:
            text = json.dumps(outcome, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as exc:
            text = json.dumps(error_outcome(f"Unserializable tool result: {exc}"))
            outcome = None
        # Plain strings are clipped directly so the line limit sees real lines.
        clipped, truncated = _truncate_output(
            outcome if isinstance(outcome, str) else text,
            max_lines=self.max_output_lines,
            max_bytes=self.max_output_bytes,
        )
        if not truncated:
            return text
        LOGGER.info(
            "tools.output.truncated",
            extra={"event": "tools.output.truncated", "original_bytes": len(text.encode("utf-8"))},
        )
        return json.dumps({"output": clipped, "truncated": True}, ensure_ascii=False)
