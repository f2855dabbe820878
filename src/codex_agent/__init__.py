"""Top-level package for codex-agent."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .agent import AgentCallbacks, AgentEvent, AgentLoop, AgentResult, CancellationHandle
    from .auth import TokenManager
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        AuthError,
        CodexAgentError,
        CodexHTTPError,
        CodexStreamError,
        CodexTransportError,
        ConfigValidationError,
        NotAuthenticatedError,
        RunCancelledError,
    )
    from .session import AgentSession, create_session
    from .tooling import AwaitingInput, ToolRegistry
    from .transcript import Transcript

__all__ = [
    "AgentCallbacks",
    "AgentEvent",
    "AgentLoop",
    "AgentResult",
    "AgentSession",
    "AuthError",
    "AwaitingInput",
    "CancellationHandle",
    "CodexAgentError",
    "CodexHTTPError",
    "CodexStreamError",
    "CodexTransportError",
    "ConfigValidationError",
    "NotAuthenticatedError",
    "RunCancelledError",
    "TokenManager",
    "ToolRegistry",
    "Transcript",
    "create_session",
    "ensure_config_dir",
    "load_config",
]

_EXCEPTION_NAMES = {
    "AuthError",
    "CodexAgentError",
    "CodexHTTPError",
    "CodexStreamError",
    "CodexTransportError",
    "ConfigValidationError",
    "NotAuthenticatedError",
    "RunCancelledError",
}
_AGENT_NAMES = {
    "AgentCallbacks",
    "AgentEvent",
    "AgentLoop",
    "AgentResult",
    "CancellationHandle",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package stays cheap."""
    if name in _AGENT_NAMES:
        from . import agent

        return getattr(agent, name)
    if name in {"AgentSession", "create_session"}:
        from . import session

        return getattr(session, name)
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in _EXCEPTION_NAMES:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"AwaitingInput", "ToolRegistry"}:
        from . import tooling

        return getattr(tooling, name)
    if name == "TokenManager":
        from .auth import TokenManager

        return TokenManager
    if name == "Transcript":
        from .transcript import Transcript

        return Transcript
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
