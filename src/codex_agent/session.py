"""Explicit per-session context shared by the agent loop and the token manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .auth import TokenManager
from .client import CodexClient
from .config import load_config
from .credentials import CredentialStore
from .input_broker import InputBroker
from .tooling import ToolRegistry


@dataclass
class AgentSession:
    """Everything one conversation needs; nothing lives in module globals.

    Two sessions never share mutable state, so loops can run side by side.
    """

    config: dict[str, dict[str, Any]]
    token_manager: TokenManager
    client: CodexClient
    registry: ToolRegistry
    input_broker: InputBroker = field(default_factory=InputBroker)
    model: str = ""

    def __post_init__(self) -> None:
        if not self.model:
            self.model = str(self.config["codex"]["model"])

    @property
    def instructions(self) -> str:
        return str(self.config["codex"]["instructions"])

    @property
    def max_iterations(self) -> int:
        return int(self.config["codex"]["max_iterations"])

    def set_model(self, model_name: str) -> None:
        normalized = model_name.strip()
        if normalized:
            self.model = normalized


def create_session(
    config: dict[str, dict[str, Any]] | None = None,
    registry: ToolRegistry | None = None,
    http_client: httpx.AsyncClient | None = None,
    credential_path: str | Path | None = None,
) -> AgentSession:
    """Wire a session from loaded configuration."""
    cfg = config if config is not None else load_config()
    codex_cfg = cfg["codex"]
    oauth_cfg = {**cfg["oauth"], "originator": codex_cfg["originator"]}
    store = CredentialStore(credential_path or oauth_cfg["credential_path"])
    token_manager = TokenManager(oauth_cfg, store, http_client=http_client)
    client = CodexClient(
        endpoint=str(codex_cfg["endpoint"]),
        token_manager=token_manager,
        timeout=float(codex_cfg["timeout_seconds"]),
        originator=str(codex_cfg["originator"]),
        http_client=http_client,
    )
    return AgentSession(
        config=cfg,
        token_manager=token_manager,
        client=client,
        registry=registry if registry is not None else ToolRegistry.from_config(cfg["tools"]),
    )
