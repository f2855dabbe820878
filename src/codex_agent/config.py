"""Configuration loading and validation for the Codex agent loop."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "codex-agent"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

DEFAULT_INSTRUCTIONS = (
    "You are a helpful development assistant with direct access to a set of tools. "
    "Use the tools to inspect and modify the user's project when that helps answer "
    "the request, read before you edit, and explain what you changed."
)

KNOWN_MODELS = [
    "gpt-5.2",
    "gpt-5.1",
    "gpt-5",
    "gpt-5-mini",
    "gpt-5-nano",
    "gpt-4.1",
    "gpt-4o",
    "o3",
    "o4-mini",
]

ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CODEX_AGENT_MODEL": ("codex", "model"),
    "CODEX_AGENT_LOG_LEVEL": ("logging", "level"),
}


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class CodexConfig(BaseModel):
    """Completion endpoint and model settings."""

    endpoint: str = "https://chatgpt.com/backend-api/codex/responses"
    model: str = "gpt-5"
    models: list[str] = Field(default_factory=lambda: list(KNOWN_MODELS))
    instructions: str = DEFAULT_INSTRUCTIONS
    timeout_seconds: int = Field(default=120, ge=1, le=3600)
    max_iterations: int = Field(default=10, ge=1, le=100)
    originator: str = "codex_agent"

    @field_validator("endpoint", "model", "originator", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("instructions", mode="before")
    @classmethod
    def _normalize_instructions(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @field_validator("endpoint")
    @classmethod
    def _validate_endpoint(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
            raise ValueError("codex.endpoint must be an http(s) URL with a hostname.")
        return value

    @field_validator("models", mode="before")
    @classmethod
    def _validate_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("models must be a list of model names.")
        normalized: list[str] = []
        for item in value:
            candidate = _require_string(item)
            if candidate not in normalized:
                normalized.append(candidate)
        return normalized

    @model_validator(mode="after")
    def _include_active_model(self) -> CodexConfig:
        if self.model not in self.models:
            self.models = [self.model, *self.models]
        return self


class OAuthConfig(BaseModel):
    """OAuth client registration and credential storage settings."""

    client_id: str = "app_EMoamEEZ73f0CkXaXp7hrann"
    issuer: str = "https://auth.openai.com"
    redirect_host: str = "localhost"
    redirect_port: int = Field(default=1455, ge=1, le=65535)
    redirect_path: str = "/auth/callback"
    scopes: list[str] = Field(
        default_factory=lambda: ["openid", "profile", "email", "offline_access"]
    )
    refresh_margin_seconds: int = Field(default=300, ge=0, le=86_400)
    login_timeout_seconds: int = Field(default=600, ge=10, le=3600)
    credential_path: str = "~/.local/state/codex-agent/auth.json"

    @field_validator(
        "client_id", "issuer", "redirect_host", "credential_path", mode="before"
    )
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("issuer")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("redirect_path", mode="before")
    @classmethod
    def _validate_redirect_path(cls, value: Any) -> str:
        normalized = _require_string(value)
        if not normalized.startswith("/"):
            normalized = "/" + normalized
        return normalized

    @field_validator("scopes", mode="before")
    @classmethod
    def _validate_scopes(cls, value: Any) -> list[str]:
        if not isinstance(value, list) or not value:
            raise ValueError("scopes must be a non-empty list.")
        return [_require_string(item) for item in value]

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.redirect_host}:{self.redirect_port}{self.redirect_path}"


class ToolsConfig(BaseModel):
    """Limits applied when dispatching tool calls."""

    max_concurrency: int = Field(default=4, ge=1, le=64)
    max_output_lines: int = Field(default=2_000, ge=1, le=100_000)
    max_output_bytes: int = Field(default=100_000, ge=256, le=5_000_000)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/codex-agent/agent.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _require_string(value)


class Config(BaseModel):
    """Root configuration model for all sections."""

    codex: CodexConfig = CodexConfig()
    oauth: OAuthConfig = OAuthConfig()
    tools: ToolsConfig = ToolsConfig()
    logging: LoggingConfig = LoggingConfig()


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _apply_env_overrides(
    raw: dict[str, Any], environ: dict[str, str] | None = None
) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    result = deepcopy(raw)
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = env.get(variable, "").strip()
        if not value:
            continue
        section_data = result.setdefault(section, {})
        if isinstance(section_data, dict):
            section_data[key] = value
            LOGGER.debug(
                "config.env_override",
                extra={"event": "config.env_override", "variable": variable},
            )
    return result


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config, falling back to defaults for invalid sections."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc

    # Keep every section that validates on its own; reset the rest.
    validated = _safe_default_config()
    for name, field_info in Config.model_fields.items():
        section = raw.get(name)
        if not isinstance(section, dict):
            continue
        try:
            model = field_info.annotation.model_validate(section)  # type: ignore[union-attr]
        except ValidationError:
            continue
        validated[name] = model.model_dump()
    return validated


def load_config(
    config_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults and env overrides, and validate.

    The optional ``config_path`` and ``environ`` arguments are intended for tests
    and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (
            Exception
        ) as exc:  # noqa: BLE001 - we must not crash on invalid user config.
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config()
    )
    return _validate_config(_apply_env_overrides(merged, environ))


def build_config(data: dict[str, Any] | None = None) -> Config:
    """Return a typed ``Config`` from a (possibly partial) plain mapping."""
    merged = _deep_merge(DEFAULT_CONFIG, data or {})
    try:
        return Config.model_validate(merged)
    except ValidationError as exc:
        raise ConfigValidationError(f"Invalid configuration: {exc}") from exc
