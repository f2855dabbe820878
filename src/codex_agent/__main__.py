"""CLI entrypoint for codex-agent."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
import sys
import webbrowser

from .agent import AgentCallbacks, AgentLoop
from .config import ensure_config_dir, load_config
from .exceptions import AuthError, CodexAgentError
from .logging_utils import configure_logging
from .oauth_callback import CallbackListener, parse_callback_url
from .session import AgentSession, create_session
from .tooling import ToolRegistry


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-agent",
        description="codex-agent - tool-using agent loop over ChatGPT Plus/Pro",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an alternative config.toml",
    )
    subparsers = parser.add_subparsers(dest="command")

    login = subparsers.add_parser("login", help="Sign in with a ChatGPT account")
    login.add_argument(
        "--manual",
        action="store_true",
        help="Paste the redirect URL instead of running the local callback server",
    )
    login.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the sign-in URL without opening a browser",
    )

    subparsers.add_parser("logout", help="Forget the stored credential")
    subparsers.add_parser("status", help="Show authentication state")

    ask = subparsers.add_parser("ask", help="Run one agent loop for PROMPT")
    ask.add_argument("prompt", help="User prompt")
    ask.add_argument("--model", default=None, help="Model id for this run")
    ask.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override the configured tool iteration ceiling",
    )

    subparsers.add_parser("models", help="List configured model ids")
    return parser


def _print_version() -> None:
    try:
        version = metadata.version("codex-agent")
    except metadata.PackageNotFoundError:
        version = "0.0.0"
    print(f"codex-agent {version}")


async def _login(session: AgentSession, manual: bool, open_browser: bool) -> int:
    manager = session.token_manager
    oauth_cfg = session.config["oauth"]
    request = manager.start_login()
    print("Open this URL to sign in:\n")
    print(request.url)
    print()

    if manual:
        if open_browser:
            webbrowser.open(request.url)
        pasted = input("Paste the full redirect URL here: ")
        code, state = parse_callback_url(pasted)
    else:
        host = str(oauth_cfg["redirect_host"])
        port = int(oauth_cfg["redirect_port"])
        listener = CallbackListener(host, port, str(oauth_cfg["redirect_path"]))
        try:
            listener.start()
        except OSError as exc:
            manager.cancel_login()
            print(
                f"Could not listen for the sign-in callback on {host}:{port} ({exc}).\n"
                "Run `codex-agent login --manual` to paste the redirect URL instead.",
                file=sys.stderr,
            )
            return 1
        try:
            if open_browser:
                webbrowser.open(request.url)
            print("Waiting for the browser to complete sign-in...")
            code, state = await listener.wait(
                timeout=float(oauth_cfg["login_timeout_seconds"])
            )
        finally:
            listener.stop()

    credential = await manager.handle_callback(code, state)
    account = credential.account_id or "unknown account"
    print(f"Signed in ({account}).")
    return 0


def _status(session: AgentSession) -> int:
    credential = session.token_manager.current_credential()
    if credential is None:
        print("Not signed in.")
        return 1
    expires = datetime.fromtimestamp(credential.expires / 1000, tz=timezone.utc)
    print("Signed in.")
    print(f"  account: {credential.account_id or 'unknown'}")
    print(f"  access token expires: {expires.isoformat(timespec='seconds')}")
    return 0


async def _ask(session: AgentSession, prompt: str, max_iterations: int | None) -> int:
    loop = AgentLoop(session, max_iterations=max_iterations)

    def _write(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    result = await loop.run_to_completion(
        [{"role": "user", "text": prompt}],
        callbacks=AgentCallbacks(on_text=_write),
    )
    sys.stdout.write("\n")
    if result.error is not None:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, configure logging, and dispatch a subcommand."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        _print_version()
        return 0
    if args.command is None:
        parser.print_help()
        return 2

    if args.config is None:
        ensure_config_dir()
    config = load_config(config_path=args.config)
    configure_logging(config["logging"])

    if args.command == "models":
        active = config["codex"]["model"]
        for model_name in config["codex"]["models"]:
            marker = "*" if model_name == active else " "
            print(f"{marker} {model_name}")
        return 0

    # The CLI does not expose local tools; callers embed the library for that.
    session = create_session(config, registry=ToolRegistry.from_config(config["tools"]))

    try:
        if args.command == "login":
            return asyncio.run(
                _login(session, manual=args.manual, open_browser=not args.no_browser)
            )
        if args.command == "logout":
            session.token_manager.logout()
            print("Signed out.")
            return 0
        if args.command == "status":
            return _status(session)
        if args.command == "ask":
            if args.model:
                session.set_model(args.model)
            return asyncio.run(_ask(session, args.prompt, args.max_iterations))
    except AuthError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return 1
    except CodexAgentError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    parser.error(f"unknown command {args.command!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
