"""Loopback listener that receives the OAuth redirect after browser sign-in."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from html import escape
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import logging
import threading
from typing import Any
from urllib.parse import parse_qs, urlparse

from .exceptions import AuthError

LOGGER = logging.getLogger(__name__)

_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>
body {{ font-family: system-ui, sans-serif; display: flex; justify-content: center;
  align-items: center; height: 100vh; margin: 0; background: #fafafa; }}
.card {{ background: white; padding: 2rem; border-radius: 1rem;
  box-shadow: 0 4px 20px rgba(0,0,0,0.1); text-align: center; max-width: 400px; }}
h1 {{ color: {color}; margin-bottom: 0.5rem; }}
p {{ color: #666; }}
</style></head>
<body><div class="card"><h1>{title}</h1><p>{message}</p>
<p>You can close this window now.</p></div></body>
</html>
"""


@dataclass(frozen=True)
class CallbackResult:
    code: str = ""
    state: str = ""
    error: str = ""


def _result_from_query(query: str) -> CallbackResult:
    params = parse_qs(query)

    def first(key: str) -> str:
        values = params.get(key) or [""]
        return values[0].strip()

    error = first("error")
    description = first("error_description")
    if error:
        return CallbackResult(error=f"{error}: {description}" if description else error)
    return CallbackResult(code=first("code"), state=first("state"))


def parse_callback_url(url: str) -> tuple[str, str]:
    """Extract ``(code, state)`` from a redirect URL pasted by the user."""
    result = _result_from_query(urlparse(url.strip()).query)
    if result.error:
        raise AuthError(f"Authorization failed: {result.error}")
    if not result.code or not result.state:
        raise AuthError("Redirect URL is missing the code or state parameter")
    return result.code, result.state


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._send_page(HTTPStatus.NOT_FOUND, "Not Found", "Unknown path.", "#ef4444")
            return
        result = _result_from_query(parsed.query)
        if result.error:
            self._send_page(
                HTTPStatus.OK, "Authentication Failed", escape(result.error), "#ef4444"
            )
        elif not result.code:
            result = CallbackResult(error="missing authorization code")
            self._send_page(
                HTTPStatus.BAD_REQUEST,
                "Authentication Failed",
                "The redirect did not include an authorization code.",
                "#ef4444",
            )
        else:
            self._send_page(
                HTTPStatus.OK, "Authentication Successful!", "Sign-in complete.", "#22c55e"
            )
        self.server.deliver(result)

    def _send_page(self, status: HTTPStatus, title: str, message: str, color: str) -> None:
        body = _PAGE.format(title=title, message=message, color=color).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug(
            "oauth_callback.request",
            extra={"event": "oauth_callback.request", "detail": format % args},
        )


class _CallbackServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], callback_path: str) -> None:
        super().__init__(address, _CallbackHandler)
        self.callback_path = callback_path
        self._lock = threading.Lock()
        self._result: CallbackResult | None = None
        self._received = threading.Event()

    def deliver(self, result: CallbackResult) -> None:
        with self._lock:
            if self._result is None:
                self._result = result
        self._received.set()

    def wait_result(self, timeout: float) -> CallbackResult | None:
        if not self._received.wait(timeout):
            return None
        with self._lock:
            return self._result


class CallbackListener:
    """Serve the redirect path on the loopback interface until one callback arrives.

    Usage::

        with CallbackListener("localhost", 1455, "/auth/callback") as listener:
            code, state = await listener.wait(timeout=300)
    """

    def __init__(self, host: str, port: int, path: str) -> None:
        self.host = host
        self.port = port
        self.path = path
        self._server: _CallbackServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def bound_port(self) -> int:
        if self._server is None:
            return self.port
        return int(self._server.server_address[1])

    def start(self) -> None:
        self._server = _CallbackServer((self.host, self.port), self.path)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="oauth-callback", daemon=True
        )
        self._thread.start()
        LOGGER.info(
            "oauth_callback.listening",
            extra={"event": "oauth_callback.listening", "port": self.bound_port},
        )

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

    def __enter__(self) -> CallbackListener:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    async def wait(self, timeout: float) -> tuple[str, str]:
        """Wait for the redirect and return ``(code, state)``."""
        if self._server is None:
            raise RuntimeError("CallbackListener is not started.")
        result = await asyncio.to_thread(self._server.wait_result, timeout)
        if result is None:
            raise AuthError("Timed out waiting for the OAuth callback")
        if result.error:
            raise AuthError(f"Authorization failed: {result.error}")
        return result.code, result.state
