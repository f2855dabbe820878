"""Tests for the loopback OAuth redirect listener."""

from __future__ import annotations

import unittest

import httpx

from codex_agent.exceptions import AuthError
from codex_agent.oauth_callback import CallbackListener, parse_callback_url


class ParseCallbackUrlTests(unittest.TestCase):
    def test_extracts_code_and_state(self) -> None:
        code, state = parse_callback_url(
            "  http://localhost:1455/auth/callback?code=abc123&state=xyz789\n"
        )
        self.assertEqual((code, state), ("abc123", "xyz789"))

    def test_error_and_missing_fields_raise(self) -> None:
        with self.assertRaises(AuthError) as ctx:
            parse_callback_url(
                "http://localhost:1455/auth/callback?error=access_denied&error_description=nope"
            )
        self.assertIn("access_denied", str(ctx.exception))
        with self.assertRaises(AuthError):
            parse_callback_url("http://localhost:1455/auth/callback?code=abc")


class CallbackListenerTests(unittest.IsolatedAsyncioTestCase):
    """Exercise the listener on an ephemeral loopback port."""

    async def _get(self, listener: CallbackListener, path_and_query: str) -> httpx.Response:
        url = f"http://127.0.0.1:{listener.bound_port}{path_and_query}"
        async with httpx.AsyncClient(trust_env=False, timeout=5.0) as client:
            return await client.get(url)

    async def test_successful_redirect_is_delivered(self) -> None:
        with CallbackListener("127.0.0.1", 0, "/auth/callback") as listener:
            response = await self._get(listener, "/auth/callback?code=c0de&state=s7ate")
            self.assertEqual(response.status_code, 200)
            self.assertIn("Authentication Successful", response.text)
            self.assertEqual(await listener.wait(timeout=5), ("c0de", "s7ate"))

    async def test_error_redirect_raises(self) -> None:
        with CallbackListener("127.0.0.1", 0, "/auth/callback") as listener:
            response = await self._get(listener, "/auth/callback?error=access_denied")
            self.assertIn("Authentication Failed", response.text)
            with self.assertRaises(AuthError):
                await listener.wait(timeout=5)

    async def test_unknown_path_is_not_delivered(self) -> None:
        with CallbackListener("127.0.0.1", 0, "/auth/callback") as listener:
            response = await self._get(listener, "/favicon.ico")
            self.assertEqual(response.status_code, 404)
            with self.assertRaises(AuthError):
                await listener.wait(timeout=0.2)

    async def test_wait_requires_started_listener(self) -> None:
        listener = CallbackListener("127.0.0.1", 0, "/auth/callback")
        with self.assertRaises(RuntimeError):
            await listener.wait(timeout=0.1)


if __name__ == "__main__":
    unittest.main()
