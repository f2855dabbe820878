"""Tests for the streaming Codex transport."""

from __future__ import annotations

import json
import unittest

import httpx

from codex_agent.client import CodexClient
from codex_agent.credentials import Credential
from codex_agent.exceptions import (
    CodexConnectionError,
    CodexHTTPError,
    NotAuthenticatedError,
)

ENDPOINT = "https://chatgpt.example/backend-api/codex/responses"


class FakeTokenManager:
    """Hands out a fixed token without touching the network."""

    def __init__(self, access: str | None = "tok-123", account_id: str | None = "acct_1") -> None:
        self.access = access
        self.account_id = account_id

    async def get_valid_access_token(self) -> str | None:
        return self.access

    def current_credential(self) -> Credential | None:
        if self.access is None:
            return None
        return Credential(access=self.access, refresh="r", expires=1, account_id=self.account_id)


class CodexClientTests(unittest.IsolatedAsyncioTestCase):
    """Validate headers, body and error mapping."""

    async def _collect(self, client: CodexClient, body: dict) -> bytes:
        chunks = [chunk async for chunk in client.stream_response(body)]
        return b"".join(chunks)

    async def test_streams_body_with_auth_headers(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=b'data: {"type":"response.output_text.delta","delta":"hi"}\n\ndata: [DONE]\n\n',
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = CodexClient(ENDPOINT, FakeTokenManager(), originator="codex_agent", http_client=http)
            payload = await self._collect(client, {"model": "gpt-5", "stream": True})

        self.assertIn(b"[DONE]", payload)
        request = seen[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), ENDPOINT)
        self.assertEqual(request.headers["Authorization"], "Bearer tok-123")
        self.assertEqual(request.headers["Accept"], "text/event-stream")
        self.assertEqual(request.headers["originator"], "codex_agent")
        self.assertEqual(request.headers["ChatGPT-Account-Id"], "acct_1")
        self.assertEqual(json.loads(request.content), {"model": "gpt-5", "stream": True})

    async def test_account_header_omitted_when_unknown(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = CodexClient(ENDPOINT, FakeTokenManager(account_id=None), http_client=http)
            await self._collect(client, {})
        self.assertNotIn("ChatGPT-Account-Id", seen[0].headers)

    async def test_error_status_raises_http_error_with_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text='{"detail":"Unauthorized"}')

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = CodexClient(ENDPOINT, FakeTokenManager(), http_client=http)
            with self.assertRaises(CodexHTTPError) as ctx:
                await self._collect(client, {})
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("Unauthorized", str(ctx.exception))

    async def test_missing_token_raises_before_any_request(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = CodexClient(ENDPOINT, FakeTokenManager(access=None), http_client=http)
            with self.assertRaises(NotAuthenticatedError):
                await self._collect(client, {})
        self.assertEqual(calls, [])

    async def test_connection_failure_is_mapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = CodexClient(ENDPOINT, FakeTokenManager(), http_client=http)
            with self.assertRaises(CodexConnectionError):
                await self._collect(client, {})


if __name__ == "__main__":
    unittest.main()
