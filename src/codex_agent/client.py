"""Streaming HTTP transport for the Codex Responses endpoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
import logging
from typing import Any

import httpx

from .auth import TokenManager
from .exceptions import (
    CodexConnectionError,
    CodexHTTPError,
    CodexTransportError,
    NotAuthenticatedError,
)

LOGGER = logging.getLogger(__name__)

ACCOUNT_HEADER = "ChatGPT-Account-Id"


class CodexClient:
    """Issue one bearer-authenticated streaming request per call."""

    def __init__(
        self,
        endpoint: str,
        token_manager: TokenManager,
        timeout: float = 120.0,
        originator: str = "codex_agent",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.token_manager = token_manager
        self.timeout = timeout
        self.originator = originator
        self._http = http_client

    async def _build_headers(self) -> dict[str, str]:
        access_token = await self.token_manager.get_valid_access_token()
        if not access_token:
            raise NotAuthenticatedError("Not authenticated with ChatGPT Plus/Pro")
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "originator": self.originator,
        }
        credential = self.token_manager.current_credential()
        if credential is not None and credential.account_id:
            headers[ACCOUNT_HEADER] = credential.account_id
        return headers

    def _map_exception(self, exc: Exception) -> CodexTransportError:
        if isinstance(exc, CodexTransportError):
            return exc
        if isinstance(
            exc,
            (
                httpx.ConnectError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
                httpx.NetworkError,
            ),
        ):
            return CodexConnectionError(
                f"Unable to reach Codex endpoint {self.endpoint}: {exc}"
            )
        return CodexTransportError(f"Request to {self.endpoint} failed: {exc}")

    async def stream_response(self, body: dict[str, Any]) -> AsyncIterator[bytes]:
        """Yield raw response body chunks as they arrive.

        Closing the generator (or cancelling the task consuming it) closes the
        underlying HTTP response.
        """
        headers = await self._build_headers()
        owned_client = self._http is None
        client = self._http or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST", self.endpoint, json=body, headers=headers
            ) as response:
                LOGGER.info(
                    "client.response.status",
                    extra={
                        "event": "client.response.status",
                        "status": response.status_code,
                    },
                )
                if response.is_error:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                    raise CodexHTTPError(response.status_code, error_body)
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            raise self._map_exception(exc) from exc
        finally:
            if owned_client:
                await client.aclose()
