"""Tests for the PKCE login flow and token lifecycle."""

from __future__ import annotations

import base64
import hashlib
import json
from pathlib import Path
import tempfile
import unittest
from urllib.parse import parse_qs, urlparse

import httpx

from codex_agent.auth import (
    PKCE_ALPHABET,
    AuthState,
    TokenManager,
    compute_challenge,
    decode_jwt_claims,
    extract_account_id,
    generate_pkce,
)
from codex_agent.config import DEFAULT_CONFIG
from codex_agent.credentials import Credential, CredentialStore
from codex_agent.exceptions import AuthError, OAuthStateError, TokenExchangeError

NOW = 1_700_000_000.0


def _jwt(claims: dict) -> str:
    def segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{segment({'alg': 'none'})}.{segment(claims)}.signature"


class TokenEndpoint:
    """Scripted OAuth token endpoint recording every request it receives."""

    def __init__(self, responses: list[httpx.Response]) -> None:
        self.responses = responses
        self.requests: list[dict[str, list[str]]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(parse_qs(request.content.decode("utf-8")))
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        return self.responses[index]


class PkceTests(unittest.TestCase):
    """Validate PKCE primitives and claim helpers."""

    def test_verifier_uses_unreserved_alphabet_and_s256_challenge(self) -> None:
        pkce = generate_pkce()
        self.assertEqual(len(pkce.verifier), 43)
        self.assertTrue(set(pkce.verifier) <= set(PKCE_ALPHABET))
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(pkce.verifier.encode()).digest())
            .decode()
            .rstrip("=")
        )
        self.assertEqual(pkce.challenge, expected)
        self.assertEqual(compute_challenge(pkce.verifier), expected)
        self.assertNotIn("=", pkce.challenge)

    def test_account_id_precedence(self) -> None:
        claims = {
            "chatgpt_account_id": "direct",
            "https://api.openai.com/auth": {"chatgpt_account_id": "namespaced"},
            "organizations": [{"id": "org_1"}],
        }
        self.assertEqual(extract_account_id(claims), "direct")
        del claims["chatgpt_account_id"]
        self.assertEqual(extract_account_id(claims), "namespaced")
        del claims["https://api.openai.com/auth"]
        self.assertEqual(extract_account_id(claims), "org_1")
        self.assertIsNone(extract_account_id({"organizations": []}))

    def test_decode_jwt_claims(self) -> None:
        self.assertEqual(decode_jwt_claims(_jwt({"sub": "u1"})), {"sub": "u1"})
        with self.assertRaises(AuthError):
            decode_jwt_claims("only.two")
        with self.assertRaises(AuthError):
            decode_jwt_claims("a.!!!!.c")


class TokenManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate login, refresh and failure clearing against a fake issuer."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = CredentialStore(Path(self._tmp.name) / "auth.json")
        self.now = NOW

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _manager(self, endpoint: TokenEndpoint) -> tuple[TokenManager, httpx.AsyncClient]:
        http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        manager = TokenManager(
            {**DEFAULT_CONFIG["oauth"], "originator": "codex_agent"},
            self.store,
            http_client=http,
            clock=lambda: self.now,
        )
        return manager, http

    def _store_credential(self, expires_in_seconds: float, account_id: str | None = "acct_old") -> None:
        self.store.save(
            Credential(
                access="old-access",
                refresh="old-refresh",
                expires=int((self.now + expires_in_seconds) * 1000),
                account_id=account_id,
            )
        )

    async def test_authorize_url_carries_pkce_and_flow_parameters(self) -> None:
        manager, http = self._manager(TokenEndpoint([httpx.Response(500)]))
        async with http:
            request = manager.start_login()
        parsed = urlparse(request.url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        self.assertEqual(f"{parsed.scheme}://{parsed.netloc}{parsed.path}", "https://auth.openai.com/oauth/authorize")
        self.assertEqual(params["response_type"], "code")
        self.assertEqual(params["client_id"], "app_EMoamEEZ73f0CkXaXp7hrann")
        self.assertEqual(params["redirect_uri"], "http://localhost:1455/auth/callback")
        self.assertEqual(params["scope"], "openid profile email offline_access")
        self.assertEqual(params["code_challenge_method"], "S256")
        self.assertEqual(params["id_token_add_organizations"], "true")
        self.assertEqual(params["codex_cli_simplified_flow"], "true")
        self.assertEqual(params["originator"], "codex_agent")
        self.assertEqual(params["state"], request.state)
        self.assertEqual(len(request.state), 32)
        self.assertEqual(manager.state, AuthState.AUTHENTICATING)

    async def test_callback_exchanges_code_and_persists_credential(self) -> None:
        endpoint = TokenEndpoint(
            [
                httpx.Response(
                    200,
                    json={
                        "access_token": "new-access",
                        "refresh_token": "new-refresh",
                        "expires_in": 3600,
                        "id_token": _jwt(
                            {"https://api.openai.com/auth": {"chatgpt_account_id": "acct_9"}}
                        ),
                    },
                )
            ]
        )
        manager, http = self._manager(endpoint)
        async with http:
            login = manager.start_login()
            credential = await manager.handle_callback("the-code", login.state)

        self.assertEqual(len(endpoint.requests), 1)
        form = endpoint.requests[0]
        self.assertEqual(form["grant_type"], ["authorization_code"])
        self.assertEqual(form["code"], ["the-code"])
        self.assertEqual(len(form["code_verifier"][0]), 43)
        self.assertEqual(credential.account_id, "acct_9")
        self.assertEqual(credential.expires, int((NOW + 3600) * 1000))
        self.assertEqual(self.store.load(), credential)
        self.assertTrue(manager.is_authenticated())
        self.assertEqual(manager.state, AuthState.AUTHENTICATED)

    async def test_state_mismatch_fails_before_any_network_call(self) -> None:
        endpoint = TokenEndpoint([httpx.Response(200, json={})])
        manager, http = self._manager(endpoint)
        async with http:
            login = manager.start_login()
            with self.assertRaises(OAuthStateError):
                await manager.handle_callback("code", "forged-state")
            # The pending login is single use.
            with self.assertRaises(OAuthStateError):
                await manager.handle_callback("code", login.state)
        self.assertEqual(endpoint.requests, [])
        self.assertIsNone(self.store.load())

    async def test_callback_without_pending_login_is_rejected(self) -> None:
        manager, http = self._manager(TokenEndpoint([httpx.Response(200, json={})]))
        async with http:
            with self.assertRaises(OAuthStateError):
                await manager.handle_callback("code", "state")

    async def test_pending_login_expires(self) -> None:
        endpoint = TokenEndpoint([httpx.Response(200, json={})])
        manager, http = self._manager(endpoint)
        async with http:
            login = manager.start_login()
            self.now += DEFAULT_CONFIG["oauth"]["login_timeout_seconds"] + 1
            with self.assertRaises(OAuthStateError):
                await manager.handle_callback("code", login.state)
        self.assertEqual(endpoint.requests, [])

    async def test_exchange_without_refresh_token_fails(self) -> None:
        endpoint = TokenEndpoint(
            [httpx.Response(200, json={"access_token": "a", "expires_in": 60})]
        )
        manager, http = self._manager(endpoint)
        async with http:
            login = manager.start_login()
            with self.assertRaises(TokenExchangeError):
                await manager.handle_callback("code", login.state)
        self.assertIsNone(self.store.load())

    async def test_fresh_token_is_returned_without_network(self) -> None:
        endpoint = TokenEndpoint([httpx.Response(500)])
        manager, http = self._manager(endpoint)
        self._store_credential(expires_in_seconds=301)
        async with http:
            token = await manager.get_valid_access_token()
        self.assertEqual(token, "old-access")
        self.assertEqual(endpoint.requests, [])

    async def test_token_inside_margin_refreshes_exactly_once(self) -> None:
        endpoint = TokenEndpoint(
            [httpx.Response(200, json={"access_token": "renewed", "expires_in": 3600})]
        )
        manager, http = self._manager(endpoint)
        self._store_credential(expires_in_seconds=299)
        async with http:
            token = await manager.get_valid_access_token()
            again = await manager.get_valid_access_token()

        self.assertEqual(token, "renewed")
        self.assertEqual(again, "renewed")
        self.assertEqual(len(endpoint.requests), 1)
        form = endpoint.requests[0]
        self.assertEqual(form["grant_type"], ["refresh_token"])
        self.assertEqual(form["refresh_token"], ["old-refresh"])
        stored = self.store.load()
        assert stored is not None
        # No new refresh token or id token: previous values are kept.
        self.assertEqual(stored.refresh, "old-refresh")
        self.assertEqual(stored.account_id, "acct_old")

    async def test_rejected_refresh_clears_credential(self) -> None:
        endpoint = TokenEndpoint([httpx.Response(400, json={"error": "invalid_grant"})])
        manager, http = self._manager(endpoint)
        self._store_credential(expires_in_seconds=-10)
        async with http:
            with self.assertLogs("codex_agent.auth", level="WARNING"):
                token = await manager.get_valid_access_token()
        self.assertIsNone(token)
        self.assertIsNone(self.store.load())
        self.assertFalse(manager.is_authenticated())
        self.assertEqual(manager.state, AuthState.UNAUTHENTICATED)

    async def test_refresh_response_without_expiry_clears_credential(self) -> None:
        endpoint = TokenEndpoint([httpx.Response(200, json={"access_token": "x"})])
        manager, http = self._manager(endpoint)
        self._store_credential(expires_in_seconds=0)
        async with http:
            self.assertIsNone(await manager.get_valid_access_token())
        self.assertIsNone(self.store.load())

    async def test_refresh_with_unusable_expiry_clears_credential(self) -> None:
        bodies = [
            b'{"access_token": "new", "expires_in": 1e400}',
            b'{"access_token": "new", "expires_in": -1e30}',
            b'{"access_token": "new", "expires_in": 0}',
        ]
        for body in bodies:
            with self.subTest(body=body):
                endpoint = TokenEndpoint(
                    [httpx.Response(200, content=body, headers={"content-type": "application/json"})]
                )
                manager, http = self._manager(endpoint)
                self._store_credential(expires_in_seconds=0)
                async with http:
                    with self.assertLogs("codex_agent.auth", level="WARNING"):
                        token = await manager.get_valid_access_token()
                self.assertIsNone(token)
                self.assertIsNone(self.store.load())
                self.assertEqual(len(endpoint.requests), 1)

    async def test_no_credential_means_no_token(self) -> None:
        endpoint = TokenEndpoint([httpx.Response(500)])
        manager, http = self._manager(endpoint)
        async with http:
            self.assertIsNone(await manager.get_valid_access_token())
        self.assertEqual(endpoint.requests, [])

    async def test_logout_clears_store(self) -> None:
        manager, http = self._manager(TokenEndpoint([httpx.Response(500)]))
        self._store_credential(expires_in_seconds=3600)
        async with http:
            manager.logout()
        self.assertIsNone(self.store.load())


if __name__ == "__main__":
    unittest.main()
