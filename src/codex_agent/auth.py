"""ChatGPT OAuth (PKCE) login and access-token lifecycle.

The manager owns the pending login (verifier and anti-CSRF state) for the
duration of one browser round trip, exchanges the returned code for tokens,
and hands out access tokens, refreshing them when they are close to expiry.
A rejected refresh clears the stored credential so the user has to log in
again instead of retrying with a token the issuer no longer accepts.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import hashlib
import json
import logging
import math
import secrets
import time
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from .credentials import Credential, CredentialStore
from .exceptions import (
    AuthError,
    CredentialStoreError,
    OAuthStateError,
    TokenExchangeError,
)

LOGGER = logging.getLogger(__name__)

PKCE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
VERIFIER_LENGTH = 43
STATE_LENGTH = 32
AUTH_CLAIMS_NAMESPACE = "https://api.openai.com/auth"


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class PkceCodes:
    verifier: str
    challenge: str


@dataclass(frozen=True)
class LoginRequest:
    url: str
    state: str


@dataclass(frozen=True)
class _PendingLogin:
    pkce: PkceCodes
    state: str
    created_at: float


def generate_random_string(length: int) -> str:
    """Return a cryptographically random string over the PKCE alphabet."""
    return "".join(secrets.choice(PKCE_ALPHABET) for _ in range(length))


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def compute_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce() -> PkceCodes:
    verifier = generate_random_string(VERIFIER_LENGTH)
    return PkceCodes(verifier=verifier, challenge=compute_challenge(verifier))


def decode_jwt_claims(token: str) -> dict[str, Any]:
    """Decode the (unverified) payload segment of a JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        raise AuthError("Invalid JWT format")
    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, UnicodeError) as exc:
        raise AuthError(f"Invalid JWT payload: {exc}") from exc
    if not isinstance(claims, dict):
        raise AuthError("Invalid JWT payload: expected a JSON object")
    return claims


def extract_account_id(claims: dict[str, Any]) -> str | None:
    """Pick the account id: direct claim, then namespaced claim, then first org."""
    direct = claims.get("chatgpt_account_id")
    if isinstance(direct, str) and direct:
        return direct
    namespaced = claims.get(AUTH_CLAIMS_NAMESPACE)
    if isinstance(namespaced, dict):
        nested = namespaced.get("chatgpt_account_id")
        if isinstance(nested, str) and nested:
            return nested
    organizations = claims.get("organizations")
    if isinstance(organizations, list) and organizations:
        first = organizations[0]
        if isinstance(first, dict):
            org_id = first.get("id")
            if isinstance(org_id, str) and org_id:
                return org_id
    return None


def _account_id_from_tokens(tokens: dict[str, Any]) -> str | None:
    id_token = tokens.get("id_token")
    if not isinstance(id_token, str) or not id_token:
        return None
    return extract_account_id(decode_jwt_claims(id_token))


class TokenManager:
    """PKCE login, credential persistence and transparent refresh.

    Refreshes are deliberately not serialised: two concurrent callers may both
    refresh, and the last successful write wins.
    """

    def __init__(
        self,
        oauth_config: dict[str, Any],
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = str(oauth_config["client_id"])
        self.issuer = str(oauth_config["issuer"]).rstrip("/")
        self.redirect_uri = (
            f"http://{oauth_config['redirect_host']}:{oauth_config['redirect_port']}"
            f"{oauth_config['redirect_path']}"
        )
        self.scopes = list(oauth_config["scopes"])
        self.originator = str(oauth_config.get("originator", "codex_agent"))
        self.refresh_margin_ms = int(oauth_config.get("refresh_margin_seconds", 300)) * 1000
        self.login_timeout_seconds = float(oauth_config.get("login_timeout_seconds", 600))
        self.store = store
        self._http = http_client
        self._clock = clock
        self._pending: _PendingLogin | None = None
        self._refreshing = 0

    @property
    def token_url(self) -> str:
        return f"{self.issuer}/oauth/token"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def state(self) -> AuthState:
        if self._refreshing:
            return AuthState.REFRESHING
        if self._pending_login() is not None:
            return AuthState.AUTHENTICATING
        if self.store.load() is not None:
            return AuthState.AUTHENTICATED
        return AuthState.UNAUTHENTICATED

    def is_authenticated(self) -> bool:
        credential = self.store.load()
        return credential is not None and bool(credential.refresh)

    def current_credential(self) -> Credential | None:
        return self.store.load()

    def build_authorize_url(self, pkce: PkceCodes, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "id_token_add_organizations": "true",
            "codex_cli_simplified_flow": "true",
            "state": state,
            "originator": self.originator,
        }
        return f"{self.issuer}/oauth/authorize?{urlencode(params)}"

    def start_login(self) -> LoginRequest:
        """Begin a login; replaces any login that was still pending."""
        pkce = generate_pkce()
        state = generate_random_string(STATE_LENGTH)
        self._pending = _PendingLogin(pkce=pkce, state=state, created_at=self._clock())
        LOGGER.info("auth.login.started", extra={"event": "auth.login.started"})
        return LoginRequest(url=self.build_authorize_url(pkce, state), state=state)

    def cancel_login(self) -> None:
        self._pending = None

    def _pending_login(self) -> _PendingLogin | None:
        pending = self._pending
        if pending is None:
            return None
        if self._clock() - pending.created_at > self.login_timeout_seconds:
            self._pending = None
            LOGGER.info("auth.login.expired", extra={"event": "auth.login.expired"})
            return None
        return pending

    async def handle_callback(self, code: str, state: str) -> Credential:
        """Validate the callback state, then exchange the code for tokens."""
        pending = self._pending_login()
        if pending is None:
            raise OAuthStateError("No pending OAuth request found")
        # Single use: a mismatching callback also ends the pending login.
        self._pending = None
        if not secrets.compare_digest(state, pending.state):
            LOGGER.warning(
                "auth.callback.state_mismatch",
                extra={"event": "auth.callback.state_mismatch"},
            )
            raise OAuthStateError("OAuth state mismatch - possible CSRF attack")

        tokens = await self._post_token_form(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "code_verifier": pending.pkce.verifier,
            },
            failure="Token exchange failed",
        )
        refresh = tokens.get("refresh_token")
        if not isinstance(refresh, str) or not refresh:
            raise TokenExchangeError("Token exchange failed: no refresh_token returned")
        credential = self._credential_from_tokens(
            tokens, refresh=refresh, account_id=_account_id_from_tokens(tokens)
        )
        self.store.save(credential)
        LOGGER.info(
            "auth.login.completed",
            extra={
                "event": "auth.login.completed",
                "has_account_id": credential.account_id is not None,
            },
        )
        return credential

    async def get_valid_access_token(self) -> str | None:
        """Return a usable access token, refreshing it when close to expiry.

        Returns None when no credential is stored or the refresh failed; in
        the latter case the stored credential is cleared.
        """
        credential = self.store.load()
        if credential is None:
            return None
        if not credential.expires_within(self.refresh_margin_ms, self._now_ms()):
            return credential.access

        renewed = await self.refresh(credential)
        return renewed.access if renewed is not None else None

    async def refresh(self, credential: Credential) -> Credential | None:
        """Exchange the refresh token; clear all stored state on failure."""
        self._refreshing += 1
        LOGGER.info("auth.refresh.started", extra={"event": "auth.refresh.started"})
        try:
            tokens = await self._post_token_form(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh,
                    "client_id": self.client_id,
                },
                failure="Token refresh failed",
            )
            refresh = tokens.get("refresh_token")
            account_id = _account_id_from_tokens(tokens) or credential.account_id
            renewed = self._credential_from_tokens(
                tokens,
                refresh=refresh if isinstance(refresh, str) and refresh else credential.refresh,
                account_id=account_id,
            )
            self.store.save(renewed)
        except (AuthError, CredentialStoreError) as exc:
            LOGGER.warning(
                "auth.refresh.failed",
                extra={
                    "event": "auth.refresh.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            self._clear_after_failure()
            return None
        finally:
            self._refreshing -= 1
        LOGGER.info("auth.refresh.completed", extra={"event": "auth.refresh.completed"})
        return renewed

    def logout(self) -> None:
        self._pending = None
        self.store.clear()
        LOGGER.info("auth.logout", extra={"event": "auth.logout"})

    def _clear_after_failure(self) -> None:
        try:
            self.store.clear()
        except CredentialStoreError as exc:
            LOGGER.error(
                "auth.clear.failed",
                extra={"event": "auth.clear.failed", "error": str(exc)},
            )

    def _credential_from_tokens(
        self, tokens: dict[str, Any], refresh: str, account_id: str | None
    ) -> Credential:
        access = tokens.get("access_token")
        expires_in = tokens.get("expires_in")
        if not isinstance(access, str) or not access:
            raise TokenExchangeError("Token response is missing access_token")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise TokenExchangeError("Token response is missing expires_in")
        if not math.isfinite(expires_in) or expires_in <= 0:
            raise TokenExchangeError(f"Token response has an invalid expires_in: {expires_in!r}")
        try:
            return Credential(
                access=access,
                refresh=refresh,
                expires=self._now_ms() + int(expires_in * 1000),
                account_id=account_id,
            )
        except (ValidationError, OverflowError) as exc:
            raise TokenExchangeError(f"Token response could not be stored: {exc}") from exc

    async def _post_token_form(
        self, form: dict[str, str], failure: str
    ) -> dict[str, Any]:
        try:
            if self._http is not None:
                response = await self._http.post(self.token_url, data=form)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"{failure}: {exc}") from exc

        if response.is_error:
            raise TokenExchangeError(f"{failure}: {response.status_code} {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenExchangeError(f"{failure}: invalid JSON response") from exc
        if not isinstance(payload, dict):
            raise TokenExchangeError(f"{failure}: unexpected response shape")
        return payload
