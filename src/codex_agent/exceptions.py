"""Domain exception hierarchy for the Codex agent loop."""

from __future__ import annotations


class CodexAgentError(RuntimeError):
    """Base class for all domain-level agent errors."""


class ConfigValidationError(CodexAgentError):
    """Raised when configuration cannot be validated safely."""


class AuthError(CodexAgentError):
    """Raised when authentication with the OAuth issuer fails."""


class NotAuthenticatedError(AuthError):
    """Raised when no valid access token is available."""


class OAuthStateError(AuthError):
    """Raised when an OAuth callback does not match the pending login."""


class TokenExchangeError(AuthError):
    """Raised when the token endpoint rejects a code or refresh exchange."""


class CodexTransportError(CodexAgentError):
    """Raised when a request to the completion endpoint cannot be completed."""


class CodexConnectionError(CodexTransportError):
    """Raised when the completion endpoint cannot be reached."""


class CodexHTTPError(CodexTransportError):
    """Raised when the completion endpoint answers with a non-success status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Codex API error: {status_code} - {body}".rstrip(" -"))


class CodexStreamError(CodexAgentError):
    """Raised when the server reports a failure inside the event stream."""


class TranscriptError(CodexAgentError):
    """Raised when a transcript operation would break call/result pairing."""


class ToolRegistrationError(CodexAgentError):
    """Raised when a tool cannot be registered."""


class RunCancelledError(CodexAgentError):
    """Raised when an agent run is abandoned through its cancellation handle."""


class CredentialStoreError(CodexAgentError):
    """Raised when the credential record cannot be written or removed."""
