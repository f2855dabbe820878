"""On-disk storage of the single OAuth credential record."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import CredentialStoreError

LOGGER = logging.getLogger(__name__)


class Credential(BaseModel):
    """An access/refresh token pair; either fully valid or not constructed at all."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    access: str = Field(min_length=1)
    refresh: str = Field(min_length=1)
    expires: int = Field(ge=0, description="Access token expiry, epoch milliseconds.")
    account_id: str | None = Field(default=None, alias="accountId")

    @field_validator("account_id", mode="before")
    @classmethod
    def _blank_account_is_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("accountId must be a string.")
        return value.strip() or None

    def expires_within(self, margin_ms: int, now_ms: int) -> bool:
        """Return True when the access token expires less than ``margin_ms`` from now."""
        return self.expires - margin_ms <= now_ms

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "type": "oauth",
            "access": self.access,
            "refresh": self.refresh,
            "expires": self.expires,
        }
        if self.account_id:
            record["accountId"] = self.account_id
        return record

    @classmethod
    def from_record(cls, record: Any) -> Credential | None:
        """Validate a persisted record; partial or malformed records yield None."""
        if not isinstance(record, dict):
            return None
        if record.get("type", "oauth") != "oauth":
            return None
        try:
            return cls.model_validate(record)
        except ValidationError:
            return None


class CredentialStore:
    """Keep one credential record in a private JSON file.

    Writes go to a temporary sibling file that is renamed over the target, so
    readers only ever observe the previous record or the new one.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; silently ignores failures."""
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError:
            pass

    def _ensure_parent(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.path.parent, 0o700)

    def load(self) -> Credential | None:
        """Return the stored credential, or None when absent or invalid."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning(
                "credentials.read_failed",
                extra={"event": "credentials.read_failed", "error": str(exc)},
            )
            return None
        try:
            record = json.loads(raw)
        except ValueError:
            record = None
        credential = Credential.from_record(record)
        if credential is None:
            LOGGER.warning(
                "credentials.invalid_record",
                extra={"event": "credentials.invalid_record", "path": str(self.path)},
            )
        return credential

    def save(self, credential: Credential) -> None:
        """Replace the stored record atomically."""
        try:
            self._ensure_parent()
            fd, tmp_name = tempfile.mkstemp(
                prefix=".auth-", suffix=".tmp", dir=self.path.parent
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(credential.to_record(), handle, ensure_ascii=False)
                self._enforce_permissions(tmp_path)
                os.replace(tmp_path, self.path)
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise CredentialStoreError(f"Unable to store credential: {exc}") from exc
        LOGGER.debug(
            "credentials.saved",
            extra={"event": "credentials.saved", "path": str(self.path)},
        )

    def clear(self) -> None:
        """Remove the stored record; a missing record is not an error."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise CredentialStoreError(f"Unable to remove credential: {exc}") from exc
        LOGGER.info(
            "credentials.cleared",
            extra={"event": "credentials.cleared", "path": str(self.path)},
        )
