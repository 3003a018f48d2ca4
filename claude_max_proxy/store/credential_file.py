"""Owner-only JSON file persistence for OAuth credentials."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    subscription_label: Optional[str] = None

    @classmethod
    def from_oauth_json(cls, data: Any) -> Optional["Credential"]:
        """Parse the camelCase shape shared by the credential file and the keychain."""

        if not isinstance(data, dict):
            return None
        access_token = data.get("accessToken")
        if not isinstance(access_token, str) or not access_token:
            return None
        refresh_token = data.get("refreshToken")
        expires_at_ms = data.get("expiresAt")
        subscription = data.get("subscriptionType")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_at=(
                expires_at_ms / 1000.0
                if isinstance(expires_at_ms, (int, float)) and not isinstance(expires_at_ms, bool)
                else None
            ),
            subscription_label=subscription if isinstance(subscription, str) and subscription else None,
        )

    def to_file_payload(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": int(self.expires_at * 1000) if self.expires_at is not None else None,
        }


class CredentialFile:
    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Optional[Credential]:
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable credential file. path=%s", self._path)
            return None
        return Credential.from_oauth_json(data)

    def save(self, credential: Credential) -> None:
        """Atomically replace the file with a 0600 copy of the credential; raises OSError on failure."""

        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(os.path.abspath(self._path)), prefix=".credentials-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(credential.to_file_payload(), handle, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
