"""OAuth credential resolution, expiry-aware refresh and persistence."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import sys
import time
from typing import Callable, Optional, Sequence, Tuple

import httpx

from claude_max_proxy.config import Settings
from claude_max_proxy.errors import CredentialExpired, CredentialUnavailable
from claude_max_proxy.store.credential_file import Credential, CredentialFile

logger = logging.getLogger(__name__)

CredentialSource = Callable[[], Optional[Credential]]

OVERRIDE_TOKEN_LIFETIME_SECONDS = 86400
DEFAULT_REFRESHED_LIFETIME_SECONDS = 3600
KEYCHAIN_TIMEOUT_SECONDS = 5


def redact_token(token: Optional[str]) -> str:
    if not token:
        return "<missing>"
    trimmed = token.strip()
    if len(trimmed) <= 6:
        return "*" * len(trimmed)
    return f"{trimmed[:4]}...{trimmed[-2:]}"


def override_source(
    access_token: Optional[str],
    refresh_token: Optional[str] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> CredentialSource:
    def load() -> Optional[Credential]:
        if not access_token:
            return None
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=clock() + OVERRIDE_TOKEN_LIFETIME_SECONDS,
        )

    return load


def file_source(credential_file: CredentialFile) -> CredentialSource:
    return credential_file.load


def keychain_source(service: str, *, platform: str = sys.platform) -> CredentialSource:
    def load() -> Optional[Credential]:
        if platform != "darwin":
            return None
        try:
            completed = subprocess.run(
                ["security", "find-generic-password", "-s", service, "-w"],
                capture_output=True,
                text=True,
                timeout=KEYCHAIN_TIMEOUT_SECONDS,
                check=True,
            )
            data = json.loads(completed.stdout.strip())
        except (OSError, subprocess.SubprocessError, json.JSONDecodeError):
            logger.debug("No usable keychain entry. service=%s", service)
            return None
        if not isinstance(data, dict):
            return None
        return Credential.from_oauth_json(data.get("claudeAiOauth"))

    return load


class CredentialStore:
    """Owns the process-wide credential and keeps it fresh.

    Concurrent callers that cross the refresh window share a single in-flight
    refresh task; ``_lock`` guards both the initial load and the task slot.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        sources: Sequence[Tuple[str, CredentialSource]],
        credential_file: Optional[CredentialFile],
        token_url: str,
        client_id: str,
        refresh_window_seconds: float = 300.0,
        refresh_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http_client
        self._sources = list(sources)
        self._credential_file = credential_file
        self._token_url = token_url
        self._client_id = client_id
        self._refresh_window_seconds = refresh_window_seconds
        self._refresh_timeout_seconds = refresh_timeout_seconds
        self._clock = clock
        self._cached: Optional[Credential] = None
        self._lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Future[Credential]] = None

    async def resolve(self) -> Credential:
        credential = self._cached
        if credential is None:
            credential = await self._load_initial()
        if not self._should_refresh(credential):
            return credential
        return await self._refresh_coalesced(credential)

    def _should_refresh(self, credential: Credential) -> bool:
        if credential.expires_at is None or not credential.refresh_token:
            return False
        return self._clock() >= credential.expires_at - self._refresh_window_seconds

    async def _load_initial(self) -> Credential:
        async with self._lock:
            if self._cached is None:
                credential = await asyncio.to_thread(self._load_from_sources)
                if credential is None:
                    raise CredentialUnavailable()
                self._cached = credential
            return self._cached

    def _load_from_sources(self) -> Optional[Credential]:
        for name, source in self._sources:
            credential = source()
            if credential is not None and credential.access_token:
                logger.info(
                    "Resolved OAuth credential. source=%s token=%s subscription=%s",
                    name,
                    redact_token(credential.access_token),
                    credential.subscription_label,
                )
                return credential
        return None

    async def _refresh_coalesced(self, stale: Credential) -> Credential:
        async with self._lock:
            current = self._cached or stale
            if not self._should_refresh(current):
                return current
            if self._refresh_task is None:
                self._refresh_task = asyncio.ensure_future(self._refresh(current))
                self._refresh_task.add_done_callback(self._clear_refresh_task)
            task = self._refresh_task
        # A cancelled caller must not cancel the refresh other callers are awaiting.
        return await asyncio.shield(task)

    def _clear_refresh_task(self, task: asyncio.Future[Credential]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the outcome retrieved even if every awaiting caller went away.
            task.exception()

    async def _refresh(self, credential: Credential) -> Credential:
        refreshed = await self._exchange_refresh_token(credential)
        if refreshed is None:
            if credential.expires_at is not None and self._clock() < credential.expires_at:
                logger.warning(
                    "Token refresh failed; using cached credential until expiry. expires_at=%s",
                    int(credential.expires_at),
                )
                return credential
            raise CredentialExpired()

        self._cached = refreshed
        await self._persist(refreshed)
        return refreshed

    async def _exchange_refresh_token(self, credential: Credential) -> Optional[Credential]:
        logger.info("oauth_refresh_start token_url=%s", self._token_url)
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": self._client_id,
        }
        try:
            response = await self._http.post(
                self._token_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self._refresh_timeout_seconds,
            )
        except httpx.RequestError as exc:
            logger.warning("oauth_refresh_error reason=request_error error=%s", exc.__class__.__name__)
            return None

        if response.status_code >= 400:
            logger.warning("oauth_refresh_error status=%d", response.status_code)
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning("oauth_refresh_error reason=invalid_json")
            return None
        if not isinstance(body, dict):
            logger.warning("oauth_refresh_error reason=invalid_json")
            return None

        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            logger.warning("oauth_refresh_error reason=missing_access_token")
            return None

        next_refresh = body.get("refresh_token")
        expires_in = body.get("expires_in")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            expires_in = DEFAULT_REFRESHED_LIFETIME_SECONDS
        refreshed = Credential(
            access_token=access_token,
            refresh_token=next_refresh if isinstance(next_refresh, str) and next_refresh else credential.refresh_token,
            expires_at=self._clock() + float(expires_in),
            subscription_label=credential.subscription_label,
        )
        logger.info(
            "oauth_refresh_success token=%s expires_at=%s",
            redact_token(refreshed.access_token),
            int(refreshed.expires_at or 0),
        )
        return refreshed

    async def _persist(self, credential: Credential) -> None:
        if self._credential_file is None:
            return
        try:
            await asyncio.to_thread(self._credential_file.save, credential)
        except OSError as exc:
            logger.warning(
                "oauth_refresh_persist_skipped path=%s error=%s",
                self._credential_file.path,
                exc.__class__.__name__,
            )


def build_credential_store(settings: Settings, http_client: httpx.AsyncClient) -> CredentialStore:
    credential_file = CredentialFile(settings.credentials_file)
    sources: list[Tuple[str, CredentialSource]] = [
        ("override", override_source(settings.override_access_token, settings.override_refresh_token)),
        ("file", file_source(credential_file)),
        ("keychain", keychain_source(settings.keychain_service)),
    ]
    return CredentialStore(
        http_client,
        sources=sources,
        credential_file=credential_file,
        token_url=settings.oauth_token_url,
        client_id=settings.oauth_client_id,
        refresh_window_seconds=settings.token_refresh_window_seconds,
        refresh_timeout_seconds=settings.token_refresh_timeout_seconds,
    )
