"""
External IdP gateway — management-API client for killing sessions.

Two calls, both against the Auth0-style management API:

    DELETE /api/v2/sessions/{sid}            → kill_session
    DELETE /api/v2/users/{sub}/sessions      → kill_all_sessions

202, 204 and 404 all count as success (404 = already gone upstream).
Any other status is *returned*, not raised: the revocation coordinator
decides how tolerant to be.  Network errors and timeouts raise
`IdPUnavailableError`.

The management credential is obtained with the client-credentials grant
and cached in a `ManagementTokenCache` owned by the gateway instance.
Refresh is single-flight (one fetch per expiry, however many requests
are waiting) and happens when the token is within the refresh margin
of expiry.  A failed fetch is retried with tenacity and, once retries
are exhausted, raises `IdPCredentialError` without touching the cached
value.
"""

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from devicegate.core.config import Settings, settings as app_settings
from devicegate.core.exceptions import IdPCredentialError, IdPUnavailableError

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {202, 204}
ALREADY_GONE_STATUSES = {404}


class KillOutcome(str, enum.Enum):
    DELETED = "deleted"
    ALREADY_GONE = "already_gone"
    FAILED = "failed"


@dataclass(frozen=True)
class KillResult:
    status_code: int
    outcome: KillOutcome
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is not KillOutcome.FAILED

    @classmethod
    def from_response(cls, response: httpx.Response) -> "KillResult":
        if response.status_code in SUCCESS_STATUSES:
            return cls(response.status_code, KillOutcome.DELETED)
        if response.status_code in ALREADY_GONE_STATUSES:
            return cls(response.status_code, KillOutcome.ALREADY_GONE)
        return cls(response.status_code, KillOutcome.FAILED, response.text[:500])


@dataclass(frozen=True)
class IdPConfig:
    base_url: str
    client_id: str
    client_secret: str
    audience: str
    timeout: float = 5.0
    refresh_margin: float = 60.0
    token_fetch_attempts: int = 3
    token_retry_wait: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdPConfig":
        return cls(
            base_url=settings.IDP_BASE_URL,
            client_id=settings.IDP_CLIENT_ID,
            client_secret=settings.IDP_CLIENT_SECRET,
            audience=settings.IDP_AUDIENCE or f"{settings.IDP_BASE_URL}/api/v2/",
            timeout=settings.IDP_TIMEOUT_SECONDS,
            refresh_margin=settings.IDP_TOKEN_REFRESH_MARGIN_SECONDS,
            token_fetch_attempts=settings.IDP_TOKEN_FETCH_ATTEMPTS,
        )


@dataclass(frozen=True)
class ManagementToken:
    access_token: str
    expires_at: float


class ManagementTokenCache:
    """
    Holds one management token and refreshes it under a lock.

    `fetch` returns a fresh `ManagementToken`; `clock` is monotonic
    seconds (injectable for tests).  The lock is held only around the
    fetch itself.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[ManagementToken]],
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._token: ManagementToken | None = None
        self._lock = asyncio.Lock()

    def _usable(self, token: ManagementToken | None) -> bool:
        return token is not None and self._clock() < token.expires_at - self._refresh_margin

    async def get(self) -> str:
        token = self._token
        if self._usable(token):
            return token.access_token

        async with self._lock:
            # Another waiter may have refreshed while we queued.
            if self._usable(self._token):
                return self._token.access_token
            fresh = await self._fetch()
            self._token = fresh
            logger.info("IdP management token refreshed")
            return fresh.access_token

    def invalidate(self, access_token: str | None = None) -> None:
        """Drop the cached token (only if it is still `access_token`, when given)."""
        if access_token is None or (self._token and self._token.access_token == access_token):
            self._token = None


class IdPGateway:
    """
    Thin authenticated client for the IdP session-kill API.

    One instance per application; it owns the `httpx.AsyncClient` and
    the credential cache.  Close it with `aclose()` on shutdown.
    """

    def __init__(
        self,
        config: IdPConfig,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout),
        )
        self._clock = clock
        self.tokens = ManagementTokenCache(
            self._fetch_token_with_retry,
            refresh_margin=config.refresh_margin,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings = app_settings) -> "IdPGateway":
        return cls(IdPConfig.from_settings(settings))

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Credentials ──────────────────────────────────────────────────

    async def _fetch_token(self) -> ManagementToken:
        try:
            response = await self._client.post(
                "/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "audience": self._config.audience,
                },
                timeout=self._config.timeout,
            )
        except httpx.HTTPError as exc:
            raise IdPCredentialError(f"Management token request failed: {exc!r}") from exc

        if response.status_code != 200:
            raise IdPCredentialError(
                f"Failed to get management token: {response.status_code}",
                detail={"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            payload = response.json()
            return ManagementToken(
                access_token=payload["access_token"],
                expires_at=self._clock() + float(payload["expires_in"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise IdPCredentialError("Malformed management token response") from exc

    async def _fetch_token_with_retry(self) -> ManagementToken:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.token_fetch_attempts),
            wait=wait_exponential(multiplier=self._config.token_retry_wait, max=2),
            retry=retry_if_exception_type(IdPCredentialError),
            reraise=True,
        )
        return await retrying(self._fetch_token)

    # ── Session kill calls ───────────────────────────────────────────

    async def _delete(self, path: str) -> KillResult:
        token = await self.tokens.get()
        response = await self._send_delete(path, token)
        if response.status_code == 401:
            # Token revoked or rotated upstream before its expiry.
            self.tokens.invalidate(token)
            token = await self.tokens.get()
            response = await self._send_delete(path, token)
        return KillResult.from_response(response)

    async def _send_delete(self, path: str, token: str) -> httpx.Response:
        try:
            return await self._client.delete(
                path,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._config.timeout,
            )
        except httpx.TimeoutException as exc:
            raise IdPUnavailableError(f"IdP call timed out: DELETE {path}") from exc
        except httpx.HTTPError as exc:
            raise IdPUnavailableError(f"IdP call failed: DELETE {path}: {exc!r}") from exc

    async def kill_session(self, external_session_id: str) -> KillResult:
        result = await self._delete(f"/api/v2/sessions/{quote(external_session_id, safe='')}")
        logger.info(
            "IdP kill_session sid=%s status=%s outcome=%s",
            external_session_id,
            result.status_code,
            result.outcome.value,
        )
        return result

    async def kill_all_sessions(self, external_subject_id: str) -> KillResult:
        result = await self._delete(
            f"/api/v2/users/{quote(external_subject_id, safe='')}/sessions"
        )
        logger.info(
            "IdP kill_all_sessions sub=%s status=%s outcome=%s",
            external_subject_id,
            result.status_code,
            result.outcome.value,
        )
        return result
