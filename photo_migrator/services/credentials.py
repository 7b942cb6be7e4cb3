"""
Credential handling: persistence, OAuth token endpoint, refresh coordination.

The coordinator owns the single shared credential. Concurrent callers that
find it expiring wait on one refresh instead of racing the token endpoint.
"""
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from ..errors import (
    ClientFaultError,
    RateLimitedError,
    ReauthenticationRequired,
    TransientNetworkError,
)
from ..models import Credential, UploadConfig, utcnow
from .database import Database

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
# Out-of-band redirect for console login
REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"
APPEND_ONLY_SCOPE = "https://www.googleapis.com/auth/photoslibrary.appendonly"

# OAuth error codes after which the stored grant is useless
_UNRECOVERABLE_GRANT_ERRORS = ("invalid_grant", "invalid_client", "unauthorized_client")


class CredentialStore:
    """Single-row credential table."""

    def __init__(self, db: Database):
        self._db = db

    def load(self) -> Optional[Credential]:
        row = self._db.query_one("SELECT * FROM credentials WHERE id = 1")
        if row is None:
            return None
        return Credential(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            token_type=row["token_type"],
            scope=row["scope"],
        )

    def save(self, credential: Credential) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO credentials
                    (id, access_token, refresh_token, expires_at, token_type, scope, updated_at)
                VALUES (1, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at,
                    token_type = excluded.token_type,
                    scope = excluded.scope,
                    updated_at = excluded.updated_at
                """,
                (
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at.isoformat(),
                    credential.token_type,
                    credential.scope,
                    utcnow().isoformat(),
                ),
            )
        logger.debug("Credentials stored")

    def clear(self) -> None:
        self._db.execute("DELETE FROM credentials")
        logger.info("Stored credentials cleared")


class TokenEndpointClient:
    """
    OAuth installed-app client for the token endpoint.

    Implements the refresh-token grant and the authorization-code exchange.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = TOKEN_URL,
        auth_url: str = AUTH_URL,
        scope: str = APPEND_ONLY_SCOPE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._auth_url = auth_url
        self._scope = scope
        self._timeout = timeout
        self._transport = transport
        self._clock = clock

    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "scope": self._scope,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return str(httpx.URL(self._auth_url, params=params))

    async def refresh(self, refresh_token: str) -> Credential:
        payload = await self._post({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        })
        # the endpoint usually omits the refresh token on refresh
        return self._to_credential(payload, fallback_refresh_token=refresh_token)

    async def exchange_code(self, code: str) -> Credential:
        payload = await self._post({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        })
        return self._to_credential(payload)

    async def _post(self, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._token_url, data=data)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientNetworkError(f"token endpoint unreachable: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError("token endpoint rate limited", status_code=429)
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"token endpoint error {response.status_code}", status_code=response.status_code
            )
        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text}

        if response.status_code >= 400:
            error = payload.get("error", "") if isinstance(payload, dict) else ""
            detail = payload.get("error_description", error) if isinstance(payload, dict) else error
            if error in _UNRECOVERABLE_GRANT_ERRORS:
                raise ReauthenticationRequired(
                    f"{error}: {detail}", status_code=response.status_code
                )
            raise ClientFaultError(
                f"token endpoint rejected request ({response.status_code}): {detail}",
                status_code=response.status_code,
            )
        return payload

    def _to_credential(
        self, payload: Dict[str, Any], fallback_refresh_token: Optional[str] = None
    ) -> Credential:
        if "access_token" not in payload:
            raise ClientFaultError("token response without access_token")
        return Credential(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh_token,
            expires_at=self._clock() + timedelta(seconds=int(payload.get("expires_in", 3600))),
            token_type=payload.get("token_type", "Bearer"),
            scope=payload.get("scope") or self._scope,
        )


class CredentialState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRING_SOON = "expiring_soon"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class CredentialCoordinator:
    """
    Hands out a valid credential to every transfer worker.

    Usage:
        coordinator = CredentialCoordinator(CredentialStore(db), token_client, config)
        credential = await coordinator.get_valid_credential()
    """

    def __init__(
        self,
        store: CredentialStore,
        token_client: TokenEndpointClient,
        config: UploadConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._token_client = token_client
        self._window = timedelta(seconds=config.credential_refresh_window)
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._loaded = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._revoked_reason: Optional[str] = None

    @property
    def state(self) -> CredentialState:
        if self._revoked_reason is not None:
            return CredentialState.REVOKED
        if self._refresh_task is not None and not self._refresh_task.done():
            return CredentialState.REFRESHING
        credential = self._current()
        if credential is None:
            return CredentialState.UNAUTHENTICATED
        if credential.expires_within(self._window, self._clock()):
            return CredentialState.EXPIRING_SOON
        return CredentialState.AUTHENTICATED

    @property
    def is_authenticated(self) -> bool:
        return self.state not in (CredentialState.UNAUTHENTICATED, CredentialState.REVOKED)

    def authorization_url(self) -> str:
        return self._token_client.authorization_url()

    async def authorize(self, code: str) -> Credential:
        """Exchange a login code and install the result."""
        credential = await self._token_client.exchange_code(code)
        self.set_credential(credential)
        logger.info("Authentication successful, credentials stored")
        return credential

    def set_credential(self, credential: Credential) -> None:
        self._store.save(credential)
        self._credential = credential
        self._loaded = True
        self._revoked_reason = None

    async def get_valid_credential(self) -> Credential:
        if self._revoked_reason is not None:
            raise ReauthenticationRequired(self._revoked_reason)

        credential = self._current()
        if credential is None:
            raise ReauthenticationRequired("no stored credentials, run 'photo-migrator login'")
        if not credential.expires_within(self._window, self._clock()):
            return credential

        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh(credential))
        # shield: a cancelled caller must not cancel the shared refresh
        return await asyncio.shield(self._refresh_task)

    def invalidate(self, stale_access_token: str) -> bool:
        """Mark the credential expired, unless it was already replaced."""
        credential = self._current()
        if credential is None or credential.access_token != stale_access_token:
            return False
        self._credential = replace(credential, expires_at=self._clock() - timedelta(seconds=1))
        logger.debug("Access token invalidated")
        return True

    def _current(self) -> Optional[Credential]:
        if not self._loaded:
            self._credential = self._store.load()
            self._loaded = True
        return self._credential

    async def _refresh(self, stale: Credential) -> Credential:
        if not stale.refresh_token:
            self._revoke("stored credentials have no refresh token")
            raise ReauthenticationRequired(self._revoked_reason)

        logger.info("Refreshing access token")
        try:
            fresh = await self._token_client.refresh(stale.refresh_token)
        except ReauthenticationRequired as exc:
            self._revoke(str(exc))
            raise

        self._store.save(fresh)
        self._credential = fresh
        logger.info(f"Access token refreshed, expires at {fresh.expires_at.isoformat()}")
        return fresh

    def _revoke(self, reason: str) -> None:
        logger.error(f"Refresh grant rejected ({reason}); re-authentication required")
        self._revoked_reason = f"re-authentication required: {reason}"
        self._credential = None
        self._store.clear()
