"""Access-token lifecycle for user sessions and the app-level client."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import weakref
from typing import Callable, Optional

import anyio

from config.settings import TOKEN_SAFETY_MARGIN_MS
from spotify.oauth_client import (
    SpotifyTokenError,
    exchange_authorization_code,
    refresh_access_token,
    request_client_credentials,
)
from spotify.oauth_store import CredentialRecord, CredentialStore
from spotify.results import TRANSIENT, UNAUTHENTICATED, AccessToken, AuthFailure

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _short(session_key: str) -> str:
    return f"{session_key[:6]}..."


def _classify(exc: SpotifyTokenError) -> AuthFailure:
    if exc.is_client_error:
        return AuthFailure(UNAUTHENTICATED, str(exc))
    return AuthFailure(TRANSIENT, str(exc))


class TokenLifecycleManager:
    """Hands out valid user access tokens, refreshing them when needed.

    Refreshes for one session key are serialized with a per-key
    ``asyncio.Lock``; the record is re-read once the lock is held so callers
    that queued behind a refresh reuse its result instead of spending the
    refresh token a second time.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None = None,
        timeout_sec: float = 20,
        credentials_ttl_sec: int | None = None,
        margin_ms: int = TOKEN_SAFETY_MARGIN_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_sec = timeout_sec
        self.credentials_ttl_sec = credentials_ttl_sec
        self.margin_ms = margin_ms
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_key] = lock
        return lock

    async def _load(self, session_key: str) -> Optional[CredentialRecord]:
        return await anyio.to_thread.run_sync(self._store.get, session_key)

    async def _save(self, session_key: str, record: CredentialRecord) -> None:
        await anyio.to_thread.run_sync(self._store.set, session_key, record, self.credentials_ttl_sec)

    async def get_valid_access_token(self, session_key: str | None) -> AccessToken | AuthFailure:
        """Return a currently valid access token for ``session_key``.

        Behavior:
        - No session or no stored record: ``AuthFailure(UNAUTHENTICATED)``.
        - Token valid for more than the safety margin: returned unchanged.
        - Otherwise refresh; a 4xx from the provider deletes the record and
          yields ``UNAUTHENTICATED``, any other failure yields ``TRANSIENT``
          and keeps the record for a later retry.
        """
        if not session_key:
            return AuthFailure(UNAUTHENTICATED, "no session")

        record = await self._load(session_key)
        if record is None:
            return AuthFailure(UNAUTHENTICATED, "no stored credentials")
        if record.is_valid(self._clock(), self.margin_ms):
            return AccessToken(record.access_token, record.expires_at_ms)

        async with self._lock_for(session_key):
            record = await self._load(session_key)
            if record is None:
                return AuthFailure(UNAUTHENTICATED, "no stored credentials")
            if record.is_valid(self._clock(), self.margin_ms):
                return AccessToken(record.access_token, record.expires_at_ms)
            return await self._refresh(session_key, record)

    async def _refresh(self, session_key: str, record: CredentialRecord) -> AccessToken | AuthFailure:
        if not self.client_id or not self.client_secret:
            logger.error("spotify client credentials are not configured; cannot refresh")
            return AuthFailure(TRANSIENT, "spotify client credentials are not configured")

        started_ms = self._clock()
        try:
            payload = await anyio.to_thread.run_sync(
                functools.partial(
                    refresh_access_token,
                    self.client_id,
                    self.client_secret,
                    record.refresh_token,
                    timeout=self.timeout_sec,
                )
            )
        except SpotifyTokenError as exc:
            failure = _classify(exc)
            if failure.reason == UNAUTHENTICATED:
                logger.warning(
                    "token refresh rejected session=%s status=%s; clearing credentials",
                    _short(session_key),
                    exc.status,
                )
                await anyio.to_thread.run_sync(self._store.delete, session_key)
            else:
                logger.warning(
                    "token refresh failed transiently session=%s status=%s error=%s",
                    _short(session_key),
                    exc.status,
                    exc,
                )
            return failure

        refreshed = CredentialRecord(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload.get("refresh_token") or record.refresh_token),
            expires_at_ms=started_ms + int(payload["expires_in"]) * 1000,
            scope=str(payload.get("scope") or record.scope),
        )
        await self._save(session_key, refreshed)
        logger.info("token refreshed session=%s", _short(session_key))
        return AccessToken(refreshed.access_token, refreshed.expires_at_ms)

    async def store_authorization(self, session_key: str, code: str) -> CredentialRecord | AuthFailure:
        """Exchange an authorization code and persist the resulting record."""
        if not self.client_id or not self.client_secret or not self.redirect_uri:
            return AuthFailure(TRANSIENT, "spotify client credentials are not configured")
        started_ms = self._clock()
        try:
            payload = await anyio.to_thread.run_sync(
                functools.partial(
                    exchange_authorization_code,
                    self.client_id,
                    self.client_secret,
                    code,
                    self.redirect_uri,
                    timeout=self.timeout_sec,
                )
            )
        except SpotifyTokenError as exc:
            logger.warning("authorization code exchange failed status=%s error=%s", exc.status, exc)
            return _classify(exc)

        refresh_token = str(payload.get("refresh_token") or "").strip()
        if not refresh_token:
            return AuthFailure(UNAUTHENTICATED, "authorization response missing refresh_token")
        record = CredentialRecord(
            access_token=str(payload["access_token"]),
            refresh_token=refresh_token,
            expires_at_ms=started_ms + int(payload["expires_in"]) * 1000,
            scope=str(payload.get("scope") or ""),
        )
        async with self._lock_for(session_key):
            await self._save(session_key, record)
        logger.info("user tokens stored session=%s", _short(session_key))
        return record

    async def logout(self, session_key: str | None) -> None:
        if not session_key:
            return
        async with self._lock_for(session_key):
            await anyio.to_thread.run_sync(self._store.delete, session_key)

    async def is_authenticated(self, session_key: str | None) -> bool:
        if not session_key:
            return False
        return await self._load(session_key) is not None


class AppTokenProvider:
    """Process-wide client-credentials token, refreshed lazily after expiry."""

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        timeout_sec: float = 20,
        margin_ms: int = TOKEN_SAFETY_MARGIN_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_sec = timeout_sec
        self.margin_ms = margin_ms
        self._clock = clock
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()

    def _cached(self) -> AccessToken | None:
        token = self._token
        if token is not None and token.expires_at_ms > self._clock() + self.margin_ms:
            return token
        return None

    async def get_token(self) -> AccessToken | AuthFailure:
        token = self._cached()
        if token is not None:
            return token
        async with self._lock:
            token = self._cached()
            if token is not None:
                return token
            if not self.client_id or not self.client_secret:
                return AuthFailure(UNAUTHENTICATED, "spotify client credentials are not configured")
            started_ms = self._clock()
            try:
                payload = await anyio.to_thread.run_sync(
                    functools.partial(
                        request_client_credentials,
                        self.client_id,
                        self.client_secret,
                        timeout=self.timeout_sec,
                    )
                )
            except SpotifyTokenError as exc:
                logger.error("client credentials grant failed status=%s error=%s", exc.status, exc)
                return _classify(exc)
            self._token = AccessToken(
                value=str(payload["access_token"]),
                expires_at_ms=started_ms + int(payload["expires_in"]) * 1000,
            )
            return self._token

    def invalidate(self) -> None:
        self._token = None
