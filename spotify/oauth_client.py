"""Spotify OAuth client helpers."""

from __future__ import annotations

import base64
from urllib.parse import urlencode

import requests

SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"


class SpotifyTokenError(Exception):
    """Token endpoint call failed.

    ``status`` is the HTTP status returned by the provider, or ``None`` when
    no response was received (network error, timeout).
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500


def build_auth_url(client_id: str, redirect_uri: str, scope: str, state: str) -> str:
    """Build Spotify authorization URL."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
    }
    return f"{SPOTIFY_AUTH_URL}?{urlencode(params)}"


def _basic_auth_header(client_id: str, client_secret: str) -> str:
    auth_payload = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(auth_payload).decode("ascii")


def _post_token_request(
    client_id: str,
    client_secret: str,
    data: dict[str, str],
    *,
    timeout: float,
) -> dict:
    try:
        response = requests.post(
            SPOTIFY_TOKEN_URL,
            data=data,
            headers={
                "Authorization": _basic_auth_header(client_id, client_secret),
                "Content-Type": "application/x-www-form-urlencoded",
            },
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise SpotifyTokenError(f"spotify token request failed: {exc}") from exc

    if response.status_code != 200:
        detail = (response.text or "").strip() or f"status={response.status_code}"
        raise SpotifyTokenError(
            f"spotify {data.get('grant_type')} grant failed: {detail}",
            status=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise SpotifyTokenError("spotify token response is not JSON", status=response.status_code) from exc
    if not isinstance(payload, dict) or not payload.get("access_token") or payload.get("expires_in") is None:
        raise SpotifyTokenError("token payload missing access_token or expires_in", status=response.status_code)
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, bool):
        expires_in = None
    try:
        payload["expires_in"] = int(expires_in)
    except (TypeError, ValueError) as exc:
        raise SpotifyTokenError(
            f"token payload has non-numeric expires_in: {expires_in!r}",
            status=response.status_code,
        ) from exc
    return payload


def refresh_access_token(
    client_id: str,
    client_secret: str,
    refresh_token: str,
    *,
    timeout: float = 20,
) -> dict:
    """Exchange refresh token for a new Spotify access token payload.

    Returns:
        Parsed JSON token response from Spotify. ``refresh_token`` may be absent.

    Raises:
        SpotifyTokenError: When the request fails or the response code is non-200.
    """
    return _post_token_request(
        client_id,
        client_secret,
        {"grant_type": "refresh_token", "refresh_token": refresh_token},
        timeout=timeout,
    )


def exchange_authorization_code(
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str,
    *,
    timeout: float = 20,
) -> dict:
    """Exchange an authorization code for user tokens."""
    return _post_token_request(
        client_id,
        client_secret,
        {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
        timeout=timeout,
    )


def request_client_credentials(client_id: str, client_secret: str, *, timeout: float = 20) -> dict:
    """Request an app-level token that is not bound to any user."""
    return _post_token_request(
        client_id,
        client_secret,
        {"grant_type": "client_credentials"},
        timeout=timeout,
    )
