from __future__ import annotations

import asyncio

import pytest
import requests

from engine.cache import ReadThroughCache
from spotify.client import SpotifyCatalogClient
from spotify.results import (
    TRANSIENT,
    UNAUTHENTICATED,
    AccessToken,
    ApiError,
    AuthFailure,
    NotFound,
    SpotifyApiError,
)


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, reason="") -> None:
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.reason = reason
        self.content = b"" if payload is None else b"{}"

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeTokens:
    def __init__(self, result) -> None:
        self.result = result
        self.sessions = []

    async def get_valid_access_token(self, session_key):
        self.sessions.append(session_key)
        return self.result


class _FakeAppTokens:
    def __init__(self) -> None:
        self.issued = 0
        self.invalidated = 0

    async def get_token(self):
        self.issued += 1
        return AccessToken(f"app-{self.issued}", 0)

    def invalidate(self):
        self.invalidated += 1


class _DictBackend:
    def __init__(self) -> None:
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ttl_seconds):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


def _client(user_result=None, cache=None) -> SpotifyCatalogClient:
    return SpotifyCatalogClient(
        token_manager=_FakeTokens(user_result or AuthFailure(UNAUTHENTICATED, "no stored credentials")),
        app_tokens=_FakeAppTokens(),
        cache=cache,
        market="IT",
    )


def _install(monkeypatch, responses):
    calls = []
    queue = list(responses)

    def _request(method, url, params=None, json=None, headers=None, timeout=None):
        calls.append({"method": method, "url": url, "params": params, "headers": headers})
        return queue.pop(0)

    monkeypatch.setattr("spotify.client.requests.request", _request)
    return calls


def test_request_returns_none_for_no_content(monkeypatch) -> None:
    _install(monkeypatch, [_FakeResponse(204)])

    assert asyncio.run(_client().request(None, "/me/tracks", method="PUT")) is None


def test_request_parses_error_body(monkeypatch) -> None:
    _install(monkeypatch, [_FakeResponse(404, {"error": {"status": 404, "message": "Non existing id"}})])

    with pytest.raises(SpotifyApiError) as exc_info:
        asyncio.run(_client().request(None, "/artists/nope"))

    assert exc_info.value.status == 404
    assert exc_info.value.message == "Non existing id"


def test_transport_error_is_503(monkeypatch) -> None:
    def _boom(*_args, **_kwargs):
        raise requests.Timeout("read timeout")

    monkeypatch.setattr("spotify.client.requests.request", _boom)

    with pytest.raises(SpotifyApiError) as exc_info:
        asyncio.run(_client().request(None, "/search"))

    assert exc_info.value.status == 503


def test_logged_out_caller_falls_back_to_app_token(monkeypatch) -> None:
    calls = _install(monkeypatch, [_FakeResponse(200, {"ok": True})])
    client = _client()

    assert asyncio.run(client.request("s1", "/albums/x")) == {"ok": True}
    assert calls[0]["headers"]["Authorization"] == "Bearer app-1"
    assert calls[0]["url"] == "https://api.spotify.com/v1/albums/x"


def test_user_token_is_preferred(monkeypatch) -> None:
    calls = _install(monkeypatch, [_FakeResponse(200, {"id": "u1"})])
    client = _client(AccessToken("user-token", 0))

    assert asyncio.run(client.get_user_profile("s1")) == {"id": "u1"}
    assert calls[0]["headers"]["Authorization"] == "Bearer user-token"


def test_user_endpoint_without_session_is_401(monkeypatch) -> None:
    calls = _install(monkeypatch, [])

    result = asyncio.run(_client().get_user_profile(None))

    assert result == ApiError(401, "user authentication required")
    assert calls == []


def test_user_endpoint_transient_failure_is_503(monkeypatch) -> None:
    _install(monkeypatch, [])
    client = _client(AuthFailure(TRANSIENT, "token endpoint unavailable"))

    result = asyncio.run(client.get_user_profile("s1"))

    assert isinstance(result, ApiError)
    assert result.status == 503


def test_app_token_rejection_retries_once_with_fresh_token(monkeypatch) -> None:
    calls = _install(
        monkeypatch,
        [_FakeResponse(401, {"error": {"status": 401, "message": "expired"}}), _FakeResponse(200, {"ok": True})],
    )
    client = _client()

    assert asyncio.run(client.request(None, "/browse/new-releases")) == {"ok": True}
    assert client.app_tokens.invalidated == 1
    assert [c["headers"]["Authorization"] for c in calls] == ["Bearer app-1", "Bearer app-2"]


def test_rate_limit_waits_for_retry_after(monkeypatch) -> None:
    _install(monkeypatch, [_FakeResponse(429, headers={"Retry-After": "0"}), _FakeResponse(200, {"ok": True})])

    assert asyncio.run(_client().request(None, "/search")) == {"ok": True}


def test_search_tracks_collapses_duplicates(monkeypatch) -> None:
    payload = {
        "tracks": {
            "items": [
                {"id": "a", "name": "Hello", "artists": [{"name": "Adele"}], "duration_ms": 295_000},
                {"id": "b", "name": "Hello", "artists": [{"name": "Adele"}], "duration_ms": 300_000},
                {"id": "c", "name": "Hello", "artists": [{"name": "Adele"}], "duration_ms": 420_000},
            ],
            "total": 3,
        }
    }
    calls = _install(monkeypatch, [_FakeResponse(200, payload)])

    result = asyncio.run(_client().search_tracks("hello adele"))

    assert [t["spotify_id"] for t in result["tracks"]] == ["b"]
    assert calls[0]["params"]["type"] == "track"
    assert calls[0]["params"]["market"] == "IT"


def test_search_tracks_empty_is_not_found(monkeypatch) -> None:
    _install(monkeypatch, [_FakeResponse(200, {"tracks": {"items": [], "total": 0}})])

    assert isinstance(asyncio.run(_client().search_tracks("zzzz")), NotFound)


def test_playlist_tracks_are_cached(monkeypatch) -> None:
    payload = {
        "items": [{"track": {"id": "t1", "name": "Song", "artists": [{"name": "Band"}]}}, {"track": None}],
        "total": 1,
        "limit": 50,
        "offset": 0,
        "next": None,
        "previous": None,
    }
    calls = _install(monkeypatch, [_FakeResponse(200, payload)])
    backend = _DictBackend()
    client = _client(cache=ReadThroughCache(backend))

    first = asyncio.run(client.get_playlist_tracks("pl1"))
    second = asyncio.run(client.get_playlist_tracks("pl1"))

    assert first == second
    assert first["success"] is True
    assert [item["track"]["spotify_id"] for item in first["items"]] == ["t1"]
    assert len(calls) == 1
    assert "cache:playlist-tracks:pl1:limit=50:offset=0" in backend.data


def test_failed_album_lookup_is_not_cached(monkeypatch) -> None:
    error = _FakeResponse(404, {"error": {"status": 404, "message": "Non existing id"}})
    _install(monkeypatch, [error, error])
    backend = _DictBackend()
    client = _client(cache=ReadThroughCache(backend))

    result = asyncio.run(client.get_album_details("missing"))

    assert result == ApiError(404, "Non existing id")
    assert backend.data == {}


def test_recommendations_are_never_cached(monkeypatch) -> None:
    response = _FakeResponse(200, {"tracks": [{"id": "r1", "name": "Rec", "artists": []}]})
    calls = _install(monkeypatch, [response, response])
    backend = _DictBackend()
    client = _client(cache=ReadThroughCache(backend))

    asyncio.run(client.get_recommendations(seed_genres="rock"))
    result = asyncio.run(client.get_recommendations(seed_genres="rock"))

    assert result["tracks"][0]["spotify_id"] == "r1"
    assert len(calls) == 2
    assert calls[0]["params"]["seed_genres"] == "rock"
    assert backend.data == {}


def test_public_endpoint_falls_back_to_app_token_on_transient_user_failure(monkeypatch) -> None:
    calls = _install(monkeypatch, [_FakeResponse(200, {"ok": True})])
    client = _client(AuthFailure(TRANSIENT, "token endpoint unavailable"))

    assert asyncio.run(client.request("s1", "/albums/x")) == {"ok": True}
    assert client.token_manager.sessions == ["s1"]
    assert calls[0]["headers"]["Authorization"] == "Bearer app-1"
