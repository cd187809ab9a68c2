"""Spotify Web API client returning normalized catalog records."""

from __future__ import annotations

import asyncio
import functools
import logging
import urllib.parse
from typing import Any, Awaitable, Callable

import anyio
import requests

from config.settings import (
    CACHE_TTL_ALBUM_DETAILS,
    CACHE_TTL_ARTIST_DETAILS,
    CACHE_TTL_FEATURED_PLAYLISTS,
    CACHE_TTL_PLAYLIST_TRACKS,
    CACHE_TTL_USER_TOP_ITEMS,
    SPOTIFY_MARKET,
)
from engine.cache import ReadThroughCache, build_cache_key
from engine.search_scoring import dedupe_tracks
from spotify.normalize import (
    normalize_album,
    normalize_artist,
    normalize_playlist,
    normalize_track,
    page_items,
)
from spotify.results import UNAUTHENTICATED, AccessToken, ApiError, NotFound, SpotifyApiError
from spotify.token_manager import AppTokenProvider, TokenLifecycleManager

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"
SEARCH_TYPES = ("track", "artist", "album", "playlist")
ARTIST_TOP_TRACKS_LIMIT = 10


def _quote(value: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError("identifier is required")
    return urllib.parse.quote(cleaned, safe="")


def _error_message(response: requests.Response) -> tuple[int, str]:
    status = response.status_code
    try:
        payload = response.json()
    except ValueError:
        return status, (response.reason or f"Spotify API error {status}")
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return int(error.get("status") or status), str(error.get("message") or f"Spotify API error {status}")
    if isinstance(payload, dict) and payload.get("message"):
        return status, str(payload["message"])
    if isinstance(error, str):
        return status, str(payload.get("error_description") or error)
    return status, f"Spotify API error {status}"


class SpotifyCatalogClient:
    """Authenticated access to catalog endpoints.

    User tokens come from :class:`TokenLifecycleManager`; requests without a
    usable user token fall back to the app-level client-credentials token so
    public endpoints keep working for logged-out callers.
    """

    def __init__(
        self,
        *,
        token_manager: TokenLifecycleManager,
        app_tokens: AppTokenProvider,
        cache: ReadThroughCache | None = None,
        market: str = SPOTIFY_MARKET,
        timeout_sec: float = 20,
        max_rate_limit_retries: int = 3,
    ) -> None:
        self.token_manager = token_manager
        self.app_tokens = app_tokens
        self.cache = cache or ReadThroughCache(None)
        self.market = market
        self.timeout_sec = timeout_sec
        self.max_rate_limit_retries = max_rate_limit_retries

    async def _resolve_token(self, session_key: str | None, *, require_user: bool) -> tuple[str, bool]:
        """Return ``(token, is_user_token)``."""
        if session_key:
            result = await self.token_manager.get_valid_access_token(session_key)
            if isinstance(result, AccessToken):
                return result.value, True
            if require_user:
                status = 401 if result.reason == UNAUTHENTICATED else 503
                raise SpotifyApiError(status, result.message or "user authentication required")
        elif require_user:
            raise SpotifyApiError(401, "user authentication required")

        app_result = await self.app_tokens.get_token()
        if isinstance(app_result, AccessToken):
            return app_result.value, False
        status = 503 if app_result.is_transient else 401
        raise SpotifyApiError(status, f"unable to obtain an API token: {app_result.message}")

    async def request(
        self,
        session_key: str | None,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        params: dict[str, Any] | None = None,
        *,
        require_user: bool = False,
    ) -> Any:
        """Issue one authenticated API call and return decoded JSON.

        Returns ``None`` for 204 or empty bodies. Raises ``SpotifyApiError``
        for non-success statuses and transport failures (reported as 503).
        HTTP 429 is retried after ``Retry-After``; a 401 on an app token
        drops the cached app token and retries once.
        """
        url = endpoint if endpoint.startswith("http") else f"{SPOTIFY_API_BASE_URL}{endpoint}"
        unauthorized_retry_used = False
        attempts = 0
        while True:
            attempts += 1
            token, is_user_token = await self._resolve_token(session_key, require_user=require_user)
            headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
            try:
                response = await anyio.to_thread.run_sync(
                    functools.partial(
                        requests.request,
                        method,
                        url,
                        params=params,
                        json=body,
                        headers=headers,
                        timeout=self.timeout_sec,
                    )
                )
            except requests.RequestException as exc:
                raise SpotifyApiError(503, f"spotify request failed: {exc}") from exc

            if response.status_code == 401 and not is_user_token and not unauthorized_retry_used:
                unauthorized_retry_used = True
                self.app_tokens.invalidate()
                continue

            if response.status_code == 429 and attempts <= self.max_rate_limit_retries:
                try:
                    sleep_sec = float(response.headers.get("Retry-After", "1"))
                except (TypeError, ValueError):
                    sleep_sec = 1.0
                logger.warning("spotify rate limited endpoint=%s retry_after=%.1fs", endpoint, sleep_sec)
                await asyncio.sleep(max(0.0, sleep_sec))
                continue

            if not 200 <= response.status_code < 300:
                status, message = _error_message(response)
                raise SpotifyApiError(status, message)
            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise SpotifyApiError(502, "spotify returned a non-JSON body") from exc

    async def _cached(self, key: str, ttl_seconds: int | None, fetch: Callable[[], Awaitable[Any]]) -> Any:
        return await self.cache.get_or_compute(key, ttl_seconds, fetch)

    @staticmethod
    def _failure(operation: str, exc: SpotifyApiError) -> ApiError:
        logger.error("spotify %s failed status=%s message=%s", operation, exc.status, exc.message)
        return exc.to_result()

    # Search

    async def search(self, query: str, types: tuple[str, ...] | list[str] = SEARCH_TYPES, limit: int = 10) -> dict:
        """Raw search payload for ``types``; raises ``SpotifyApiError``."""
        payload = await self.request(
            None,
            "/search",
            params={
                "q": query,
                "type": ",".join(types),
                "market": self.market,
                "limit": max(1, min(int(limit), 50)),
            },
        )
        return payload or {}

    async def search_tracks(self, query: str, limit: int = 10) -> dict | ApiError | NotFound:
        """Track search with duplicate releases collapsed to the median-length one."""
        try:
            payload = await self.search(query, ("track",), limit)
        except SpotifyApiError as exc:
            return self._failure("track search", exc)
        raw_tracks, _total = page_items(payload, "tracks")
        if not raw_tracks:
            return NotFound("no tracks found")
        tracks = [normalize_track(track) for track in dedupe_tracks(raw_tracks, strategy="median")]
        return {"success": True, "tracks": tracks}

    async def search_albums(self, query: str, limit: int = 10) -> list[dict] | ApiError:
        try:
            payload = await self.search(query, ("album",), limit)
        except SpotifyApiError as exc:
            return self._failure("album search", exc)
        raw_albums, _total = page_items(payload, "albums")
        return [normalize_album(album) for album in raw_albums]

    async def unified_search(
        self,
        query: str,
        types: tuple[str, ...] | list[str] = SEARCH_TYPES,
        limit: int = 10,
    ) -> dict | ApiError:
        """Per-category normalized results without relevance ranking."""
        wanted = [kind for kind in types if kind in SEARCH_TYPES]
        if not wanted:
            return {"success": True, "results": {}}
        try:
            payload = await self.search(query, wanted, limit)
        except SpotifyApiError as exc:
            return self._failure("unified search", exc)

        results: dict[str, list[dict]] = {}
        if "track" in wanted:
            raw_tracks, _ = page_items(payload, "tracks")
            results["tracks"] = [normalize_track(t) for t in dedupe_tracks(raw_tracks, strategy="median")]
        if "album" in wanted:
            results["albums"] = [normalize_album(a) for a in page_items(payload, "albums")[0]]
        if "artist" in wanted:
            results["artists"] = [normalize_artist(a) for a in page_items(payload, "artists")[0]]
        if "playlist" in wanted:
            results["playlists"] = [normalize_playlist(p) for p in page_items(payload, "playlists")[0]]
        return {"success": True, "results": results}

    # User library (requires a user session)

    async def get_user_profile(self, session_key: str | None) -> dict | ApiError:
        try:
            return await self.request(session_key, "/me", require_user=True) or {}
        except SpotifyApiError as exc:
            return self._failure("user profile", exc)

    async def get_user_playlists(self, session_key: str | None, limit: int = 20, offset: int = 0) -> list[dict] | ApiError:
        try:
            payload = await self.request(
                session_key,
                "/me/playlists",
                params={"limit": limit, "offset": offset},
                require_user=True,
            )
        except SpotifyApiError as exc:
            return self._failure("user playlists", exc)
        return [normalize_playlist(p) for p in ((payload or {}).get("items") or []) if isinstance(p, dict)]

    async def get_user_saved_tracks(self, session_key: str | None, limit: int = 20, offset: int = 0) -> dict | ApiError:
        """Saved tracks change often and are always fetched live."""
        try:
            payload = await self.request(
                session_key,
                "/me/tracks",
                params={"limit": limit, "offset": offset},
                require_user=True,
            )
        except SpotifyApiError as exc:
            return self._failure("saved tracks", exc)
        payload = payload or {}
        items = []
        for entry in payload.get("items") or []:
            track = (entry or {}).get("track")
            if not isinstance(track, dict):
                continue
            items.append({"added_at": entry.get("added_at"), "track": normalize_track(track)})
        return {
            "items": items,
            "total": payload.get("total", 0),
            "limit": payload.get("limit", limit),
            "offset": payload.get("offset", offset),
        }

    async def get_user_saved_albums(self, session_key: str | None, limit: int = 20, offset: int = 0) -> dict | ApiError:
        try:
            payload = await self.request(
                session_key,
                "/me/albums",
                params={"limit": int(limit), "offset": int(offset)},
                require_user=True,
            )
        except SpotifyApiError as exc:
            return self._failure("saved albums", exc)
        albums = [
            normalize_album(entry["album"])
            for entry in ((payload or {}).get("items") or [])
            if isinstance(entry, dict) and isinstance(entry.get("album"), dict)
        ]
        return {"success": True, "albums": albums}

    async def _user_top(self, session_key: str | None, kind: str, limit: int, time_range: str) -> list[dict] | ApiError:
        profile = await self.get_user_profile(session_key)
        if isinstance(profile, ApiError):
            return profile
        user_id = profile.get("id")
        if not user_id:
            return ApiError(502, "user profile response missing id")

        normalizer = normalize_artist if kind == "artists" else normalize_track

        async def fetch() -> list[dict]:
            payload = await self.request(
                session_key,
                f"/me/top/{kind}",
                params={"limit": limit, "time_range": time_range},
                require_user=True,
            )
            return [normalizer(item) for item in ((payload or {}).get("items") or []) if isinstance(item, dict)]

        key = build_cache_key("user", user_id, f"top-{kind}", limit=limit, range=time_range)
        try:
            return await self._cached(key, CACHE_TTL_USER_TOP_ITEMS, fetch)
        except SpotifyApiError as exc:
            return self._failure(f"top {kind}", exc)

    async def get_user_top_artists(self, session_key: str | None, limit: int = 10, time_range: str = "medium_term"):
        return await self._user_top(session_key, "artists", limit, time_range)

    async def get_user_top_tracks(self, session_key: str | None, limit: int = 10, time_range: str = "medium_term"):
        return await self._user_top(session_key, "tracks", limit, time_range)

    # Browse

    async def get_featured_playlists(self, session_key: str | None, limit: int = 20, offset: int = 0) -> list[dict] | ApiError:
        async def fetch() -> list[dict]:
            payload = await self.request(
                session_key,
                "/browse/featured-playlists",
                params={"limit": limit, "offset": offset},
            )
            raw, _total = page_items(payload, "playlists")
            return [normalize_playlist(p) for p in raw]

        key = build_cache_key("featured-playlists", limit=limit, offset=offset)
        try:
            return await self._cached(key, CACHE_TTL_FEATURED_PLAYLISTS, fetch)
        except SpotifyApiError as exc:
            return self._failure("featured playlists", exc)

    async def get_artist_details(self, artist_id: str) -> dict | ApiError:
        encoded = _quote(artist_id)

        async def fetch() -> dict:
            artist, top_tracks, albums = await asyncio.gather(
                self.request(None, f"/artists/{encoded}"),
                self.request(None, f"/artists/{encoded}/top-tracks", params={"market": self.market}),
                self.request(
                    None,
                    f"/artists/{encoded}/albums",
                    params={"market": self.market, "limit": 20, "include_groups": "album,single"},
                ),
            )
            return {
                "artist": normalize_artist(artist or {}),
                "topTracks": [
                    normalize_track(track)
                    for track in ((top_tracks or {}).get("tracks") or [])[:ARTIST_TOP_TRACKS_LIMIT]
                    if isinstance(track, dict)
                ],
                "albums": [normalize_album(album) for album in ((albums or {}).get("items") or []) if isinstance(album, dict)],
            }

        try:
            data = await self._cached(build_cache_key("artist-details", artist_id), CACHE_TTL_ARTIST_DETAILS, fetch)
        except SpotifyApiError as exc:
            return self._failure("artist details", exc)
        return {"success": True, **data}

    async def get_album_details(self, album_id: str) -> dict | ApiError:
        encoded = _quote(album_id)

        async def fetch() -> dict:
            album, tracks = await asyncio.gather(
                self.request(None, f"/albums/{encoded}"),
                self.request(None, f"/albums/{encoded}/tracks", params={"market": self.market, "limit": 50}),
            )
            album = album or {}
            summary = normalize_album(album)
            summary.update(
                {
                    "genres": list(album.get("genres") or []),
                    "popularity": int(album.get("popularity") or 0),
                    "label": album.get("label"),
                    "copyright": ((album.get("copyrights") or [{}])[0] or {}).get("text"),
                }
            )
            track_items = []
            for index, track in enumerate((tracks or {}).get("items") or []):
                if not isinstance(track, dict):
                    continue
                item = normalize_track(track, album=album)
                item["track_number"] = track.get("track_number") or index + 1
                track_items.append(item)
            return {"album": summary, "tracks": track_items}

        try:
            data = await self._cached(build_cache_key("album-details", album_id), CACHE_TTL_ALBUM_DETAILS, fetch)
        except SpotifyApiError as exc:
            return self._failure("album details", exc)
        return {"success": True, **data}

    async def get_playlist_tracks(self, playlist_id: str, limit: int = 50, offset: int = 0) -> dict | ApiError:
        encoded = _quote(playlist_id)
        limit = int(limit)
        offset = int(offset)

        async def fetch() -> dict:
            payload = await self.request(
                None,
                f"/playlists/{encoded}/tracks",
                params={
                    "market": self.market,
                    "limit": limit,
                    "offset": offset,
                    "fields": (
                        "items(track(id,name,artists,album(name,images),duration_ms,preview_url,explicit)),"
                        "total,limit,offset,next,previous"
                    ),
                },
            )
            payload = payload or {}
            items = [
                {"track": normalize_track(entry["track"])}
                for entry in payload.get("items") or []
                if isinstance(entry, dict) and isinstance(entry.get("track"), dict)
            ]
            return {
                "items": items,
                "total": payload.get("total", 0),
                "limit": payload.get("limit", limit),
                "offset": payload.get("offset", offset),
                "next": payload.get("next"),
                "previous": payload.get("previous"),
            }

        key = build_cache_key("playlist-tracks", playlist_id, limit=limit, offset=offset)
        try:
            data = await self._cached(key, CACHE_TTL_PLAYLIST_TRACKS, fetch)
        except SpotifyApiError as exc:
            return self._failure("playlist tracks", exc)
        return {"success": True, **data}

    async def get_recommendations(self, **options: Any) -> dict | ApiError:
        """Recommendations are dynamic and never cached."""
        params = {"market": self.market, "limit": 20}
        params.update({key: value for key, value in options.items() if value is not None})
        try:
            payload = await self.request(None, "/recommendations", params=params)
        except SpotifyApiError as exc:
            return self._failure("recommendations", exc)
        tracks = [normalize_track(t) for t in ((payload or {}).get("tracks") or []) if isinstance(t, dict)]
        return {"success": True, "tracks": tracks}


