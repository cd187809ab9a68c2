#!/usr/bin/env python3
"""HTTP surface wiring the catalog core and the media resolver for the client app."""

import asyncio
import logging
import os
import secrets
import time
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel

from config.settings import (
    SEARCH_DEFAULT_LIMIT,
    SPOTIFY_SCOPES_BASIC,
    SPOTIFY_SCOPES_CRUD,
    Settings,
    load_settings,
)
from engine.cache import ReadThroughCache, build_cache_backend
from engine.search_engine import SearchAggregator
from media.resolver import MediaResolver
from spotify.client import SpotifyCatalogClient
from spotify.oauth_client import build_auth_url
from spotify.oauth_store import SQLiteCredentialStore
from spotify.results import (
    TRANSIENT,
    ApiError,
    AuthFailure,
    Failure,
    LocalFile,
    NotFound,
    RankedResults,
)
from spotify.token_manager import AppTokenProvider, TokenLifecycleManager

APP_NAME = "Tunebridge API"
SESSION_COOKIE = "sid"
SESSION_HEADER = "x-session-id"
OAUTH_STATE_TTL_SECONDS = 600
OAUTH_STATE_MAX_ENTRIES = 1000

app = FastAPI(
    title=APP_NAME,
    description="Spotify catalog search and browse with YouTube-backed audio streaming.",
)


class ExchangeRequest(BaseModel):
    code: str
    state: str


class SearchRequest(BaseModel):
    query: str
    limit: int = SEARCH_DEFAULT_LIMIT


def _setup_logging(log_dir):
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "tunebridge.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def init_services(settings: Settings) -> None:
    """Build the core components and attach them to ``app.state``."""
    store = SQLiteCredentialStore(settings.credentials_db_path)
    token_manager = TokenLifecycleManager(
        store,
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        redirect_uri=settings.redirect_uri,
        timeout_sec=settings.http_timeout_sec,
        credentials_ttl_sec=settings.credentials_ttl_sec,
    )
    app_tokens = AppTokenProvider(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        timeout_sec=settings.http_timeout_sec,
    )
    backend = build_cache_backend(
        settings.cache_backend,
        redis_url=settings.redis_url,
        file_path=settings.cache_file_path,
    )
    client = SpotifyCatalogClient(
        token_manager=token_manager,
        app_tokens=app_tokens,
        cache=ReadThroughCache(backend),
        market=settings.market,
        timeout_sec=settings.http_timeout_sec,
    )
    app.state.settings = settings
    app.state.token_manager = token_manager
    app.state.catalog = client
    app.state.search = SearchAggregator(client)
    app.state.media = MediaResolver(
        settings.downloads_dir,
        binary=settings.ytdlp_binary,
        download_timeout_sec=settings.ytdlp_download_timeout_sec,
    )
    app.state.oauth_states = {}


@app.on_event("startup")
async def startup():
    settings = load_settings()
    _setup_logging(settings.log_dir)
    init_services(settings)
    logging.info("%s started market=%s cache=%s", APP_NAME, settings.market, settings.cache_backend)


def _session_key(request: Request) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_HEADER) or None


def _remember_oauth_state(session_key: str, state: str) -> None:
    """Record a pending login state, dropping expired and oldest entries."""
    pending = app.state.oauth_states
    now = time.monotonic()
    pending.pop(session_key, None)
    for key in [k for k, (_state, issued_at) in pending.items() if now - issued_at > OAUTH_STATE_TTL_SECONDS]:
        del pending[key]
    while pending and len(pending) >= OAUTH_STATE_MAX_ENTRIES:
        del pending[next(iter(pending))]
    pending[session_key] = (state, now)


def _pop_oauth_state(session_key: Optional[str]) -> Optional[str]:
    if not session_key:
        return None
    entry = app.state.oauth_states.pop(session_key, None)
    if entry is None:
        return None
    state, issued_at = entry
    if time.monotonic() - issued_at > OAUTH_STATE_TTL_SECONDS:
        return None
    return state


def _error_response(result) -> JSONResponse:
    if isinstance(result, AuthFailure):
        status = 503 if result.reason == TRANSIENT else 401
    elif isinstance(result, ApiError):
        status = result.status if 400 <= result.status < 600 else 502
    elif isinstance(result, NotFound):
        status = 404
    else:
        status = 500
    return JSONResponse(result.to_dict(), status_code=status)


def _respond(result):
    if isinstance(result, (AuthFailure, ApiError, NotFound, Failure)):
        return _error_response(result)
    if isinstance(result, RankedResults):
        return result.to_dict()
    return result


@app.get("/auth/login")
async def auth_login(request: Request, level: str = Query("basic")):
    settings = app.state.settings
    if not settings.client_id or not settings.redirect_uri:
        raise HTTPException(status_code=500, detail="Spotify client is not configured")
    session_key = _session_key(request) or secrets.token_hex(16)
    state = secrets.token_hex(16)
    _remember_oauth_state(session_key, state)

    scopes = list(SPOTIFY_SCOPES_BASIC)
    if level == "crud":
        scopes.extend(scope for scope in SPOTIFY_SCOPES_CRUD if scope not in scopes)
    auth_url = build_auth_url(settings.client_id, settings.redirect_uri, " ".join(scopes), state)
    response = JSONResponse({"auth_url": auth_url})
    response.set_cookie(SESSION_COOKIE, session_key, httponly=True, samesite="lax")
    return response


@app.post("/auth/exchange")
async def auth_exchange(request: Request, payload: ExchangeRequest):
    session_key = _session_key(request)
    expected_state = _pop_oauth_state(session_key)
    if not payload.code or not expected_state or payload.state != expected_state:
        raise HTTPException(status_code=400, detail="State mismatch or missing code")

    record = await app.state.token_manager.store_authorization(session_key, payload.code)
    if isinstance(record, AuthFailure):
        return _error_response(record)
    profile = await app.state.catalog.get_user_profile(session_key)
    if isinstance(profile, ApiError):
        return _error_response(profile)
    logging.info("login completed user=%s", profile.get("display_name"))
    return {"success": True, "user": profile}


@app.post("/auth/logout", status_code=204)
async def auth_logout(request: Request):
    await app.state.token_manager.logout(_session_key(request))
    response = Response(status_code=204)
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/auth/status")
async def auth_status(request: Request):
    authenticated = await app.state.token_manager.is_authenticated(_session_key(request))
    return {"isAuthenticated": authenticated}


@app.post("/media/search")
async def media_search(payload: SearchRequest = Body(...)):
    if not isinstance(payload.query, str):
        raise HTTPException(status_code=400, detail="Invalid query")
    return _respond(await app.state.search.search_multi_type(payload.query, payload.limit))


@app.get("/media/stream/{spotify_id}")
async def media_stream(
    spotify_id: str,
    title: Optional[str] = Query(None),
    artist: Optional[str] = Query(None),
    duration_ms: Optional[int] = Query(None),
):
    if not title or not artist or duration_ms is None:
        raise HTTPException(status_code=400, detail="title, artist and duration_ms are required")
    result = await app.state.media.fetch_track(title, artist, duration_ms)
    if isinstance(result, LocalFile):
        logging.info("streaming spotify_id=%s path=%s", spotify_id, result.path)
        return FileResponse(result.path, media_type="audio/mpeg")
    return _error_response(result)


@app.get("/spotify/artists/{artist_id}")
async def artist_details(artist_id: str):
    return _respond(await app.state.catalog.get_artist_details(artist_id))


@app.get("/spotify/albums/{album_id}")
async def album_details(album_id: str):
    return _respond(await app.state.catalog.get_album_details(album_id))


@app.get("/spotify/playlists/{playlist_id}/tracks")
async def playlist_tracks(playlist_id: str, limit: int = Query(50, ge=1, le=100), offset: int = Query(0, ge=0)):
    return _respond(await app.state.catalog.get_playlist_tracks(playlist_id, limit, offset))


@app.get("/spotify/recommendations")
async def recommendations(
    seed_tracks: Optional[str] = Query(None),
    seed_artists: Optional[str] = Query(None),
    seed_genres: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
):
    seeds = {"seed_tracks": seed_tracks, "seed_artists": seed_artists, "seed_genres": seed_genres}
    seeds = {key: value for key, value in seeds.items() if value}
    if not seeds:
        raise HTTPException(status_code=400, detail="At least one of seed_tracks, seed_artists or seed_genres is required")
    return _respond(await app.state.catalog.get_recommendations(limit=limit, **seeds))


@app.get("/spotify/home")
async def home_content(request: Request):
    """Featured playlists plus the caller's top artists when they are available."""
    session_key = _session_key(request)
    featured, top_artists = await asyncio.gather(
        app.state.catalog.get_featured_playlists(session_key),
        app.state.catalog.get_user_top_artists(session_key),
    )
    if isinstance(featured, ApiError):
        return _error_response(featured)
    body = {"success": True, "featuredPlaylists": featured or []}
    if isinstance(top_artists, ApiError):
        logging.info("home content without top artists status=%s", top_artists.status)
    elif top_artists:
        body["topArtists"] = top_artists
    return body


@app.get("/spotify/browse/featured-playlists")
async def featured_playlists(request: Request, limit: int = Query(20, ge=1, le=50), offset: int = Query(0, ge=0)):
    return _respond(await app.state.catalog.get_featured_playlists(_session_key(request), limit, offset))


@app.get("/spotify/me")
async def me(request: Request):
    return _respond(await app.state.catalog.get_user_profile(_session_key(request)))


@app.get("/spotify/me/playlists")
async def my_playlists(request: Request, limit: int = Query(20, ge=1, le=50), offset: int = Query(0, ge=0)):
    return _respond(await app.state.catalog.get_user_playlists(_session_key(request), limit, offset))


@app.get("/spotify/me/tracks")
async def my_saved_tracks(request: Request, limit: int = Query(20, ge=1, le=50), offset: int = Query(0, ge=0)):
    return _respond(await app.state.catalog.get_user_saved_tracks(_session_key(request), limit, offset))


@app.get("/spotify/me/albums")
async def my_saved_albums(request: Request, limit: int = Query(20, ge=1, le=50), offset: int = Query(0, ge=0)):
    return _respond(await app.state.catalog.get_user_saved_albums(_session_key(request), limit, offset))


@app.get("/spotify/me/top/{kind}")
async def my_top_items(
    request: Request,
    kind: str,
    limit: int = Query(10, ge=1, le=50),
    time_range: str = Query("medium_term"),
):
    catalog = app.state.catalog
    if kind == "artists":
        result = await catalog.get_user_top_artists(_session_key(request), limit, time_range)
    elif kind == "tracks":
        result = await catalog.get_user_top_tracks(_session_key(request), limit, time_range)
    else:
        raise HTTPException(status_code=404, detail="Unknown top item type")
    return _respond(result)


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("TUNEBRIDGE_HOST", "127.0.0.1")
    port = int(os.environ.get("TUNEBRIDGE_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
