"""Application settings constants."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("TUNEBRIDGE_DATA_DIR", PROJECT_ROOT / "data")).resolve()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Spotify application credentials. ``SPOTIFY_SECRET_ID`` is the legacy name.
SPOTIFY_CLIENT_ID = os.environ.get("SPOTIFY_CLIENT_ID")
SPOTIFY_CLIENT_SECRET = os.environ.get("SPOTIFY_CLIENT_SECRET") or os.environ.get("SPOTIFY_SECRET_ID")
SPOTIFY_REDIRECT_URI = os.environ.get("SPOTIFY_REDIRECT_URI")
SPOTIFY_MARKET = os.environ.get("SPOTIFY_MARKET", "IT")
SPOTIFY_HTTP_TIMEOUT_SECONDS = _env_int("SPOTIFY_HTTP_TIMEOUT_SECONDS", 20)

# Stored user tokens are refreshed once they are this close to expiry.
TOKEN_SAFETY_MARGIN_MS = 60_000

# Scopes requested by the login route.
SPOTIFY_SCOPES_BASIC = (
    "user-read-private",
    "user-read-email",
    "user-library-read",
    "user-top-read",
    "playlist-read-private",
    "playlist-read-collaborative",
)
SPOTIFY_SCOPES_CRUD = (
    "playlist-modify-public",
    "playlist-modify-private",
    "user-library-modify",
)

# Credential store and cache backends.
CREDENTIALS_DB_PATH = Path(
    os.environ.get("CREDENTIALS_DB_PATH", DATA_DIR / "credentials.sqlite")
).resolve()
CREDENTIALS_TTL_SECONDS = _env_int("CREDENTIALS_TTL_SECONDS", 30 * 24 * 3600)
CACHE_BACKEND = os.environ.get("CACHE_BACKEND", "redis").strip().lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
CACHE_FILE_PATH = Path(os.environ.get("CACHE_FILE_PATH", DATA_DIR / "cache" / "catalog_cache.json")).resolve()

# Cache TTLs per operation, in seconds. ``None`` disables caching.
CACHE_TTL_FEATURED_PLAYLISTS = 3600
CACHE_TTL_PLAYLIST_TRACKS = 3600
CACHE_TTL_ARTIST_DETAILS = 12 * 3600
CACHE_TTL_ALBUM_DETAILS = 24 * 3600
CACHE_TTL_USER_TOP_ITEMS = 6 * 3600
CACHE_TTL_USER_SAVED_ITEMS = None
CACHE_TTL_RECOMMENDATIONS = None

# Search aggregation.
SEARCH_FETCH_LIMIT = 50
SEARCH_CANONICAL_DURATION_MS = 210_000
SEARCH_DEFAULT_LIMIT = 20

# Media resolution and download.
DOWNLOADS_DIR = Path(os.environ.get("DOWNLOADS_DIR", DATA_DIR / "downloads")).resolve()
LOG_DIR = Path(os.environ.get("LOG_DIR", DATA_DIR / "logs")).resolve()
YTDLP_BINARY = os.environ.get("YTDLP_BINARY", "yt-dlp")
YTDLP_SEARCH_CANDIDATES = 3
YTDLP_SEARCH_TIMEOUT_SECONDS = _env_int("YTDLP_SEARCH_TIMEOUT_SECONDS", 10)
YTDLP_DOWNLOAD_TIMEOUT_SECONDS = _env_int("YTDLP_DOWNLOAD_TIMEOUT_SECONDS", 300)
YTDLP_AUDIO_FORMAT = "mp3"

# Duration window used to accept a search candidate.
DURATION_TOLERANCE_RATIO = 0.10
DURATION_TOLERANCE_MIN_SECONDS = 5.0
DURATION_TOLERANCE_MAX_SECONDS = 15.0


@dataclass(frozen=True)
class Settings:
    client_id: str | None
    client_secret: str | None
    redirect_uri: str | None
    market: str
    http_timeout_sec: int
    credentials_db_path: Path
    credentials_ttl_sec: int
    cache_backend: str
    redis_url: str
    cache_file_path: Path
    downloads_dir: Path
    log_dir: Path
    ytdlp_binary: str
    ytdlp_download_timeout_sec: int


def load_settings() -> Settings:
    """Snapshot the module-level configuration for dependency injection."""
    return Settings(
        client_id=SPOTIFY_CLIENT_ID,
        client_secret=SPOTIFY_CLIENT_SECRET,
        redirect_uri=SPOTIFY_REDIRECT_URI,
        market=SPOTIFY_MARKET,
        http_timeout_sec=SPOTIFY_HTTP_TIMEOUT_SECONDS,
        credentials_db_path=CREDENTIALS_DB_PATH,
        credentials_ttl_sec=CREDENTIALS_TTL_SECONDS,
        cache_backend=CACHE_BACKEND,
        redis_url=REDIS_URL,
        cache_file_path=CACHE_FILE_PATH,
        downloads_dir=DOWNLOADS_DIR,
        log_dir=LOG_DIR,
        ytdlp_binary=YTDLP_BINARY,
        ytdlp_download_timeout_sec=YTDLP_DOWNLOAD_TIMEOUT_SECONDS,
    )
