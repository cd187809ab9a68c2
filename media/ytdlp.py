"""yt-dlp helpers: candidate search through the library, downloads through the CLI."""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from yt_dlp import YoutubeDL

from config.settings import YTDLP_AUDIO_FORMAT, YTDLP_BINARY

logger = logging.getLogger(__name__)

_QUOTE_RE = re.compile(r"[\"']")

AUDIO_FORMAT_SELECTOR = "bestaudio[ext=m4a]/bestaudio"


class DownloaderError(RuntimeError):
    """The downloader process could not be started or did not finish in time."""


@dataclass(frozen=True)
class CandidateVideo:
    url: str
    title: str | None
    uploader: str | None
    duration_seconds: float


def _is_http_url(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    try:
        return urlparse(value).scheme in ("http", "https")
    except ValueError:
        return False


def sanitize_query(query: str | None) -> str:
    """Strip quote characters that would break the search term."""
    return _QUOTE_RE.sub("", query or "").strip()


def parse_candidate(entry: Any) -> Optional[CandidateVideo]:
    """Return a candidate for entries with an http(s) page URL and numeric duration."""
    if not isinstance(entry, dict):
        return None
    url = entry.get("webpage_url")
    if not _is_http_url(url):
        return None
    duration = entry.get("duration")
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        return None
    return CandidateVideo(
        url=url,
        title=entry.get("title"),
        uploader=entry.get("uploader") or entry.get("channel"),
        duration_seconds=float(duration),
    )


def search_entries(query: str, limit: int, *, socket_timeout: int = 10) -> list[dict]:
    """Run ``ytsearch<limit>:<query>`` and return the raw metadata entries in index order."""
    if not query:
        return []
    search_term = f"ytsearch{limit}:{query}"
    opts = {
        "skip_download": True,
        "quiet": True,
        "no_warnings": True,
        "ignoreerrors": True,
        "noplaylist": True,
        "cachedir": False,
        "socket_timeout": socket_timeout,
    }
    with YoutubeDL(opts) as ydl:
        info = ydl.extract_info(search_term, download=False)
    entries = info.get("entries") if isinstance(info, dict) else None
    return [entry for entry in (entries or []) if isinstance(entry, dict)]


def expected_output_path(output_path: str | Path, audio_format: str = YTDLP_AUDIO_FORMAT) -> Path:
    path = Path(output_path)
    suffix = f".{audio_format}"
    if path.suffix.lower() == suffix:
        return path
    return Path(f"{path}{suffix}")


def build_download_argv(
    url: str,
    output_path: str | Path,
    *,
    binary: str = YTDLP_BINARY,
    audio_format: str = YTDLP_AUDIO_FORMAT,
) -> list[str]:
    """Return a yt-dlp argv list suitable for subprocess.run(shell=False)."""
    target = expected_output_path(output_path, audio_format)
    output_template = f"{str(target)[: -len(target.suffix)]}.%(ext)s"
    return [
        binary,
        "-f",
        AUDIO_FORMAT_SELECTOR,
        "-x",
        "--audio-format",
        audio_format,
        "--audio-quality",
        "0",
        "--parse-metadata",
        "%(release_date,upload_date)s:%(meta_date)s",
        "--parse-metadata",
        "%(title)s:%(meta_title)s",
        "-o",
        output_template,
        "--no-playlist",
        "--no-progress",
        "--quiet",
        url,
    ]


def run_download(argv: list[str], *, timeout: float) -> tuple[int, str]:
    """Run the downloader and return ``(return_code, stderr)``.

    Raises:
        DownloaderError: If the binary is missing or the process times out.
    """
    logger.info("ytdlp download cli=%s", shlex.join(argv))
    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise DownloaderError(f"{argv[0]} is not installed or not available in PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise DownloaderError(f"{argv[0]} timed out after {timeout:.0f}s") from exc
    return completed.returncode, (completed.stderr or "").strip()
