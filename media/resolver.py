"""Pick one downloadable media item for a catalog track and fetch its audio."""

from __future__ import annotations

import functools
import logging
import re
from pathlib import Path
from typing import Iterable, Optional

import anyio
from yt_dlp.utils import DownloadError, ExtractorError

from config.settings import (
    DURATION_TOLERANCE_MAX_SECONDS,
    DURATION_TOLERANCE_MIN_SECONDS,
    DURATION_TOLERANCE_RATIO,
    YTDLP_AUDIO_FORMAT,
    YTDLP_BINARY,
    YTDLP_DOWNLOAD_TIMEOUT_SECONDS,
    YTDLP_SEARCH_CANDIDATES,
    YTDLP_SEARCH_TIMEOUT_SECONDS,
)
from media.ytdlp import (
    CandidateVideo,
    DownloaderError,
    build_download_argv,
    expected_output_path,
    parse_candidate,
    run_download,
    sanitize_query,
    search_entries,
)
from spotify.results import Failure, LocalFile, NotFound

logger = logging.getLogger(__name__)

_FILENAME_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9\s\-.]")


def duration_tolerance_seconds(target_seconds: float) -> float:
    """``clamp(target * 10%, 5s, 15s)``."""
    return max(
        DURATION_TOLERANCE_MIN_SECONDS,
        min(DURATION_TOLERANCE_MAX_SECONDS, target_seconds * DURATION_TOLERANCE_RATIO),
    )


def duration_window(target_duration_ms: int) -> tuple[float, float]:
    """Return the inclusive ``(min, max)`` duration window in seconds."""
    target_seconds = target_duration_ms / 1000.0
    tolerance = duration_tolerance_seconds(target_seconds)
    return target_seconds - tolerance, target_seconds + tolerance


def select_candidate(
    candidates: Iterable[CandidateVideo],
    target_duration_ms: Optional[int],
) -> Optional[CandidateVideo]:
    """Return the first candidate, in index order, that satisfies the window.

    Without a target duration the first candidate wins. A candidate outside
    the window is never returned.
    """
    ordered = list(candidates)
    if not target_duration_ms:
        return ordered[0] if ordered else None

    low, high = duration_window(int(target_duration_ms))
    for candidate in ordered:
        if low <= candidate.duration_seconds <= high:
            return candidate
        logger.debug(
            "candidate rejected title=%r duration=%.0fs window=%.2f-%.2fs",
            candidate.title,
            candidate.duration_seconds,
            low,
            high,
        )
    return None


def build_output_filename(artist: str, title: str, audio_format: str = YTDLP_AUDIO_FORMAT) -> str:
    """Build ``"<artist> - <title>.<ext>"`` keeping only letters, digits, spaces, ``-`` and ``.``."""
    return _FILENAME_UNSAFE_RE.sub("", f"{artist} - {title}.{audio_format}").strip()


class MediaResolver:
    """Searches the media index, selects by duration and drives the downloader."""

    def __init__(
        self,
        downloads_dir: str | Path,
        *,
        binary: str = YTDLP_BINARY,
        num_candidates: int = YTDLP_SEARCH_CANDIDATES,
        search_timeout_sec: int = YTDLP_SEARCH_TIMEOUT_SECONDS,
        download_timeout_sec: float = YTDLP_DOWNLOAD_TIMEOUT_SECONDS,
        audio_format: str = YTDLP_AUDIO_FORMAT,
    ) -> None:
        self.downloads_dir = Path(downloads_dir)
        self.binary = binary
        self.num_candidates = num_candidates
        self.search_timeout_sec = search_timeout_sec
        self.download_timeout_sec = download_timeout_sec
        self.audio_format = audio_format

    async def find_candidates(self, query: str) -> list[CandidateVideo] | Failure:
        sanitized = sanitize_query(query)
        try:
            entries = await anyio.to_thread.run_sync(
                functools.partial(
                    search_entries,
                    sanitized,
                    self.num_candidates,
                    socket_timeout=self.search_timeout_sec,
                )
            )
        except (DownloadError, ExtractorError) as exc:
            logger.error("media index search failed query=%r error=%s", sanitized, exc)
            return Failure(f"media search failed: {exc}")

        candidates = [c for c in (parse_candidate(entry) for entry in entries) if c is not None]
        logger.info(
            "media index query=%r entries=%d valid_candidates=%d",
            sanitized,
            len(entries),
            len(candidates),
        )
        return candidates

    async def resolve_and_fetch(
        self,
        query: str,
        target_duration_ms: Optional[int],
        output_path: str | Path,
    ) -> LocalFile | NotFound | Failure:
        """Resolve ``query`` to one media item and download it as audio to ``output_path``."""
        candidates = await self.find_candidates(query)
        if isinstance(candidates, Failure):
            return candidates
        if not candidates:
            return NotFound("no valid media found for query")

        selected = select_candidate(candidates, target_duration_ms)
        if selected is None:
            return NotFound(f"none of the first {len(candidates)} results matches the requested duration")
        logger.info(
            "media selected title=%r duration=%.0fs url=%s",
            selected.title,
            selected.duration_seconds,
            selected.url,
        )
        return await self._download(selected, output_path)

    async def _download(self, candidate: CandidateVideo, output_path: str | Path) -> LocalFile | Failure:
        target = expected_output_path(output_path, self.audio_format)
        target.parent.mkdir(parents=True, exist_ok=True)
        argv = build_download_argv(candidate.url, target, binary=self.binary, audio_format=self.audio_format)

        try:
            return_code, stderr = await anyio.to_thread.run_sync(
                functools.partial(run_download, argv, timeout=self.download_timeout_sec)
            )
        except DownloaderError as exc:
            return_code, stderr = None, str(exc)

        if return_code != 0:
            if target.exists():
                # yt-dlp can exit non-zero after the audio file was fully written.
                logger.warning(
                    "downloader reported an error but output exists path=%s error=%s",
                    target,
                    stderr,
                )
                return self._local_file(target, candidate)
            logger.error("download failed url=%s code=%s error=%s", candidate.url, return_code, stderr)
            return Failure(stderr or f"downloader exited with code {return_code}")

        if not target.exists():
            logger.error("download finished without output path=%s", target)
            return Failure("downloader finished but the output file was not created")
        return self._local_file(target, candidate)

    @staticmethod
    def _local_file(path: Path, candidate: CandidateVideo) -> LocalFile:
        return LocalFile(
            path=str(path),
            title=candidate.title,
            uploader=candidate.uploader,
            source_url=candidate.url,
            duration_ms=int(candidate.duration_seconds * 1000),
        )

    async def fetch_track(self, title: str, artist: str, duration_ms: Optional[int]) -> LocalFile | NotFound | Failure:
        """Return the already-downloaded file for a track, downloading it when missing."""
        path = self.downloads_dir / build_output_filename(artist, title, self.audio_format)
        if path.exists():
            logger.info("serving previously downloaded file path=%s", path)
            return LocalFile(path=str(path))
        return await self.resolve_and_fetch(f"{artist} {title}", duration_ms, path)
