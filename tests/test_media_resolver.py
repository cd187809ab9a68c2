from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path

import pytest

from media.resolver import (
    MediaResolver,
    build_output_filename,
    duration_window,
    select_candidate,
)
from media.ytdlp import (
    CandidateVideo,
    DownloaderError,
    build_download_argv,
    parse_candidate,
    run_download,
    sanitize_query,
)
from spotify.results import Failure, LocalFile, NotFound


def _entry(title: str, duration, url: str | None = None) -> dict:
    return {
        "title": title,
        "duration": duration,
        "webpage_url": url or f"https://www.youtube.com/watch?v={title.replace(' ', '')}",
        "uploader": "Some Channel",
    }


def _candidate(title: str, duration: float) -> CandidateVideo:
    return CandidateVideo(url=f"https://youtu.be/{title}", title=title, uploader=None, duration_seconds=duration)


class _FakeYoutubeDL:
    entries: list = []
    seen: list = []

    def __init__(self, opts) -> None:
        self.opts = opts

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def extract_info(self, search_term, download=False):
        type(self).seen.append(search_term)
        return {"entries": list(type(self).entries)}


@pytest.fixture()
def fake_ytdl(monkeypatch):
    _FakeYoutubeDL.entries = []
    _FakeYoutubeDL.seen = []
    monkeypatch.setattr("media.ytdlp.YoutubeDL", _FakeYoutubeDL)
    return _FakeYoutubeDL


def test_duration_window_uses_clamped_tolerance() -> None:
    assert duration_window(200_000) == (185.0, 215.0)
    assert duration_window(30_000) == (25.0, 35.0)
    assert duration_window(600_000) == (585.0, 615.0)


def test_select_candidate_accepts_inside_and_rejects_outside_window() -> None:
    assert select_candidate([_candidate("ok", 190)], 200_000).title == "ok"
    assert select_candidate([_candidate("short", 170)], 200_000) is None


def test_select_candidate_is_first_match_in_index_order() -> None:
    candidates = [_candidate("too-long", 260), _candidate("close", 214), _candidate("exact", 200)]

    assert select_candidate(candidates, 200_000).title == "close"


def test_select_candidate_without_target_takes_first() -> None:
    candidates = [_candidate("first", 999), _candidate("second", 200)]

    assert select_candidate(candidates, None).title == "first"
    assert select_candidate([], None) is None


def test_parse_candidate_requires_http_url_and_numeric_duration() -> None:
    assert parse_candidate(_entry("ok", 200)).duration_seconds == 200.0
    assert parse_candidate(_entry("no-duration", None)) is None
    assert parse_candidate(_entry("bool-duration", True)) is None
    assert parse_candidate(_entry("bad-url", 200, url="ftp://example.com/x")) is None
    assert parse_candidate(None) is None


def test_sanitize_query_strips_quotes() -> None:
    assert sanitize_query('Guns N\' Roses "Sweet Child"') == "Guns N Roses Sweet Child"


def test_output_filename_drops_unsafe_characters() -> None:
    assert build_output_filename("AC/DC", "Back: In Black?") == "ACDC - Back In Black.mp3"


def test_download_argv_writes_audio_next_to_target(tmp_path) -> None:
    argv = build_download_argv("https://youtu.be/x", tmp_path / "Artist - Song.mp3", binary="yt-dlp")

    assert argv[0] == "yt-dlp"
    assert argv[-1] == "https://youtu.be/x"
    assert argv[argv.index("--audio-format") + 1] == "mp3"
    assert argv[argv.index("-o") + 1] == str(tmp_path / "Artist - Song.%(ext)s")
    assert "--no-playlist" in argv


def test_run_download_reports_missing_binary(monkeypatch) -> None:
    def _missing(*_args, **_kwargs):
        raise FileNotFoundError("yt-dlp")

    monkeypatch.setattr("media.ytdlp.subprocess.run", _missing)

    with pytest.raises(DownloaderError):
        run_download(["yt-dlp", "x"], timeout=1)


def test_resolve_downloads_first_matching_candidate(tmp_path, fake_ytdl, monkeypatch) -> None:
    fake_ytdl.entries = [_entry("live version", 320), _entry("official audio", 201), _entry("other", 199)]
    target = tmp_path / "out" / "Band - Song.mp3"
    seen_argv = []

    def _download(argv, *, timeout):
        seen_argv.append(argv)
        target.write_bytes(b"ID3")
        return 0, ""

    monkeypatch.setattr("media.resolver.run_download", _download)
    resolver = MediaResolver(tmp_path, num_candidates=3)

    result = asyncio.run(resolver.resolve_and_fetch('Band "Song"', 200_000, target))

    assert isinstance(result, LocalFile)
    assert result.path == str(target)
    assert result.title == "official audio"
    assert result.duration_ms == 201_000
    assert fake_ytdl.seen == ["ytsearch3:Band Song"]
    assert seen_argv[0][-1] == "https://www.youtube.com/watch?v=officialaudio"


def test_resolve_without_window_match_is_not_found(tmp_path, fake_ytdl, monkeypatch) -> None:
    fake_ytdl.entries = [_entry("a", 100), _entry("b", 400)]

    def _unexpected(*_args, **_kwargs):
        raise AssertionError("download must not start")

    monkeypatch.setattr("media.resolver.run_download", _unexpected)

    result = asyncio.run(MediaResolver(tmp_path).resolve_and_fetch("x", 200_000, tmp_path / "x.mp3"))

    assert isinstance(result, NotFound)


def test_resolve_with_no_valid_entries_is_not_found(tmp_path, fake_ytdl) -> None:
    fake_ytdl.entries = [_entry("no-duration", None)]

    result = asyncio.run(MediaResolver(tmp_path).resolve_and_fetch("x", 200_000, tmp_path / "x.mp3"))

    assert isinstance(result, NotFound)


def test_error_exit_with_written_file_counts_as_success(tmp_path, fake_ytdl, monkeypatch) -> None:
    fake_ytdl.entries = [_entry("song", 200)]
    target = tmp_path / "song.mp3"

    def _download(argv, *, timeout):
        target.write_bytes(b"ID3")
        return 1, "ERROR: postprocessing warning"

    monkeypatch.setattr("media.resolver.run_download", _download)

    result = asyncio.run(MediaResolver(tmp_path).resolve_and_fetch("song", 200_000, target))

    assert isinstance(result, LocalFile)


def test_error_exit_without_file_is_failure(tmp_path, fake_ytdl, monkeypatch) -> None:
    fake_ytdl.entries = [_entry("song", 200)]
    monkeypatch.setattr(
        "media.ytdlp.subprocess.run",
        lambda argv, **kwargs: subprocess.CompletedProcess(argv, 1, stdout="", stderr="ERROR: Video unavailable"),
    )

    result = asyncio.run(MediaResolver(tmp_path).resolve_and_fetch("song", 200_000, tmp_path / "song.mp3"))

    assert result == Failure("ERROR: Video unavailable")


def test_fetch_track_reuses_existing_file(tmp_path, fake_ytdl) -> None:
    existing = Path(tmp_path) / "Band - Song.mp3"
    existing.write_bytes(b"ID3")

    result = asyncio.run(MediaResolver(tmp_path).fetch_track("Song", "Band", 200_000))

    assert result == LocalFile(path=str(existing))
    assert fake_ytdl.seen == []
