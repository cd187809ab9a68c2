from __future__ import annotations

from config import settings


def test_env_int_falls_back_on_blank_or_invalid(monkeypatch) -> None:
    monkeypatch.setenv("TUNEBRIDGE_TEST_INT", "42")
    assert settings._env_int("TUNEBRIDGE_TEST_INT", 7) == 42

    monkeypatch.setenv("TUNEBRIDGE_TEST_INT", "  ")
    assert settings._env_int("TUNEBRIDGE_TEST_INT", 7) == 7

    monkeypatch.setenv("TUNEBRIDGE_TEST_INT", "abc")
    assert settings._env_int("TUNEBRIDGE_TEST_INT", 7) == 7


def test_load_settings_snapshots_module_values(monkeypatch) -> None:
    monkeypatch.setattr(settings, "SPOTIFY_MARKET", "US")
    monkeypatch.setattr(settings, "CACHE_BACKEND", "file")

    snapshot = settings.load_settings()

    assert snapshot.market == "US"
    assert snapshot.cache_backend == "file"
    assert snapshot.ytdlp_download_timeout_sec == settings.YTDLP_DOWNLOAD_TIMEOUT_SECONDS


def test_uncached_operations_have_no_ttl() -> None:
    assert settings.CACHE_TTL_USER_SAVED_ITEMS is None
    assert settings.CACHE_TTL_RECOMMENDATIONS is None
    assert settings.CACHE_TTL_ALBUM_DETAILS > settings.CACHE_TTL_ARTIST_DETAILS > settings.CACHE_TTL_PLAYLIST_TRACKS
