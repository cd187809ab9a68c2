from __future__ import annotations

import sqlite3

from spotify.oauth_store import CredentialRecord, SQLiteCredentialStore


def test_credential_store_lifecycle(tmp_path) -> None:
    store = SQLiteCredentialStore(tmp_path / "credentials.sqlite")

    first = CredentialRecord(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at_ms=1_800_000_000_000,
        scope="user-library-read",
    )
    store.set("session-a", first)
    assert store.get("session-a") == first

    second = CredentialRecord(
        access_token="access-2",
        refresh_token="refresh-2",
        expires_at_ms=1_900_000_000_000,
        scope="user-library-read playlist-read-private",
    )
    store.set("session-a", second)
    assert store.get("session-a") == second

    store.delete("session-a")
    assert store.get("session-a") is None


def test_credential_store_keeps_sessions_apart(tmp_path) -> None:
    store = SQLiteCredentialStore(tmp_path / "credentials.sqlite")
    store.set("a", CredentialRecord("tok-a", "ref-a", 1, ""))
    store.set("b", CredentialRecord("tok-b", "ref-b", 2, ""))

    store.delete("a")

    assert store.get("a") is None
    assert store.get("b").access_token == "tok-b"


def test_expired_row_is_treated_as_logged_out(tmp_path) -> None:
    db_path = tmp_path / "credentials.sqlite"
    store = SQLiteCredentialStore(db_path)
    store.set("session-a", CredentialRecord("tok", "ref", 1, ""), ttl_seconds=3600)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("UPDATE spotify_credentials SET row_expires_at = 1 WHERE session_key = 'session-a'")
        conn.commit()
    finally:
        conn.close()

    assert store.get("session-a") is None


def test_record_validity_respects_margin() -> None:
    record = CredentialRecord("tok", "ref", expires_at_ms=100_000, scope="")
    assert record.is_valid(now_ms=0, margin_ms=60_000)
    assert not record.is_valid(now_ms=40_000, margin_ms=60_000)
    assert not record.is_valid(now_ms=100_000, margin_ms=0)
