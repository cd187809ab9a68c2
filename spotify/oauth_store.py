"""SQLite persistence for per-session Spotify OAuth credentials."""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol


@dataclass(frozen=True)
class CredentialRecord:
    access_token: str
    refresh_token: str
    expires_at_ms: int  # epoch milliseconds
    scope: str

    def is_valid(self, now_ms: int, margin_ms: int) -> bool:
        return int(self.expires_at_ms) > now_ms + margin_ms


class CredentialStore(Protocol):
    def get(self, session_key: str) -> Optional[CredentialRecord]:
        """Return the record for ``session_key`` or ``None``."""

    def set(self, session_key: str, record: CredentialRecord, ttl_seconds: int | None = None) -> None:
        """Create or overwrite the record for ``session_key``."""

    def delete(self, session_key: str) -> None:
        """Remove the record for ``session_key`` if present."""


class SQLiteCredentialStore:
    """SQLite storage for OAuth credential records keyed by session.

    Rows carry an optional ``row_expires_at`` (epoch seconds) after which the
    session is treated as logged out. Each write is a single upsert statement,
    so readers never observe a half-written record.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._ensure_table()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self):
        """Create credential table when it does not already exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS spotify_credentials (
                    session_key TEXT PRIMARY KEY,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL,
                    expires_at_ms INTEGER NOT NULL,
                    scope TEXT NOT NULL,
                    row_expires_at INTEGER,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def set(self, session_key: str, record: CredentialRecord, ttl_seconds: int | None = None) -> None:
        """Upsert the record stored under ``session_key``."""
        updated_at = datetime.now(timezone.utc).isoformat()
        row_expires_at = int(time.time()) + int(ttl_seconds) if ttl_seconds and ttl_seconds > 0 else None
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.cursor()
                cur.execute(
                    """
                    INSERT INTO spotify_credentials (
                        session_key, access_token, refresh_token, expires_at_ms, scope, row_expires_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(session_key) DO UPDATE SET
                        access_token=excluded.access_token,
                        refresh_token=excluded.refresh_token,
                        expires_at_ms=excluded.expires_at_ms,
                        scope=excluded.scope,
                        row_expires_at=excluded.row_expires_at,
                        updated_at=excluded.updated_at
                    """,
                    (
                        session_key,
                        record.access_token,
                        record.refresh_token,
                        int(record.expires_at_ms),
                        record.scope,
                        row_expires_at,
                        updated_at,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def get(self, session_key: str) -> Optional[CredentialRecord]:
        """Load the record for ``session_key``; return ``None`` when absent or expired."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT access_token, refresh_token, expires_at_ms, scope, row_expires_at
                FROM spotify_credentials
                WHERE session_key=?
                LIMIT 1
                """,
                (session_key,),
            )
            row = cur.fetchone()
        finally:
            conn.close()
        if not row:
            return None
        row_expires_at = row["row_expires_at"]
        if row_expires_at is not None and int(row_expires_at) <= int(time.time()):
            self.delete(session_key)
            return None
        return CredentialRecord(
            access_token=str(row["access_token"]),
            refresh_token=str(row["refresh_token"]),
            expires_at_ms=int(row["expires_at_ms"]),
            scope=str(row["scope"]),
        )

    def delete(self, session_key: str) -> None:
        """Delete the stored record for ``session_key``."""
        with self._lock:
            conn = self._connect()
            try:
                cur = conn.cursor()
                cur.execute("DELETE FROM spotify_credentials WHERE session_key=?", (session_key,))
                conn.commit()
            finally:
                conn.close()
