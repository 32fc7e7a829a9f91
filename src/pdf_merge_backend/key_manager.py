import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4


@dataclass
class AppRecord:
    id: str
    name: str
    prefix: str
    is_active: bool
    created_at: str


class KeyManager:
    """
    Manages app tokens used to authenticate batch API callers.

    Only a SHA-256 hash of each token is stored; the raw token is returned
    once, at creation.
    """

    def __init__(self, db_path: str = "data/pdf_merge.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        conn = self._get_conn()
        try:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS apps (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        token_hash TEXT UNIQUE NOT NULL,
                        prefix TEXT NOT NULL,
                        is_active BOOLEAN DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                """)
        finally:
            conn.close()

    def _hash_token(self, token: str) -> str:
        """SHA-256 hash of the app token."""
        return hashlib.sha256(token.encode()).hexdigest()

    def _row_to_record(self, row: sqlite3.Row) -> AppRecord:
        return AppRecord(
            id=row["id"],
            name=row["name"],
            prefix=row["prefix"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def create_app(self, name: str) -> Tuple[str, AppRecord]:
        """
        Register a new app and generate its token.

        Returns:
            Tuple[str, AppRecord]: (raw_token, app_record)
            WARNING: raw_token is shown ONLY ONCE here.
        """
        raw_token = secrets.token_hex(32)
        record = AppRecord(
            id=str(uuid4()),
            name=name,
            prefix=raw_token[:8],
            is_active=True,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        conn = self._get_conn()
        try:
            with conn:
                conn.execute("""
                    INSERT INTO apps (id, name, token_hash, prefix, is_active, created_at)
                    VALUES (?, ?, ?, ?, 1, ?)
                """, (record.id, name, self._hash_token(raw_token), record.prefix, record.created_at))
        finally:
            conn.close()

        return raw_token, record

    def validate_token(self, token: Optional[str]) -> Optional[AppRecord]:
        """
        Return the active app owning this token, or None.
        """
        if not token:
            return None

        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM apps WHERE token_hash = ? AND is_active = 1",
                (self._hash_token(token),)
            ).fetchone()
        finally:
            conn.close()

        return self._row_to_record(row) if row else None

    def get_app(self, app_id: str) -> Optional[AppRecord]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM apps WHERE id = ?", (app_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def list_apps(self) -> list[AppRecord]:
        """List all apps (admin only)."""
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM apps ORDER BY created_at DESC").fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def revoke_app(self, app_id: str) -> bool:
        """Deactivate an app's token by app ID."""
        conn = self._get_conn()
        try:
            with conn:
                cursor = conn.execute("UPDATE apps SET is_active = 0 WHERE id = ?", (app_id,))
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_app(self, app_id: str) -> bool:
        """Delete an app. Callers must check it owns no jobs first."""
        conn = self._get_conn()
        try:
            with conn:
                cursor = conn.execute("DELETE FROM apps WHERE id = ?", (app_id,))
            return cursor.rowcount > 0
        finally:
            conn.close()
