"""
Terminal-local durable key/value store.

Plays the part of the browser's localStorage: each key holds one text blob
that is read and replaced wholesale. Backed by a single sqlite table so it
survives restarts of the terminal process.
"""
import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

from .notifications import json_log


SCHEMA = """
CREATE TABLE IF NOT EXISTS local_storage (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT NOT NULL
)
"""


class LocalStore:
    def __init__(self, path: str):
        self.path = path
        parent = os.path.dirname(os.path.abspath(path))
        if parent and not os.path.isdir(parent):
            os.makedirs(parent, exist_ok=True)
        with self._connect() as conn:
            conn.execute(SCHEMA)
            conn.commit()

    def _connect(self):
        return sqlite3.connect(self.path)

    def get_item(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT value FROM local_storage WHERE key = ?", (key,))
            row = cur.fetchone()
            return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO local_storage (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, now),
            )
            conn.commit()

    def remove_item(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM local_storage WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list[str]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT key FROM local_storage ORDER BY key")
            return [r[0] for r in cur.fetchall()]

    def read_json(self, key: str, default: Any = None) -> Any:
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as ex:
            json_log("error", "local_store.parse_failed", key=key, error=str(ex))
            return default

    def write_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value, default=str))
