from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from typing import Any

from timeline_comments.core.settings import Settings
from timeline_comments.providers.content_types import Annotation, sort_by_position


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Last known annotation list per content key (read-path fallback)
CREATE TABLE IF NOT EXISTS comment_snapshots (
  content_key TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  comment_count INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT DEFAULT (datetime('now'))
);

-- Actor credentials, display name, feature flag
CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);
"""

SETTING_ENABLED = "enabled"
SETTING_ACTOR_ID = "user_id"
SETTING_AUTH_TOKEN = "auth_token"
SETTING_DISPLAY_NAME = "display_name"


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def get_stats(self) -> dict[str, Any]:
        cur = self.conn.execute("select count(*), coalesce(sum(comment_count), 0) from comment_snapshots")
        keys, comments = cur.fetchone()
        return {"content_keys": keys, "comments": comments}

    # ==================== Annotation snapshots ====================

    def save_snapshot(self, content_key: str, annotations: list[Annotation]) -> None:
        """Replace the cached annotation list for a content key."""
        payload = json.dumps([a.to_dict() for a in annotations])
        self.conn.execute(
            """
            INSERT INTO comment_snapshots (content_key, payload_json, comment_count, updated_at)
            VALUES (?, ?, ?, datetime('now'))
            ON CONFLICT(content_key) DO UPDATE SET
                payload_json = excluded.payload_json,
                comment_count = excluded.comment_count,
                updated_at = datetime('now')
            """,
            (content_key, payload, len(annotations)),
        )
        self.conn.commit()

    def get_snapshot(self, content_key: str) -> list[Annotation] | None:
        """Cached annotations for a key, or None if nothing was ever cached."""
        cur = self.conn.execute(
            "SELECT payload_json FROM comment_snapshots WHERE content_key = ?",
            (content_key,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return sort_by_position([Annotation.from_dict(d) for d in json.loads(row[0])])

    def delete_snapshot(self, content_key: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM comment_snapshots WHERE content_key = ?",
            (content_key,),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ==================== App Settings ====================

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        cur = self.conn.execute(
            "SELECT value FROM app_settings WHERE key = ?",
            (key,)
        )
        row = cur.fetchone()
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert)."""
        self.conn.execute(
            """
            INSERT INTO app_settings (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
            """,
            (key, value)
        )
        self.conn.commit()

    def is_enabled(self) -> bool:
        """Feature flag; enabled unless explicitly switched off."""
        return self.get_setting(SETTING_ENABLED, "1") != "0"

    def set_enabled(self, enabled: bool) -> None:
        self.set_setting(SETTING_ENABLED, "1" if enabled else "0")

    def get_credentials(self) -> tuple[str, str] | None:
        actor_id = self.get_setting(SETTING_ACTOR_ID)
        token = self.get_setting(SETTING_AUTH_TOKEN)
        if actor_id and token:
            return actor_id, token
        return None

    def save_credentials(self, actor_id: str, token: str) -> None:
        self.set_setting(SETTING_ACTOR_ID, actor_id)
        self.set_setting(SETTING_AUTH_TOKEN, token)


def connect(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(settings: Settings | None = None) -> DB:
    s = settings or Settings.from_env()
    db = DB(conn=connect(s.db_path))
    db.init()
    return db
