"""Tests for storage.py and settings.py"""

import os
from unittest.mock import patch

import pytest

from timeline_comments.core.settings import Settings, parse_limit
from timeline_comments.core.storage import SETTING_ACTOR_ID, init_db
from timeline_comments.providers.content_types import Annotation, Reply


def make_annotation(annotation_id, position, created_at=0, **kwargs):
    return Annotation(
        id=annotation_id,
        content_key="hulu_abc",
        text=f"comment {annotation_id}",
        position=position,
        author_id="actor-1",
        author_name="User1",
        created_at=created_at,
        **kwargs,
    )


class TestSnapshots:
    def test_missing_snapshot(self, db):
        assert db.get_snapshot("hulu_abc") is None

    def test_save_and_load_sorted(self, db):
        db.save_snapshot("hulu_abc", [make_annotation("b", 90), make_annotation("a", 12)])
        snapshot = db.get_snapshot("hulu_abc")
        assert [a.id for a in snapshot] == ["a", "b"]

    def test_round_trip_keeps_replies_and_likes(self, db):
        reply = Reply("r1", "a", "agreed", "actor-2", "User2", 5)
        annotation = make_annotation("a", 12, like_count=3, liked_by_current_actor=True, replies=[reply])
        db.save_snapshot("hulu_abc", [annotation])
        loaded = db.get_snapshot("hulu_abc")[0]
        assert loaded == annotation

    def test_save_replaces(self, db):
        db.save_snapshot("hulu_abc", [make_annotation("a", 1)])
        db.save_snapshot("hulu_abc", [])
        assert db.get_snapshot("hulu_abc") == []

    def test_delete(self, db):
        db.save_snapshot("hulu_abc", [make_annotation("a", 1)])
        assert db.delete_snapshot("hulu_abc") is True
        assert db.delete_snapshot("hulu_abc") is False
        assert db.get_snapshot("hulu_abc") is None

    def test_stats(self, db):
        db.save_snapshot("hulu_abc", [make_annotation("a", 1), make_annotation("b", 2)])
        db.save_snapshot("hulu_def", [make_annotation("c", 3)])
        assert db.get_stats() == {"content_keys": 2, "comments": 3}


class TestAppSettings:
    def test_setting_upsert(self, db):
        assert db.get_setting("theme", "dark") == "dark"
        db.set_setting("theme", "light")
        db.set_setting("theme", "blue")
        assert db.get_setting("theme") == "blue"

    def test_enabled_by_default(self, db):
        assert db.is_enabled() is True
        db.set_enabled(False)
        assert db.is_enabled() is False
        db.set_enabled(True)
        assert db.is_enabled() is True

    def test_credentials(self, db):
        assert db.get_credentials() is None
        db.set_setting(SETTING_ACTOR_ID, "actor-9")
        assert db.get_credentials() is None
        db.save_credentials("actor-9", "token-9")
        assert db.get_credentials() == ("actor-9", "token-9")

    def test_init_db_in_memory(self, settings):
        database = init_db(settings)
        assert database.get_stats() == {"content_keys": 0, "comments": 0}


class TestSettings:
    def test_parse_limit(self):
        assert parse_limit("10/60000") == (10, 60000)
        assert parse_limit(" 5 ") == (5, 60000)

    @pytest.mark.parametrize("raw", ["0/1000", "3/0", "abc"])
    def test_parse_limit_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_limit(raw)

    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            s = Settings.from_env()
        assert s.poll_interval == 10.0
        assert s.resolve_interval == 0.5
        assert s.resolve_max_attempts == 10
        assert s.navigation_interval == 1.0
        assert s.rate_limits == {
            "comment": (10, 60000),
            "like": (30, 60000),
            "reply": (20, 60000),
        }

    def test_from_env_overrides(self):
        env = {
            "POLL_INTERVAL": "2.5",
            "RATE_LIMIT_COMMENT": "3/1000",
            "REMOTE_DATABASE_URL": "https://example.test/",
        }
        with patch.dict(os.environ, env, clear=True):
            s = Settings.from_env()
        assert s.poll_interval == 2.5
        assert s.rate_limits["comment"] == (3, 1000)
        assert s.remote_database_url == "https://example.test"
