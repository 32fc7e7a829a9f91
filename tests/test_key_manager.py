"""
Tests for app token management.
"""

import sqlite3

from pdf_merge_backend.key_manager import KeyManager


class TestKeyManager:
    def test_create_and_validate(self, tmp_path):
        keys = KeyManager(str(tmp_path / "apps.db"))

        token, record = keys.create_app("billing")

        assert len(token) == 64
        assert record.prefix == token[:8]
        assert record.is_active
        assert keys.validate_token(token).id == record.id
        assert keys.validate_token("not-a-token") is None
        assert keys.validate_token(None) is None

    def test_raw_token_is_not_stored(self, tmp_path):
        db_path = tmp_path / "apps.db"
        keys = KeyManager(str(db_path))
        token, _ = keys.create_app("billing")

        conn = sqlite3.connect(db_path)
        try:
            stored = conn.execute("SELECT token_hash FROM apps").fetchone()[0]
        finally:
            conn.close()
        assert stored != token
        assert len(stored) == 64

    def test_revoked_token_is_rejected(self, tmp_path):
        keys = KeyManager(str(tmp_path / "apps.db"))
        token, record = keys.create_app("billing")

        assert keys.revoke_app(record.id)
        assert keys.validate_token(token) is None
        assert keys.get_app(record.id).is_active is False
        assert not keys.revoke_app("missing")

    def test_list_and_delete(self, tmp_path):
        keys = KeyManager(str(tmp_path / "apps.db"))
        _, first = keys.create_app("one")
        _, second = keys.create_app("two")

        assert {app.id for app in keys.list_apps()} == {first.id, second.id}
        assert keys.delete_app(first.id)
        assert keys.get_app(first.id) is None
        assert not keys.delete_app(first.id)
