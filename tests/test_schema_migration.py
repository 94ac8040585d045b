import os
import sqlite3
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import SqliteLocalStore
from entities import EntityType


class TestSchemaMigration:
    @pytest.mark.asyncio
    async def test_drops_existing_backup_table(self, tmp_path):
        db_file = tmp_path / "test.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE routines (id TEXT PRIMARY KEY, user_id TEXT NOT NULL, name TEXT NOT NULL, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
        )
        conn.execute(
            "INSERT INTO routines VALUES ('r1', 'u1', 'Legacy', '2024-01-01', '2024-01-01')"
        )
        conn.execute("CREATE TABLE routines_old (id TEXT)")
        conn.commit()
        conn.close()

        store = SqliteLocalStore(str(db_file))
        await store.initialize()

        conn = sqlite3.connect(str(db_file))
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='routines_old'"
        )
        assert cur.fetchone() is None
        cur = conn.execute("PRAGMA table_info(routines)")
        cols = [row[1] for row in cur.fetchall()]
        assert "description" in cols
        assert "synced" in cols
        conn.close()

        row = await store.get(EntityType.ROUTINES, "r1")
        assert row["name"] == "Legacy"
        assert row["description"] is None
        assert row["synced"] == 0

    @pytest.mark.asyncio
    async def test_queue_table_gains_retry_count(self, tmp_path):
        db_file = tmp_path / "queue.db"
        conn = sqlite3.connect(str(db_file))
        conn.execute(
            "CREATE TABLE sync_queue (id INTEGER PRIMARY KEY AUTOINCREMENT, entity_type TEXT, entity_id TEXT, operation TEXT, data TEXT, created_at TEXT)"
        )
        conn.execute(
            "INSERT INTO sync_queue (entity_type, entity_id, operation, data, created_at) VALUES ('routines', 'r1', 'CREATE', '{\"id\": \"r1\"}', '2024-01-01')"
        )
        conn.commit()
        conn.close()

        store = SqliteLocalStore(str(db_file))
        await store.initialize()

        items = await store.queue.fetch_batch()
        assert [(i["entity_id"], i["retry_count"], i["data"]) for i in items] == [
            ("r1", 0, {"id": "r1"})
        ]
