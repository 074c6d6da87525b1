import os
import sqlite3
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import migrate
from db import Database


def _tables(path):
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        return {r[0] for r in rows}
    finally:
        conn.close()


class TestMigrations:
    def test_fresh_database_gets_every_migration(self, tmp_path):
        db_file = str(tmp_path / "fresh.db")
        applied = migrate.migrate(db_file)
        assert applied == [name for name, _ in migrate.MIGRATIONS]
        assert migrate.applied_migrations(db_file) == applied
        tables = _tables(db_file)
        for table in (
            "exercises",
            "templates",
            "template_exercises",
            "workouts",
            "workout_exercises",
            "workout_sets",
            "users",
            "schema_migrations",
        ):
            assert table in tables

    def test_rerun_is_noop(self, tmp_path):
        db_file = str(tmp_path / "again.db")
        migrate.migrate(db_file)
        assert migrate.migrate(db_file) == []
        Database(db_file)
        assert len(migrate.applied_migrations(db_file)) == len(migrate.MIGRATIONS)

    def test_set_detail_columns_added(self, tmp_path):
        db_file = str(tmp_path / "cols.db")
        Database(db_file)
        conn = sqlite3.connect(db_file)
        cols = [row[1] for row in conn.execute("PRAGMA table_info(workout_sets)")]
        workout_cols = [row[1] for row in conn.execute("PRAGMA table_info(workouts)")]
        conn.close()
        for col in ("distance", "seconds", "notes", "rpe", "is_warm_up", "rest_timer_seconds"):
            assert col in cols
        assert "notes" in workout_cols

    def test_partially_migrated_store_is_completed(self, tmp_path):
        db_file = str(tmp_path / "partial.db")
        conn = sqlite3.connect(db_file, isolation_level=None)
        conn.execute(
            "CREATE TABLE schema_migrations (name TEXT PRIMARY KEY, applied_at REAL NOT NULL)"
        )
        conn.close()
        conn = migrate._connect(db_file)
        conn.execute("BEGIN IMMEDIATE;")
        migrate._v1(conn)
        conn.execute("INSERT INTO schema_migrations VALUES ('v1', 0)")
        conn.execute("COMMIT;")
        conn.close()

        applied = migrate.migrate(db_file)
        assert applied == ["v2_set_details", "v3_users", "v4_sort_order_indexes"]

    def test_failed_migration_rolls_back(self, tmp_path, monkeypatch):
        db_file = str(tmp_path / "broken.db")

        def broken(conn):
            conn.execute("CREATE TABLE half_done (id INTEGER)")
            raise sqlite3.OperationalError("boom")

        monkeypatch.setattr(migrate, "MIGRATIONS", migrate.MIGRATIONS + [("v99_broken", broken)])
        with pytest.raises(migrate.SchemaError):
            migrate.migrate(db_file)
        assert "half_done" not in _tables(db_file)
        assert "v99_broken" not in migrate.applied_migrations(db_file)
        assert "v4_sort_order_indexes" in migrate.applied_migrations(db_file)
