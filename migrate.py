import logging
import sqlite3
import sys
import time
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class SchemaError(RuntimeError):
    """Raised when a migration cannot be applied. The store must not be used."""


def _v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """CREATE TABLE exercises (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE
            );"""
    )
    conn.execute(
        """CREATE TABLE templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );"""
    )
    conn.execute(
        """CREATE TABLE template_exercises (
                id TEXT PRIMARY KEY,
                template_id TEXT NOT NULL,
                exercise_id TEXT NOT NULL,
                sort_order INTEGER NOT NULL,
                planned_sets_count INTEGER NOT NULL DEFAULT 3,
                FOREIGN KEY(template_id) REFERENCES templates(id) ON DELETE CASCADE,
                FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE RESTRICT
            );"""
    )
    conn.execute(
        """CREATE TABLE workouts (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status INTEGER NOT NULL,
                source_template_id TEXT,
                started_at REAL NOT NULL,
                completed_at REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY(source_template_id) REFERENCES templates(id) ON DELETE SET NULL
            );"""
    )
    # at most one pending (status = 0) workout
    conn.execute(
        "CREATE UNIQUE INDEX workouts_unique_pending ON workouts(status) WHERE status = 0;"
    )
    conn.execute(
        """CREATE TABLE workout_exercises (
                id TEXT PRIMARY KEY,
                workout_id TEXT NOT NULL,
                exercise_id TEXT NOT NULL,
                sort_order INTEGER NOT NULL,
                FOREIGN KEY(workout_id) REFERENCES workouts(id) ON DELETE CASCADE,
                FOREIGN KEY(exercise_id) REFERENCES exercises(id) ON DELETE RESTRICT
            );"""
    )
    conn.execute(
        """CREATE TABLE workout_sets (
                id TEXT PRIMARY KEY,
                workout_exercise_id TEXT NOT NULL,
                sort_order INTEGER NOT NULL,
                weight REAL,
                reps INTEGER,
                rir REAL,
                FOREIGN KEY(workout_exercise_id) REFERENCES workout_exercises(id) ON DELETE CASCADE
            );"""
    )
    for table, column in (
        ("template_exercises", "template_id"),
        ("template_exercises", "exercise_id"),
        ("workout_exercises", "workout_id"),
        ("workout_exercises", "exercise_id"),
        ("workout_sets", "workout_exercise_id"),
    ):
        conn.execute(f"CREATE INDEX {table}_{column} ON {table}({column});")


def _v2_set_details(conn: sqlite3.Connection) -> None:
    for column, col_type in (
        ("distance", "REAL"),
        ("seconds", "REAL"),
        ("notes", "TEXT"),
        ("rpe", "REAL"),
        ("is_warm_up", "INTEGER"),
        ("rest_timer_seconds", "INTEGER"),
    ):
        conn.execute(f"ALTER TABLE workout_sets ADD COLUMN {column} {col_type};")
    conn.execute("ALTER TABLE workouts ADD COLUMN notes TEXT;")


def _v3_users(conn: sqlite3.Connection) -> None:
    conn.execute(
        """CREATE TABLE users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                created_at REAL NOT NULL
            );"""
    )


def _v4_sort_order_indexes(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE UNIQUE INDEX template_exercises_sort_order "
        "ON template_exercises(template_id, sort_order);"
    )
    conn.execute(
        "CREATE INDEX workouts_status_completed_at ON workouts(status, completed_at);"
    )


MIGRATIONS: List[Tuple[str, Callable[[sqlite3.Connection], None]]] = [
    ("v1", _v1),
    ("v2_set_details", _v2_set_details),
    ("v3_users", _v3_users),
    ("v4_sort_order_indexes", _v4_sort_order_indexes),
]


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        "name TEXT PRIMARY KEY, applied_at REAL NOT NULL);"
    )
    return conn


def applied_migrations(db_path: str = "lifting.db") -> List[str]:
    """Return the names of migrations recorded in ``db_path``."""
    conn = _connect(db_path)
    try:
        rows = conn.execute(
            "SELECT name FROM schema_migrations ORDER BY applied_at, rowid;"
        ).fetchall()
        return [r[0] for r in rows]
    finally:
        conn.close()


def migrate(db_path: str = "lifting.db") -> List[str]:
    """Apply pending migrations to ``db_path`` and return their names.

    Each migration runs in its own transaction together with its bookkeeping
    row. A failing migration is rolled back and raised as :class:`SchemaError`.
    """
    try:
        conn = _connect(db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
    except sqlite3.Error as exc:
        raise SchemaError(f"cannot open store {db_path}: {exc}") from exc
    applied: List[str] = []
    try:
        done = {r[0] for r in conn.execute("SELECT name FROM schema_migrations;")}
        for name, step in MIGRATIONS:
            if name in done:
                continue
            try:
                conn.execute("BEGIN IMMEDIATE;")
                already = conn.execute(
                    "SELECT 1 FROM schema_migrations WHERE name = ?;", (name,)
                ).fetchone()
                if already is None:
                    step(conn)
                    conn.execute(
                        "INSERT INTO schema_migrations (name, applied_at) VALUES (?, ?);",
                        (name, time.time()),
                    )
                conn.execute("COMMIT;")
            except Exception as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                logger.error("migration %s failed on %s: %s", name, db_path, exc)
                raise SchemaError(f"migration {name} failed: {exc}") from exc
            if already is None:
                logger.info("applied migration %s to %s", name, db_path)
                applied.append(name)
    finally:
        conn.close()
    return applied


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    path = sys.argv[1] if len(sys.argv) > 1 else 'lifting.db'
    migrate(path)
