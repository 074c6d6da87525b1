import datetime
import json
import logging
import os
import sqlite3
import threading
import time
import aiosqlite
from contextlib import contextmanager, asynccontextmanager
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import migrate
from tools import ExerciseIdentity

logger = logging.getLogger(__name__)

STATUS_PENDING = 0
STATUS_COMPLETED = 1
STATUS_NAMES = {STATUS_PENDING: "pending", STATUS_COMPLETED: "completed"}

# Tables whose rows change when a parent row is deleted or cleared by a
# foreign key action.
_CASCADES = {
    "templates": ("template_exercises", "workouts"),
    "workouts": ("workout_exercises",),
    "workout_exercises": ("workout_sets",),
}

_WRITE_ACTIONS = {sqlite3.SQLITE_INSERT, sqlite3.SQLITE_UPDATE, sqlite3.SQLITE_DELETE}


class StoreError(Exception):
    """Base class for store failures callers are expected to handle."""


class ConflictError(StoreError):
    """Raised when a write violates a uniqueness or restrict constraint."""


class ChangeNotifier:
    """Publish the tables touched by each committed transaction."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Callable[[frozenset], None]] = {}
        self._next_token = 0

    def subscribe(self, callback: Callable[[frozenset], None]) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, tables: Iterable[str]) -> None:
        changed = frozenset(tables)
        if not changed:
            return
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(changed)
            except Exception:
                logger.exception("change subscriber failed for %s", sorted(changed))


class _StoreFile:
    """State shared by every repository opened on the same database file."""

    def __init__(self) -> None:
        self.write_lock = threading.RLock()
        self.changes = ChangeNotifier()


_STORE_FILES: Dict[str, _StoreFile] = {}
_STORE_FILES_LOCK = threading.Lock()


def _store_file(db_path: str) -> _StoreFile:
    key = os.path.abspath(db_path)
    with _STORE_FILES_LOCK:
        shared = _STORE_FILES.get(key)
        if shared is None:
            shared = _StoreFile()
            _STORE_FILES[key] = shared
        return shared


def _with_cascades(tables: Set[str]) -> Set[str]:
    result = set(tables)
    pending = list(tables)
    while pending:
        for child in _CASCADES.get(pending.pop(), ()):
            if child not in result:
                result.add(child)
                pending.append(child)
    return result


def ensure_exercise(conn: sqlite3.Connection, name: str) -> str:
    """Insert ``name`` if absent and return the id of the stored exercise.

    A renamed exercise keeps its id, so a name that no longer exists falls
    back to the row whose id was derived from it.
    """
    clean = ExerciseIdentity.clean_name(name)
    if not clean:
        raise ValueError("exercise name required")
    stable = ExerciseIdentity.stable_id(clean)
    conn.execute(
        "INSERT OR IGNORE INTO exercises (id, name) VALUES (?, ?);", (stable, clean)
    )
    row = conn.execute(
        "SELECT id FROM exercises WHERE name = ? "
        "UNION ALL SELECT id FROM exercises WHERE id = ? LIMIT 1;",
        (clean, stable),
    ).fetchone()
    if row is None:
        raise ConflictError(f"exercise {clean!r} could not be stored")
    return row[0]


def _now(now: Optional[float]) -> float:
    return time.time() if now is None else now


_WORKOUT_COLUMNS = (
    "id, name, status, source_template_id, started_at, completed_at, notes, created_at, updated_at"
)

_SET_COLUMNS = (
    "id, workout_exercise_id, sort_order, weight, reps, distance, seconds, notes,"
    " rpe, rir, is_warm_up, rest_timer_seconds"
)

_SET_FIELDS = (
    "weight",
    "reps",
    "distance",
    "seconds",
    "notes",
    "rpe",
    "rir",
    "is_warm_up",
    "rest_timer_seconds",
)

_EXERCISE_HISTORY_SQL = (
    "SELECT ws.id, w.id, w.name, w.completed_at, ws.sort_order, ws.weight, ws.reps,"
    " ws.distance, ws.seconds, ws.notes, ws.rpe, ws.rir, ws.is_warm_up, ws.rest_timer_seconds "
    "FROM workout_sets ws "
    "JOIN workout_exercises we ON we.id = ws.workout_exercise_id "
    "JOIN workouts w ON w.id = we.workout_id "
    "WHERE we.exercise_id = ? AND w.status = 1 AND w.completed_at IS NOT NULL "
    "ORDER BY w.completed_at DESC, w.id, we.sort_order ASC, ws.sort_order ASC;"
)

_COMPLETED_WORKOUTS_SQL = (
    "SELECT w.id, w.name, w.started_at, w.completed_at, we.id, e.name,"
    " (SELECT COUNT(*) FROM workout_sets ws WHERE ws.workout_exercise_id = we.id) "
    "FROM workouts w "
    "LEFT JOIN workout_exercises we ON we.workout_id = w.id "
    "LEFT JOIN exercises e ON e.id = we.exercise_id "
    "WHERE w.status = 1 AND w.completed_at IS NOT NULL "
    "ORDER BY w.completed_at DESC, w.started_at DESC, w.id, we.sort_order ASC;"
)

_TEMPLATES_SQL = (
    "SELECT id, name FROM templates ORDER BY updated_at DESC, created_at DESC;"
)

_EXERCISES_SQL = "SELECT id, name FROM exercises ORDER BY name COLLATE NOCASE, name;"


def _workout_dict(row: Tuple) -> dict:
    (
        wid,
        name,
        status,
        source_template_id,
        started_at,
        completed_at,
        notes,
        created_at,
        updated_at,
    ) = row
    return {
        "id": wid,
        "name": name,
        "status": STATUS_NAMES.get(status, str(status)),
        "source_template_id": source_template_id,
        "started_at": started_at,
        "completed_at": completed_at,
        "notes": notes,
        "created_at": created_at,
        "updated_at": updated_at,
    }


def _set_dict(row: Tuple) -> dict:
    (
        sid,
        workout_exercise_id,
        sort_order,
        weight,
        reps,
        distance,
        seconds,
        notes,
        rpe,
        rir,
        is_warm_up,
        rest_timer_seconds,
    ) = row
    return {
        "id": sid,
        "workout_exercise_id": workout_exercise_id,
        "sort_order": sort_order,
        "weight": weight,
        "reps": reps,
        "distance": distance,
        "seconds": seconds,
        "notes": notes,
        "rpe": rpe,
        "rir": rir,
        "is_warm_up": None if is_warm_up is None else bool(is_warm_up),
        "rest_timer_seconds": rest_timer_seconds,
    }


def _history_entry(row: Tuple) -> dict:
    (
        sid,
        workout_id,
        workout_name,
        completed_at,
        sort_order,
        weight,
        reps,
        distance,
        seconds,
        notes,
        rpe,
        rir,
        is_warm_up,
        rest_timer_seconds,
    ) = row
    return {
        "id": sid,
        "workout_id": workout_id,
        "workout_name": workout_name,
        "completed_at": completed_at,
        "sort_order": sort_order,
        "weight": weight,
        "reps": reps,
        "distance": distance,
        "seconds": seconds,
        "notes": notes,
        "rpe": rpe,
        "rir": rir,
        "is_warm_up": None if is_warm_up is None else bool(is_warm_up),
        "rest_timer_seconds": rest_timer_seconds,
    }


def _completed_from_rows(rows: Iterable[Tuple]) -> List[dict]:
    summaries: List[dict] = []
    by_id: Dict[str, dict] = {}
    for wid, name, started_at, completed_at, we_id, ex_name, sets_count in rows:
        summary = by_id.get(wid)
        if summary is None:
            summary = {
                "id": wid,
                "name": name,
                "completed_at": completed_at,
                "duration": completed_at - started_at,
                "exercises": [],
            }
            by_id[wid] = summary
            summaries.append(summary)
        if we_id is not None:
            summary["exercises"].append(
                {"id": we_id, "name": ex_name, "sets_count": sets_count}
            )
    return summaries


class Database:
    """Provides SQLite connection management and schema initialization."""

    CATALOG_PATH = os.path.join(os.path.dirname(__file__), "exercise_catalog.json")

    def __init__(self, db_path: str = "lifting.db") -> None:
        self._db_path = db_path
        self._file = _store_file(db_path)
        migrate.migrate(db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def changes(self) -> ChangeNotifier:
        """Notifier fired after every commit on this database file."""
        return self._file.changes

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _connection(self):
        connection = self._connect()
        try:
            yield connection
        finally:
            connection.close()

    @contextmanager
    def _snapshot(self):
        """Read connection holding one consistent view for several queries."""
        with self._connection() as connection:
            connection.execute("BEGIN;")
            try:
                yield connection
            finally:
                connection.rollback()

    @contextmanager
    def _transaction(self):
        """Run a write transaction and publish the tables it touched.

        Writers on the same file are serialized; the transaction is rolled
        back when the block raises.
        """
        written: Set[str] = set()

        def authorizer(action, arg1, _arg2, _db_name, _trigger):
            if action in _WRITE_ACTIONS and arg1 and not arg1.startswith("sqlite_"):
                written.add(arg1)
            return sqlite3.SQLITE_OK

        with self._file.write_lock:
            connection = self._connect()
            try:
                connection.set_authorizer(authorizer)
                connection.execute("BEGIN IMMEDIATE;")
                try:
                    yield connection
                except BaseException:
                    connection.rollback()
                    raise
                connection.commit()
            finally:
                connection.close()
        self._file.changes.publish(_with_cascades(written))

    def seed_exercises(self, catalog_path: str | None = None) -> int:
        """Insert the bundled reference exercises; existing rows are kept."""
        path = catalog_path or self.CATALOG_PATH
        if not os.path.exists(path):
            logger.warning("exercise catalog %s not found; skipping seed", path)
            return 0
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        names = [
            entry.get("Exercise Name", "").strip()
            for entry in data.get("exercises", [])
        ]
        names = [n for n in names if n]
        with self._transaction() as conn:
            for name in names:
                ensure_exercise(conn, name)
        logger.info(
            "seeded %d exercises from catalog version %s", len(names), data.get("version")
        )
        return len(names)


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        """Run one write statement in its own transaction; return rowcount."""
        with self._transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            return conn.execute(query, params).fetchall()

    def fetch_value(self, query: str, params: Tuple = ()):
        rows = BaseRepository.fetch_all(self, query, params)
        return rows[0][0] if rows else None


class ExerciseRepository(BaseRepository):
    """Repository for canonical exercises."""

    def ensure(self, name: str) -> str:
        """Return the id for ``name``, inserting the exercise if absent."""
        with self._transaction() as conn:
            return ensure_exercise(conn, name)

    def ensure_many(self, names: Iterable[str]) -> int:
        """Ensure every non-blank name exists; return the distinct count."""
        unique = {n.strip() for n in names if n and n.strip()}
        with self._transaction() as conn:
            for name in sorted(unique):
                ensure_exercise(conn, name)
        return len(unique)

    def fetch_all(self) -> List[Tuple[str, str]]:
        return super().fetch_all(_EXERCISES_SQL)

    def fetch_by_name(self, name: str) -> Optional[str]:
        return self.fetch_value(
            "SELECT id FROM exercises WHERE name = ?;", (name.strip(),)
        )

    def fetch_detail(self, exercise_id: str) -> dict:
        rows = super().fetch_all(
            "SELECT id, name FROM exercises WHERE id = ?;", (exercise_id,)
        )
        if not rows:
            raise ValueError("exercise not found")
        return {"id": rows[0][0], "name": rows[0][1]}

    def rename(self, exercise_id: str, name: str) -> None:
        clean = name.strip()
        if not clean:
            raise ValueError("exercise name required")
        try:
            self.execute(
                "UPDATE exercises SET name = ? WHERE id = ?;", (clean, exercise_id)
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"exercise named {clean!r} already exists") from exc

    def delete(self, exercise_id: str) -> None:
        try:
            self.execute("DELETE FROM exercises WHERE id = ?;", (exercise_id,))
        except sqlite3.IntegrityError as exc:
            raise ConflictError("exercise is used by a template or workout") from exc

    def usage_frequencies(self) -> Dict[str, int]:
        """Return how many workout entries reference each exercise."""
        rows = super().fetch_all(
            "SELECT exercise_id, COUNT(*) FROM workout_exercises GROUP BY exercise_id;"
        )
        return {ex_id: int(count) for ex_id, count in rows}


class TemplateRepository(BaseRepository):
    """Repository for workout templates."""

    def create(self, name: str, now: float | None = None) -> str:
        ts = _now(now)
        template_id = ExerciseIdentity.new_id()
        self.execute(
            "INSERT INTO templates (id, name, created_at, updated_at) VALUES (?, ?, ?, ?);",
            (template_id, name, ts, ts),
        )
        return template_id

    def rename(self, template_id: str, name: str, now: float | None = None) -> None:
        self.execute(
            "UPDATE templates SET name = ?, updated_at = ? WHERE id = ?;",
            (name, _now(now), template_id),
        )

    def delete(self, template_id: str) -> None:
        self.execute("DELETE FROM templates WHERE id = ?;", (template_id,))

    def fetch_all(self) -> List[Tuple[str, str]]:
        return super().fetch_all(_TEMPLATES_SQL)

    def fetch_detail(self, template_id: str) -> dict:
        rows = super().fetch_all(
            "SELECT id, name, created_at, updated_at FROM templates WHERE id = ?;",
            (template_id,),
        )
        if not rows:
            raise ValueError("template not found")
        tid, name, created_at, updated_at = rows[0]
        return {
            "id": tid,
            "name": name,
            "created_at": created_at,
            "updated_at": updated_at,
        }


class TemplateExerciseRepository(BaseRepository):
    """Repository for exercises belonging to templates."""

    def add(
        self,
        template_id: str,
        exercise_id: str,
        planned_sets_count: int = 3,
        now: float | None = None,
    ) -> str:
        te_id = ExerciseIdentity.new_id()
        try:
            with self._transaction() as conn:
                next_order = conn.execute(
                    "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM template_exercises WHERE template_id = ?;",
                    (template_id,),
                ).fetchone()[0]
                conn.execute(
                    "INSERT INTO template_exercises (id, template_id, exercise_id, sort_order, planned_sets_count) "
                    "VALUES (?, ?, ?, ?, ?);",
                    (te_id, template_id, exercise_id, next_order, planned_sets_count),
                )
                conn.execute(
                    "UPDATE templates SET updated_at = ? WHERE id = ?;",
                    (_now(now), template_id),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("unknown template or exercise") from exc
        return te_id

    def update_planned_sets(self, template_exercise_id: str, planned_sets_count: int) -> None:
        self.execute(
            "UPDATE template_exercises SET planned_sets_count = ? WHERE id = ?;",
            (planned_sets_count, template_exercise_id),
        )

    def remove(self, template_exercise_id: str) -> None:
        self.execute(
            "DELETE FROM template_exercises WHERE id = ?;", (template_exercise_id,)
        )

    def fetch_for_template(self, template_id: str) -> List[dict]:
        rows = self.fetch_all(
            "SELECT te.id, te.exercise_id, e.name, te.sort_order, te.planned_sets_count "
            "FROM template_exercises te JOIN exercises e ON e.id = te.exercise_id "
            "WHERE te.template_id = ? ORDER BY te.sort_order ASC;",
            (template_id,),
        )
        return [
            {
                "id": te_id,
                "exercise_id": ex_id,
                "exercise_name": name,
                "sort_order": order,
                "planned_sets_count": planned,
            }
            for te_id, ex_id, name, order, planned in rows
        ]


class WorkoutRepository(BaseRepository):
    """Repository for workouts and the single pending workout."""

    @staticmethod
    def default_name_for(moment: datetime.datetime | None = None) -> str:
        """Return "Morning", "Afternoon" or "Evening Workout" for ``moment``."""
        hour = (moment or datetime.datetime.now()).hour
        if hour < 12:
            return "Morning Workout"
        if hour < 18:
            return "Afternoon Workout"
        return "Evening Workout"

    @staticmethod
    def _pending_id(conn: sqlite3.Connection) -> Optional[str]:
        row = conn.execute(
            "SELECT id FROM workouts WHERE status = ? LIMIT 1;", (STATUS_PENDING,)
        ).fetchone()
        return row[0] if row else None

    def _insert_pending(
        self, conn: sqlite3.Connection, template_id: Optional[str], now: float
    ) -> str:
        workout_id = ExerciseIdentity.new_id()
        name = self.default_name_for(datetime.datetime.fromtimestamp(now))
        conn.execute(
            "INSERT INTO workouts (id, name, status, source_template_id, started_at, completed_at, notes, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, NULL, NULL, ?, ?);",
            (workout_id, name, STATUS_PENDING, template_id, now, now, now),
        )
        return workout_id

    def fetch_pending_id(self) -> Optional[str]:
        with self._connection() as conn:
            return self._pending_id(conn)

    def _resume_after_conflict(self, exc: sqlite3.IntegrityError) -> str:
        pending = self.fetch_pending_id()
        if pending is None:
            raise ConflictError(str(exc)) from exc
        logger.info("pending workout created concurrently; resuming %s", pending)
        return pending

    def start_or_resume_pending(self, now: float | None = None) -> str:
        """Return the pending workout id, creating a blank workout if needed."""
        existing = self.fetch_pending_id()
        if existing is not None:
            return existing
        try:
            with self._transaction() as conn:
                existing = self._pending_id(conn)
                if existing is not None:
                    return existing
                return self._insert_pending(conn, None, _now(now))
        except sqlite3.IntegrityError as exc:
            return self._resume_after_conflict(exc)

    def start_pending_from_template(self, template_id: str, now: float | None = None) -> str:
        """Start a pending workout copied from ``template_id``.

        An existing pending workout is returned unchanged. Each template
        exercise becomes a workout exercise with ``planned_sets_count`` blank
        sets; negative counts produce no sets.
        """
        existing = self.fetch_pending_id()
        if existing is not None:
            return existing
        try:
            with self._transaction() as conn:
                existing = self._pending_id(conn)
                if existing is not None:
                    return existing
                found = conn.execute(
                    "SELECT 1 FROM templates WHERE id = ?;", (template_id,)
                ).fetchone()
                if found is None:
                    raise ValueError("template not found")
                workout_id = self._insert_pending(conn, template_id, _now(now))
                template_exercises = conn.execute(
                    "SELECT exercise_id, sort_order, planned_sets_count FROM template_exercises "
                    "WHERE template_id = ? ORDER BY sort_order ASC;",
                    (template_id,),
                ).fetchall()
                for exercise_id, sort_order, planned in template_exercises:
                    we_id = ExerciseIdentity.new_id()
                    conn.execute(
                        "INSERT INTO workout_exercises (id, workout_id, exercise_id, sort_order) VALUES (?, ?, ?, ?);",
                        (we_id, workout_id, exercise_id, sort_order),
                    )
                    for position in range(max(0, int(planned))):
                        conn.execute(
                            "INSERT INTO workout_sets (id, workout_exercise_id, sort_order) VALUES (?, ?, ?);",
                            (ExerciseIdentity.new_id(), we_id, position),
                        )
                return workout_id
        except sqlite3.IntegrityError as exc:
            return self._resume_after_conflict(exc)

    def complete(self, workout_id: str, now: float | None = None) -> bool:
        """Mark a pending workout completed; return False if nothing changed."""
        ts = _now(now)
        changed = self.execute(
            "UPDATE workouts SET status = ?, completed_at = ?, updated_at = ? "
            "WHERE id = ? AND status = ?;",
            (STATUS_COMPLETED, ts, ts, workout_id, STATUS_PENDING),
        )
        return changed > 0

    def discard_pending(self, workout_id: str) -> None:
        self.execute(
            "DELETE FROM workouts WHERE id = ? AND status = ?;",
            (workout_id, STATUS_PENDING),
        )

    def delete(self, workout_id: str) -> None:
        self.execute("DELETE FROM workouts WHERE id = ?;", (workout_id,))

    def update_name(self, workout_id: str, name: str, now: float | None = None) -> None:
        self.execute(
            "UPDATE workouts SET name = ?, updated_at = ? WHERE id = ?;",
            (name, _now(now), workout_id),
        )

    def update_notes(
        self, workout_id: str, notes: str | None, now: float | None = None
    ) -> None:
        self.execute(
            "UPDATE workouts SET notes = ?, updated_at = ? WHERE id = ?;",
            (notes, _now(now), workout_id),
        )

    def fetch_detail(self, workout_id: str) -> dict:
        rows = self.fetch_all(
            f"SELECT {_WORKOUT_COLUMNS} FROM workouts WHERE id = ?;", (workout_id,)
        )
        if not rows:
            raise ValueError("workout not found")
        return _workout_dict(rows[0])

    def fetch_exercises(self, workout_id: str) -> List[dict]:
        """Return the workout's exercises in order, each with its sets."""
        with self._snapshot() as conn:
            exercise_rows = conn.execute(
                "SELECT we.id, we.exercise_id, e.name, we.sort_order "
                "FROM workout_exercises we JOIN exercises e ON e.id = we.exercise_id "
                "WHERE we.workout_id = ? ORDER BY we.sort_order ASC;",
                (workout_id,),
            ).fetchall()
            result = []
            for we_id, exercise_id, name, sort_order in exercise_rows:
                sets = conn.execute(
                    f"SELECT {_SET_COLUMNS} FROM workout_sets "
                    "WHERE workout_exercise_id = ? ORDER BY sort_order ASC;",
                    (we_id,),
                ).fetchall()
                result.append(
                    {
                        "id": we_id,
                        "exercise_id": exercise_id,
                        "exercise_name": name,
                        "sort_order": sort_order,
                        "sets": [_set_dict(s) for s in sets],
                    }
                )
            return result

    def fetch_completed(self) -> List[dict]:
        """Return completed workouts, newest first, with exercise summaries."""
        return _completed_from_rows(self.fetch_all(_COMPLETED_WORKOUTS_SQL))

    def count(self) -> int:
        return int(self.fetch_value("SELECT COUNT(*) FROM workouts;"))


class WorkoutExerciseRepository(BaseRepository):
    """Repository for exercises inside a workout."""

    def add(self, workout_id: str, exercise_id: str, now: float | None = None) -> str:
        """Append ``exercise_id`` to the workout with one blank set."""
        we_id = ExerciseIdentity.new_id()
        try:
            with self._transaction() as conn:
                next_order = conn.execute(
                    "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM workout_exercises WHERE workout_id = ?;",
                    (workout_id,),
                ).fetchone()[0]
                conn.execute(
                    "INSERT INTO workout_exercises (id, workout_id, exercise_id, sort_order) VALUES (?, ?, ?, ?);",
                    (we_id, workout_id, exercise_id, next_order),
                )
                conn.execute(
                    "INSERT INTO workout_sets (id, workout_exercise_id, sort_order) VALUES (?, ?, 0);",
                    (ExerciseIdentity.new_id(), we_id),
                )
                conn.execute(
                    "UPDATE workouts SET updated_at = ? WHERE id = ?;",
                    (_now(now), workout_id),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("unknown workout or exercise") from exc
        return we_id

    def remove(self, workout_exercise_id: str, now: float | None = None) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT workout_id FROM workout_exercises WHERE id = ?;",
                (workout_exercise_id,),
            ).fetchone()
            if row is None:
                return
            conn.execute(
                "DELETE FROM workout_exercises WHERE id = ?;", (workout_exercise_id,)
            )
            conn.execute(
                "UPDATE workouts SET updated_at = ? WHERE id = ?;",
                (_now(now), row[0]),
            )


class SetRepository(BaseRepository):
    """Repository for workout_sets table operations."""

    @staticmethod
    def _validate(fields: dict) -> None:
        unknown = set(fields) - set(_SET_FIELDS)
        if unknown:
            raise ValueError(f"unknown set fields: {', '.join(sorted(unknown))}")
        reps = fields.get("reps")
        if reps is not None and reps < 0:
            raise ValueError("reps must be non-negative")
        rpe = fields.get("rpe")
        if rpe is not None and (rpe < 0 or rpe > 10):
            raise ValueError("rpe must be between 0 and 10")
        rest = fields.get("rest_timer_seconds")
        if rest is not None and rest < 0:
            raise ValueError("rest_timer_seconds must be non-negative")

    @staticmethod
    def _column_value(field: str, value):
        if field == "is_warm_up" and value is not None:
            return int(bool(value))
        return value

    def add(self, workout_exercise_id: str, **fields) -> str:
        """Append a set to ``workout_exercise_id``; omitted fields stay blank."""
        self._validate(fields)
        set_id = ExerciseIdentity.new_id()
        columns = ["id", "workout_exercise_id", "sort_order"] + list(fields)
        try:
            with self._transaction() as conn:
                next_order = conn.execute(
                    "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM workout_sets WHERE workout_exercise_id = ?;",
                    (workout_exercise_id,),
                ).fetchone()[0]
                values = [set_id, workout_exercise_id, next_order] + [
                    self._column_value(k, v) for k, v in fields.items()
                ]
                placeholders = ", ".join("?" for _ in columns)
                conn.execute(
                    f"INSERT INTO workout_sets ({', '.join(columns)}) VALUES ({placeholders});",
                    tuple(values),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"workout exercise {workout_exercise_id} not found") from exc
        return set_id

    def update(self, set_id: str, **fields) -> None:
        """Overwrite the given measurement fields; ``None`` clears a value."""
        self._validate(fields)
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        params = [self._column_value(k, v) for k, v in fields.items()]
        params.append(set_id)
        self.execute(
            f"UPDATE workout_sets SET {assignments} WHERE id = ?;", tuple(params)
        )

    def remove(self, set_id: str) -> None:
        self.execute("DELETE FROM workout_sets WHERE id = ?;", (set_id,))

    def fetch_for_exercise(self, workout_exercise_id: str) -> List[dict]:
        rows = self.fetch_all(
            f"SELECT {_SET_COLUMNS} FROM workout_sets WHERE workout_exercise_id = ? ORDER BY sort_order;",
            (workout_exercise_id,),
        )
        return [_set_dict(r) for r in rows]

    def fetch_detail(self, set_id: str) -> dict:
        rows = self.fetch_all(
            f"SELECT {_SET_COLUMNS} FROM workout_sets WHERE id = ?;", (set_id,)
        )
        if not rows:
            raise ValueError("set not found")
        return _set_dict(rows[0])

    def fetch_exercise_history(self, exercise_id: str) -> List[dict]:
        """All sets for ``exercise_id`` from completed workouts, newest first."""
        return [
            _history_entry(r)
            for r in self.fetch_all(_EXERCISE_HISTORY_SQL, (exercise_id,))
        ]

    def count(self) -> int:
        return int(self.fetch_value("SELECT COUNT(*) FROM workout_sets;"))


class UserRepository(BaseRepository):
    """Persistence for user accounts owned by the authentication layer."""

    _COLUMNS = "id, name, email, password_hash, created_at"

    @staticmethod
    def _user_dict(row: Tuple) -> dict:
        uid, name, email, password_hash, created_at = row
        return {
            "id": uid,
            "name": name,
            "email": email,
            "password_hash": password_hash,
            "created_at": created_at,
        }

    def create(
        self, name: str, email: str, password_hash: str, now: float | None = None
    ) -> dict:
        user = {
            "id": ExerciseIdentity.new_id(),
            "name": name,
            "email": email,
            "password_hash": password_hash,
            "created_at": _now(now),
        }
        try:
            self.execute(
                f"INSERT INTO users ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?);",
                (
                    user["id"],
                    user["name"],
                    user["email"],
                    user["password_hash"],
                    user["created_at"],
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("email_already_exists") from exc
        return user

    def fetch(self, user_id: str) -> Optional[dict]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM users WHERE id = ?;", (user_id,)
        )
        return self._user_dict(rows[0]) if rows else None

    def fetch_by_email(self, email: str) -> Optional[dict]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM users WHERE lower(email) = ?;",
            (email.strip().lower(),),
        )
        return self._user_dict(rows[0]) if rows else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        self.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?;",
            (password_hash, user_id),
        )


class AsyncDatabase(Database):
    """Provides asynchronous read connections for observers."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path, timeout=30)
        try:
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous read helpers using aiosqlite."""

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return [tuple(r) for r in rows]


class AsyncTemplateRepository(AsyncBaseRepository):
    """Async reader for the template list."""

    async def fetch_all(self) -> List[Tuple[str, str]]:
        return await super().fetch_all(_TEMPLATES_SQL)


class AsyncExerciseRepository(AsyncBaseRepository):
    """Async reader for exercises."""

    async def fetch_all(self) -> List[Tuple[str, str]]:
        return await super().fetch_all(_EXERCISES_SQL)


class AsyncWorkoutRepository(AsyncBaseRepository):
    """Async reader for workout history."""

    async def fetch_completed(self) -> List[dict]:
        return _completed_from_rows(await self.fetch_all(_COMPLETED_WORKOUTS_SQL))

    async def fetch_exercise_history(self, exercise_id: str) -> List[dict]:
        rows = await self.fetch_all(_EXERCISE_HISTORY_SQL, (exercise_id,))
        return [_history_entry(r) for r in rows]
