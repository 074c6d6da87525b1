import asyncio
import csv
import datetime
import io
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Union

from config import YamlConfig
from db import Database, STATUS_COMPLETED, WorkoutRepository, ensure_exercise
from tools import ExerciseIdentity, LenientParser

logger = logging.getLogger(__name__)

EXPECTED_HEADER = [
    "Date",
    "Workout Name",
    "Duration",
    "Exercise Name",
    "Set Order",
    "Weight",
    "Reps",
    "Distance",
    "Seconds",
    "Notes",
    "Workout Notes",
    "RPE",
]

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
REST_TIMER_MARKER = "Rest Timer"
PREVIEW_LENGTH = 200
IMPORTED_FLAG = "csv_imported"


class CSVImportError(Exception):
    """Base class for failures that abort an import."""


class HeaderMismatch(CSVImportError, ValueError):
    def __init__(self, actual: List[str]) -> None:
        self.expected = list(EXPECTED_HEADER)
        self.actual = list(actual)
        super().__init__(
            "CSV header mismatch. Expected "
            f"{', '.join(self.expected)}, got {', '.join(self.actual)}."
        )


class MalformedRow(CSVImportError, ValueError):
    def __init__(self, row: List[str]) -> None:
        self.column_count = len(row)
        self.preview = ",".join(row)[:PREVIEW_LENGTH]
        super().__init__(
            f"Invalid CSV row (expected {len(EXPECTED_HEADER)} columns, "
            f"got {self.column_count}). Row: {self.preview}"
        )


class UnparseableDate(CSVImportError, ValueError):
    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"Could not parse Date field: {value}")


class ImportReadError(CSVImportError):
    """The source could not be opened, read or decoded."""


class ScopedResource(Protocol):
    """A picker-supplied file that must be unlocked before reading."""

    path: str

    def start_access(self) -> bool:
        ...

    def stop_access(self) -> None:
        ...


@dataclass
class ImportResult:
    workouts_inserted: int = 0
    workout_exercises_inserted: int = 0
    sets_inserted: int = 0
    exercises_inserted_or_ignored: int = 0
    skipped_because_already_imported: bool = False


def parse_csv(text: str) -> List[List[str]]:
    """Split ``text`` into rows of fields.

    Quoted fields may contain separators, doubled quotes and newlines. Blank
    lines are skipped. A final row left inside an open quote is discarded;
    broken quoting anywhere else raises :class:`CSVImportError`.
    """
    lines = io.StringIO(text, newline="")
    state = {"exhausted": False}

    def feed():
        yield from lines
        state["exhausted"] = True

    reader = csv.reader(feed(), strict=True)
    rows: List[List[str]] = []
    try:
        for row in reader:
            if row and row != [""]:
                rows.append(row)
    except csv.Error as exc:
        if not state["exhausted"]:
            raise CSVImportError(
                f"Invalid CSV quoting on line {reader.line_num}: {exc}"
            ) from exc
        logger.debug("dropped unterminated trailing CSV row at line %d", reader.line_num)
    return rows


class _WorkoutCache:
    """In-memory state for one ``(date, workout name)`` group."""

    def __init__(self, workout_id: str, has_notes: bool) -> None:
        self.workout_id = workout_id
        self.has_notes = has_notes
        self.workout_exercise_ids: Dict[str, str] = {}
        self.last_set_ids: Dict[str, str] = {}
        self.next_set_order: Dict[str, int] = {}
        self.next_exercise_order = 0


class CSVImportService:
    """Rebuild workouts from a per-set CSV export in one transaction."""

    def __init__(self, db: Database, config: YamlConfig | None = None) -> None:
        self.db = db
        self.config = config

    def already_imported(self) -> bool:
        return bool(self.config and self.config.get(IMPORTED_FLAG, False))

    def _mark_imported(self) -> None:
        if self.config is not None:
            self.config.update(**{IMPORTED_FLAG: True})

    def import_file(
        self, source: Union[str, ScopedResource], force: bool = False
    ) -> ImportResult:
        """Import ``source`` unless a previous import was recorded."""
        if not force and self.already_imported():
            logger.info("CSV import skipped; workouts were already imported")
            return ImportResult(skipped_because_already_imported=True)
        result = self.import_text(self._read(source))
        self._mark_imported()
        logger.info(
            "imported %d workouts, %d exercises, %d sets",
            result.workouts_inserted,
            result.workout_exercises_inserted,
            result.sets_inserted,
        )
        return result

    async def import_file_async(
        self, source: Union[str, ScopedResource], force: bool = False
    ) -> ImportResult:
        return await asyncio.to_thread(self.import_file, source, force)

    @staticmethod
    def _read(source: Union[str, ScopedResource]) -> str:
        if isinstance(source, str):
            return CSVImportService._read_path(source)
        if not source.start_access():
            raise ImportReadError(f"access to {source.path} was denied")
        try:
            return CSVImportService._read_path(source.path)
        finally:
            source.stop_access()

    @staticmethod
    def _read_path(path: str) -> str:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise ImportReadError(f"could not read {path}: {exc}") from exc
        return data.decode("utf-8-sig", errors="replace")

    def import_text(self, text: str) -> ImportResult:
        """Validate and materialize CSV ``text``; nothing is written on error."""
        if text.startswith("\ufeff"):
            text = text[1:]
        rows = parse_csv(text)
        result = ImportResult()
        if not rows:
            return result
        header = rows.pop(0)
        if header != EXPECTED_HEADER:
            raise HeaderMismatch(header)

        caches: Dict[tuple, _WorkoutCache] = {}
        names_in_file = set()
        with self.db._transaction() as conn:
            for row in rows:
                if row == EXPECTED_HEADER:
                    continue
                if len(row) != len(EXPECTED_HEADER):
                    raise MalformedRow(row)
                self._import_row(conn, [f.strip() for f in row], caches, names_in_file, result)
            result.exercises_inserted_or_ignored = len(names_in_file)
        return result

    def _import_row(self, conn, row, caches, names_in_file, result) -> None:
        (
            date_str,
            workout_name,
            duration_raw,
            exercise_name,
            set_order,
            weight_raw,
            reps_raw,
            distance_raw,
            seconds_raw,
            set_notes,
            workout_notes,
            rpe_raw,
        ) = row
        try:
            started = datetime.datetime.strptime(date_str, DATE_FORMAT)
        except ValueError as exc:
            raise UnparseableDate(date_str) from exc
        started_at = started.timestamp()
        duration = LenientParser.duration_seconds(duration_raw)
        completed_at = started_at + (duration or 0)

        key = (date_str, workout_name)
        cache = caches.get(key)
        if cache is None:
            cache = self._insert_workout(
                conn, started, started_at, duration, completed_at, workout_name, workout_notes
            )
            caches[key] = cache
            result.workouts_inserted += 1
        elif not cache.has_notes and workout_notes:
            conn.execute(
                "UPDATE workouts SET notes = ?, updated_at = ? WHERE id = ?;",
                (workout_notes, completed_at, cache.workout_id),
            )
            cache.has_notes = True

        if not exercise_name:
            return
        names_in_file.add(exercise_name)
        exercise_id = ensure_exercise(conn, exercise_name)

        we_id = cache.workout_exercise_ids.get(exercise_name)
        if we_id is None:
            we_id = ExerciseIdentity.new_id()
            conn.execute(
                "INSERT INTO workout_exercises (id, workout_id, exercise_id, sort_order) VALUES (?, ?, ?, ?);",
                (we_id, cache.workout_id, exercise_id, cache.next_exercise_order),
            )
            cache.workout_exercise_ids[exercise_name] = we_id
            cache.next_exercise_order += 1
            result.workout_exercises_inserted += 1

        if set_order == REST_TIMER_MARKER:
            last_set = cache.last_set_ids.get(exercise_name)
            if last_set is None:
                logger.debug("rest timer without a preceding %s set dropped", exercise_name)
                return
            rest = int(LenientParser.duration_seconds(seconds_raw + "s") or 0)
            if rest > 0:
                conn.execute(
                    "UPDATE workout_sets SET rest_timer_seconds = ? WHERE id = ?;",
                    (rest, last_set),
                )
            return

        marker = set_order.upper()
        order = cache.next_set_order.get(exercise_name, 0)
        set_id = ExerciseIdentity.new_id()
        conn.execute(
            "INSERT INTO workout_sets (id, workout_exercise_id, sort_order, weight, reps, distance, seconds, notes, rpe, rir, is_warm_up, rest_timer_seconds) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL);",
            (
                set_id,
                we_id,
                order,
                LenientParser.number(weight_raw),
                LenientParser.integer(reps_raw),
                LenientParser.number(distance_raw),
                LenientParser.number(seconds_raw),
                set_notes or None,
                LenientParser.number(rpe_raw),
                0 if marker == "F" else None,
                1 if marker == "W" else 0,
            ),
        )
        cache.last_set_ids[exercise_name] = set_id
        cache.next_set_order[exercise_name] = order + 1
        result.sets_inserted += 1

    @staticmethod
    def _insert_workout(
        conn,
        started: datetime.datetime,
        started_at: float,
        duration: Optional[float],
        completed_at: float,
        workout_name: str,
        workout_notes: str,
    ) -> _WorkoutCache:
        stamp = completed_at if completed_at > 0 else started_at
        workout_id = ExerciseIdentity.new_id()
        conn.execute(
            "INSERT INTO workouts (id, name, status, source_template_id, started_at, completed_at, notes, created_at, updated_at) "
            "VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?);",
            (
                workout_id,
                workout_name or WorkoutRepository.default_name_for(started),
                STATUS_COMPLETED,
                started_at,
                started_at if duration is None else completed_at,
                workout_notes or None,
                stamp,
                stamp,
            ),
        )
        return _WorkoutCache(workout_id, bool(workout_notes))
