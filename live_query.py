import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

from db import (
    AsyncExerciseRepository,
    AsyncTemplateRepository,
    AsyncWorkoutRepository,
    ChangeNotifier,
)

logger = logging.getLogger(__name__)

_CLOSED = object()

HISTORY_TABLES = {"workouts", "workout_exercises", "workout_sets", "exercises"}


class QueryClosed(RuntimeError):
    """Raised by :meth:`LiveQuery.get` once the query has been closed."""


class _Failure:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc


class LiveQuery:
    """Re-run ``fetch`` after each commit touching ``tables``.

    Results are handed to a single consumer through a one-slot channel; a
    value the consumer has not picked up yet is replaced by the newer one.
    Change notifications may arrive from any thread.
    """

    def __init__(
        self,
        notifier: ChangeNotifier,
        tables: Iterable[str],
        fetch: Callable[[], Awaitable[Any]],
    ) -> None:
        self.notifier = notifier
        self.tables = frozenset(tables)
        self.fetch = fetch
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dirty: Optional[asyncio.Event] = None
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._closed = False

    async def start(self) -> "LiveQuery":
        if self._task is not None:
            return self
        self._loop = asyncio.get_running_loop()
        self._dirty = asyncio.Event()
        self._queue = asyncio.Queue(maxsize=1)
        self._unsubscribe = self.notifier.subscribe(self._on_change)
        self._dirty.set()
        self._task = self._loop.create_task(self._run())
        return self

    def _on_change(self, tables: frozenset) -> None:
        if self._closed or not (tables & self.tables):
            return
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._dirty.set)

    async def _run(self) -> None:
        while not self._closed:
            await self._dirty.wait()
            self._dirty.clear()
            try:
                value = await self.fetch()
            except Exception as exc:
                logger.exception("live query refresh failed")
                value = _Failure(exc)
            if not self._closed:
                self._deliver(value)

    def _deliver(self, value: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(value)

    async def get(self) -> Any:
        """Wait for the next result."""
        if self._queue is None:
            raise QueryClosed("live query not started")
        value = await self._queue.get()
        if value is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise QueryClosed("live query closed")
        if isinstance(value, _Failure):
            raise value.exc
        return value

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._queue is not None:
            self._deliver(_CLOSED)

    async def __aenter__(self) -> "LiveQuery":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __aiter__(self) -> "LiveQuery":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.get()
        except QueryClosed:
            raise StopAsyncIteration


def observe_templates(db_path: str) -> LiveQuery:
    """Template list, most recently updated first."""
    repo = AsyncTemplateRepository(db_path)
    return LiveQuery(repo.changes, {"templates"}, repo.fetch_all)


def observe_exercises(db_path: str) -> LiveQuery:
    repo = AsyncExerciseRepository(db_path)
    return LiveQuery(repo.changes, {"exercises"}, repo.fetch_all)


def observe_history(db_path: str) -> LiveQuery:
    """Completed workouts with per-exercise set counts."""
    repo = AsyncWorkoutRepository(db_path)
    return LiveQuery(repo.changes, HISTORY_TABLES, repo.fetch_completed)


def observe_exercise_history(db_path: str, exercise_id: str) -> LiveQuery:
    repo = AsyncWorkoutRepository(db_path)
    return LiveQuery(
        repo.changes,
        HISTORY_TABLES,
        functools.partial(repo.fetch_exercise_history, exercise_id),
    )
