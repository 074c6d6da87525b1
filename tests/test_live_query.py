import asyncio
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    ChangeNotifier,
    ExerciseRepository,
    SetRepository,
    TemplateRepository,
    WorkoutExerciseRepository,
    WorkoutRepository,
)
from live_query import (
    LiveQuery,
    QueryClosed,
    observe_exercise_history,
    observe_history,
    observe_templates,
)


def counting_fetch():
    calls = []

    async def fetch():
        calls.append(None)
        return len(calls)

    return fetch, calls


def test_notifier_publishes_and_unsubscribes():
    notifier = ChangeNotifier()
    seen = []
    unsubscribe = notifier.subscribe(seen.append)
    notifier.publish(["workouts"])
    notifier.publish([])
    unsubscribe()
    notifier.publish(["workouts"])
    assert seen == [frozenset({"workouts"})]


def test_failing_subscriber_does_not_block_others():
    notifier = ChangeNotifier()
    seen = []

    def broken(tables):
        raise RuntimeError("boom")

    notifier.subscribe(broken)
    notifier.subscribe(seen.append)
    notifier.publish({"sets"})
    assert seen == [frozenset({"sets"})]


def test_commit_publishes_tables_with_cascades(tmp_path):
    db_file = str(tmp_path / "changes.db")
    workouts = WorkoutRepository(db_file)
    seen = []
    unsubscribe = workouts.changes.subscribe(seen.append)
    wid = workouts.start_or_resume_pending()
    workouts.delete(wid)
    unsubscribe()
    assert "workouts" in seen[0]
    assert seen[1] >= {"workouts", "workout_exercises", "workout_sets"}


def test_failed_transaction_publishes_nothing(tmp_path):
    db_file = str(tmp_path / "rollback.db")
    exercises = ExerciseRepository(db_file)
    seen = []
    exercises.changes.subscribe(seen.append)
    with pytest.raises(RuntimeError):
        with exercises._transaction() as conn:
            conn.execute("INSERT INTO exercises (id, name) VALUES ('A', 'A')")
            raise RuntimeError("abort")
    assert seen == []
    assert exercises.fetch_all() == []


@pytest.mark.asyncio
async def test_latest_value_replaces_undelivered():
    notifier = ChangeNotifier()
    fetch, calls = counting_fetch()
    query = LiveQuery(notifier, {"templates"}, fetch)
    await query.start()
    await asyncio.sleep(0.05)
    notifier.publish({"templates"})
    await asyncio.sleep(0.05)
    assert await asyncio.wait_for(query.get(), 5) == 2
    await query.close()


@pytest.mark.asyncio
async def test_unrelated_tables_are_ignored():
    notifier = ChangeNotifier()
    fetch, calls = counting_fetch()
    async with LiveQuery(notifier, {"templates"}, fetch) as query:
        assert await asyncio.wait_for(query.get(), 5) == 1
        notifier.publish({"workout_sets"})
        await asyncio.sleep(0.05)
        assert len(calls) == 1


@pytest.mark.asyncio
async def test_notification_from_other_thread():
    notifier = ChangeNotifier()
    fetch, calls = counting_fetch()
    async with LiveQuery(notifier, {"workouts"}, fetch) as query:
        assert await asyncio.wait_for(query.get(), 5) == 1
        await asyncio.to_thread(notifier.publish, {"workouts"})
        assert await asyncio.wait_for(query.get(), 5) == 2


@pytest.mark.asyncio
async def test_fetch_error_is_raised_to_consumer():
    async def fetch():
        raise ValueError("bad query")

    async with LiveQuery(ChangeNotifier(), {"t"}, fetch) as query:
        with pytest.raises(ValueError):
            await asyncio.wait_for(query.get(), 5)


@pytest.mark.asyncio
async def test_close_ends_iteration():
    fetch, _calls = counting_fetch()
    query = LiveQuery(ChangeNotifier(), {"t"}, fetch)
    await query.start()
    values = []
    async for value in query:
        values.append(value)
        await query.close()
    assert values == [1]
    with pytest.raises(QueryClosed):
        await query.get()


@pytest.mark.asyncio
async def test_observe_templates(tmp_path):
    db_file = str(tmp_path / "live.db")
    templates = TemplateRepository(db_file)
    async with observe_templates(db_file) as query:
        assert await asyncio.wait_for(query.get(), 5) == []
        tid = templates.create("Push")
        assert await asyncio.wait_for(query.get(), 5) == [(tid, "Push")]


@pytest.mark.asyncio
async def test_observe_history_after_completion(tmp_path):
    db_file = str(tmp_path / "history.db")
    workouts = WorkoutRepository(db_file)
    exercises = ExerciseRepository(db_file)
    entries = WorkoutExerciseRepository(db_file)
    sets = SetRepository(db_file)
    squat = exercises.ensure("Squat")

    async with observe_history(db_file) as history, observe_exercise_history(db_file, squat) as squat_history:
        assert await asyncio.wait_for(history.get(), 5) == []
        assert await asyncio.wait_for(squat_history.get(), 5) == []

        wid = await asyncio.to_thread(workouts.start_or_resume_pending)
        we_id = await asyncio.to_thread(entries.add, wid, squat)
        await asyncio.to_thread(sets.update, sets.fetch_for_exercise(we_id)[0]["id"], weight=100.0, reps=5)
        await asyncio.to_thread(workouts.complete, wid)

        latest = await asyncio.wait_for(history.get(), 5)
        while not latest:
            latest = await asyncio.wait_for(history.get(), 5)
        assert latest[0]["id"] == wid
        assert latest[0]["exercises"][0]["sets_count"] == 1

        rows = await asyncio.wait_for(squat_history.get(), 5)
        while not rows:
            rows = await asyncio.wait_for(squat_history.get(), 5)
        assert rows[0]["weight"] == 100.0
