import os
import sqlite3
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import LocalStoreError, NullLocalStore, SqliteLocalStore, create_local_store
from entities import (
    EntityType,
    Exercise,
    LogExercise,
    LogRoutine,
    LogSet,
    LogWorkout,
    Routine,
    Workout,
)


async def _store(tmp_path) -> SqliteLocalStore:
    store = SqliteLocalStore(str(tmp_path / "store.db"))
    await store.initialize()
    return store


@pytest.mark.asyncio
async def test_initialize_is_idempotent(tmp_path):
    store = await _store(tmp_path)
    await store.initialize()
    again = SqliteLocalStore(store.db_path)
    await again.initialize()
    assert await again.query(EntityType.ROUTINES) == []


@pytest.mark.asyncio
async def test_write_is_upsert_by_id(tmp_path):
    store = await _store(tmp_path)
    routine = Routine(id="r1", user_id="u1", name="Push Pull", description="old")
    await store.write(EntityType.ROUTINES, routine.to_row())
    routine.name = "Upper Lower"
    routine.description = None
    await store.write(EntityType.ROUTINES, routine.to_row(synced=True))

    rows = await store.query(EntityType.ROUTINES, {"user_id": "u1"})
    assert len(rows) == 1
    assert rows[0]["name"] == "Upper Lower"
    assert rows[0]["description"] is None
    assert rows[0]["synced"] == 1


@pytest.mark.asyncio
async def test_upsert_does_not_cascade_to_children(tmp_path):
    store = await _store(tmp_path)
    routine = Routine(id="r1", user_id="u1", name="Split")
    await store.write(EntityType.ROUTINES, routine.to_row())
    await store.write(
        EntityType.WORKOUTS, Workout(id="w1", routine_id="r1", name="Legs").to_row()
    )
    routine.name = "Split v2"
    await store.write(EntityType.ROUTINES, routine.to_row())
    assert await store.get(EntityType.WORKOUTS, "w1") is not None


@pytest.mark.asyncio
async def test_query_filters_and_order(tmp_path):
    store = await _store(tmp_path)
    for exercise_id, name in (("e1", "Squat"), ("e2", "Bench Press"), ("e3", "Deadlift")):
        await store.write(EntityType.EXERCISES, Exercise(id=exercise_id, name=name).to_row())
    rows = await store.query(EntityType.EXERCISES)
    assert [r["name"] for r in rows] == ["Bench Press", "Deadlift", "Squat"]
    rows = await store.query(EntityType.EXERCISES, {"id": ["e1", "e3"]}, order_by="name DESC")
    assert [r["id"] for r in rows] == ["e1", "e3"]
    rows = await store.query(EntityType.EXERCISES, {"description": None, "name": "Squat"})
    assert [r["id"] for r in rows] == ["e1"]
    assert await store.query(EntityType.EXERCISES, {"id": []}) == []
    with pytest.raises(ValueError):
        await store.query(EntityType.EXERCISES, {"nope": 1})
    with pytest.raises(ValueError):
        await store.query(EntityType.EXERCISES, order_by="name; DROP TABLE exercises")


@pytest.mark.asyncio
async def test_remove_cascades_through_log_hierarchy(tmp_path):
    store = await _store(tmp_path)
    session = LogRoutine(id="lr1", routine_id="r1", user_id="u1", start_datetime="2024-05-01T08:00:00")
    rows = [(EntityType.LOG_ROUTINES, session.to_row())]
    descendants = []
    for w in range(2):
        log_workout = LogWorkout(
            id=f"lw{w}", log_routine_id="lr1", workout_id=f"w{w}", start_datetime="2024-05-01T08:00:00"
        )
        log_exercise = LogExercise(id=f"le{w}", log_workout_id=log_workout.id, exercise_id="bench")
        rows.append((EntityType.LOG_WORKOUTS, log_workout.to_row()))
        rows.append((EntityType.LOG_EXERCISES, log_exercise.to_row()))
        descendants += [(EntityType.LOG_WORKOUTS, log_workout.id), (EntityType.LOG_EXERCISES, log_exercise.id)]
        for n in range(1, 4):
            log_set = LogSet(id=f"ls{w}{n}", log_exercise_id=log_exercise.id, set_number=n, reps=10)
            rows.append((EntityType.LOG_SETS, log_set.to_row()))
            descendants.append((EntityType.LOG_SETS, log_set.id))
    await store.write_many(rows)
    assert len(await store.query(EntityType.LOG_SETS)) == 6

    assert await store.remove(EntityType.LOG_ROUTINES, "lr1") == 1

    for entity_type, entity_id in descendants:
        assert await store.get(entity_type, entity_id) is None
    assert await store.query(EntityType.LOG_SETS) == []


@pytest.mark.asyncio
async def test_write_many_is_all_or_nothing(tmp_path):
    store = await _store(tmp_path)
    good = Routine(id="r1", user_id="u1", name="Ok").to_row()
    orphan = Workout(id="w1", routine_id="missing", name="Orphan").to_row()
    with pytest.raises(sqlite3.IntegrityError):
        await store.write_many([(EntityType.ROUTINES, good), (EntityType.WORKOUTS, orphan)])
    assert await store.get(EntityType.ROUTINES, "r1") is None


@pytest.mark.asyncio
async def test_write_rejects_unknown_columns(tmp_path):
    store = await _store(tmp_path)
    with pytest.raises(ValueError):
        await store.write(EntityType.EXERCISES, {"id": "e1", "name": "Squat", "colour": "red"})


@pytest.mark.asyncio
async def test_meta_roundtrip(tmp_path):
    store = await _store(tmp_path)
    assert await store.get_meta("last_sync") is None
    await store.set_meta("last_sync", "2024-05-01T10:00:00+00:00")
    await store.set_meta("last_sync", "2024-05-02T10:00:00+00:00")
    assert await store.get_meta("last_sync") == "2024-05-02T10:00:00+00:00"


@pytest.mark.asyncio
async def test_null_store_reads_empty_and_ignores_writes():
    store = NullLocalStore()
    await store.initialize()
    await store.write(EntityType.ROUTINES, {"id": "r1"})
    await store.write_many([(EntityType.ROUTINES, {"id": "r2"})])
    assert await store.query(EntityType.ROUTINES) == []
    assert await store.get(EntityType.ROUTINES, "r1") is None
    assert await store.remove(EntityType.ROUTINES, "r1") == 0
    assert store.queue is None and store.failures is None
    await store.set_meta("last_sync", "now")
    assert await store.get_meta("last_sync") == "now"


@pytest.mark.asyncio
async def test_create_local_store_selection(tmp_path):
    store = await create_local_store("none")
    assert not store.available

    store = await create_local_store("sqlite", str(tmp_path / "ok.db"))
    assert store.available

    missing = str(tmp_path / "nope" / "k.db")
    with pytest.raises(LocalStoreError):
        await create_local_store("sqlite", missing)
    store = await create_local_store("sqlite", missing, fallback=True)
    assert isinstance(store, NullLocalStore)

