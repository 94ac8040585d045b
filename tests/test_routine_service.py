import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import NullLocalStore
from entities import EntityType, Exercise, Operation


@pytest.mark.asyncio
async def test_create_offline_then_sync_when_back_online(make_context, server, transport):
    ctx = await make_context(auto_sync=True)
    transport.online = False

    routine = await ctx.routines.create_routine("u1", "Summer Cut", "12 week plan")
    await ctx.sync_service.wait_for_background()

    rows = await ctx.store.query(EntityType.ROUTINES, {"user_id": "u1"})
    assert [(r["name"], r["synced"]) for r in rows] == [("Summer Cut", 0)]
    pending = await ctx.outbox.pending_items()
    assert [(i["operation"], i["entity_id"]) for i in pending] == [
        (Operation.CREATE.value, routine.id)
    ]
    # the background pass only probed
    assert all(path == "/exercises" for _, path in transport.calls)
    status = await ctx.get_sync_status()
    assert status.pending_changes == 1

    transport.online = True
    assert await ctx.sync_service.sync_all() is True

    status = await ctx.get_sync_status()
    assert status.pending_changes == 0
    assert status.last_sync is not None
    stored = server.records[EntityType.ROUTINES][routine.id]
    assert stored["name"] == "Summer Cut"
    assert stored["description"] == "12 week plan"
    row = await ctx.store.get(EntityType.ROUTINES, routine.id)
    assert row["synced"] == 1
    await ctx.close()


@pytest.mark.asyncio
async def test_update_and_delete_are_queued_in_order(make_context):
    ctx = await make_context()
    routine = await ctx.routines.create_routine("u1", "Strength")
    updated = await ctx.routines.update_routine(routine.id, description="5x5")
    assert updated.name == "Strength"
    assert updated.description == "5x5"

    await ctx.routines.delete_routine(routine.id)

    assert await ctx.store.get(EntityType.ROUTINES, routine.id) is None
    ops = [i["operation"] for i in await ctx.outbox.pending_items()]
    assert ops == ["CREATE", "UPDATE", "DELETE"]
    await ctx.close()


@pytest.mark.asyncio
async def test_update_unknown_routine_raises(make_context):
    ctx = await make_context()
    with pytest.raises(ValueError, match="routine not found"):
        await ctx.routines.update_routine("missing", name="x")
    await ctx.close()


@pytest.mark.asyncio
async def test_routine_detail_nests_workouts_and_exercises(make_context):
    ctx = await make_context()
    await ctx.store.write(EntityType.EXERCISES, Exercise(id="squat", name="Back Squat").to_row())
    await ctx.store.write(EntityType.EXERCISES, Exercise(id="rdl", name="Romanian Deadlift").to_row())
    routine = await ctx.routines.create_routine("u1", "Lower Body")
    workout = await ctx.routines.add_workout(routine.id, "Legs", day_of_week=2)
    first = await ctx.routines.add_exercise_to_workout(workout.id, "squat", sets=5, reps=5)
    second = await ctx.routines.add_exercise_to_workout(workout.id, "rdl", sets=3, reps=8)
    assert (first.order_index, second.order_index) == (0, 1)

    detail = await ctx.routines.get_routine_by_id(routine.id)

    assert detail["name"] == "Lower Body"
    assert [w["name"] for w in detail["workouts"]] == ["Legs"]
    links = detail["workouts"][0]["workout_exercises"]
    assert [(l["exercise_name"], l["order_index"]) for l in links] == [
        ("Back Squat", 0),
        ("Romanian Deadlift", 1),
    ]
    await ctx.close()


@pytest.mark.asyncio
async def test_delete_workout_removes_its_exercises(make_context):
    ctx = await make_context()
    routine = await ctx.routines.create_routine("u1", "Upper")
    workout = await ctx.routines.add_workout(routine.id, "Pull")
    link = await ctx.routines.add_exercise_to_workout(workout.id, "row")

    await ctx.routines.delete_workout(workout.id)

    assert await ctx.store.get(EntityType.WORKOUT_EXERCISES, link.id) is None
    detail = await ctx.routines.get_routine_by_id(routine.id)
    assert detail["workouts"] == []
    await ctx.close()


@pytest.mark.asyncio
async def test_list_falls_back_to_local_rows_when_offline(make_context, transport):
    ctx = await make_context()
    await ctx.routines.create_routine("u1", "Travel Plan")
    transport.online = False

    routines = await ctx.routines.get_routines_by_user_id("u1")

    assert [r.name for r in routines] == ["Travel Plan"]
    await ctx.close()


@pytest.mark.asyncio
async def test_list_refreshes_from_server_when_online(make_context, server):
    ctx = await make_context()
    created = await ctx.routines.create_routine("u1", "Local")
    await ctx.sync_service.sync_all()
    server.records[EntityType.ROUTINES][created.id]["name"] = "Renamed on web"

    routines = await ctx.routines.get_routines_by_user_id("u1")

    assert [r.name for r in routines] == ["Renamed on web"]
    assert routines[0].synced is True
    await ctx.close()


@pytest.mark.asyncio
async def test_api_only_mode_talks_to_server(make_context, server, transport):
    ctx = await make_context(store=NullLocalStore())
    assert ctx.api_only

    routine = await ctx.routines.create_routine("u1", "Direct")
    assert routine.id in server.records[EntityType.ROUTINES]

    workout = await ctx.routines.add_workout(routine.id, "Day 1")
    await ctx.routines.add_exercise_to_workout(workout.id, "bench")
    link = await ctx.routines.add_exercise_to_workout(workout.id, "press")
    assert link.order_index == 1

    renamed = await ctx.routines.update_routine(routine.id, name="Direct v2")
    assert renamed.name == "Direct v2"
    listed = await ctx.routines.get_routines_by_user_id("u1")
    assert [r.name for r in listed] == ["Direct v2"]
    assert len(listed[0].workouts) == 1

    await ctx.routines.delete_routine(routine.id)
    assert server.records[EntityType.ROUTINES] == {}
    assert server.records[EntityType.WORKOUT_EXERCISES] == {}
    assert await ctx.outbox.pending_count() == 0
    await ctx.close()
