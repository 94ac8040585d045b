import logging
import uuid
from typing import Optional

from client import ApiError, NetworkError
from entities import (
    EntityType,
    Operation,
    Routine,
    Workout,
    WorkoutExercise,
    utc_now,
)
from offline_service import OfflineService

logger = logging.getLogger(__name__)


class OfflineRoutineService(OfflineService):
    """Routine plans that keep working without a connection."""

    async def _local_routines(self, user_id: str) -> list[Routine]:
        return await self._list(EntityType.ROUTINES, user_id=user_id)

    async def get_routines_by_user_id(self, user_id: str, online: bool = True) -> list[Routine]:
        if self.api_only:
            data = await self.client.get(f"/routines/user/{user_id}")
            return [Routine.model_validate(r) for r in data or []]

        routines = await self._local_routines(user_id)
        if online:
            try:
                await self.sync.pull_from_server(user_id)
            except (NetworkError, ApiError) as e:
                logger.info("Failed to sync, using local data: %s", e)
            else:
                return await self._local_routines(user_id)
        return routines

    async def get_routine_by_id(self, routine_id: str) -> dict:
        """Return the routine with its workouts and their ordered exercises."""
        if self.api_only:
            return await self.client.get(f"/routines/{routine_id}")

        routine = await self.store.get(EntityType.ROUTINES, routine_id)
        if routine is None:
            raise ValueError("routine not found")
        workouts = await self.store.query(EntityType.WORKOUTS, {"routine_id": routine_id})
        links = await self.store.query(
            EntityType.WORKOUT_EXERCISES, {"workout_id": [w["id"] for w in workouts]}
        )
        exercises = await self.store.query(
            EntityType.EXERCISES, {"id": sorted({l["exercise_id"] for l in links})}
        )
        names = {e["id"]: e["name"] for e in exercises}
        for workout in workouts:
            workout["workout_exercises"] = [
                {**l, "exercise_name": names.get(l["exercise_id"])}
                for l in links
                if l["workout_id"] == workout["id"]
            ]
        routine["workouts"] = workouts
        return routine

    async def create_routine(
        self, user_id: str, name: str, description: Optional[str] = None
    ) -> Routine:
        now = utc_now()
        routine = Routine(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            description=description or "",
            created_at=now,
            updated_at=now,
        )
        return await self._save(EntityType.ROUTINES, routine, Operation.CREATE)

    async def update_routine(
        self,
        routine_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Routine:
        routine = await self._load(EntityType.ROUTINES, routine_id)
        if name is not None:
            routine.name = name
        if description is not None:
            routine.description = description
        routine.updated_at = utc_now()
        return await self._save(EntityType.ROUTINES, routine, Operation.UPDATE)

    async def delete_routine(self, routine_id: str) -> None:
        await self._delete(EntityType.ROUTINES, routine_id)

    async def add_workout(
        self,
        routine_id: str,
        name: str,
        description: Optional[str] = None,
        day_of_week: Optional[int] = None,
    ) -> Workout:
        now = utc_now()
        workout = Workout(
            id=str(uuid.uuid4()),
            routine_id=routine_id,
            name=name,
            description=description,
            day_of_week=day_of_week,
            created_at=now,
            updated_at=now,
        )
        return await self._save(EntityType.WORKOUTS, workout, Operation.CREATE)

    async def delete_workout(self, workout_id: str) -> None:
        await self._delete(EntityType.WORKOUTS, workout_id)

    async def add_exercise_to_workout(
        self,
        workout_id: str,
        exercise_id: str,
        sets: Optional[int] = None,
        reps: Optional[int] = None,
        rest_time_seconds: Optional[int] = None,
    ) -> WorkoutExercise:
        """Append an exercise at the end of the workout's order."""
        if self.api_only:
            workout = Workout.model_validate(await self.client.get(f"/workouts/{workout_id}"))
            indexes = [l.order_index for l in workout.workout_exercises]
        else:
            links = await self.store.query(
                EntityType.WORKOUT_EXERCISES, {"workout_id": workout_id}
            )
            indexes = [l["order_index"] for l in links]
        next_index = max(indexes, default=-1) + 1
        link = WorkoutExercise(
            id=str(uuid.uuid4()),
            workout_id=workout_id,
            exercise_id=exercise_id,
            order_index=next_index,
            sets=sets,
            reps=reps,
            rest_time_seconds=rest_time_seconds,
            created_at=utc_now(),
        )
        return await self._save(EntityType.WORKOUT_EXERCISES, link, Operation.CREATE)
