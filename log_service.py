import logging
import uuid
from typing import Optional

from entities import (
    EntityType,
    LogExercise,
    LogRoutine,
    LogSet,
    LogWorkout,
    Operation,
    utc_now,
)
from offline_service import OfflineService

logger = logging.getLogger(__name__)


class OfflineLogService(OfflineService):
    """Record workout sessions (log routine > log workout > log exercise > log set)."""

    async def start_session(self, routine_id: str, user_id: str) -> LogRoutine:
        now = utc_now()
        session = LogRoutine(
            id=str(uuid.uuid4()),
            routine_id=routine_id,
            user_id=user_id,
            start_datetime=now,
            created_at=now,
            updated_at=now,
        )
        return await self._save(EntityType.LOG_ROUTINES, session, Operation.CREATE)

    async def complete_session(self, log_routine_id: str) -> LogRoutine:
        session = await self._load(EntityType.LOG_ROUTINES, log_routine_id)
        session.end_datetime = utc_now()
        session.updated_at = session.end_datetime
        return await self._save(EntityType.LOG_ROUTINES, session, Operation.UPDATE)

    async def delete_session(self, log_routine_id: str) -> None:
        await self._delete(EntityType.LOG_ROUTINES, log_routine_id)

    async def get_sessions(self, user_id: str) -> list[LogRoutine]:
        if self.api_only:
            data = await self.client.get(f"/log-routines/user/{user_id}")
            return [LogRoutine.model_validate(r) for r in data or []]
        return await self._list(EntityType.LOG_ROUTINES, user_id=user_id)

    async def get_session(self, log_routine_id: str) -> LogRoutine:
        """Return a session with its workouts, exercises and sets attached."""
        session = await self._load(EntityType.LOG_ROUTINES, log_routine_id)
        if self.api_only:
            return session
        session.log_workouts = await self._list(
            EntityType.LOG_WORKOUTS, log_routine_id=log_routine_id
        )
        for log_workout in session.log_workouts:
            log_workout.log_exercises = await self._list(
                EntityType.LOG_EXERCISES, log_workout_id=log_workout.id
            )
            for log_exercise in log_workout.log_exercises:
                log_exercise.log_sets = await self._list(
                    EntityType.LOG_SETS, log_exercise_id=log_exercise.id
                )
        return session

    async def start_workout(self, log_routine_id: str, workout_id: str) -> LogWorkout:
        now = utc_now()
        log_workout = LogWorkout(
            id=str(uuid.uuid4()),
            log_routine_id=log_routine_id,
            workout_id=workout_id,
            start_datetime=now,
            created_at=now,
        )
        return await self._save(EntityType.LOG_WORKOUTS, log_workout, Operation.CREATE)

    async def complete_workout(self, log_workout_id: str) -> LogWorkout:
        log_workout = await self._load(EntityType.LOG_WORKOUTS, log_workout_id)
        log_workout.end_datetime = utc_now()
        return await self._save(EntityType.LOG_WORKOUTS, log_workout, Operation.UPDATE)

    async def start_exercise(self, log_workout_id: str, exercise_id: str) -> LogExercise:
        # the name is copied so history survives renames and deletions
        if self.api_only:
            exercise = await self.client.get(f"{EntityType.EXERCISES.path}/{exercise_id}")
        else:
            exercise = await self.store.get(EntityType.EXERCISES, exercise_id)
        now = utc_now()
        log_exercise = LogExercise(
            id=str(uuid.uuid4()),
            log_workout_id=log_workout_id,
            exercise_id=exercise_id,
            exercise_name=exercise["name"] if exercise else None,
            start_datetime=now,
            created_at=now,
        )
        return await self._save(EntityType.LOG_EXERCISES, log_exercise, Operation.CREATE)

    async def complete_exercise(self, log_exercise_id: str) -> LogExercise:
        log_exercise = await self._load(EntityType.LOG_EXERCISES, log_exercise_id)
        log_exercise.completed = True
        log_exercise.end_datetime = utc_now()
        return await self._save(EntityType.LOG_EXERCISES, log_exercise, Operation.UPDATE)

    async def get_sets(self, log_exercise_id: str) -> list[LogSet]:
        if self.api_only:
            log_exercise = LogExercise.model_validate(
                await self.client.get(f"/log-exercises/{log_exercise_id}")
            )
            return sorted(log_exercise.log_sets, key=lambda s: s.set_number)
        return await self._list(EntityType.LOG_SETS, log_exercise_id=log_exercise_id)

    async def add_set(
        self,
        log_exercise_id: str,
        reps: Optional[int],
        weight_kg: Optional[float] = None,
        rest_time_seconds: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> LogSet:
        existing = await self.get_sets(log_exercise_id)
        now = utc_now()
        log_set = LogSet(
            id=str(uuid.uuid4()),
            log_exercise_id=log_exercise_id,
            set_number=len(existing) + 1,
            reps=reps,
            weight_kg=weight_kg,
            rest_time_seconds=rest_time_seconds,
            timestamp=now,
            notes=notes,
            created_at=now,
        )
        return await self._save(EntityType.LOG_SETS, log_set, Operation.CREATE)

    async def update_set(
        self,
        log_set_id: str,
        reps: Optional[int] = None,
        weight_kg: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> LogSet:
        log_set = await self._load(EntityType.LOG_SETS, log_set_id)
        if reps is not None:
            log_set.reps = reps
        if weight_kg is not None:
            log_set.weight_kg = weight_kg
        if notes is not None:
            log_set.notes = notes
        return await self._save(EntityType.LOG_SETS, log_set, Operation.UPDATE)

    async def delete_set(self, log_set_id: str) -> list[LogSet]:
        """Delete a set and renumber the remaining ones from 1.

        Returns the remaining sets of the exercise in order.
        """
        log_set = await self._load(EntityType.LOG_SETS, log_set_id)
        await self._delete(EntityType.LOG_SETS, log_set_id)
        remaining = [
            s for s in await self.get_sets(log_set.log_exercise_id) if s.id != log_set_id
        ]
        renumbered = []
        for number, other in enumerate(remaining, start=1):
            if other.set_number != number:
                other.set_number = number
                renumbered.append(other)
        await self._update_many(EntityType.LOG_SETS, renumbered)
        return remaining
