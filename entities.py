from __future__ import annotations

import datetime
import enum
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class Entity(BaseModel):
    """Base model for mirrored rows.

    Field names match the local column names; the wire format uses camelCase
    aliases. Nested collections listed in ``nested_fields`` are carried by pull
    payloads only and never stored as columns.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    nested_fields: ClassVar[tuple[str, ...]] = ()
    stamped_fields: ClassVar[tuple[str, ...]] = ("created_at",)

    id: str
    synced: bool = False

    def to_row(self, synced: bool | None = None) -> dict:
        row = self.model_dump(exclude=set(self.nested_fields))
        now = utc_now()
        for col in self.stamped_fields:
            if not row.get(col):
                row[col] = now
        if synced is not None:
            row["synced"] = synced
        return row

    def to_payload(self) -> dict:
        """Serialize for the REST API (camelCase, no local bookkeeping)."""
        return self.model_dump(
            by_alias=True, exclude={"synced", *self.nested_fields}, exclude_none=True
        )

    @classmethod
    def from_row(cls, row: dict) -> "Entity":
        return cls.model_validate(row)


class User(Entity):
    stamped_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    name: str
    surname: str
    email: str
    birth_date: Optional[str] = None
    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    is_admin: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Exercise(Entity):
    stamped_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    name: str
    description: Optional[str] = None
    video_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class WorkoutExercise(Entity):
    workout_id: str = ""
    exercise_id: str
    order_index: int
    sets: Optional[int] = None
    reps: Optional[int] = None
    rest_time_seconds: Optional[int] = None
    created_at: Optional[str] = None


class Workout(Entity):
    nested_fields: ClassVar[tuple[str, ...]] = ("workout_exercises",)
    stamped_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    routine_id: str = ""
    name: str
    description: Optional[str] = None
    day_of_week: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    workout_exercises: list[WorkoutExercise] = Field(default_factory=list)


class Routine(Entity):
    nested_fields: ClassVar[tuple[str, ...]] = ("workouts",)
    stamped_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    user_id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    workouts: list[Workout] = Field(default_factory=list)


class LogSet(Entity):
    log_exercise_id: str = ""
    set_number: int
    reps: Optional[int] = None
    weight_kg: Optional[float] = None
    rest_time_seconds: Optional[int] = None
    timestamp: str = Field(default_factory=utc_now)
    notes: Optional[str] = None
    created_at: Optional[str] = None


class LogExercise(Entity):
    nested_fields: ClassVar[tuple[str, ...]] = ("log_sets",)

    log_workout_id: str = ""
    exercise_id: str
    exercise_name: Optional[str] = None
    start_datetime: Optional[str] = None
    end_datetime: Optional[str] = None
    notes: Optional[str] = None
    repetitions: Optional[int] = None
    completed: bool = False
    created_at: Optional[str] = None
    log_sets: list[LogSet] = Field(default_factory=list)


class LogWorkout(Entity):
    nested_fields: ClassVar[tuple[str, ...]] = ("log_exercises",)

    log_routine_id: str = ""
    workout_id: str
    start_datetime: str
    end_datetime: Optional[str] = None
    created_at: Optional[str] = None
    log_exercises: list[LogExercise] = Field(default_factory=list)


class LogRoutine(Entity):
    nested_fields: ClassVar[tuple[str, ...]] = ("log_workouts",)
    stamped_fields: ClassVar[tuple[str, ...]] = ("created_at", "updated_at")

    routine_id: str
    user_id: str = ""
    start_datetime: str
    end_datetime: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    log_workouts: list[LogWorkout] = Field(default_factory=list)

    @property
    def in_progress(self) -> bool:
        return self.end_datetime is None


class EntityType(enum.Enum):
    """Closed set of mirrored entity kinds.

    The value is the local table name; each member carries its REST path,
    model class and default row ordering.
    """

    USERS = "users"
    ROUTINES = "routines"
    WORKOUTS = "workouts"
    EXERCISES = "exercises"
    WORKOUT_EXERCISES = "workout_exercises"
    LOG_ROUTINES = "log_routines"
    LOG_WORKOUTS = "log_workouts"
    LOG_EXERCISES = "log_exercises"
    LOG_SETS = "log_sets"

    @property
    def table(self) -> str:
        return self.value

    @property
    def path(self) -> str:
        return _PATHS[self]

    @property
    def model(self) -> type[Entity]:
        return _MODELS[self]

    @property
    def order_by(self) -> str:
        return _ORDERING[self]

    def parse(self, data: dict) -> Entity:
        return self.model.model_validate(data)


_PATHS = {
    EntityType.USERS: "/users",
    EntityType.ROUTINES: "/routines",
    EntityType.WORKOUTS: "/workouts",
    EntityType.EXERCISES: "/exercises",
    EntityType.WORKOUT_EXERCISES: "/workout-exercises",
    EntityType.LOG_ROUTINES: "/log-routines",
    EntityType.LOG_WORKOUTS: "/log-workouts",
    EntityType.LOG_EXERCISES: "/log-exercises",
    EntityType.LOG_SETS: "/log-sets",
}

_MODELS = {
    EntityType.USERS: User,
    EntityType.ROUTINES: Routine,
    EntityType.WORKOUTS: Workout,
    EntityType.EXERCISES: Exercise,
    EntityType.WORKOUT_EXERCISES: WorkoutExercise,
    EntityType.LOG_ROUTINES: LogRoutine,
    EntityType.LOG_WORKOUTS: LogWorkout,
    EntityType.LOG_EXERCISES: LogExercise,
    EntityType.LOG_SETS: LogSet,
}

_ORDERING = {
    EntityType.USERS: "created_at ASC",
    EntityType.ROUTINES: "created_at DESC",
    EntityType.WORKOUTS: "day_of_week ASC, created_at ASC",
    EntityType.EXERCISES: "name ASC",
    EntityType.WORKOUT_EXERCISES: "order_index ASC",
    EntityType.LOG_ROUTINES: "start_datetime DESC",
    EntityType.LOG_WORKOUTS: "start_datetime ASC",
    EntityType.LOG_EXERCISES: "created_at ASC",
    EntityType.LOG_SETS: "set_number ASC",
}

# Entity types refreshed by a full sync pass, parents before children.
SYNC_ORDER = (
    EntityType.USERS,
    EntityType.ROUTINES,
    EntityType.WORKOUTS,
    EntityType.EXERCISES,
    EntityType.LOG_ROUTINES,
    EntityType.LOG_WORKOUTS,
    EntityType.LOG_EXERCISES,
    EntityType.LOG_SETS,
)


class Operation(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# parent type -> (child type, nested attribute, parent id column)
CHILDREN = {
    EntityType.ROUTINES: (EntityType.WORKOUTS, "workouts", "routine_id"),
    EntityType.WORKOUTS: (EntityType.WORKOUT_EXERCISES, "workout_exercises", "workout_id"),
    EntityType.LOG_ROUTINES: (EntityType.LOG_WORKOUTS, "log_workouts", "log_routine_id"),
    EntityType.LOG_WORKOUTS: (EntityType.LOG_EXERCISES, "log_exercises", "log_workout_id"),
    EntityType.LOG_EXERCISES: (EntityType.LOG_SETS, "log_sets", "log_exercise_id"),
}
