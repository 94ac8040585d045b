import sqlite3
import aiosqlite
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Iterable, List, Optional, Tuple

from entities import EntityType, Operation, utc_now

logger = logging.getLogger(__name__)


class LocalStoreError(RuntimeError):
    """Raised when the local database cannot be opened or initialized."""


class AsyncDatabase:
    """Provides SQLite schema definitions and asynchronous connection management."""

    _TABLE_DEFINITIONS = {
        "users": (
            """CREATE TABLE users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    surname TEXT NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    birth_date TEXT,
                    weight_kg REAL,
                    height_cm REAL,
                    is_admin INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0
                );""",
            [
                "id",
                "name",
                "surname",
                "email",
                "birth_date",
                "weight_kg",
                "height_cm",
                "is_admin",
                "created_at",
                "updated_at",
                "synced",
            ],
        ),
        "routines": (
            """CREATE TABLE routines (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0
                );""",
            ["id", "user_id", "name", "description", "created_at", "updated_at", "synced"],
        ),
        "workouts": (
            """CREATE TABLE workouts (
                    id TEXT PRIMARY KEY,
                    routine_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    day_of_week INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0,
                    FOREIGN KEY (routine_id) REFERENCES routines(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "routine_id",
                "name",
                "description",
                "day_of_week",
                "created_at",
                "updated_at",
                "synced",
            ],
        ),
        "exercises": (
            """CREATE TABLE exercises (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    video_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0
                );""",
            ["id", "name", "description", "video_url", "created_at", "updated_at", "synced"],
        ),
        "workout_exercises": (
            """CREATE TABLE workout_exercises (
                    id TEXT PRIMARY KEY,
                    workout_id TEXT NOT NULL,
                    exercise_id TEXT NOT NULL,
                    order_index INTEGER NOT NULL,
                    sets INTEGER,
                    reps INTEGER,
                    rest_time_seconds INTEGER,
                    created_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0,
                    FOREIGN KEY (workout_id) REFERENCES workouts(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "workout_id",
                "exercise_id",
                "order_index",
                "sets",
                "reps",
                "rest_time_seconds",
                "created_at",
                "synced",
            ],
        ),
        "log_routines": (
            """CREATE TABLE log_routines (
                    id TEXT PRIMARY KEY,
                    routine_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    start_datetime TEXT NOT NULL,
                    end_datetime TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0
                );""",
            [
                "id",
                "routine_id",
                "user_id",
                "start_datetime",
                "end_datetime",
                "created_at",
                "updated_at",
                "synced",
            ],
        ),
        "log_workouts": (
            """CREATE TABLE log_workouts (
                    id TEXT PRIMARY KEY,
                    log_routine_id TEXT NOT NULL,
                    workout_id TEXT NOT NULL,
                    start_datetime TEXT NOT NULL,
                    end_datetime TEXT,
                    created_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0,
                    FOREIGN KEY (log_routine_id) REFERENCES log_routines(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "log_routine_id",
                "workout_id",
                "start_datetime",
                "end_datetime",
                "created_at",
                "synced",
            ],
        ),
        "log_exercises": (
            """CREATE TABLE log_exercises (
                    id TEXT PRIMARY KEY,
                    log_workout_id TEXT NOT NULL,
                    exercise_id TEXT NOT NULL,
                    exercise_name TEXT,
                    start_datetime TEXT,
                    end_datetime TEXT,
                    notes TEXT,
                    repetitions INTEGER,
                    completed INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0,
                    FOREIGN KEY (log_workout_id) REFERENCES log_workouts(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "log_workout_id",
                "exercise_id",
                "exercise_name",
                "start_datetime",
                "end_datetime",
                "notes",
                "repetitions",
                "completed",
                "created_at",
                "synced",
            ],
        ),
        "log_sets": (
            """CREATE TABLE log_sets (
                    id TEXT PRIMARY KEY,
                    log_exercise_id TEXT NOT NULL,
                    set_number INTEGER NOT NULL,
                    reps INTEGER,
                    weight_kg REAL,
                    rest_time_seconds INTEGER,
                    timestamp TEXT NOT NULL,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    synced INTEGER DEFAULT 0,
                    FOREIGN KEY (log_exercise_id) REFERENCES log_exercises(id) ON DELETE CASCADE
                );""",
            [
                "id",
                "log_exercise_id",
                "set_number",
                "reps",
                "weight_kg",
                "rest_time_seconds",
                "timestamp",
                "notes",
                "created_at",
                "synced",
            ],
        ),
        "sync_queue": (
            """CREATE TABLE sync_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    retry_count INTEGER DEFAULT 0
                );""",
            ["id", "entity_type", "entity_id", "operation", "data", "created_at", "retry_count"],
        ),
        "sync_failures": (
            """CREATE TABLE sync_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    data TEXT NOT NULL,
                    error TEXT,
                    status_code INTEGER,
                    retry_count INTEGER DEFAULT 0,
                    failed_at TEXT NOT NULL
                );""",
            [
                "id",
                "entity_type",
                "entity_id",
                "operation",
                "data",
                "error",
                "status_code",
                "retry_count",
                "failed_at",
            ],
        ),
        "sync_meta": (
            """CREATE TABLE sync_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );""",
            ["key", "value"],
        ),
    }

    _INDEXES = (
        "CREATE INDEX IF NOT EXISTS idx_routines_user_id ON routines(user_id);",
        "CREATE INDEX IF NOT EXISTS idx_workouts_routine_id ON workouts(routine_id);",
        "CREATE INDEX IF NOT EXISTS idx_workout_exercises_workout_id ON workout_exercises(workout_id);",
        "CREATE INDEX IF NOT EXISTS idx_log_routines_user_id ON log_routines(user_id);",
        "CREATE INDEX IF NOT EXISTS idx_log_workouts_log_routine_id ON log_workouts(log_routine_id);",
        "CREATE INDEX IF NOT EXISTS idx_log_exercises_log_workout_id ON log_exercises(log_workout_id);",
        "CREATE INDEX IF NOT EXISTS idx_log_sets_log_exercise_id ON log_sets(log_exercise_id);",
        "CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity_type, entity_id);",
    )

    def __init__(self, db_path: str = "kraftlog.db") -> None:
        self._db_path = db_path

    @property
    def db_path(self) -> str:
        return self._db_path

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn
            await conn.commit()
        finally:
            await conn.close()

    async def _ensure_schema(self) -> None:
        async with self._async_connection() as conn:
            await conn.execute("PRAGMA journal_mode = WAL;")
            await conn.execute("PRAGMA foreign_keys = OFF;")
            await conn.execute("PRAGMA legacy_alter_table = ON;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                await self._ensure_table(conn, table, sql, columns)
            for sql in self._INDEXES:
                await conn.execute(sql)
            await conn.execute("PRAGMA legacy_alter_table = OFF;")
            await conn.execute("PRAGMA foreign_keys = ON;")

    async def _ensure_table(
        self, conn: aiosqlite.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = await conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if await cur.fetchone() is None:
            await conn.execute(sql)
            return

        cur = await conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in await cur.fetchall()]
        if existing_cols == columns:
            return

        logger.info("Migrating table %s to current column layout", table)
        await conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        await conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        await conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col in ("synced", "retry_count", "is_admin", "completed"):
                        return "0"
                    if col in ("created_at", "updated_at", "timestamp", "failed_at"):
                        return "datetime('now')"
                    if col == "data":
                        return "'{}'"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                await conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                await conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        await conn.execute(f"DROP TABLE {table}_old;")

    @classmethod
    def columns(cls, table: str) -> List[str]:
        return cls._TABLE_DEFINITIONS[table][1]


class AsyncBaseRepository(AsyncDatabase):
    """Base repository providing query helpers on a fresh connection per call."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.lastrowid

    async def execute_rowcount(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[dict]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def fetch_value(self, query: str, params: Tuple = ()) -> Any:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            return row[0] if row is not None else None


_FAILURE_INSERT = (
    "INSERT INTO sync_failures (entity_type, entity_id, operation, data, error, status_code, retry_count, failed_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?);"
)


def _failure_params(item: dict, error: str, status_code: Optional[int]) -> Tuple:
    return (
        item["entity_type"],
        item["entity_id"],
        item["operation"],
        json.dumps(item["data"]),
        error,
        status_code,
        item.get("retry_count", 0),
        utc_now(),
    )


class SyncQueueRepository(AsyncBaseRepository):
    """Repository for the pending mutation queue (outbox)."""

    async def add(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: Operation,
        data: dict,
    ) -> int:
        return await self.execute(
            "INSERT INTO sync_queue (entity_type, entity_id, operation, data, created_at, retry_count) VALUES (?, ?, ?, ?, ?, 0);",
            (
                entity_type.value,
                entity_id,
                operation.value,
                json.dumps(data),
                utc_now(),
            ),
        )

    async def fetch_batch(self, limit: int = 50) -> List[dict]:
        rows = await self.fetch_all(
            "SELECT id, entity_type, entity_id, operation, data, created_at, retry_count FROM sync_queue ORDER BY created_at ASC, id ASC LIMIT ?;",
            (limit,),
        )
        for row in rows:
            row["data"] = json.loads(row["data"])
        return rows

    async def delete(self, item_id: int) -> None:
        await self.execute("DELETE FROM sync_queue WHERE id = ?;", (item_id,))

    async def dead_letter(self, item: dict, error: str, status_code: Optional[int] = None) -> None:
        """Move a queued item to ``sync_failures`` in a single transaction."""
        async with self._async_connection() as conn:
            await conn.execute(_FAILURE_INSERT, _failure_params(item, error, status_code))
            await conn.execute("DELETE FROM sync_queue WHERE id = ?;", (item["id"],))

    async def increment_retry(self, item_id: int) -> None:
        await self.execute(
            "UPDATE sync_queue SET retry_count = retry_count + 1 WHERE id = ?;",
            (item_id,),
        )

    async def count(self) -> int:
        return await self.fetch_value("SELECT COUNT(*) FROM sync_queue;") or 0

    async def count_for(self, entity_type: EntityType, entity_id: str) -> int:
        return (
            await self.fetch_value(
                "SELECT COUNT(*) FROM sync_queue WHERE entity_type = ? AND entity_id = ?;",
                (entity_type.value, entity_id),
            )
            or 0
        )

    async def pending_operations(self, entity_type: EntityType) -> dict[str, set[str]]:
        """Return ``{entity_id: {operation, ...}}`` for queued items of a type."""
        rows = await self.fetch_all(
            "SELECT entity_id, operation FROM sync_queue WHERE entity_type = ?;",
            (entity_type.value,),
        )
        pending: dict[str, set[str]] = {}
        for row in rows:
            pending.setdefault(row["entity_id"], set()).add(row["operation"])
        return pending


class SyncFailureRepository(AsyncBaseRepository):
    """Dead-letter store for outbox items the server never accepted."""

    async def fetch_all_failures(self) -> List[dict]:
        rows = await self.fetch_all(
            "SELECT id, entity_type, entity_id, operation, data, error, status_code, retry_count, failed_at FROM sync_failures ORDER BY id ASC;"
        )
        for row in rows:
            row["data"] = json.loads(row["data"])
        return rows

    async def count(self) -> int:
        return await self.fetch_value("SELECT COUNT(*) FROM sync_failures;") or 0

    async def clear(self) -> None:
        await self.execute("DELETE FROM sync_failures;")


class LocalStore(ABC):
    """Storage capability used by the sync engine and offline services."""

    available = False
    queue: Optional[SyncQueueRepository] = None
    failures: Optional[SyncFailureRepository] = None

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def query(
        self,
        entity_type: EntityType,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
    ) -> List[dict]: ...

    @abstractmethod
    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def write(self, entity_type: EntityType, row: dict) -> None: ...

    @abstractmethod
    async def write_many(self, rows: Iterable[Tuple[EntityType, dict]]) -> None: ...

    @abstractmethod
    async def remove(self, entity_type: EntityType, entity_id: str) -> int: ...

    @abstractmethod
    async def get_meta(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set_meta(self, key: str, value: str) -> None: ...


class SqliteLocalStore(AsyncBaseRepository, LocalStore):
    """Durable mirror of server state backed by an SQLite file."""

    available = True

    def __init__(self, db_path: str = "kraftlog.db") -> None:
        super().__init__(db_path)
        self.queue = SyncQueueRepository(db_path)
        self.failures = SyncFailureRepository(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            await self._ensure_schema()
        except (sqlite3.Error, OSError) as e:
            raise LocalStoreError(f"cannot initialize local database {self._db_path}: {e}") from e
        self._initialized = True
        logger.info("Local database ready at %s", self._db_path)

    def _order_clause(self, entity_type: EntityType, order_by: Optional[str]) -> str:
        if order_by is None:
            return entity_type.order_by
        allowed = set(self.columns(entity_type.table))
        parts = []
        for part in order_by.split(","):
            tokens = part.split()
            if not tokens or tokens[0] not in allowed:
                raise ValueError(f"invalid order column: {part.strip()}")
            direction = tokens[1].upper() if len(tokens) > 1 else "ASC"
            if direction not in ("ASC", "DESC"):
                raise ValueError(f"invalid order direction: {direction}")
            parts.append(f"{tokens[0]} {direction}")
        return ", ".join(parts)

    async def query(
        self,
        entity_type: EntityType,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
    ) -> List[dict]:
        table = entity_type.table
        allowed = set(self.columns(table))
        query = f"SELECT * FROM {table}"
        params: list = []
        where_clauses: list[str] = []
        for col, value in (filters or {}).items():
            if col not in allowed:
                raise ValueError(f"unknown column {col} for {table}")
            if value is None:
                where_clauses.append(f"{col} IS NULL")
            elif isinstance(value, (list, tuple, set)):
                values = list(value)
                if not values:
                    return []
                where_clauses.append(f"{col} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                where_clauses.append(f"{col} = ?")
                params.append(value)
        if where_clauses:
            query += " WHERE " + " AND ".join(where_clauses)
        query += f" ORDER BY {self._order_clause(entity_type, order_by)};"
        return await self.fetch_all(query, tuple(params))

    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[dict]:
        rows = await self.fetch_all(
            f"SELECT * FROM {entity_type.table} WHERE id = ?;", (entity_id,)
        )
        return rows[0] if rows else None

    def _upsert_sql(self, entity_type: EntityType, row: dict) -> Tuple[str, Tuple]:
        table = entity_type.table
        allowed = self.columns(table)
        unknown = [c for c in row if c not in allowed]
        if unknown:
            raise ValueError(f"unknown columns for {table}: {', '.join(unknown)}")
        if "id" not in row:
            raise ValueError(f"{table} row without id")
        cols = [c for c in allowed if c in row]
        updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c != "id")
        # ON CONFLICT keeps the row in place; REPLACE would fire cascades.
        action = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
        sql = (
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT(id) {action};"
        )
        return sql, tuple(row[c] for c in cols)

    async def write(self, entity_type: EntityType, row: dict) -> None:
        sql, params = self._upsert_sql(entity_type, row)
        await self.execute(sql, params)

    async def write_many(self, rows: Iterable[Tuple[EntityType, dict]]) -> None:
        statements = [self._upsert_sql(entity_type, row) for entity_type, row in rows]
        if not statements:
            return
        # one connection, one commit: a failure leaves nothing half-written
        async with self._async_connection() as conn:
            for sql, params in statements:
                await conn.execute(sql, params)

    async def remove(self, entity_type: EntityType, entity_id: str) -> int:
        return await self.execute_rowcount(
            f"DELETE FROM {entity_type.table} WHERE id = ?;", (entity_id,)
        )

    async def get_meta(self, key: str) -> Optional[str]:
        return await self.fetch_value("SELECT value FROM sync_meta WHERE key = ?;", (key,))

    async def set_meta(self, key: str, value: str) -> None:
        await self.execute(
            "INSERT INTO sync_meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            (key, value),
        )


class NullLocalStore(LocalStore):
    """Stand-in for platforms without embedded storage; reads are empty, writes do nothing."""

    available = False

    def __init__(self) -> None:
        self._meta: dict[str, str] = {}

    async def initialize(self) -> None:
        logger.info("Local storage is not available on this platform - using API only mode")

    async def query(
        self,
        entity_type: EntityType,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
    ) -> List[dict]:
        return []

    async def get(self, entity_type: EntityType, entity_id: str) -> Optional[dict]:
        return None

    async def write(self, entity_type: EntityType, row: dict) -> None:
        return None

    async def write_many(self, rows: Iterable[Tuple[EntityType, dict]]) -> None:
        return None

    async def remove(self, entity_type: EntityType, entity_id: str) -> int:
        return 0

    async def get_meta(self, key: str) -> Optional[str]:
        return self._meta.get(key)

    async def set_meta(self, key: str, value: str) -> None:
        # kept in memory so the last sync time survives for the session
        self._meta[key] = value


async def create_local_store(
    storage: str = "sqlite",
    db_path: str = "kraftlog.db",
    fallback: bool = False,
) -> LocalStore:
    """Select and initialize the storage backend for this platform.

    With ``fallback`` an unrecoverable initialization error degrades to
    API-only mode instead of propagating.
    """
    if storage == "none":
        store: LocalStore = NullLocalStore()
        await store.initialize()
        return store
    if storage != "sqlite":
        raise ValueError(f"unknown storage backend: {storage}")
    directory = os.path.dirname(os.path.abspath(db_path))
    store = SqliteLocalStore(db_path)
    try:
        if not os.path.isdir(directory):
            raise LocalStoreError(f"directory does not exist: {directory}")
        await store.initialize()
    except LocalStoreError:
        if not fallback:
            raise
        logger.exception("Failed to initialize local database, falling back to API only mode")
        store = NullLocalStore()
        await store.initialize()
    return store
