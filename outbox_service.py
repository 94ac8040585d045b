import logging
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from client import ApiError, AuthenticationError, KraftlogClient, NetworkError
from db import LocalStore
from entities import EntityType, Operation

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
DEFAULT_BATCH_SIZE = 50

# 4xx codes that may succeed on a later attempt
_TRANSIENT_CLIENT_ERRORS = {408, 429}


@dataclass
class DrainResult:
    pushed: int = 0
    retried: int = 0
    dropped: int = 0
    rejected: int = 0
    deferred: int = 0

    @property
    def attempted(self) -> int:
        return self.pushed + self.retried + self.dropped + self.rejected


class OutboxService:
    """Queue local mutations and push them to the server in creation order.

    Transient failures (no response, 5xx, 408, 429) are retried on later
    drains until ``max_retries`` is used up; the item is then moved to the
    failure table. Other 4xx answers are permanent and moved there at once.
    A 401/403 stops the drain and propagates. Once an item is left queued,
    later items for the same entity wait for the next drain.
    """

    def __init__(
        self,
        store: LocalStore,
        client: KraftlogClient,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.store = store
        self.client = client
        self.max_retries = max_retries
        self._listeners: list[Callable[[], Awaitable[None]]] = []

    def add_listener(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Register a coroutine function awaited whenever the queue changes."""
        self._listeners.append(callback)

    async def _changed(self) -> None:
        for callback in self._listeners:
            await callback()

    async def enqueue(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation: Operation,
        payload: dict,
    ) -> None:
        if self.store.queue is None:
            logger.debug("No local queue, %s %s %s not recorded", operation.value, entity_type.value, entity_id)
            return
        try:
            await self.store.queue.add(entity_type, entity_id, operation, payload)
        except sqlite3.Error:
            logger.warning(
                "Failed to queue %s %s %s; the next pull will reconcile it",
                operation.value,
                entity_type.value,
                entity_id,
                exc_info=True,
            )
            return
        await self._changed()

    async def pending_count(self) -> int:
        if self.store.queue is None:
            return 0
        return await self.store.queue.count()

    async def failed_count(self) -> int:
        if self.store.failures is None:
            return 0
        return await self.store.failures.count()

    async def pending_items(self, limit: int = DEFAULT_BATCH_SIZE) -> list[dict]:
        if self.store.queue is None:
            return []
        return await self.store.queue.fetch_batch(limit)

    async def _push(
        self, entity_type: EntityType, operation: Operation, entity_id: str, data: dict
    ) -> None:
        path = entity_type.path
        if operation is Operation.CREATE:
            await self.client.post(path, data)
        elif operation is Operation.UPDATE:
            await self.client.put(f"{path}/{entity_id}", data)
        elif operation is Operation.DELETE:
            await self.client.delete(f"{path}/{entity_id}")
        else:
            raise ValueError(f"unsupported operation: {operation}")

    @staticmethod
    def already_applied(operation: Operation, error: ApiError) -> bool:
        """The server already reflects the change (replayed create, repeated delete)."""
        if operation is Operation.CREATE and error.status_code == 409:
            return True
        return operation is Operation.DELETE and error.status_code == 404

    @staticmethod
    def is_permanent(error: ApiError) -> bool:
        code = error.status_code
        return 400 <= code < 500 and code not in _TRANSIENT_CLIENT_ERRORS

    async def drain(self, batch_size: int = DEFAULT_BATCH_SIZE) -> DrainResult:
        """Push up to ``batch_size`` queued items, oldest first."""
        result = DrainResult()
        queue = self.store.queue
        if queue is None:
            return result
        items = await queue.fetch_batch(batch_size)
        blocked: set[tuple[str, str]] = set()
        for item in items:
            key = (item["entity_type"], item["entity_id"])
            if key in blocked:
                result.deferred += 1
                continue
            try:
                entity_type = EntityType(item["entity_type"])
                operation = Operation(item["operation"])
            except ValueError as e:
                await self._reject(item, str(e), None)
                result.rejected += 1
                continue
            try:
                await self._push(entity_type, operation, item["entity_id"], item["data"])
            except AuthenticationError:
                raise
            except NetworkError as e:
                if await self._retry_or_drop(item, str(e), None):
                    result.retried += 1
                    blocked.add(key)
                else:
                    result.dropped += 1
            except ApiError as e:
                if self.already_applied(operation, e):
                    await self._confirm(item, entity_type, operation)
                    result.pushed += 1
                elif self.is_permanent(e):
                    await self._reject(item, e.message, e.status_code)
                    result.rejected += 1
                elif await self._retry_or_drop(item, e.message, e.status_code):
                    result.retried += 1
                    blocked.add(key)
                else:
                    result.dropped += 1
            else:
                await self._confirm(item, entity_type, operation)
                result.pushed += 1
        if items:
            logger.info(
                "Outbox drain: %d pushed, %d retried, %d dropped, %d rejected, %d deferred",
                result.pushed,
                result.retried,
                result.dropped,
                result.rejected,
                result.deferred,
            )
        return result

    async def _confirm(self, item: dict, entity_type: EntityType, operation: Operation) -> None:
        await self.store.queue.delete(item["id"])
        await self._changed()
        logger.debug("Synced %s %s %s", operation.value, entity_type.value, item["entity_id"])
        if operation is Operation.DELETE:
            return
        if await self.store.queue.count_for(entity_type, item["entity_id"]):
            return
        row = await self.store.get(entity_type, item["entity_id"])
        if row is not None and not row["synced"]:
            row["synced"] = True
            await self.store.write(entity_type, row)

    async def _retry_or_drop(self, item: dict, error: str, status_code: Optional[int]) -> bool:
        """Count a failed attempt; return False once the item has been dropped."""
        logger.error(
            "Failed to sync %s %s: %s", item["entity_type"], item["entity_id"], error
        )
        if item["retry_count"] < self.max_retries:
            await self.store.queue.increment_retry(item["id"])
            return True
        logger.warning(
            "Removing %s %s from queue after %d retries",
            item["entity_type"],
            item["entity_id"],
            self.max_retries,
        )
        await self._dead_letter(item, error, status_code)
        return False

    async def _reject(self, item: dict, error: str, status_code: Optional[int]) -> None:
        logger.warning(
            "Server rejected %s %s %s (%s), removing from queue",
            item["operation"],
            item["entity_type"],
            item["entity_id"],
            error,
        )
        await self._dead_letter(item, error, status_code)

    async def _dead_letter(self, item: dict, error: str, status_code: Optional[int]) -> None:
        await self.store.queue.dead_letter(item, error, status_code)
        await self._changed()
