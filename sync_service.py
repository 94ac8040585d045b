import asyncio
import logging
from typing import Iterable, Optional

from client import ApiError, KraftlogClient, NetworkError
from db import LocalStore
from entities import CHILDREN, SYNC_ORDER, Entity, EntityType, Operation, utc_now
from outbox_service import DEFAULT_BATCH_SIZE, OutboxService
from status_publisher import StatusPublisher, SyncStatus

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 3.0
LAST_SYNC_KEY = "last_sync"


class SyncService:
    """Pull server state into the local store and push queued mutations."""

    def __init__(
        self,
        store: LocalStore,
        client: KraftlogClient,
        outbox: OutboxService,
        publisher: StatusPublisher | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        probe_timeout: float = PROBE_TIMEOUT,
    ) -> None:
        self.store = store
        self.client = client
        self.outbox = outbox
        self.publisher = publisher or StatusPublisher()
        self.batch_size = batch_size
        self.probe_timeout = probe_timeout
        self.is_syncing = False
        self._tasks: set[asyncio.Task] = set()
        outbox.add_listener(self._publish)

    def subscribe(self, callback):
        return self.publisher.subscribe(callback)

    async def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            last_sync=await self.store.get_meta(LAST_SYNC_KEY),
            is_syncing=self.is_syncing,
            pending_changes=await self.outbox.pending_count(),
            failed_changes=await self.outbox.failed_count(),
        )

    async def _publish(self) -> None:
        self.publisher.notify(await self.get_sync_status())

    async def check_online_status(self) -> bool:
        """Probe the API; any HTTP answer, even an error or a non-JSON page, means online."""
        try:
            await self.client.get(EntityType.EXERCISES.path, timeout=self.probe_timeout)
        except NetworkError:
            return False
        except ApiError:
            return True
        return True

    async def sync_all(self, force: bool = False) -> bool:
        """Run one sync pass.

        Returns True when the pass ran to completion while online, False when
        it was skipped because another pass is running or the device is
        offline. Errors propagate after the syncing flag has been reset.
        """
        if self.is_syncing and not force:
            logger.info("Sync already in progress")
            return False

        self.is_syncing = True
        try:
            await self._publish()
            if not await self.check_online_status():
                logger.info("Device is offline, skipping sync")
                return False

            for entity_type in SYNC_ORDER:
                await self._refresh_entity(entity_type)

            await self.outbox.drain(self.batch_size)

            await self.store.set_meta(LAST_SYNC_KEY, utc_now())
            logger.info("Sync completed successfully")
            return True
        except Exception:
            logger.exception("Sync failed")
            raise
        finally:
            self.is_syncing = False
            await self._publish()

    async def _refresh_entity(self, entity_type: EntityType) -> None:
        # per-type incremental refresh hook; full refresh happens in pull_from_server
        logger.debug("Syncing %s...", entity_type.value)

    async def refresh(self, user_id: str, force: bool = False) -> bool:
        """Push pending changes, then pull this user's data when online."""
        if not await self.sync_all(force):
            return False
        await self.pull_from_server(user_id)
        return True

    def schedule(self, user_id: Optional[str] = None) -> asyncio.Task:
        """Start a sync pass in the background; failures are logged only."""
        coro = self.refresh(user_id) if user_id else self.sync_all()
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.info("Background sync will retry later: %s", error)

    async def wait_for_background(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def pull_from_server(self, user_id: str) -> dict:
        """Fetch the user's routines, session logs and the exercise catalog.

        Rows present in the response replace the local copy by id. Rows with a
        queued local change are left alone until that change has been pushed.
        """
        if not self.store.available:
            logger.debug("No local store, nothing to pull into")
            return {}
        logger.info("Pulling data from server...")
        summary: dict[str, int] = {}
        try:
            routines = await self.client.get(f"/routines/user/{user_id}")
            summary["routines"] = await self._save_tree(EntityType.ROUTINES, routines or [])

            log_routines = await self.client.get(f"/log-routines/user/{user_id}")
            for data in log_routines or []:
                data.setdefault("userId", user_id)
                if not data["userId"]:
                    data["userId"] = user_id
            summary["log_routines"] = await self._save_tree(
                EntityType.LOG_ROUTINES, log_routines or []
            )

            exercises = await self.client.get(EntityType.EXERCISES.path)
            summary["exercises"] = await self._save_tree(EntityType.EXERCISES, exercises or [])
        except Exception:
            logger.exception("Pull from server failed")
            raise
        logger.info("Pull from server completed")
        return summary

    async def _pending(self, entity_types: Iterable[EntityType]) -> dict:
        if self.store.queue is None:
            return {}
        return {et: await self.store.queue.pending_operations(et) for et in entity_types}

    async def _save_tree(self, entity_type: EntityType, payload: list) -> int:
        types = [entity_type]
        while types[-1] in CHILDREN:
            types.append(CHILDREN[types[-1]][0])
        pending = await self._pending(types)
        rows: list[tuple[EntityType, dict]] = []
        for data in payload:
            self._stage(entity_type, entity_type.parse(data), pending, rows)
        await self.store.write_many(rows)
        return len(rows)

    def _stage(
        self,
        entity_type: EntityType,
        entity: Entity,
        pending: dict,
        rows: list,
    ) -> None:
        ops = pending.get(entity_type, {}).get(entity.id, set())
        if Operation.DELETE.value in ops:
            logger.debug("Skipping %s %s deleted locally", entity_type.value, entity.id)
            return
        if ops:
            logger.debug("Keeping unsynced local %s %s", entity_type.value, entity.id)
        else:
            rows.append((entity_type, entity.to_row(synced=True)))
        if entity_type not in CHILDREN:
            return
        child_type, attr, parent_col = CHILDREN[entity_type]
        for child in getattr(entity, attr):
            setattr(child, parent_col, entity.id)
            self._stage(child_type, child, pending, rows)
