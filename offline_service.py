import logging
from typing import Iterable

from client import KraftlogClient
from db import LocalStore
from entities import Entity, EntityType, Operation
from outbox_service import OutboxService
from sync_service import SyncService

logger = logging.getLogger(__name__)


class OfflineService:
    """Shared write path: local store plus outbox, or the API when there is no store."""

    def __init__(
        self,
        store: LocalStore,
        client: KraftlogClient,
        outbox: OutboxService,
        sync: SyncService,
        auto_sync: bool = True,
    ) -> None:
        self.store = store
        self.client = client
        self.outbox = outbox
        self.sync = sync
        self.auto_sync = auto_sync

    @property
    def api_only(self) -> bool:
        return not self.store.available

    def _request_sync(self) -> None:
        if self.auto_sync:
            self.sync.schedule()

    async def _load(self, entity_type: EntityType, entity_id: str) -> Entity:
        if self.api_only:
            return entity_type.parse(await self.client.get(f"{entity_type.path}/{entity_id}"))
        row = await self.store.get(entity_type, entity_id)
        if row is None:
            raise ValueError(f"{entity_type.model.__name__.lower()} not found")
        return entity_type.parse(row)

    async def _list(self, entity_type: EntityType, **filters) -> list:
        rows = await self.store.query(entity_type, filters)
        return [entity_type.parse(r) for r in rows]

    async def _save(self, entity_type: EntityType, entity: Entity, operation: Operation) -> Entity:
        if self.api_only:
            if operation is Operation.CREATE:
                data = await self.client.post(entity_type.path, entity.to_payload())
            else:
                data = await self.client.put(
                    f"{entity_type.path}/{entity.id}", entity.to_payload()
                )
            return entity_type.parse(data) if data else entity
        entity.synced = False
        await self.store.write(entity_type, entity.to_row(synced=False))
        await self.outbox.enqueue(entity_type, entity.id, operation, entity.to_payload())
        self._request_sync()
        return entity

    async def _update_many(self, entity_type: EntityType, entities: Iterable[Entity]) -> None:
        entities = list(entities)
        if not entities:
            return
        if self.api_only:
            for entity in entities:
                await self.client.put(f"{entity_type.path}/{entity.id}", entity.to_payload())
            return
        for entity in entities:
            entity.synced = False
        await self.store.write_many((entity_type, e.to_row(synced=False)) for e in entities)
        for entity in entities:
            await self.outbox.enqueue(entity_type, entity.id, Operation.UPDATE, entity.to_payload())
        self._request_sync()

    async def _delete(self, entity_type: EntityType, entity_id: str) -> None:
        if self.api_only:
            await self.client.delete(f"{entity_type.path}/{entity_id}")
            return
        # child rows go with the parent through ON DELETE CASCADE
        await self.store.remove(entity_type, entity_id)
        await self.outbox.enqueue(entity_type, entity_id, Operation.DELETE, {})
        self._request_sync()
