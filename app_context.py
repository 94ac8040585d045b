import asyncio
import logging
from typing import Callable, Optional

import httpx

from client import ApiError, AuthenticationError, KraftlogClient, NetworkError
from db import LocalStore, create_local_store
from entities import EntityType, User
from log_service import OfflineLogService
from outbox_service import OutboxService
from routine_service import OfflineRoutineService
from settings_schema import SyncSettings
from status_publisher import StatusPublisher, SyncStatus
from sync_service import SyncService

logger = logging.getLogger(__name__)


class OfflineContext:
    """Owns the offline stack for the lifetime of the app.

    Build one with :meth:`open` at startup and hand it to the UI root;
    nothing here is module-global, so tests create fresh instances.
    """

    def __init__(
        self,
        settings: SyncSettings,
        store: LocalStore,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_auth_failure: Optional[Callable[[AuthenticationError], None]] = None,
        auto_sync: bool = True,
    ) -> None:
        self.settings = settings
        self.store = store
        self.user: Optional[User] = None
        self._on_auth_failure = on_auth_failure
        self.client = KraftlogClient(
            settings.api_url,
            token=settings.api_token,
            timeout=settings.request_timeout,
            transport=transport,
            on_auth_failure=self._auth_failed,
        )
        self.publisher = StatusPublisher()
        self.outbox = OutboxService(store, self.client, max_retries=settings.max_retries)
        self.sync_service = SyncService(
            store,
            self.client,
            self.outbox,
            self.publisher,
            batch_size=settings.batch_size,
            probe_timeout=settings.probe_timeout,
        )
        self.routines = OfflineRoutineService(
            store, self.client, self.outbox, self.sync_service, auto_sync=auto_sync
        )
        self.logs = OfflineLogService(
            store, self.client, self.outbox, self.sync_service, auto_sync=auto_sync
        )

    @classmethod
    async def open(
        cls,
        settings: SyncSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "OfflineContext":
        store = await create_local_store(
            settings.storage, settings.db_path, fallback=settings.fallback_to_api
        )
        return cls(settings, store, transport=transport, **kwargs)

    def _auth_failed(self, error: AuthenticationError) -> None:
        logger.warning("API rejected credentials (%s)", error.status_code)
        if self._on_auth_failure is not None:
            self._on_auth_failure(error)

    @property
    def api_only(self) -> bool:
        return not self.store.available

    def subscribe(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        return self.sync_service.subscribe(callback)

    async def get_sync_status(self) -> SyncStatus:
        return await self.sync_service.get_sync_status()

    async def login(self, user: User) -> None:
        """Remember the user and run the initial pull and push."""
        self.user = user
        await self.store.write(EntityType.USERS, user.to_row(synced=True))
        if self.api_only:
            logger.info("API only mode - skipping local database sync")
            return
        logger.info("Performing initial sync...")
        try:
            await self.sync_service.refresh(user.id)
        except (NetworkError, ApiError) as e:
            logger.error("Initial sync failed: %s", e)

    def logout(self) -> None:
        self.user = None

    def on_foreground(self) -> Optional[asyncio.Task]:
        """App came to the foreground: sync in the background if logged in."""
        if self.user is None or self.api_only:
            return None
        return self.sync_service.schedule(self.user.id)

    async def sync(self) -> bool:
        """Manual pull-to-sync; bypasses the in-progress guard."""
        if self.user is None:
            raise RuntimeError("User not logged in")
        return await self.sync_service.refresh(self.user.id, force=True)

    async def close(self) -> None:
        await self.sync_service.wait_for_background()
        await self.client.aclose()
