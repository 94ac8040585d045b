import logging
from dataclasses import asdict, dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStatus:
    last_sync: Optional[str]
    is_syncing: bool
    pending_changes: int
    failed_changes: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class StatusPublisher:
    """Broadcast sync status to any number of listeners."""

    def __init__(self) -> None:
        # keyed by a token per subscription so the same callable may subscribe twice
        self._callbacks: dict[object, Callable[[SyncStatus], None]] = {}

    def subscribe(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        token = object()
        self._callbacks[token] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def notify(self, status: SyncStatus) -> None:
        for callback in list(self._callbacks.values()):
            try:
                callback(status)
            except Exception:
                logger.exception("Sync status subscriber %r failed", callback)
