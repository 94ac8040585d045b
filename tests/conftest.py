import os
import sys

import httpx
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from app_context import OfflineContext
from db import SqliteLocalStore
from dev_server import ReferenceAPI
from settings_schema import SyncSettings


class SwitchTransport(httpx.AsyncBaseTransport):
    """Route requests to the in-memory API, or fail them like a dead network."""

    def __init__(self, app) -> None:
        self.inner = httpx.ASGITransport(app=app)
        self.online = True
        self.calls: list[tuple[str, str]] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        return await self.inner.handle_async_request(request)


@pytest.fixture
def server():
    return ReferenceAPI()


@pytest.fixture
def transport(server):
    return SwitchTransport(server.app)


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(api_url="http://test", db_path=str(tmp_path / "kraftlog.db"))


@pytest.fixture
def make_context(settings, transport):
    """Factory for a context on a fresh SQLite file talking to the reference API."""

    async def make(auto_sync: bool = False, store=None, **kwargs) -> OfflineContext:
        if store is None:
            store = SqliteLocalStore(settings.db_path)
        await store.initialize()
        return OfflineContext(
            settings, store, transport=transport, auto_sync=auto_sync, **kwargs
        )

    return make
