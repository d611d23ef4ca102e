"""Pytest configuration and shared fixtures."""

import asyncio
import io
import shutil
import tempfile
from pathlib import Path

import pytest
from rich.console import Console

from copytab._network import NetworkObserver
from copytab._sync import SyncEngine
from copytab.errors import GatewayRejected
from copytab.local_store import LocalStore
from copytab.offline_manager import OfflineManager
from copytab.utils import now_iso

USER_ID = "user-1"


class FakeGateway:
    """In-memory remote store with failure injection.

    Records are kept per table. ``failures`` maps ``(operation, table,
    record_id)`` to an exception raised for that call; ``operation`` is one
    of create, update, delete or list (use the title for creates, since the
    record has no server id yet). Setting ``hold`` makes creates and updates
    wait until the event is set.
    """

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict]] = {
            "projects": {},
            "documents": {},
            "standard_info": {},
        }
        self.calls: list[tuple[str, str, str | None]] = []
        self.failures: dict[tuple[str, str, str | None], Exception] = {}
        self.list_failure: Exception | None = None
        self.next_ids: list[str] = []
        self.hold: asyncio.Event | None = None
        self.started = asyncio.Event()
        self._counter = 0

    def _fail(self, operation: str, table: str, key: str | None) -> None:
        error = self.failures.get((operation, table, key))
        if error is not None:
            raise error

    def _new_id(self) -> str:
        if self.next_ids:
            return self.next_ids.pop(0)
        self._counter += 1
        return f"srv_{self._counter}"

    async def _wait(self) -> None:
        self.started.set()
        if self.hold is not None:
            await self.hold.wait()
        await asyncio.sleep(0)

    async def create_record(self, table, fields):
        key = fields.get("title") or fields.get("name")
        self.calls.append(("create", table, key))
        await self._wait()
        self._fail("create", table, key)
        record_id = self._new_id()
        now = now_iso()
        record = {**fields, "id": record_id, "created_at": now, "updated_at": now, "deleted_at": None}
        self.tables[table][record_id] = record
        return dict(record)

    async def update_record(self, table, record_id, fields):
        self.calls.append(("update", table, record_id))
        await self._wait()
        self._fail("update", table, record_id)
        if record_id not in self.tables[table]:
            raise GatewayRejected("Record not found", status_code=404)
        record = self.tables[table][record_id]
        record.update(fields, updated_at=now_iso())
        return dict(record)

    async def delete_record(self, table, record_id):
        self.calls.append(("delete", table, record_id))
        await asyncio.sleep(0)
        self._fail("delete", table, record_id)
        if record_id in self.tables[table]:
            self.tables[table][record_id]["deleted_at"] = now_iso()

    async def list_user_records(self, table, user_id):
        self.calls.append(("list", table, user_id))
        await asyncio.sleep(0)
        if self.list_failure is not None:
            raise self.list_failure
        return [
            dict(r)
            for r in self.tables[table].values()
            if r.get("user_id") == user_id and not r.get("deleted_at")
        ]

    def seed(self, table, record):
        """Put a record directly into the remote store."""
        now = now_iso()
        stored = {"created_at": now, "updated_at": now, "deleted_at": None, **record}
        self.tables[table][record["id"]] = stored
        return stored

    def count(self, operation, table=None):
        return sum(1 for op, t, _ in self.calls if op == operation and (table is None or t == table))


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    path = tempfile.mkdtemp()
    yield Path(path)
    shutil.rmtree(path)


@pytest.fixture
def store(temp_dir):
    """Create an open local store in a temporary directory."""
    local_store = LocalStore(temp_dir / "offline.db").open()
    yield local_store
    local_store.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def observer():
    return NetworkObserver(online=True)


@pytest.fixture
def engine(store, gateway, observer):
    """Create a sync engine with an active session.

    The session is set outside the event loop, so no background cycle is
    started.
    """
    sync_engine = SyncEngine(store, gateway, observer, max_retries=3)
    sync_engine.set_session(USER_ID)
    return sync_engine


@pytest.fixture
def manager(store, engine):
    """Create an offline manager sharing the store and engine."""
    return OfflineManager(store, engine)


@pytest.fixture
def output_buffer():
    """Swap the global rich console for one writing to a string buffer."""
    import copytab.output as output_module

    buffer = io.StringIO()
    original_console = output_module.console
    output_module.console = Console(file=buffer, width=120)
    try:
        yield buffer
    finally:
        output_module.console = original_console
