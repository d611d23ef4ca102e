"""Tests for the sync engine."""

import asyncio

import httpx
import pytest

from copytab._sync import SyncEngine
from copytab.errors import GatewayRejected, GatewayUnreachable, StorageUnavailable
from copytab.gateway import HttpGateway
from copytab.models import DOCUMENTS, PROJECTS, STANDARD_INFO, QueueOperation, SyncStatus

from conftest import USER_ID

# store, gateway, observer, engine and manager fixtures are provided by conftest.py


def put_pending(store, table, record):
    """Store a record with a server id as locally edited and queue its update."""
    stored = store.put(table, {"user_id": USER_ID, **record, "sync_status": SyncStatus.PENDING})
    store.enqueue(table, QueueOperation.UPDATE, stored)
    return stored


class TestPush:
    """Tests for the push phase."""

    @pytest.mark.asyncio
    async def test_create_swaps_placeholder_for_server_id(self, manager, store, gateway, engine):
        """A record created offline is re-keyed to the server-assigned id."""
        draft = manager.save_document(title="Meeting notes", content="v1")
        assert draft["id"].startswith("temp_")
        gateway.next_ids = ["srv_1"]

        result = await engine.sync()

        assert result.created == 1
        assert store.get(DOCUMENTS, draft["id"]) is None
        synced = store.get(DOCUMENTS, "srv_1")
        assert synced["title"] == "Meeting notes"
        assert synced["sync_status"] == SyncStatus.SYNCED
        assert synced["last_sync_at"] is not None
        assert store.queue_length(USER_ID) == 0

    @pytest.mark.asyncio
    async def test_second_cycle_pushes_nothing(self, manager, gateway, engine):
        """Running sync twice without edits makes no further writes."""
        manager.save_document(title="Once")

        await engine.sync()
        await engine.sync()

        assert gateway.count("create") == 1
        assert gateway.count("update") == 0

    @pytest.mark.asyncio
    async def test_update_of_known_record(self, store, gateway, engine):
        """A pending record with a server id is sent as an update."""
        gateway.seed(DOCUMENTS, {"id": "d1", "user_id": USER_ID, "title": "Old"})
        put_pending(store, DOCUMENTS, {"id": "d1", "title": "New", "content": ""})

        result = await engine.sync()

        assert result.pushed == 1
        assert gateway.tables[DOCUMENTS]["d1"]["title"] == "New"
        assert store.get(DOCUMENTS, "d1")["sync_status"] == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_partial_failure_leaves_other_records_synced(self, store, gateway, engine):
        """One failed record does not stop the others from syncing."""
        for record_id in ("d1", "d2"):
            gateway.seed(DOCUMENTS, {"id": record_id, "user_id": USER_ID, "title": "Remote"})
            put_pending(store, DOCUMENTS, {"id": record_id, "title": "Local"})
        gateway.failures[("update", DOCUMENTS, "d1")] = GatewayUnreachable("connection refused")

        result = await engine.sync()

        assert result.failed == 1
        failed = store.get(DOCUMENTS, "d1")
        assert failed["sync_status"] == SyncStatus.ERROR
        assert failed["last_sync_at"] is None
        # The pull must not overwrite the failed local edit
        assert failed["title"] == "Local"
        assert store.queue_item_for(DOCUMENTS, "d1")["retry_count"] == 1
        assert "connection refused" in store.queue_item_for(DOCUMENTS, "d1")["last_error"]

        ok = store.get(DOCUMENTS, "d2")
        assert ok["sync_status"] == SyncStatus.SYNCED
        assert ok["last_sync_at"] is not None
        assert store.queue_item_for(DOCUMENTS, "d2") is None

    @pytest.mark.asyncio
    async def test_rejected_push_keeps_server_message(self, store, gateway, engine):
        """A logical rejection is recorded with the server's message."""
        put_pending(store, DOCUMENTS, {"id": "missing", "title": "Gone remotely"})

        result = await engine.sync()

        assert result.failed == 1
        assert "Record not found" in result.errors[0]
        assert store.queue_item_for(DOCUMENTS, "missing")["last_error"] == "Record not found"

    @pytest.mark.asyncio
    async def test_records_are_parked_after_max_retries(self, manager, store, gateway, engine):
        """After max_retries failures a record is skipped until retried."""
        manager.save_document(title="Stubborn")
        gateway.failures[("create", DOCUMENTS, "Stubborn")] = GatewayRejected("quota exceeded")

        for _ in range(engine.max_retries):
            await engine.sync()
        result = await engine.sync()

        assert gateway.count("create", DOCUMENTS) == engine.max_retries
        assert result.skipped_parked == 1
        assert engine.compute_stats(USER_ID).parked == 1

        assert engine.retry_failed() == 1
        del gateway.failures[("create", DOCUMENTS, "Stubborn")]
        result = await engine.sync()

        assert result.created == 1
        assert engine.compute_stats(USER_ID).parked == 0
        assert store.queue_length(USER_ID) == 0

    @pytest.mark.asyncio
    async def test_deleted_placeholder_never_reaches_server(self, manager, store, gateway, engine):
        """A record created and deleted offline is purged without remote calls."""
        draft = manager.save_document(title="Scratch")
        manager.delete_document(draft["id"])

        result = await engine.sync()

        assert result.deleted == 1
        assert gateway.count("create") == 0
        assert gateway.count("delete") == 0
        assert store.get(DOCUMENTS, draft["id"]) is None
        assert store.queue_length(USER_ID) == 0

    @pytest.mark.asyncio
    async def test_delete_of_synced_record(self, manager, store, gateway, engine):
        """Deleting a synced record soft-deletes it remotely and purges it locally."""
        gateway.seed(DOCUMENTS, {"id": "d1", "user_id": USER_ID, "title": "Old"})
        await engine.sync()
        manager.delete_document("d1")

        result = await engine.sync()

        assert result.deleted == 1
        assert gateway.count("delete", DOCUMENTS) == 1
        assert gateway.tables[DOCUMENTS]["d1"]["deleted_at"] is not None
        assert store.get(DOCUMENTS, "d1") is None

    @pytest.mark.asyncio
    async def test_documents_follow_new_project_id(self, manager, store, gateway, engine):
        """Documents of a project created offline point at its server id after sync."""
        project = manager.save_project(name="Research")
        document = manager.save_document(title="Paper", project_id=project["id"])
        gateway.next_ids = ["srv_project", "srv_doc"]

        await engine.sync()

        assert store.get(PROJECTS, "srv_project") is not None
        assert store.get(DOCUMENTS, "srv_doc")["project_id"] == "srv_project"
        assert gateway.tables[DOCUMENTS]["srv_doc"]["project_id"] == "srv_project"
        assert store.get(DOCUMENTS, document["id"]) is None

    @pytest.mark.asyncio
    async def test_edit_during_push_stays_pending(self, manager, store, gateway, engine):
        """A local edit made while the push is in flight is not lost."""
        gateway.seed(DOCUMENTS, {"id": "d1", "user_id": USER_ID, "title": "Doc", "content": "a"})
        put_pending(store, DOCUMENTS, {"id": "d1", "title": "Doc", "content": "b"})
        gateway.hold = asyncio.Event()

        task = asyncio.create_task(engine.sync())
        await gateway.started.wait()
        manager.save_document(document_id="d1", content="c")
        gateway.hold.set()
        await task

        local = store.get(DOCUMENTS, "d1")
        assert local["content"] == "c"
        assert local["sync_status"] == SyncStatus.PENDING
        assert store.queue_item_for(DOCUMENTS, "d1") is not None

        gateway.hold = None
        await engine.sync()
        assert gateway.tables[DOCUMENTS]["d1"]["content"] == "c"
        assert store.get(DOCUMENTS, "d1")["sync_status"] == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_edit_during_create_is_pushed_as_update(self, manager, store, gateway, engine):
        """Editing a record while its create is in flight queues an update for the server id."""
        draft = manager.save_document(title="Draft", content="v1")
        gateway.next_ids = ["srv_1"]
        gateway.hold = asyncio.Event()

        task = asyncio.create_task(engine.sync())
        await gateway.started.wait()
        manager.save_document(document_id=draft["id"], content="v2")
        gateway.hold.set()
        await task

        assert store.get(DOCUMENTS, draft["id"]) is None
        local = store.get(DOCUMENTS, "srv_1")
        assert local["content"] == "v2"
        assert local["sync_status"] == SyncStatus.PENDING
        assert store.queue_item_for(DOCUMENTS, "srv_1")["operation"] == QueueOperation.UPDATE.value

        gateway.hold = None
        await engine.sync()
        assert gateway.tables[DOCUMENTS]["srv_1"]["content"] == "v2"


class TestPull:
    """Tests for the pull phase."""

    @pytest.mark.asyncio
    async def test_snapshot_overwrites_local_copies(self, store, gateway, engine):
        """Remote records replace local copies; records absent remotely are kept."""
        store.put(
            DOCUMENTS,
            {"id": "d1", "user_id": USER_ID, "title": "Stale", "sync_status": SyncStatus.SYNCED},
        )
        store.put(
            DOCUMENTS,
            {"id": "local_only", "user_id": USER_ID, "title": "Kept", "sync_status": SyncStatus.SYNCED},
        )
        gateway.seed(DOCUMENTS, {"id": "d1", "user_id": USER_ID, "title": "Fresh"})
        gateway.seed(STANDARD_INFO, {"id": "k1", "user_id": USER_ID, "title": "Style", "category": "guides"})

        result = await engine.sync()

        assert result.pulled == 2
        assert store.get(DOCUMENTS, "d1")["title"] == "Fresh"
        assert store.get(DOCUMENTS, "local_only")["title"] == "Kept"
        assert store.get(STANDARD_INFO, "k1")["sync_status"] == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_parked_record_is_not_overwritten(self, store, gateway, engine):
        """A parked record keeps its local edit even though the pull returns it."""
        gateway.seed(DOCUMENTS, {"id": "d1", "user_id": USER_ID, "title": "Server"})
        put_pending(store, DOCUMENTS, {"id": "d1", "title": "Local edit"})
        gateway.failures[("update", DOCUMENTS, "d1")] = GatewayRejected("row locked")

        for _ in range(engine.max_retries):
            await engine.sync()
        result = await engine.sync()

        assert result.skipped_parked == 1
        assert gateway.count("update", DOCUMENTS) == engine.max_retries
        local = store.get(DOCUMENTS, "d1")
        assert local["title"] == "Local edit"
        assert local["sync_status"] == SyncStatus.ERROR
        assert store.queue_item_for(DOCUMENTS, "d1") is not None

    @pytest.mark.asyncio
    async def test_only_active_users_records_are_pulled(self, store, gateway, engine):
        """Records of other users and remotely deleted records are not pulled."""
        gateway.seed(DOCUMENTS, {"id": "mine", "user_id": USER_ID, "title": "Mine"})
        gateway.seed(DOCUMENTS, {"id": "theirs", "user_id": "someone-else", "title": "Theirs"})
        gateway.seed(
            DOCUMENTS,
            {"id": "gone", "user_id": USER_ID, "title": "Gone", "deleted_at": "2024-01-01T00:00:00+00:00"},
        )

        await engine.sync()

        assert store.get(DOCUMENTS, "mine") is not None
        assert store.get(DOCUMENTS, "theirs") is None
        assert store.get(DOCUMENTS, "gone") is None

    @pytest.mark.asyncio
    async def test_pull_failure_sets_sync_error(self, gateway, engine):
        """A failed pull is reported in the engine state."""
        gateway.list_failure = GatewayUnreachable("timed out")

        result = await engine.sync()

        assert result is not None
        assert engine.state.sync_error.startswith("Sync failed")
        assert "timed out" in engine.state.sync_error
        assert engine.is_syncing is False

    @pytest.mark.asyncio
    async def test_expired_cache_is_evicted(self, store, engine):
        """Each cycle evicts expired cache entries."""
        store.set_cache("stale", {"v": 1}, ttl_seconds=-1)
        store.set_cache("fresh", {"v": 2}, ttl_seconds=3600)

        result = await engine.sync()

        assert result.evicted == 1
        assert store.cache_counts() == {"total": 1, "expired": 0}


class TestGuards:
    """Tests for conditions under which no cycle runs."""

    @pytest.mark.asyncio
    async def test_no_session(self, gateway, engine):
        """Without an active user, sync does nothing."""
        engine.set_session(None)

        assert await engine.sync() is None
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_offline(self, gateway, observer, engine):
        """While offline, sync does nothing."""
        observer.set_online(False)

        assert await engine.sync() is None
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_request_is_dropped(self, manager, gateway, engine):
        """A sync requested while one is running returns None immediately."""
        manager.save_document(title="Slow")
        gateway.hold = asyncio.Event()

        task = asyncio.create_task(engine.sync())
        await gateway.started.wait()
        assert engine.is_syncing is True
        assert await engine.sync() is None
        gateway.hold.set()

        assert (await task).created == 1
        assert gateway.count("create") == 1

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, store, engine):
        """A storage failure aborts the cycle and is raised to the caller."""
        store.close()

        with pytest.raises(StorageUnavailable):
            await engine.sync()

        assert engine.state.sync_error.startswith("Local storage unavailable")
        assert engine.is_syncing is False

    @pytest.mark.asyncio
    async def test_non_json_reply_does_not_wedge_engine(self, store, observer):
        """A captive-portal page fails the cycle and a later sync still runs."""
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>captive portal</html>")
            )
        )
        gateway = HttpGateway("https://remote.example", "secret-key", client=client)
        engine = SyncEngine(store, gateway, observer)
        engine.set_session(USER_ID)

        result = await engine.sync()

        assert result is not None
        assert engine.is_syncing is False
        assert "non-JSON" in engine.state.sync_error
        assert await engine.sync() is not None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_error_clears_syncing(self, gateway, engine):
        """An unexpected exception is raised but leaves the engine usable."""
        gateway.list_failure = RuntimeError("malformed snapshot")

        with pytest.raises(RuntimeError):
            await engine.sync()

        assert engine.is_syncing is False
        assert engine.state.sync_error == "Sync failed: malformed snapshot"

        gateway.list_failure = None
        assert await engine.sync() is not None


class TestEvents:
    """Tests for state and data-change notifications."""

    @pytest.mark.asyncio
    async def test_state_changes_are_published(self, engine):
        """Subscribers see the cycle start and finish."""
        states = []
        engine.on_state_change(states.append)

        await engine.sync()

        assert states[0].is_syncing is True
        assert states[-1].is_syncing is False
        assert states[-1].sync_stats is not None

    @pytest.mark.asyncio
    async def test_data_changed_after_pull(self, engine):
        """Data-change subscribers fire once per completed pull."""
        calls = []
        unsubscribe = engine.on_data_changed(lambda: calls.append(1))

        await engine.sync()
        unsubscribe()
        await engine.sync()

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_reconnect_starts_sync(self, gateway, observer, engine):
        """Going back online starts a background cycle."""
        engine.start()
        observer.set_online(False)
        observer.set_online(True)

        await engine.aclose()

        assert gateway.count("list") == 3

    @pytest.mark.asyncio
    async def test_new_session_starts_sync(self, gateway, engine):
        """Setting a new user while online starts a background cycle."""
        engine.set_session("user-2")

        await engine.aclose()

        assert ("list", DOCUMENTS, "user-2") in gateway.calls


class TestStats:
    """Tests for sync statistics."""

    def test_counts_by_status(self, manager, engine):
        """Unsynced local writes are counted as pending."""
        manager.save_document(title="One")
        manager.save_standard_info(title="Two", content="x", category="c")

        stats = engine.compute_stats(USER_ID)

        assert stats.tables[DOCUMENTS].pending == 1
        assert stats.tables[STANDARD_INFO].total == 1
        assert stats.tables[PROJECTS].total == 0
        assert stats.queue_length == 2
        assert stats.unsynced == 2
        assert stats.last_sync_at is None

    @pytest.mark.asyncio
    async def test_last_sync_recorded(self, manager, engine):
        """After a successful cycle the state carries the last sync time."""
        manager.save_document(title="One")

        await engine.sync()

        assert engine.state.last_sync_at is not None
        assert engine.state.sync_stats.unsynced == 0


class TestTriggers:
    """Tests for manual triggering."""

    def test_trigger_without_loop(self, engine):
        """Outside an event loop nothing is scheduled."""
        assert engine.trigger_sync() is None

    @pytest.mark.asyncio
    async def test_trigger_runs_in_background(self, manager, gateway, engine):
        """A manual trigger runs a full cycle as a task."""
        manager.save_document(title="Background")

        task = engine.trigger_sync()
        await task

        assert gateway.count("create") == 1
        assert engine.state.sync_error is None

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, gateway, engine, caplog):
        """An unexpected error in a background cycle is logged, not left on the task."""
        gateway.list_failure = RuntimeError("malformed snapshot")

        await engine.trigger_sync()

        assert "Background sync failed" in caplog.text
        assert engine.is_syncing is False
