"""Sync engine for reconciling the local store with the remote store."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from copytab.errors import GatewayError, StorageUnavailable
from copytab.models import (
    DOMAIN_TABLES,
    PROJECTS,
    QueueOperation,
    SyncStatus,
    writable_payload,
)
from copytab.utils import is_placeholder_id, now_iso

if TYPE_CHECKING:
    from copytab._network import NetworkObserver
    from copytab.gateway import RemoteGateway
    from copytab.local_store import LocalStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Result of a sync cycle."""

    pushed: int = 0
    created: int = 0
    deleted: int = 0
    failed: int = 0
    pulled: int = 0
    evicted: int = 0
    skipped_parked: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class TableStats:
    """Record counts for one table, by sync status."""

    total: int = 0
    synced: int = 0
    pending: int = 0
    error: int = 0


@dataclass
class SyncStats:
    """Aggregate sync statistics for a user."""

    tables: dict[str, TableStats] = field(default_factory=dict)
    queue_length: int = 0
    parked: int = 0
    last_sync_at: str | None = None

    @property
    def unsynced(self) -> int:
        return sum(t.pending + t.error for t in self.tables.values())


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the engine state, as shown by the UI."""

    is_online: bool
    is_syncing: bool
    last_sync_at: str | None
    sync_error: str | None
    sync_stats: SyncStats | None


StateCallback = Callable[[SyncState], None]
DataCallback = Callable[[], None]


class SyncEngine:
    """Runs push-then-pull sync cycles for the active user.

    A cycle pushes every pending or failed record to the remote store
    (projects, then documents, then standard info), pulls the user's full
    authoritative snapshot, evicts expired cache entries and recomputes
    statistics. Only one cycle runs at a time; a request made while a cycle
    is running is dropped, not queued.

    Records whose queue entry has failed ``max_retries`` times are parked:
    they keep their error status and are skipped until ``retry_failed`` is
    called.
    """

    DEFAULT_MAX_RETRIES = 5

    def __init__(
        self,
        store: "LocalStore",
        gateway: "RemoteGateway",
        observer: "NetworkObserver",
        max_retries: int = DEFAULT_MAX_RETRIES,
        auto_sync_interval: float | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Local store holding records, queue and cache.
            gateway: Remote store gateway.
            observer: Network observer providing connectivity.
            max_retries: Failed attempts after which a record is parked.
            auto_sync_interval: Seconds between periodic cycles once
                started, or None to disable periodic sync.
        """
        self.store = store
        self.gateway = gateway
        self.observer = observer
        self.max_retries = max_retries
        self.auto_sync_interval = auto_sync_interval

        self._user_id: str | None = None
        self._syncing = False
        self._sync_error: str | None = None
        self._stats: SyncStats | None = None
        self._state_callbacks: list[StateCallback] = []
        self._data_callbacks: list[DataCallback] = []
        self._tasks: set[asyncio.Task] = set()
        self._periodic: asyncio.Task | None = None
        self._unsubscribe_network: Callable[[], None] | None = None

    # Session and lifecycle

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def set_session(self, user_id: str | None) -> None:
        """Set or clear the active user.

        Becoming active while online starts a background cycle.
        """
        previous, self._user_id = self._user_id, user_id
        if user_id != previous:
            self._stats = None
            self._emit_state()
        if user_id and user_id != previous and self.observer.is_online():
            self._schedule_sync("session started")

    def start(self) -> None:
        """Subscribe to connectivity changes and start periodic sync."""
        if self._unsubscribe_network is None:
            self._unsubscribe_network = self.observer.on_change(self._on_network_change)
        if self.auto_sync_interval and self._periodic is None:
            self._periodic = asyncio.get_running_loop().create_task(self._periodic_sync())

    async def aclose(self) -> None:
        """Stop automatic sync and wait for background cycles to finish."""
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        if self._periodic is not None:
            self._periodic.cancel()
            await asyncio.gather(self._periodic, return_exceptions=True)
            self._periodic = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_network_change(self, online: bool) -> None:
        self._emit_state()
        if online and self._user_id:
            self._schedule_sync("network reconnected")

    def _schedule_sync(self, reason: str) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping automatic sync (%s)", reason)
            return None
        logger.debug("Scheduling sync: %s", reason)
        task = loop.create_task(self._background_sync())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _background_sync(self) -> None:
        try:
            await self.sync()
        except Exception:
            # Already recorded in sync_error
            logger.exception("Background sync failed")

    async def _periodic_sync(self) -> None:
        while True:
            await asyncio.sleep(self.auto_sync_interval)
            if self._user_id and self.observer.is_online():
                await self._background_sync()

    def trigger_sync(self) -> asyncio.Task | None:
        """Start a cycle in the background (manual trigger).

        Returns:
            The scheduled task, or None if no event loop is running.
        """
        return self._schedule_sync("manual trigger")

    # Events

    @property
    def state(self) -> SyncState:
        return SyncState(
            is_online=self.observer.is_online(),
            is_syncing=self._syncing,
            last_sync_at=self._stats.last_sync_at if self._stats else None,
            sync_error=self._sync_error,
            sync_stats=self._stats,
        )

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback receiving a ``SyncState`` on every change."""
        return self._subscribe(self._state_callbacks, callback)

    def on_data_changed(self, callback: DataCallback) -> Callable[[], None]:
        """Register a callback invoked after every completed pull phase."""
        return self._subscribe(self._data_callbacks, callback)

    @staticmethod
    def _subscribe(callbacks: list, callback: Callable) -> Callable[[], None]:
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _emit_state(self) -> None:
        state = self.state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("Sync state subscriber %r failed", callback)

    def _emit_data_changed(self) -> None:
        for callback in list(self._data_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Data change subscriber %r failed", callback)

    # Cycle

    async def sync(self) -> SyncResult | None:
        """Run one sync cycle for the active user.

        Returns:
            SyncResult for the cycle, or None when there is no active user,
            the client is offline, or a cycle is already running.

        Raises:
            StorageUnavailable: If the local store fails. ``sync_error`` is
                set and the syncing flag cleared before any exception
                propagates.
        """
        user_id = self._user_id
        if not user_id:
            logger.debug("Sync skipped: no active session")
            return None
        if not self.observer.is_online():
            logger.debug("Sync skipped: offline")
            return None
        if self._syncing:
            logger.debug("Sync skipped: a cycle is already running")
            return None

        # No await between the check above and this assignment
        self._syncing = True
        self._sync_error = None
        self._emit_state()
        logger.info("Sync started for user %s", user_id)

        result = SyncResult()
        try:
            try:
                keep_local = await self._push_phase(user_id, result)
                await self._pull_phase(user_id, result, keep_local)
                result.evicted = self.store.evict_expired_cache()
            except GatewayError as e:
                self._sync_error = f"Sync failed: {e}"
                result.errors.append(self._sync_error)
                logger.error("Sync cycle failed: %s", e)
            self._stats = self.compute_stats(user_id)
        except StorageUnavailable as e:
            self._sync_error = f"Local storage unavailable: {e}"
            logger.error("Sync cycle aborted: %s", e)
            raise
        except Exception as e:
            self._sync_error = f"Sync failed: {e}"
            logger.exception("Sync cycle failed unexpectedly")
            raise
        finally:
            self._syncing = False
            self._emit_state()

        logger.info(
            "Sync finished: %d pushed, %d created, %d deleted, %d failed, %d pulled",
            result.pushed,
            result.created,
            result.deleted,
            result.failed,
            result.pulled,
        )
        return result

    async def _push_phase(self, user_id: str, result: SyncResult) -> set[tuple[str, str]]:
        """Push pending and failed records, one table at a time.

        Returns:
            (table, id) pairs that must keep their local state through the
            pull phase: records whose push failed or that were edited while
            their push was in flight, and parked records.
        """
        keep_local: set[tuple[str, str]] = set()
        queue = {
            (item["table_name"], item["record_id"]): item
            for item in self.store.queue_items(user_id)
        }
        for table in DOMAIN_TABLES:
            candidates = []
            for record in self.store.query(
                table, user_id, sync_status=[SyncStatus.PENDING, SyncStatus.ERROR]
            ):
                item = queue.get((table, record["id"]))
                if item and item["retry_count"] >= self.max_retries:
                    result.skipped_parked += 1
                    keep_local.add((table, record["id"]))
                    continue
                candidates.append(record)
            if not candidates:
                continue
            logger.debug("Pushing %d record(s) from %s", len(candidates), table)
            outcomes = await asyncio.gather(
                *(self._push_record(table, record, user_id, result) for record in candidates)
            )
            keep_local.update((table, record_id) for record_id in outcomes if record_id)
        return keep_local

    async def _push_record(
        self,
        table: str,
        record: dict[str, Any],
        user_id: str,
        result: SyncResult,
    ) -> str | None:
        """Push one record; gateway failures are recorded on the record.

        Returns:
            The id of the record if it must keep its local state through the
            following pull, otherwise None
        """
        record_id = record["id"]
        written_at = record["local_updated_at"]
        deleted = bool(record.get("deleted_at"))

        if is_placeholder_id(record_id) and deleted:
            # Never reached the server, nothing to delete remotely
            self.store.delete(table, record_id)
            self.store.drain_queue(table, [record_id])
            result.deleted += 1
            return None

        try:
            if is_placeholder_id(record_id):
                remote = await self.gateway.create_record(table, writable_payload(table, record))
            elif deleted:
                await self.gateway.delete_record(table, record_id)
                remote = None
            else:
                remote = await self.gateway.update_record(
                    table, record_id, writable_payload(table, record)
                )
        except GatewayError as e:
            retries = self.store.record_failure(table, record_id, user_id, str(e))
            result.failed += 1
            result.errors.append(f"{table}/{record_id}: {e}")
            logger.warning(
                "Push of %s/%s failed (attempt %d of %d): %s",
                table,
                record_id,
                retries,
                self.max_retries,
                e,
            )
            return record_id

        current = self.store.get(table, record_id)
        edited = current is not None and current["local_updated_at"] != written_at

        if is_placeholder_id(record_id):
            self._apply_created(table, record_id, current, remote, edited)
            result.created += 1
            return remote["id"] if edited else None
        if deleted:
            self.store.delete(table, record_id)
            self.store.drain_queue(table, [record_id])
            result.deleted += 1
            return None
        if current is None:
            return None
        result.pushed += 1
        if edited:
            return record_id
        self._mark_synced(table, current, remote)
        self.store.drain_queue(table, [record_id])
        return None

    def _apply_created(
        self,
        table: str,
        placeholder_id: str,
        current: dict[str, Any] | None,
        remote: dict[str, Any],
        edited: bool,
    ) -> None:
        """Swap a placeholder record for its server-assigned id."""
        server_id = remote["id"]
        self.store.drain_queue(table, [placeholder_id])
        if current is None:
            logger.debug("Created %s/%s was removed locally during push", table, server_id)
            return

        if edited:
            # Keep the newer local content; it still needs an update
            replacement = {**current, "id": server_id, "sync_status": SyncStatus.PENDING}
            stored = self.store.replace(table, placeholder_id, replacement)
            operation = QueueOperation.DELETE if stored.get("deleted_at") else QueueOperation.UPDATE
            self.store.enqueue(table, operation, stored)
        else:
            replacement = {
                **current,
                **remote,
                "sync_status": SyncStatus.SYNCED,
                "last_sync_at": now_iso(),
                "local_updated_at": current["local_updated_at"],
            }
            self.store.replace(table, placeholder_id, replacement)

        if table == PROJECTS:
            moved = self.store.reassign_project(placeholder_id, server_id)
            if moved:
                logger.debug("Moved %d document(s) to project %s", moved, server_id)
        logger.debug("Swapped %s/%s for server id %s", table, placeholder_id, server_id)

    def _mark_synced(
        self, table: str, current: dict[str, Any], remote: dict[str, Any] | None
    ) -> None:
        self.store.put(
            table,
            {
                **current,
                **(remote or {}),
                "id": current["id"],
                "sync_status": SyncStatus.SYNCED,
                "last_sync_at": now_iso(),
                "local_updated_at": current["local_updated_at"],
            },
        )

    async def _pull_phase(
        self,
        user_id: str,
        result: SyncResult,
        keep_local: set[tuple[str, str]] | frozenset = frozenset(),
    ) -> None:
        """Overwrite local copies with the user's authoritative snapshot.

        Records absent from the snapshot are left untouched, as are the
        (table, id) pairs in keep_local.
        """
        snapshots = await asyncio.gather(
            *(self.gateway.list_user_records(table, user_id) for table in DOMAIN_TABLES)
        )
        for table, records in zip(DOMAIN_TABLES, snapshots, strict=True):
            pulled_ids = []
            for record in records:
                if not record.get("id"):
                    logger.warning("Ignoring %s record without id from remote store", table)
                    continue
                if (table, record["id"]) in keep_local:
                    continue
                synced_at = now_iso()
                self.store.put(
                    table,
                    {
                        **record,
                        "sync_status": SyncStatus.SYNCED,
                        "last_sync_at": synced_at,
                        "local_updated_at": synced_at,
                    },
                )
                pulled_ids.append(record["id"])
            self.store.drain_queue(table, pulled_ids)
            result.pulled += len(pulled_ids)
        self._emit_data_changed()

    # Statistics and retries

    def compute_stats(self, user_id: str) -> SyncStats:
        """Compute per-table status counts and queue statistics for a user."""
        stats = SyncStats()
        for table in DOMAIN_TABLES:
            counts = self.store.status_counts(table, user_id)
            stats.tables[table] = TableStats(
                total=counts["total"],
                synced=counts[SyncStatus.SYNCED.value],
                pending=counts[SyncStatus.PENDING.value],
                error=counts[SyncStatus.ERROR.value],
            )
        items = self.store.queue_items(user_id)
        stats.queue_length = len(items)
        stats.parked = sum(1 for item in items if item["retry_count"] >= self.max_retries)
        stats.last_sync_at = self.store.latest_sync_at(user_id)
        return stats

    def refresh_stats(self) -> SyncStats | None:
        """Recompute statistics for the active user and publish the new state."""
        if not self._user_id:
            return None
        self._stats = self.compute_stats(self._user_id)
        self._emit_state()
        return self._stats

    def retry_failed(self) -> int:
        """Un-park failed records of the active user.

        Resets their retry counts and marks them pending so the next cycle
        pushes them again.

        Returns:
            Number of records reset.
        """
        if not self._user_id:
            return 0
        reset = self.store.reset_retries(self._user_id)
        if reset:
            logger.info("Reset %d failed record(s) for retry", len(reset))
        self.refresh_stats()
        return len(reset)
