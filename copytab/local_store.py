"""Durable local storage for offline records, the sync queue and the cache."""

import json
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from copytab.errors import StorageUnavailable
from copytab.models import (
    ALL_TABLES,
    CACHE,
    DOCUMENTS,
    DOMAIN_TABLES,
    ENVELOPE_FIELDS,
    JSON_FIELDS,
    SEARCH_FIELDS,
    STANDARD_INFO,
    SYNC_QUEUE,
    QueueOperation,
    SyncStatus,
    domain_fields,
)
from copytab.utils import (
    escape_like_pattern,
    is_placeholder_id,
    iso_after,
    json_to_metadata,
    json_to_tags,
    metadata_to_json,
    now_iso,
    tags_to_json,
)

logger = logging.getLogger(__name__)


class LocalStore:
    """Table-scoped storage backed by a single SQLite database.

    Every public operation runs in one transaction, so a reader never
    observes a partially applied ``put``, ``replace`` or ``bulk_delete``.
    The store must be opened before use and closed when done; it can be
    used as a context manager.
    """

    # SQLite limits the number of bound parameters per statement
    BULK_CHUNK_SIZE = 500

    DEFAULT_CACHE_TTL_SECONDS = 60 * 60

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path).expanduser()
        self.conn: sqlite3.Connection | None = None

    # Lifecycle

    def open(self) -> "LocalStore":
        """Open the database and create or migrate tables.

        Returns:
            The store itself, for chaining.

        Raises:
            StorageUnavailable: If the database cannot be opened.
        """
        if self.conn is not None:
            return self
        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
            self.conn.row_factory = sqlite3.Row
            self._create_tables()
        except (sqlite3.Error, OSError) as e:
            self.conn = None
            raise StorageUnavailable(f"Cannot open local store at {self.db_path}: {e}") from e
        logger.debug("Opened local store at %s", self.db_path)
        return self

    def close(self) -> None:
        """Close the database connection."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None  # Prevent double-close

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def __enter__(self) -> "LocalStore":
        return self.open()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT,
                description TEXT,
                is_public INTEGER DEFAULT 0,
                tags TEXT,
                metadata TEXT,
                created_at TEXT,
                updated_at TEXT,
                deleted_at TEXT,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                last_sync_at TEXT,
                local_updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                project_id TEXT,
                title TEXT,
                content TEXT,
                version INTEGER DEFAULT 1,
                is_public INTEGER DEFAULT 0,
                tags TEXT,
                metadata TEXT,
                created_at TEXT,
                updated_at TEXT,
                deleted_at TEXT,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                last_sync_at TEXT,
                local_updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS standard_info (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                category TEXT,
                title TEXT,
                content TEXT,
                embedding TEXT,
                is_public INTEGER DEFAULT 0,
                tags TEXT,
                metadata TEXT,
                created_at TEXT,
                updated_at TEXT,
                deleted_at TEXT,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                last_sync_at TEXT,
                local_updated_at TEXT NOT NULL
            )
        """)
        for table in DOMAIN_TABLES:
            for column in ("user_id", "sync_status", "local_updated_at"):
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table}({column})"
                )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_project_id ON documents(project_id)"
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_standard_info_category ON standard_info(category)"
        )
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sync_queue (
                id TEXT PRIMARY KEY,
                table_name TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload TEXT,
                record_id TEXT NOT NULL,
                user_id TEXT,
                enqueued_at TEXT NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                UNIQUE (table_name, record_id)
            )
        """)
        for column in ("table_name", "operation", "user_id", "enqueued_at"):
            cursor.execute(
                f"CREATE INDEX IF NOT EXISTS idx_sync_queue_{column} ON sync_queue({column})"
            )
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cache (
                id TEXT PRIMARY KEY,
                key TEXT NOT NULL UNIQUE,
                data TEXT,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires_at ON cache(expires_at)")
        self.conn.commit()
        self._migrate_schema()

    def _migrate_schema(self) -> None:
        """Apply schema migrations for existing databases."""
        cursor = self.conn.cursor()
        for table in DOMAIN_TABLES:
            cursor.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if "extra" not in columns:
                # Holds server fields that have no dedicated column
                cursor.execute(f"ALTER TABLE {table} ADD COLUMN extra TEXT")
        self.conn.commit()

    # Internal helpers

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageUnavailable("Local store is not open")
        return self.conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in a single transaction.

        Raises:
            StorageUnavailable: On any SQLite failure; the transaction is
                rolled back.
        """
        conn = self._require_conn()
        try:
            with conn:
                yield conn.cursor()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Local store operation failed: {e}") from e

    def _validate_table(self, table: str, allowed: Iterable[str] = ALL_TABLES) -> None:
        """Validate a table name against the allow-list.

        Raises:
            ValueError: If the table is not allowed.
        """
        allowed = set(allowed)
        if table not in allowed:
            names = ", ".join(sorted(allowed))
            raise ValueError(f"Invalid table '{table}'. Must be one of: {names}")

    def _to_row(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Convert a record dict to column values for a domain table."""
        columns = domain_fields(table)
        row: dict[str, Any] = {}
        extra = {k: v for k, v in record.items() if k not in columns}
        for column in columns:
            if column == "extra":
                continue
            if column not in record:
                continue
            value = record[column]
            if column == "tags":
                value = tags_to_json(value)
            elif column == "metadata":
                value = metadata_to_json(value)
            elif column in JSON_FIELDS and value is not None:
                value = json.dumps(value, sort_keys=True, default=str)
            elif column == "is_public" and value is not None:
                value = int(bool(value))
            elif column == "sync_status" and value is not None:
                value = SyncStatus(value).value
            row[column] = value
        row["extra"] = json.dumps(extra, sort_keys=True, default=str) if extra else None
        return row

    def _to_record(self, table: str, row: sqlite3.Row | None) -> dict[str, Any] | None:
        """Convert a stored row back to a record dict."""
        if row is None:
            return None
        record = dict(row)
        extra = record.pop("extra", None)
        if record.get("tags") is not None:
            record["tags"] = json_to_tags(record["tags"])
        if record.get("metadata") is not None:
            record["metadata"] = json_to_metadata(record["metadata"])
        for column in (JSON_FIELDS - {"tags", "metadata"}) & record.keys():
            if record[column] is not None:
                try:
                    record[column] = json.loads(record[column])
                except json.JSONDecodeError:
                    record[column] = None
        if record.get("is_public") is not None:
            record["is_public"] = bool(record["is_public"])
        record["sync_status"] = SyncStatus(record["sync_status"])
        if extra:
            try:
                for key, value in json.loads(extra).items():
                    record.setdefault(key, value)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed extra fields on %s/%s", table, record["id"])
        return record

    @staticmethod
    def _queue_record(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        item = dict(row)
        item["operation"] = QueueOperation(item["operation"])
        item["payload"] = json.loads(item["payload"]) if item["payload"] else None
        return item

    # Domain records

    def put(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace a domain record by id.

        Domain fields are replaced as given. Envelope fields
        (``sync_status``, ``last_sync_at``, ``local_updated_at``) are
        overwritten when present in ``record`` and otherwise preserved from
        the stored row; a new row defaults to pending.

        Args:
            table: Domain table name.
            record: Record with at least ``id`` and ``user_id``.

        Returns:
            The stored record.

        Raises:
            ValueError: If the table is unknown or the record has no id.
            StorageUnavailable: If the database fails.
        """
        self._validate_table(table, DOMAIN_TABLES)
        if not record.get("id"):
            raise ValueError("Record must have an id")
        row = self._to_row(table, record)
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT sync_status, last_sync_at, local_updated_at FROM {table} WHERE id = ?",
                (record["id"],),
            )
            existing = cursor.fetchone()
            for field in ENVELOPE_FIELDS:
                if field in row:
                    continue
                if existing is not None:
                    row[field] = existing[field]
                elif field == "sync_status":
                    row[field] = SyncStatus.PENDING.value
                elif field == "local_updated_at":
                    row[field] = now_iso()
                else:
                    row[field] = None
            self._insert_row(cursor, table, row)
            cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (record["id"],))
            return self._to_record(table, cursor.fetchone())

    @staticmethod
    def _insert_row(cursor: sqlite3.Cursor, table: str, row: dict[str, Any]) -> None:
        columns = list(row)
        placeholders = ", ".join("?" for _ in columns)
        cursor.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [row[c] for c in columns],
        )

    def get(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Get a domain record by id.

        Returns:
            The record, or None if not found.
        """
        self._validate_table(table, DOMAIN_TABLES)
        with self._transaction() as cursor:
            cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
            return self._to_record(table, cursor.fetchone())

    def query(
        self,
        table: str,
        user_id: str | None = None,
        *,
        sync_status: SyncStatus | Iterable[SyncStatus] | None = None,
        project_id: str | None = None,
        category: str | None = None,
        include_deleted: bool = True,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[dict[str, Any]]:
        """Query domain records with compound filters (AND logic).

        Args:
            table: Domain table name.
            user_id: Owner filter.
            sync_status: A status or collection of statuses to match.
            project_id: Project filter (documents only).
            category: Category filter (standard_info only).
            include_deleted: Whether soft-deleted records are returned.
            predicate: Optional extra filter applied to each record.

        Returns:
            Matching records, most recently written first.
        """
        self._validate_table(table, DOMAIN_TABLES)
        conditions: list[str] = []
        params: list[Any] = []

        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if sync_status is not None:
            statuses = (
                [sync_status] if isinstance(sync_status, (str, SyncStatus)) else list(sync_status)
            )
            conditions.append(f"sync_status IN ({', '.join('?' for _ in statuses)})")
            params.extend(SyncStatus(s).value for s in statuses)
        if project_id is not None:
            if table != DOCUMENTS:
                raise ValueError("project_id filter only applies to documents")
            conditions.append("project_id = ?")
            params.append(project_id)
        if category is not None:
            if table != STANDARD_INFO:
                raise ValueError("category filter only applies to standard_info")
            conditions.append("category = ?")
            params.append(category)
        if not include_deleted:
            conditions.append("deleted_at IS NULL")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT * FROM {table} {where} ORDER BY local_updated_at DESC",
                params,
            )
            records = [self._to_record(table, row) for row in cursor.fetchall()]

        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    def search(
        self,
        table: str,
        user_id: str,
        text: str,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        """Case-insensitive substring search over a table's text columns.

        Args:
            table: Domain table name.
            user_id: Owner filter.
            text: Text to search for.
            include_deleted: Whether soft-deleted records are returned.

        Returns:
            Matching records, most recently written first.
        """
        self._validate_table(table, DOMAIN_TABLES)
        pattern = f"%{escape_like_pattern(text)}%"
        fields = SEARCH_FIELDS[table]
        match = " OR ".join(f"{f} LIKE ? ESCAPE '\\'" for f in fields)
        deleted = "" if include_deleted else "AND deleted_at IS NULL"
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                SELECT * FROM {table}
                WHERE user_id = ? AND ({match}) {deleted}
                ORDER BY local_updated_at DESC
                """,
                [user_id, *([pattern] * len(fields))],
            )
            return [self._to_record(table, row) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Physically remove a record.

        Returns:
            True if a row was removed.
        """
        self._validate_table(table)
        with self._transaction() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def bulk_delete(self, table: str, ids: Iterable[str]) -> int:
        """Remove many rows in a single transaction.

        Either every listed row is removed or, on failure, none is.

        Returns:
            Number of rows removed.
        """
        self._validate_table(table)
        ids = list(dict.fromkeys(ids))
        if not ids:
            return 0
        with self._transaction() as cursor:
            return self._bulk_delete(cursor, table, ids)

    def _bulk_delete(self, cursor: sqlite3.Cursor, table: str, ids: list[str]) -> int:
        removed = 0
        for start in range(0, len(ids), self.BULK_CHUNK_SIZE):
            chunk = ids[start : start + self.BULK_CHUNK_SIZE]
            cursor.execute(
                f"DELETE FROM {table} WHERE id IN ({', '.join('?' for _ in chunk)})",
                chunk,
            )
            removed += cursor.rowcount
        return removed

    def replace(self, table: str, old_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Atomically swap a record for one with a different id.

        Deletes ``old_id`` and inserts ``record`` in one transaction, so a
        reader sees either the old row or the new one, never both.

        Returns:
            The stored replacement record.
        """
        self._validate_table(table, DOMAIN_TABLES)
        if not record.get("id"):
            raise ValueError("Replacement record must have an id")
        row = self._to_row(table, record)
        row.setdefault("sync_status", SyncStatus.PENDING.value)
        row.setdefault("local_updated_at", now_iso())
        row.setdefault("last_sync_at", None)
        with self._transaction() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = ?", (old_id,))
            self._insert_row(cursor, table, row)
            cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (record["id"],))
            return self._to_record(table, cursor.fetchone())

    def reassign_project(self, old_project_id: str, new_project_id: str) -> int:
        """Point documents (and their queued snapshots) at a new project id.

        Returns:
            Number of documents updated.
        """
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE documents SET project_id = ? WHERE project_id = ?",
                (new_project_id, old_project_id),
            )
            updated = cursor.rowcount
            cursor.execute(
                "SELECT id, payload FROM sync_queue WHERE table_name = ? AND payload IS NOT NULL",
                (DOCUMENTS,),
            )
            for row in cursor.fetchall():
                payload = json.loads(row["payload"])
                if payload.get("project_id") == old_project_id:
                    payload["project_id"] = new_project_id
                    cursor.execute(
                        "UPDATE sync_queue SET payload = ? WHERE id = ?",
                        (json.dumps(payload, default=str), row["id"]),
                    )
            return updated

    def clear(self, table: str) -> int:
        """Remove every row of a table.

        Returns:
            Number of rows removed.
        """
        self._validate_table(table)
        with self._transaction() as cursor:
            cursor.execute(f"DELETE FROM {table}")
            return cursor.rowcount

    def clear_all(self) -> None:
        """Remove all offline data: records, queue and cache."""
        with self._transaction() as cursor:
            for table in (*DOMAIN_TABLES, SYNC_QUEUE, CACHE):
                cursor.execute(f"DELETE FROM {table}")

    def status_counts(self, table: str, user_id: str) -> dict[str, int]:
        """Count a user's records by sync status.

        Returns:
            Dictionary with total, synced, pending and error counts.
        """
        self._validate_table(table, DOMAIN_TABLES)
        counts = {"total": 0, **{status.value: 0 for status in SyncStatus}}
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT sync_status, COUNT(*) FROM {table} WHERE user_id = ? GROUP BY sync_status",
                (user_id,),
            )
            for status, count in cursor.fetchall():
                counts[status] = count
                counts["total"] += count
        return counts

    def latest_sync_at(self, user_id: str) -> str | None:
        """Most recent ``last_sync_at`` across the user's domain records."""
        union = " UNION ALL ".join(
            f"SELECT MAX(last_sync_at) AS ts FROM {t} WHERE user_id = ?" for t in DOMAIN_TABLES
        )
        with self._transaction() as cursor:
            cursor.execute(f"SELECT MAX(ts) FROM ({union})", [user_id] * len(DOMAIN_TABLES))
            row = cursor.fetchone()
        return row[0] if row else None

    # Sync queue

    def enqueue(
        self,
        table: str,
        operation: QueueOperation,
        record: dict[str, Any],
    ) -> dict[str, Any]:
        """Record an intended remote operation for a record.

        Only one queue entry exists per record. Re-enqueueing refreshes the
        payload snapshot but keeps the retry bookkeeping. A pending create
        stays a create when followed by an update; a delete supersedes both.

        Returns:
            The stored queue entry.
        """
        self._validate_table(table, DOMAIN_TABLES)
        operation = QueueOperation(operation)
        payload = json.dumps(record, default=str)
        now = now_iso()
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM sync_queue WHERE table_name = ? AND record_id = ?",
                (table, record["id"]),
            )
            existing = cursor.fetchone()
            if existing is None:
                item_id = f"{table}_{record['id']}_{uuid.uuid4().hex[:8]}"
                cursor.execute(
                    """
                    INSERT INTO sync_queue (
                        id, table_name, operation, payload, record_id, user_id,
                        enqueued_at, retry_count, last_error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL)
                    """,
                    (
                        item_id,
                        table,
                        operation.value,
                        payload,
                        record["id"],
                        record.get("user_id"),
                        now,
                    ),
                )
            else:
                item_id = existing["id"]
                previous = QueueOperation(existing["operation"])
                if operation != QueueOperation.DELETE and previous == QueueOperation.CREATE:
                    operation = QueueOperation.CREATE
                cursor.execute(
                    """
                    UPDATE sync_queue
                    SET operation = ?, payload = ?, user_id = ?, enqueued_at = ?
                    WHERE id = ?
                    """,
                    (operation.value, payload, record.get("user_id"), now, item_id),
                )
            cursor.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,))
            return self._queue_record(cursor.fetchone())

    def queue_items(self, user_id: str | None = None) -> list[dict[str, Any]]:
        """List queue entries, oldest first."""
        with self._transaction() as cursor:
            if user_id is None:
                cursor.execute("SELECT * FROM sync_queue ORDER BY enqueued_at")
            else:
                cursor.execute(
                    "SELECT * FROM sync_queue WHERE user_id = ? ORDER BY enqueued_at",
                    (user_id,),
                )
            return [self._queue_record(row) for row in cursor.fetchall()]

    def queue_item_for(self, table: str, record_id: str) -> dict[str, Any] | None:
        """Get the queue entry for a record, if any."""
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM sync_queue WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
            return self._queue_record(cursor.fetchone())

    def record_failure(
        self,
        table: str,
        record_id: str,
        user_id: str | None,
        message: str,
    ) -> int:
        """Mark a record as failed and bump its queue retry count.

        The record's status becomes error; ``last_sync_at`` is left
        unchanged. A queue entry is created if the record had none.

        Returns:
            The new retry count.
        """
        self._validate_table(table, DOMAIN_TABLES)
        with self._transaction() as cursor:
            cursor.execute(
                f"UPDATE {table} SET sync_status = ? WHERE id = ?",
                (SyncStatus.ERROR.value, record_id),
            )
            cursor.execute(
                "SELECT id, retry_count FROM sync_queue WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
            existing = cursor.fetchone()
            if existing is None:
                operation = (
                    QueueOperation.CREATE if is_placeholder_id(record_id) else QueueOperation.UPDATE
                )
                cursor.execute(
                    """
                    INSERT INTO sync_queue (
                        id, table_name, operation, payload, record_id, user_id,
                        enqueued_at, retry_count, last_error
                    ) VALUES (?, ?, ?, NULL, ?, ?, ?, 1, ?)
                    """,
                    (
                        f"{table}_{record_id}_{uuid.uuid4().hex[:8]}",
                        table,
                        operation.value,
                        record_id,
                        user_id,
                        now_iso(),
                        message,
                    ),
                )
                return 1
            retry_count = existing["retry_count"] + 1
            cursor.execute(
                "UPDATE sync_queue SET retry_count = ?, last_error = ? WHERE id = ?",
                (retry_count, message, existing["id"]),
            )
            return retry_count

    def reset_retries(self, user_id: str, min_retries: int = 1) -> list[tuple[str, str]]:
        """Clear retry bookkeeping for a user's failed queue entries.

        The affected records are marked pending again.

        Args:
            user_id: Owner of the queue entries.
            min_retries: Only entries with at least this many retries are reset.

        Returns:
            (table, record_id) pairs that were reset.
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT table_name, record_id FROM sync_queue
                WHERE user_id = ? AND retry_count >= ?
                """,
                (user_id, min_retries),
            )
            reset = [(row["table_name"], row["record_id"]) for row in cursor.fetchall()]
            cursor.execute(
                """
                UPDATE sync_queue SET retry_count = 0, last_error = NULL
                WHERE user_id = ? AND retry_count >= ?
                """,
                (user_id, min_retries),
            )
            for table, record_id in reset:
                cursor.execute(
                    f"UPDATE {table} SET sync_status = ? WHERE id = ?",
                    (SyncStatus.PENDING.value, record_id),
                )
            return reset

    def drain_queue(self, table: str, record_ids: Iterable[str]) -> int:
        """Remove the queue entries of records whose push completed.

        Returns:
            Number of queue entries removed.
        """
        record_ids = list(record_ids)
        if not record_ids:
            return 0
        with self._transaction() as cursor:
            ids: list[str] = []
            for start in range(0, len(record_ids), self.BULK_CHUNK_SIZE):
                chunk = record_ids[start : start + self.BULK_CHUNK_SIZE]
                cursor.execute(
                    f"""
                    SELECT id FROM sync_queue
                    WHERE table_name = ? AND record_id IN ({', '.join('?' for _ in chunk)})
                    """,
                    [table, *chunk],
                )
                ids.extend(row["id"] for row in cursor.fetchall())
            return self._bulk_delete(cursor, SYNC_QUEUE, ids)

    def queue_length(self, user_id: str) -> int:
        """Number of outstanding queue entries for a user."""
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM sync_queue WHERE user_id = ?", (user_id,))
            return cursor.fetchone()[0]

    # Generic expiring cache

    def set_cache(
        self,
        key: str,
        data: Any,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
    ) -> str:
        """Store a value under ``key``, replacing any existing entry.

        Args:
            key: Cache key.
            data: JSON-serializable value.
            ttl_seconds: Lifetime; zero or negative yields an entry that is
                already expired.

        Returns:
            The entry's expiry timestamp.
        """
        expires_at = iso_after(ttl_seconds)
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM cache WHERE key = ?", (key,))
            cursor.execute(
                "INSERT INTO cache (id, key, data, expires_at, created_at) VALUES (?, ?, ?, ?, ?)",
                (uuid.uuid4().hex, key, json.dumps(data, default=str), expires_at, now_iso()),
            )
        return expires_at

    def get_cache_entry(self, key: str) -> dict[str, Any] | None:
        """Get the live cache entry for ``key``.

        Entries past their expiry are never returned, even before eviction.
        """
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM cache WHERE key = ? AND expires_at > ?",
                (key, now_iso()),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        entry = dict(row)
        entry["data"] = json.loads(entry["data"]) if entry["data"] is not None else None
        return entry

    def get_cache(self, key: str) -> Any | None:
        """Get the cached value for ``key``, or None on a miss."""
        entry = self.get_cache_entry(key)
        return entry["data"] if entry else None

    def evict_expired_cache(self) -> int:
        """Physically remove every expired cache entry.

        Returns:
            Number of entries removed.
        """
        with self._transaction() as cursor:
            cursor.execute("SELECT id FROM cache WHERE expires_at <= ?", (now_iso(),))
            ids = [row["id"] for row in cursor.fetchall()]
            return self._bulk_delete(cursor, CACHE, ids)

    def delete_cache(self, prefix: str | None = None) -> int:
        """Remove cache entries, optionally only those whose key has ``prefix``.

        Returns:
            Number of entries removed.
        """
        with self._transaction() as cursor:
            if prefix is None:
                cursor.execute("DELETE FROM cache")
            else:
                cursor.execute(
                    "DELETE FROM cache WHERE key LIKE ? ESCAPE '\\'",
                    (f"{escape_like_pattern(prefix)}%",),
                )
            return cursor.rowcount

    def cache_counts(self, prefix: str | None = None) -> dict[str, int]:
        """Count stored cache entries.

        Returns:
            Dictionary with ``total`` stored entries and how many of them
            are ``expired`` but not yet evicted.
        """
        condition, params = "", []
        if prefix is not None:
            condition = "WHERE key LIKE ? ESCAPE '\\'"
            params.append(f"{escape_like_pattern(prefix)}%")
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                SELECT COUNT(*), COALESCE(SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END), 0)
                FROM cache {condition}
                """,
                [now_iso(), *params],
            )
            total, expired = cursor.fetchone()
        return {"total": total, "expired": expired}
