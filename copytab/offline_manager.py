"""Offline-first document and knowledge-base management."""

import logging
from typing import TYPE_CHECKING, Any

from copytab._config import ConfigManager
from copytab._network import NetworkObserver
from copytab._sync import SyncEngine, SyncResult, SyncState, SyncStats
from copytab.completion import (
    CompletionCache,
    CompletionClient,
    CompletionRequest,
    CompletionResponse,
)
from copytab.gateway import HttpGateway
from copytab.local_store import LocalStore
from copytab.models import DOCUMENTS, PROJECTS, STANDARD_INFO, QueueOperation, SyncStatus
from copytab.utils import generate_placeholder_id, is_placeholder_id, now_iso, parse_tags

if TYPE_CHECKING:
    from copytab._config import Settings
    from copytab.gateway import RemoteGateway

logger = logging.getLogger(__name__)


class OfflineManager:
    """Reads and writes projects, documents and knowledge-base entries offline.

    Every write lands in the local store first, marked pending and queued
    for the next sync cycle. Reads never touch the network and exclude
    soft-deleted records.
    """

    # Input size limits
    MAX_TITLE_LENGTH = 500
    MAX_DESCRIPTION_LENGTH = 10_000
    MAX_CONTENT_LENGTH = 1_000_000  # ~1MB of text

    def __init__(
        self,
        store: LocalStore,
        engine: SyncEngine,
        completion: CompletionCache | None = None,
        config_manager: ConfigManager | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Open local store.
            engine: Sync engine sharing the same store.
            completion: Optional completion cache.
            config_manager: Optional persisted preferences; when given the
                session user and last sync time are saved there.
        """
        self.store = store
        self.engine = engine
        self.completion = completion
        self.config = config_manager
        self._closables: list[Any] = []

        if config_manager is not None:
            user_id = config_manager.get_session_user()
            if user_id:
                self._apply_session(user_id)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        gateway: "RemoteGateway | None" = None,
        completion_client: CompletionClient | None = None,
    ) -> "OfflineManager":
        """Build the default object graph from settings.

        Args:
            settings: Loaded settings.
            gateway: Optional gateway replacing the HTTP one.
            completion_client: Optional client replacing the HTTP one.

        Returns:
            A manager with an open store, ready for use.
        """
        store = LocalStore(settings.database_path).open()
        owned: list[Any] = []
        if gateway is None:
            gateway = HttpGateway(
                settings.remote_url, settings.remote_key, timeout=settings.request_timeout
            )
            owned.append(gateway)
        if completion_client is None:
            completion_client = CompletionClient(
                settings.completion_url,
                settings.generation_api_key,
                timeout=settings.request_timeout,
            )
            owned.append(completion_client)

        engine = SyncEngine(
            store,
            gateway,
            NetworkObserver(),
            max_retries=settings.max_retries,
            auto_sync_interval=settings.auto_sync_interval,
        )
        manager = cls(
            store,
            engine,
            completion=CompletionCache(store, completion_client),
            config_manager=ConfigManager(settings.data_dir),
        )
        manager._closables = owned
        return manager

    # Lifecycle

    def close(self) -> None:
        """Close the local store."""
        self.store.close()

    async def aclose(self) -> None:
        """Stop background sync, close network clients and the store."""
        if self.completion is not None:
            self.completion.cancel()
        await self.engine.aclose()
        for resource in self._closables:
            await resource.aclose()
        self._closables = []
        self.close()

    def __enter__(self) -> "OfflineManager":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    async def __aenter__(self) -> "OfflineManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    # Session

    @property
    def user_id(self) -> str | None:
        return self.engine.user_id

    def set_session(self, user_id: str | None) -> None:
        """Set the active user, or clear it with None.

        Becoming active while online starts a background sync.
        """
        if user_id is not None and not user_id.strip():
            raise ValueError("user id cannot be empty")
        self._apply_session(user_id)
        if self.config is not None:
            self.config.set_session_user(user_id)
        logger.info("Session %s", f"set to {user_id}" if user_id else "cleared")

    def _apply_session(self, user_id: str | None) -> None:
        self.engine.set_session(user_id)
        if self.completion is not None:
            self.completion.user_id = user_id

    def _require_user(self) -> str:
        if not self.user_id:
            raise ValueError("No active session. Set a user first.")
        return self.user_id

    # Writes

    def _validate_text(self, name: str, value: str | None, limit: int, required: bool) -> None:
        if required and (not value or not value.strip()):
            raise ValueError(f"{name} cannot be empty")
        if value is not None and len(value) > limit:
            raise ValueError(f"{name} exceeds maximum length of {limit} characters")

    def _get_owned(self, table: str, record_id: str) -> dict[str, Any] | None:
        record = self.store.get(table, record_id)
        if not record or record["user_id"] != self.user_id or record.get("deleted_at"):
            return None
        return record

    def _save(
        self, table: str, fields: dict[str, Any], record_id: str | None = None
    ) -> dict[str, Any] | None:
        """Write a record locally, mark it pending and queue it.

        Returns:
            The stored record, or None if ``record_id`` does not exist.
        """
        user_id = self._require_user()
        now = now_iso()
        if record_id is None:
            record = {
                "id": generate_placeholder_id(),
                "user_id": user_id,
                "created_at": now,
                "deleted_at": None,
                **fields,
            }
            operation = QueueOperation.CREATE
        else:
            existing = self._get_owned(table, record_id)
            if existing is None:
                return None
            record = {**existing, **fields}
            operation = (
                QueueOperation.CREATE if is_placeholder_id(record_id) else QueueOperation.UPDATE
            )

        record["updated_at"] = now
        record["sync_status"] = SyncStatus.PENDING
        record["local_updated_at"] = now
        stored = self.store.put(table, record)
        self.store.enqueue(table, operation, stored)
        logger.debug("Saved %s/%s offline (%s)", table, stored["id"], operation.value)
        return stored

    def _soft_delete(self, table: str, record_id: str) -> bool:
        record = self._get_owned(table, record_id)
        if record is None:
            return False
        now = now_iso()
        record.update(
            deleted_at=now,
            updated_at=now,
            sync_status=SyncStatus.PENDING,
            local_updated_at=now,
        )
        stored = self.store.put(table, record)
        self.store.enqueue(table, QueueOperation.DELETE, stored)
        logger.debug("Deleted %s/%s offline", table, record_id)
        return True

    @staticmethod
    def _common_fields(
        is_public: bool | None,
        tags: str | list[str] | None,
        metadata: dict[str, Any] | None,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if is_public is not None:
            fields["is_public"] = is_public
        if tags is not None:
            fields["tags"] = parse_tags(tags)
        if metadata is not None:
            fields["metadata"] = metadata
        return fields

    def save_project(
        self,
        name: str | None = None,
        description: str | None = None,
        project_id: str | None = None,
        is_public: bool | None = None,
        tags: str | list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Create a project, or update one when ``project_id`` is given.

        Args:
            name: Project name.
            description: Optional description.
            project_id: Existing project to update.
            is_public: Optional visibility flag.
            tags: Optional tags (comma-separated string or list).
            metadata: Optional metadata object.

        Returns:
            The stored project, or None if ``project_id`` was not found.

        Raises:
            ValueError: If there is no active session or the input is invalid.
        """
        creating = project_id is None
        self._validate_text("name", name, self.MAX_TITLE_LENGTH, required=creating)
        self._validate_text("description", description, self.MAX_DESCRIPTION_LENGTH, False)
        fields = self._common_fields(is_public, tags, metadata)
        if name is not None:
            if not name.strip():
                raise ValueError("name cannot be empty")
            fields["name"] = name.strip()
        if description is not None or creating:
            fields["description"] = description
        if creating:
            fields.setdefault("is_public", False)
        return self._save(PROJECTS, fields, project_id)

    def save_document(
        self,
        title: str | None = None,
        content: str | None = None,
        project_id: str | None = None,
        document_id: str | None = None,
        is_public: bool | None = None,
        tags: str | list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Create a document, or update one when ``document_id`` is given.

        On update only the given fields change.

        Returns:
            The stored document, or None if ``document_id`` was not found.

        Raises:
            ValueError: If there is no active session, the project does not
                exist, or the input is invalid.
        """
        creating = document_id is None
        self._validate_text("title", title, self.MAX_TITLE_LENGTH, required=creating)
        self._validate_text("content", content, self.MAX_CONTENT_LENGTH, required=False)
        if project_id is not None and self._get_owned(PROJECTS, project_id) is None:
            raise ValueError(f"Project not found: {project_id}")

        fields = self._common_fields(is_public, tags, metadata)
        if title is not None:
            if not title.strip():
                raise ValueError("title cannot be empty")
            fields["title"] = title.strip()
        if content is not None:
            fields["content"] = content
        if project_id is not None:
            fields["project_id"] = project_id
        if creating:
            fields.setdefault("content", "")
            fields.setdefault("project_id", None)
            fields.setdefault("is_public", False)
            fields["version"] = 1
        return self._save(DOCUMENTS, fields, document_id)

    def save_standard_info(
        self,
        title: str | None = None,
        content: str | None = None,
        category: str | None = None,
        entry_id: str | None = None,
        is_public: bool | None = None,
        tags: str | list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Create a knowledge-base entry, or update one when ``entry_id`` is given.

        Embeddings are never generated locally; an existing embedding is
        carried unchanged.

        Returns:
            The stored entry, or None if ``entry_id`` was not found.
        """
        creating = entry_id is None
        self._validate_text("title", title, self.MAX_TITLE_LENGTH, required=creating)
        self._validate_text("content", content, self.MAX_CONTENT_LENGTH, required=creating)
        self._validate_text("category", category, self.MAX_TITLE_LENGTH, required=creating)

        fields = self._common_fields(is_public, tags, metadata)
        for name, value in (("title", title), ("content", content), ("category", category)):
            if value is not None:
                fields[name] = value.strip() if name != "content" else value
        if creating:
            fields.setdefault("is_public", False)
        return self._save(STANDARD_INFO, fields, entry_id)

    def delete_project(self, project_id: str, cascade: bool = False) -> bool:
        """Soft-delete a project.

        Args:
            project_id: Project to delete.
            cascade: Also delete the project's documents. Without it a
                project that still has documents is not deleted.

        Returns:
            True if deleted, False if not found.

        Raises:
            ValueError: If the project has documents and ``cascade`` is False.
        """
        if self._get_owned(PROJECTS, project_id) is None:
            return False
        documents = self.get_documents(project_id)
        if documents and not cascade:
            raise ValueError(
                f"Project {project_id} has {len(documents)} document(s); use cascade to delete them"
            )
        for document in documents:
            self._soft_delete(DOCUMENTS, document["id"])
        return self._soft_delete(PROJECTS, project_id)

    def delete_document(self, document_id: str) -> bool:
        """Soft-delete a document.

        Returns:
            True if deleted, False if not found.
        """
        return self._soft_delete(DOCUMENTS, document_id)

    def delete_standard_info(self, entry_id: str) -> bool:
        """Soft-delete a knowledge-base entry.

        Returns:
            True if deleted, False if not found.
        """
        return self._soft_delete(STANDARD_INFO, entry_id)

    # Reads

    def get_projects(self) -> list[dict[str, Any]]:
        return self.store.query(PROJECTS, self._require_user(), include_deleted=False)

    def get_project(self, project_id: str) -> dict[str, Any] | None:
        self._require_user()
        return self._get_owned(PROJECTS, project_id)

    def get_documents(self, project_id: str | None = None) -> list[dict[str, Any]]:
        """List the user's documents, optionally within one project."""
        return self.store.query(
            DOCUMENTS, self._require_user(), project_id=project_id, include_deleted=False
        )

    def get_document(self, document_id: str) -> dict[str, Any] | None:
        self._require_user()
        return self._get_owned(DOCUMENTS, document_id)

    def get_standard_info(self, category: str | None = None) -> list[dict[str, Any]]:
        """List the user's knowledge-base entries, optionally by category."""
        return self.store.query(
            STANDARD_INFO, self._require_user(), category=category, include_deleted=False
        )

    def get_standard_info_entry(self, entry_id: str) -> dict[str, Any] | None:
        self._require_user()
        return self._get_owned(STANDARD_INFO, entry_id)

    def get_categories(self) -> list[str]:
        """Distinct categories of the user's knowledge-base entries."""
        return sorted({e["category"] for e in self.get_standard_info() if e.get("category")})

    def search_documents(self, text: str) -> list[dict[str, Any]]:
        """Case-insensitive search over document titles and content."""
        return self.store.search(DOCUMENTS, self._require_user(), text)

    def search_standard_info(self, text: str) -> list[dict[str, Any]]:
        """Case-insensitive search over knowledge-base titles and content."""
        return self.store.search(STANDARD_INFO, self._require_user(), text)

    # Sync

    @property
    def state(self) -> SyncState:
        return self.engine.state

    async def check_connectivity(self) -> bool:
        """Probe the remote store and feed the result to the network observer."""
        ping = getattr(self.engine.gateway, "ping", None)
        if ping is None:
            return self.engine.observer.is_online()
        online = await ping()
        self.engine.observer.set_online(online)
        return online

    async def sync(self) -> SyncResult | None:
        """Run a sync cycle now.

        Returns:
            The cycle result, or None if the cycle did not run.
        """
        result = await self.engine.sync()
        if result is not None and self.engine.state.sync_error is None and self.config:
            self.config.set_last_sync(now_iso())
        return result

    def sync_stats(self) -> SyncStats:
        """Compute sync statistics for the active user without syncing."""
        return self.engine.compute_stats(self._require_user())

    def last_sync(self) -> str | None:
        """Time of the last successful sync cycle, if recorded."""
        if self.config is not None:
            recorded = self.config.get_last_sync()
            if recorded:
                return recorded
        return self.store.latest_sync_at(self._require_user())

    def failed_items(self) -> list[dict[str, Any]]:
        """Queue entries of the active user that have failed at least once."""
        return [
            item for item in self.store.queue_items(self._require_user()) if item["retry_count"]
        ]

    def retry_failed(self) -> int:
        """Resume failed and parked records on the next sync.

        Returns:
            Number of records reset.
        """
        self._require_user()
        return self.engine.retry_failed()

    def clear_all_offline_data(self) -> None:
        """Remove every local record, queue entry and cache entry."""
        self.store.clear_all()
        self.engine.refresh_stats()
        logger.info("Cleared all offline data")

    # Cache

    def cache_stats(self) -> dict[str, dict[str, int]]:
        """Counts for the whole cache table and for cached completions."""
        stats = {"all": self.store.cache_counts()}
        if self.completion is not None:
            stats["completions"] = self.completion.stats()
        return stats

    def evict_expired_cache(self) -> int:
        return self.store.evict_expired_cache()

    def clear_cache(self) -> int:
        return self.store.delete_cache()

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Generate a completion through the cache.

        Raises:
            ValueError: If no completion backend is configured.
            CompletionError: If the backend call fails.
        """
        if self.completion is None:
            raise ValueError("No completion backend configured")
        return await self.completion.generate(request)
