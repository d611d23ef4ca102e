"""Tests for OfflineManager reads, writes and session handling."""

import pytest

from copytab._config import ConfigManager
from copytab.completion import CompletionCache, CompletionRequest, CompletionResponse
from copytab.models import DOCUMENTS, PROJECTS, STANDARD_INFO, QueueOperation, SyncStatus
from copytab.offline_manager import OfflineManager
from copytab.utils import (
    create_brief,
    escape_like_pattern,
    is_placeholder_id,
    parse_tags,
    parse_timestamp,
)

from conftest import USER_ID

# store, engine and manager fixtures are provided by conftest.py


class TestUtils:
    """Tests for helper functions."""

    def test_placeholder_ids(self):
        """Placeholder ids are recognized by prefix; a missing id counts as one."""
        assert is_placeholder_id("temp_abc")
        assert is_placeholder_id(None)
        assert not is_placeholder_id("7f9c2ba4")

    def test_parse_tags(self):
        """Tags are split on commas, stripped and lowercased."""
        assert parse_tags("A, b,, c ") == ["a", "b", "c"]
        assert parse_tags(None) == []

    def test_parse_timestamp_accepts_z_suffix(self):
        """Timestamps ending in Z parse as UTC."""
        parsed = parse_timestamp("2024-05-01T10:00:00Z")

        assert parsed.tzinfo is not None
        assert parse_timestamp("not a date") is None

    def test_create_brief_truncates(self):
        """Long content is shortened with an ellipsis."""
        brief = create_brief("word " * 100, max_length=20)

        assert len(brief) <= 23
        assert brief.endswith("...")

    def test_escape_like_pattern(self):
        """LIKE wildcards are escaped."""
        assert escape_like_pattern("50%_off") == "50\\%\\_off"


class TestSession:
    """Tests for session handling."""

    def test_writes_require_session(self, manager):
        """Without a session, writes and reads raise ValueError."""
        manager.set_session(None)

        with pytest.raises(ValueError, match="No active session"):
            manager.save_document(title="Orphan")
        with pytest.raises(ValueError, match="No active session"):
            manager.get_documents()

    def test_empty_user_id_rejected(self, manager):
        """A blank user id is not a valid session."""
        with pytest.raises(ValueError):
            manager.set_session("   ")

    def test_records_are_scoped_to_user(self, manager):
        """Another user's records are invisible."""
        doc = manager.save_document(title="Private")
        manager.set_session("user-2")

        assert manager.get_documents() == []
        assert manager.get_document(doc["id"]) is None

    def test_session_persisted(self, store, engine, temp_dir):
        """The session user is restored from the config file."""
        config = ConfigManager(temp_dir / "home")
        OfflineManager(store, engine, config_manager=config).set_session("user-9")
        engine.set_session(None)

        restored = OfflineManager(store, engine, config_manager=ConfigManager(temp_dir / "home"))

        assert restored.user_id == "user-9"


class TestWrites:
    """Tests for offline writes."""

    def test_create_is_pending_with_placeholder_id(self, manager, store):
        """A new record gets a placeholder id, pending status and a create entry."""
        doc = manager.save_document(title="Draft", content="hello", tags="a,b")

        assert is_placeholder_id(doc["id"])
        assert doc["sync_status"] == SyncStatus.PENDING
        assert doc["user_id"] == USER_ID
        assert doc["tags"] == ["a", "b"]
        item = store.queue_item_for(DOCUMENTS, doc["id"])
        assert item["operation"] == QueueOperation.CREATE.value

    def test_update_merges_given_fields(self, manager, store):
        """An update changes only the given fields."""
        store.put(
            DOCUMENTS,
            {
                "id": "d1",
                "user_id": USER_ID,
                "title": "Title",
                "content": "Body",
                "sync_status": SyncStatus.SYNCED,
            },
        )

        updated = manager.save_document(document_id="d1", content="New body")

        assert updated["title"] == "Title"
        assert updated["content"] == "New body"
        assert updated["sync_status"] == SyncStatus.PENDING
        assert store.queue_item_for(DOCUMENTS, "d1")["operation"] == QueueOperation.UPDATE.value

    def test_update_of_placeholder_stays_create(self, manager, store):
        """Editing a record not yet on the server keeps a single create entry."""
        doc = manager.save_document(title="Draft")
        manager.save_document(document_id=doc["id"], content="more")

        items = store.queue_items(USER_ID)
        assert len(items) == 1
        assert items[0]["operation"] == QueueOperation.CREATE.value
        assert items[0]["payload"]["content"] == "more"

    def test_update_of_unknown_record(self, manager):
        """Updating a missing record returns None."""
        assert manager.save_document(document_id="nope", content="x") is None

    def test_validation(self, manager):
        """Empty titles, overlong fields and unknown projects are rejected."""
        with pytest.raises(ValueError, match="title cannot be empty"):
            manager.save_document(title="  ")
        with pytest.raises(ValueError, match="maximum length"):
            manager.save_document(title="x" * (OfflineManager.MAX_TITLE_LENGTH + 1))
        with pytest.raises(ValueError, match="Project not found"):
            manager.save_document(title="Doc", project_id="missing")
        with pytest.raises(ValueError):
            manager.save_standard_info(title="No category", content="c")

    def test_knowledge_base_entry(self, manager):
        """Knowledge-base entries carry a category and keep existing embeddings."""
        entry = manager.save_standard_info(title="Style", content="Use tabs", category="guides")
        manager.store.put(STANDARD_INFO, {**entry, "embedding": [0.1, 0.2]})

        updated = manager.save_standard_info(entry_id=entry["id"], content="Use spaces")

        assert updated["category"] == "guides"
        assert updated["embedding"] == [0.1, 0.2]

    def test_soft_delete_hides_record(self, manager, store):
        """A deleted record stays stored until sync but is not readable."""
        doc = manager.save_document(title="Temp")

        assert manager.delete_document(doc["id"]) is True

        assert manager.get_document(doc["id"]) is None
        assert store.get(DOCUMENTS, doc["id"])["deleted_at"] is not None
        assert store.queue_item_for(DOCUMENTS, doc["id"])["operation"] == QueueOperation.DELETE.value
        assert manager.delete_document(doc["id"]) is False

    def test_delete_project_with_documents(self, manager):
        """A project with documents is only deleted with cascade."""
        project = manager.save_project(name="P")
        manager.save_document(title="D", project_id=project["id"])

        with pytest.raises(ValueError, match="cascade"):
            manager.delete_project(project["id"])

        assert manager.delete_project(project["id"], cascade=True) is True
        assert manager.get_projects() == []
        assert manager.get_documents() == []


class TestReads:
    """Tests for local reads."""

    def test_filters(self, manager):
        """Documents filter by project; entries filter by category."""
        project = manager.save_project(name="P")
        manager.save_document(title="In project", project_id=project["id"])
        manager.save_document(title="Loose")
        manager.save_standard_info(title="A", content="a", category="guides")
        manager.save_standard_info(title="B", content="b", category="faq")

        assert [d["title"] for d in manager.get_documents(project["id"])] == ["In project"]
        assert len(manager.get_documents()) == 2
        assert [e["title"] for e in manager.get_standard_info("faq")] == ["B"]
        assert manager.get_categories() == ["faq", "guides"]

    def test_search_is_case_insensitive(self, manager):
        """Search matches titles and content regardless of case."""
        manager.save_document(title="Offline Sync", content="queue details")
        manager.save_document(title="Other", content="Mentions SYNC too")
        manager.save_document(title="Unrelated", content="nothing")

        assert len(manager.search_documents("sync")) == 2

    def test_search_treats_wildcards_literally(self, manager):
        """Percent and underscore in a query match literally."""
        manager.save_standard_info(title="100% done", content="x", category="c")
        manager.save_standard_info(title="1000 done", content="x", category="c")

        assert [e["title"] for e in manager.search_standard_info("100%")] == ["100% done"]


class TestSyncFacade:
    """Tests for sync operations exposed by the manager."""

    @pytest.mark.asyncio
    async def test_sync_records_last_sync(self, store, engine, temp_dir):
        """A successful sync is remembered in the config file."""
        config = ConfigManager(temp_dir / "home")
        manager = OfflineManager(store, engine, config_manager=config)
        manager.save_document(title="One")

        result = await manager.sync()

        assert result.created == 1
        assert config.get_last_sync() is not None
        assert manager.last_sync() == config.get_last_sync()

    @pytest.mark.asyncio
    async def test_check_connectivity_without_probe(self, manager, observer):
        """A gateway without a probe reports the observer's state."""
        assert await manager.check_connectivity() is True

    @pytest.mark.asyncio
    async def test_failed_items_and_retry(self, manager, gateway):
        """Failed queue entries are listed and can be reset."""
        from copytab.errors import GatewayUnreachable

        manager.save_document(title="Flaky")
        gateway.failures[("create", DOCUMENTS, "Flaky")] = GatewayUnreachable("offline")
        await manager.sync()

        failed = manager.failed_items()
        assert len(failed) == 1
        assert failed[0]["last_error"].endswith("offline")

        assert manager.retry_failed() == 1
        assert manager.failed_items() == []
        assert manager.get_documents()[0]["sync_status"] == SyncStatus.PENDING

    def test_clear_all_offline_data(self, manager, store):
        """Clearing removes records, queue and cache."""
        manager.save_project(name="P")
        store.set_cache("k", 1)

        manager.clear_all_offline_data()

        assert store.query(PROJECTS) == []
        assert store.queue_items() == []
        assert store.cache_counts()["total"] == 0


class TestCompletionFacade:
    """Tests for completions through the manager."""

    @pytest.mark.asyncio
    async def test_complete_uses_cache(self, store, engine):
        """Completions go through the cache."""

        class Client:
            calls = 0

            async def complete(self, request, user_id=None):
                Client.calls += 1
                return CompletionResponse(text=f"for {user_id}")

        manager = OfflineManager(store, engine, completion=CompletionCache(store, Client()))
        manager.set_session(USER_ID)
        request = CompletionRequest(prompt="p")

        first = await manager.complete(request)
        await manager.complete(request)

        assert first.text == f"for {USER_ID}"
        assert Client.calls == 1
        assert manager.cache_stats()["completions"]["total"] == 1

    @pytest.mark.asyncio
    async def test_complete_without_backend(self, manager):
        """Without a completion backend, complete raises ValueError."""
        with pytest.raises(ValueError, match="No completion backend"):
            await manager.complete(CompletionRequest(prompt="p"))
