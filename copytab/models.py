"""Enumerations and table definitions for locally stored records."""

from enum import Enum


class SyncStatus(str, Enum):
    """Sync state of a locally stored domain record."""

    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


class QueueOperation(str, Enum):
    """Remote operation recorded in the sync queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


PROJECTS = "projects"
DOCUMENTS = "documents"
STANDARD_INFO = "standard_info"
SYNC_QUEUE = "sync_queue"
CACHE = "cache"

# Push order matters: documents reference project ids.
DOMAIN_TABLES: tuple[str, ...] = (PROJECTS, DOCUMENTS, STANDARD_INFO)
ALL_TABLES: frozenset[str] = frozenset({*DOMAIN_TABLES, SYNC_QUEUE, CACHE})

ENVELOPE_FIELDS: tuple[str, ...] = ("sync_status", "last_sync_at", "local_updated_at")

# Columns shared by every domain table, in storage order.
COMMON_FIELDS: tuple[str, ...] = (
    "id",
    "user_id",
    "is_public",
    "tags",
    "metadata",
    "created_at",
    "updated_at",
    "deleted_at",
)

# Table-specific content columns.
CONTENT_FIELDS: dict[str, tuple[str, ...]] = {
    PROJECTS: ("name", "description"),
    DOCUMENTS: ("project_id", "title", "content", "version"),
    STANDARD_INFO: ("category", "title", "content", "embedding"),
}

# Columns the client may send to the remote store on create/update.
WRITABLE_FIELDS: dict[str, tuple[str, ...]] = {
    PROJECTS: ("name", "description", "user_id", "is_public", "tags", "metadata"),
    DOCUMENTS: (
        "title",
        "content",
        "project_id",
        "user_id",
        "is_public",
        "tags",
        "metadata",
    ),
    STANDARD_INFO: (
        "title",
        "content",
        "category",
        "user_id",
        "is_public",
        "tags",
        "metadata",
        "embedding",
    ),
}

# Columns matched by free-text search.
SEARCH_FIELDS: dict[str, tuple[str, ...]] = {
    PROJECTS: ("name", "description"),
    DOCUMENTS: ("title", "content"),
    STANDARD_INFO: ("title", "content"),
}

# Columns holding JSON-encoded values.
JSON_FIELDS: frozenset[str] = frozenset({"tags", "metadata", "embedding", "extra"})


def domain_fields(table: str) -> tuple[str, ...]:
    """Return every stored column of a domain table, envelope included."""
    return COMMON_FIELDS + CONTENT_FIELDS[table] + ENVELOPE_FIELDS + ("extra",)


def writable_payload(table: str, record: dict) -> dict:
    """Extract the fields of ``record`` the remote store accepts.

    Envelope fields, the record id and soft-delete markers never leave
    the client.
    """
    return {name: record[name] for name in WRITABLE_FIELDS[table] if name in record}
