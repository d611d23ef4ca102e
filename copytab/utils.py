"""Utility functions for the offline client."""

import hashlib
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

PLACEHOLDER_PREFIX = "temp_"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Return the current UTC time in ISO 8601 format.

    All timestamps written by the client use this format so that they
    order correctly when compared as strings.
    """
    return utc_now().isoformat()


def iso_after(seconds: float, start: datetime | None = None) -> str:
    """Return the ISO timestamp ``seconds`` after ``start`` (default: now)."""
    if start is None:
        start = utc_now()
    return (start + timedelta(seconds=seconds)).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO timestamp, accepting a trailing ``Z``.

    Args:
        value: ISO 8601 string or None.

    Returns:
        Aware datetime, or None if the value is empty or unparseable.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_placeholder_id() -> str:
    """Generate a client-side id for a record not yet known to the server.

    Returns:
        A string of the form ``temp_<token>``.
    """
    return f"{PLACEHOLDER_PREFIX}{secrets.token_hex(8)}"


def is_placeholder_id(record_id: str | None) -> bool:
    """Check whether an id is a client-generated placeholder.

    A missing id counts as a placeholder: the record has never been
    assigned a server id.
    """
    return not record_id or record_id.startswith(PLACEHOLDER_PREFIX)


def create_brief(content: str, max_length: int = 200) -> str:
    """Create a brief version of content.

    Args:
        content: The full content text.
        max_length: Maximum length of the brief.

    Returns:
        Truncated content with ellipsis if needed.
    """
    if len(content) <= max_length:
        return content
    # Try to break at a word boundary
    truncated = content[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length // 2:
        truncated = truncated[:last_space]
    return truncated.rstrip() + "..."


def parse_tags(tags: str | list[str] | None) -> list[str]:
    """Parse tags from user input.

    Args:
        tags: Tags as comma-separated string, list, or None.

    Returns:
        List of normalized tag strings.
    """
    if tags is None:
        return []
    if isinstance(tags, list):
        return [t.strip().lower() for t in tags if t.strip()]
    return [t.strip().lower() for t in tags.split(",") if t.strip()]


def tags_to_json(tags: str | list[str] | None) -> str | None:
    """Convert tags to a JSON string for storage.

    Lists are stored as given (server copies must round-trip unchanged);
    comma-separated strings are parsed with :func:`parse_tags`.

    Args:
        tags: Tags in various formats.

    Returns:
        JSON array string, or None when no tag set is present.
    """
    if tags is None:
        return None
    if isinstance(tags, str):
        return json.dumps(parse_tags(tags))
    return json.dumps([str(t) for t in tags])


def json_to_tags(json_str: str | None) -> list[str]:
    """Parse JSON string back to tag list.

    Args:
        json_str: JSON array string or None.

    Returns:
        List of tags.
    """
    if not json_str:
        return []
    try:
        return json.loads(json_str)
    except json.JSONDecodeError:
        return []


def metadata_to_json(metadata: dict[str, Any] | None) -> str | None:
    """Serialize a metadata object for storage."""
    if metadata is None:
        return None
    return json.dumps(metadata, sort_keys=True, default=str)


def json_to_metadata(json_str: str | None) -> dict[str, Any] | None:
    """Parse a stored metadata object.

    Returns:
        The decoded object, or None for missing or malformed values.
    """
    if not json_str:
        return None
    try:
        value = json.loads(json_str)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def canonical_json(data: Any) -> str:
    """Serialize data deterministically (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_content_hash(data: Any) -> str:
    """Compute the SHA-256 hash of the canonical JSON form of ``data``.

    Args:
        data: Any JSON-serializable value.

    Returns:
        SHA-256 hash as hex string.
    """
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def escape_like_pattern(text: str) -> str:
    """Escape special characters for SQLite LIKE patterns.

    Args:
        text: Raw search text.

    Returns:
        Text with %, _, and \\ escaped for use in LIKE queries.
    """
    # Escape backslash first, then the LIKE wildcards
    text = text.replace("\\", "\\\\")
    text = text.replace("%", "\\%")
    text = text.replace("_", "\\_")
    return text
