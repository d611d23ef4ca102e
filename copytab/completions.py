"""Shell completion helpers for the copytab CLI."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from argparse import Namespace

    from copytab.local_store import LocalStore

# Limit to keep completions fast
MAX_COMPLETIONS = 50


def _data_dir(parsed_args: Namespace) -> Path:
    home = getattr(parsed_args, "home", None) or os.environ.get("COPYTAB_HOME") or "~/.copytab"
    return Path(home).expanduser()


def _open(parsed_args: Namespace) -> tuple[LocalStore, str | None]:
    """Open the local store and read the session user without loading settings."""
    from copytab._config import ConfigManager
    from copytab.local_store import LocalStore

    data_dir = _data_dir(parsed_args)
    user_id = ConfigManager(data_dir).get_session_user()
    return LocalStore(data_dir / "offline.db").open(), user_id


def _record_id_completer(table: str):
    def completer(prefix: str, parsed_args: Namespace, **kwargs) -> list[str]:
        try:
            store, user_id = _open(parsed_args)
            try:
                records = store.query(table, user_id, include_deleted=False)
            finally:
                store.close()
            ids = [r["id"] for r in records if r["id"].startswith(prefix)]
            return ids[:MAX_COMPLETIONS]
        except Exception:
            return []

    return completer


def get_project_completer():
    """Return a completer function for project ids.

    Returns a closure that reads the active user's projects from the local
    store. Imports are deferred to avoid loading the store at module load.
    """
    return _record_id_completer("projects")


def get_document_id_completer():
    """Return a completer function for document ids."""
    return _record_id_completer("documents")


def get_kb_id_completer():
    """Return a completer function for knowledge-base entry ids."""
    return _record_id_completer("standard_info")


def get_category_completer():
    """Return a completer for knowledge-base categories."""

    def completer(prefix: str, parsed_args: Namespace, **kwargs) -> list[str]:
        try:
            store, user_id = _open(parsed_args)
            try:
                records = store.query("standard_info", user_id, include_deleted=False)
            finally:
                store.close()
            categories = {r["category"] for r in records if r.get("category")}
            return sorted(c for c in categories if c.startswith(prefix))
        except Exception:
            return []

    return completer
