"""Tests for the command-line interface."""

import io

import pytest
from rich.console import Console

from copytab import cli
from copytab._config import ConfigManager
from copytab.local_store import LocalStore


@pytest.fixture
def cli_env(monkeypatch, temp_dir):
    """Configure settings through the environment and capture console output.

    The remote URL points at a closed local port so no command reaches a
    real server.
    """
    monkeypatch.chdir(temp_dir)
    monkeypatch.setenv("COPYTAB_REMOTE_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("COPYTAB_REMOTE_KEY", "anon-key")
    monkeypatch.setenv("COPYTAB_GENERATION_API_KEY", "gen-key")
    monkeypatch.setenv("COPYTAB_HOME", str(temp_dir / "home"))
    monkeypatch.setattr(cli, "configure_logging", lambda verbose: None)

    import copytab.output as output_module

    buffer = io.StringIO()
    test_console = Console(file=buffer, width=120)
    monkeypatch.setattr(output_module, "console", test_console)
    monkeypatch.setattr(cli, "console", test_console)
    return buffer


@pytest.fixture
def session(temp_dir):
    """Persist an active session user in the data directory."""
    ConfigManager(temp_dir / "home").set_session_user("user-1")
    return "user-1"


class TestConfiguration:
    """Tests for startup configuration handling."""

    def test_missing_settings(self, cli_env, monkeypatch):
        """Missing required settings exit with 1 and name the variable."""
        monkeypatch.delenv("COPYTAB_REMOTE_URL")

        assert cli.main(["status"]) == 1
        assert "COPYTAB_REMOTE_URL" in cli_env.getvalue()

    def test_no_command_prints_help(self, cli_env, capsys):
        """Without a command, help is printed."""
        assert cli.main([]) == 0
        assert "usage: copytab" in capsys.readouterr().out


class TestCommands:
    """Tests for individual commands."""

    def test_commands_require_session(self, cli_env):
        """Record commands fail without an active session."""
        assert cli.main(["doc", "list"]) == 1
        assert "No active session" in cli_env.getvalue()

    def test_session_show(self, cli_env, session):
        """The persisted session user is shown."""
        assert cli.main(["session", "show"]) == 0
        assert "user-1" in cli_env.getvalue()

    def test_doc_add_list_show(self, cli_env, session, temp_dir):
        """A document added offline is listed and shown."""
        assert cli.main(["doc", "add", "--title", "Offline notes", "--content", "Body"]) == 0
        with LocalStore(temp_dir / "home" / "offline.db") as store:
            [document] = store.query("documents", "user-1")

        assert cli.main(["doc", "list"]) == 0
        assert cli.main(["doc", "show", document["id"]]) == 0

        output = cli_env.getvalue()
        assert "Document saved offline" in output
        assert "Offline notes" in output
        assert "pending" in output

    def test_doc_edit_requires_changes(self, cli_env, session):
        """Editing without any field is an error."""
        assert cli.main(["doc", "edit", "temp_x"]) == 1
        assert "Nothing to update" in cli_env.getvalue()

    def test_doc_add_from_file(self, cli_env, session, temp_dir):
        """Content can be read from a file."""
        source = temp_dir / "note.md"
        source.write_text("# From file")

        assert cli.main(["doc", "add", "--title", "File", "--file", str(source)]) == 0
        with LocalStore(temp_dir / "home" / "offline.db") as store:
            assert store.query("documents")[0]["content"] == "# From file"

    def test_kb_add_and_search(self, cli_env, session):
        """Knowledge-base entries are searchable offline."""
        args = ["kb", "add", "--title", "Tabs", "--content", "Use tabs", "--category", "style"]
        assert cli.main(args) == 0
        assert cli.main(["kb", "search", "TABS"]) == 0

        assert "Entries (1)" in cli_env.getvalue()

    def test_project_delete_unknown(self, cli_env, session):
        """Deleting an unknown project fails."""
        assert cli.main(["project", "delete", "nope"]) == 1
        assert "Project not found" in cli_env.getvalue()

    def test_status(self, cli_env, session):
        """Status prints sync statistics."""
        assert cli.main(["project", "add", "Research"]) == 0
        assert cli.main(["status"]) == 0

        output = cli_env.getvalue()
        assert "Sync Status" in output
        assert "1 outstanding" in output

    def test_cache_stats(self, cli_env, session):
        """Cache statistics cover all entries and completions."""
        assert cli.main(["cache", "stats"]) == 0
        assert "completions: total" in cli_env.getvalue()

    def test_reset_force(self, cli_env, session, temp_dir):
        """Reset with --force deletes offline data without asking."""
        cli.main(["doc", "add", "--title", "Gone soon"])

        assert cli.main(["reset", "--force"]) == 0
        with LocalStore(temp_dir / "home" / "offline.db") as store:
            assert store.query("documents") == []

    def test_reset_aborted(self, cli_env, session, monkeypatch):
        """Reset without confirmation keeps the data."""
        cli.main(["doc", "add", "--title", "Kept"])
        monkeypatch.setattr("builtins.input", lambda: "n")

        assert cli.main(["reset"]) == 0
        assert "Aborted" in cli_env.getvalue()
        assert "1 local change(s)" in cli_env.getvalue()

    def test_sync_unreachable(self, cli_env, session):
        """Sync reports an unreachable remote store and keeps changes queued."""
        cli.main(["doc", "add", "--title", "Queued"])

        assert cli.main(["sync"]) == 1
        assert "unreachable" in cli_env.getvalue()
