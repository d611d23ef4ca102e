"""Command-line interface for the offline document client."""

import argparse
import asyncio
import inspect
import logging
import os
import sys
from pathlib import Path

from rich.logging import RichHandler

from copytab._config import load_settings
from copytab.completion import CompletionRequest
from copytab.errors import ConfigurationError, CopytabError
from copytab.offline_manager import OfflineManager
from copytab.output import (
    console,
    create_stats_table,
    format_timestamp,
    print_document,
    print_error,
    print_list_item,
    print_success,
    print_sync_result,
    print_sync_stats,
    print_warning,
)

try:
    import argcomplete

    ARGCOMPLETE_AVAILABLE = True
except ImportError:
    ARGCOMPLETE_AVAILABLE = False

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="copytab",
        description="Offline-first documents and knowledge base",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug logging",
    )
    parser.add_argument(
        "--home",
        help="Data directory (default: $COPYTAB_HOME or ~/.copytab)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Import completers if argcomplete is available
    project_completer = None
    document_completer = None
    kb_completer = None
    category_completer = None

    if ARGCOMPLETE_AVAILABLE:
        from copytab.completions import (
            get_category_completer,
            get_document_id_completer,
            get_kb_id_completer,
            get_project_completer,
        )

        project_completer = get_project_completer()
        document_completer = get_document_id_completer()
        kb_completer = get_kb_id_completer()
        category_completer = get_category_completer()

    def complete_with(argument, completer) -> None:
        if completer:
            argument.completer = completer

    # session command
    session_parser = subparsers.add_parser("session", help="Manage the active user")
    session_sub = session_parser.add_subparsers(dest="action", required=True)
    session_set = session_sub.add_parser("set", help="Set the active user")
    session_set.add_argument("user_id", help="User id")
    session_sub.add_parser("show", help="Show the active user")
    session_sub.add_parser("clear", help="Clear the active user")

    # project command
    project_parser = subparsers.add_parser("project", help="Manage projects")
    project_sub = project_parser.add_subparsers(dest="action", required=True)
    project_add = project_sub.add_parser("add", help="Create a project")
    project_add.add_argument("name", help="Project name")
    project_add.add_argument("--description", help="Project description")
    project_add.add_argument("--tags", help="Comma-separated tags")
    project_add.add_argument("--public", action="store_true", help="Make the project public")
    project_sub.add_parser("list", help="List projects")
    project_delete = project_sub.add_parser("delete", help="Delete a project")
    complete_with(project_delete.add_argument("id", help="Project id"), project_completer)
    project_delete.add_argument(
        "--cascade",
        action="store_true",
        help="Also delete the project's documents",
    )

    # doc command
    doc_parser = subparsers.add_parser("doc", help="Manage documents")
    doc_sub = doc_parser.add_subparsers(dest="action", required=True)

    doc_add = doc_sub.add_parser("add", help="Create a document")
    doc_add.add_argument("--title", required=True, help="Document title")
    doc_add_body = doc_add.add_mutually_exclusive_group()
    doc_add_body.add_argument("--content", help="Document content")
    doc_add_body.add_argument("--file", type=Path, help="Read content from a file")
    complete_with(doc_add.add_argument("--project", help="Project id"), project_completer)
    doc_add.add_argument("--tags", help="Comma-separated tags")

    doc_edit = doc_sub.add_parser("edit", help="Update a document")
    complete_with(doc_edit.add_argument("id", help="Document id"), document_completer)
    doc_edit.add_argument("--title", help="New title")
    doc_edit_body = doc_edit.add_mutually_exclusive_group()
    doc_edit_body.add_argument("--content", help="New content")
    doc_edit_body.add_argument("--file", type=Path, help="Read new content from a file")
    complete_with(doc_edit.add_argument("--project", help="Move to project"), project_completer)
    doc_edit.add_argument("--tags", help="Replace tags (comma-separated)")

    doc_list = doc_sub.add_parser("list", help="List documents")
    complete_with(doc_list.add_argument("--project", help="Filter by project"), project_completer)

    doc_show = doc_sub.add_parser("show", help="Show a document")
    complete_with(doc_show.add_argument("id", help="Document id"), document_completer)
    doc_show.add_argument(
        "--raw",
        action="store_true",
        help="Print only the content, without formatting",
    )

    doc_delete = doc_sub.add_parser("delete", help="Delete a document")
    complete_with(doc_delete.add_argument("id", help="Document id"), document_completer)

    doc_search = doc_sub.add_parser("search", help="Search document titles and content")
    doc_search.add_argument("text", help="Text to search for")

    # kb command
    kb_parser = subparsers.add_parser("kb", help="Manage knowledge-base entries")
    kb_sub = kb_parser.add_subparsers(dest="action", required=True)
    kb_add = kb_sub.add_parser("add", help="Create an entry")
    kb_add.add_argument("--title", required=True, help="Entry title")
    kb_add_body = kb_add.add_mutually_exclusive_group(required=True)
    kb_add_body.add_argument("--content", help="Entry content")
    kb_add_body.add_argument("--file", type=Path, help="Read content from a file")
    complete_with(
        kb_add.add_argument("--category", required=True, help="Entry category"),
        category_completer,
    )
    kb_add.add_argument("--tags", help="Comma-separated tags")
    kb_list = kb_sub.add_parser("list", help="List entries")
    complete_with(kb_list.add_argument("--category", help="Filter by category"), category_completer)
    kb_search = kb_sub.add_parser("search", help="Search entry titles and content")
    kb_search.add_argument("text", help="Text to search for")
    kb_delete = kb_sub.add_parser("delete", help="Delete an entry")
    complete_with(kb_delete.add_argument("id", help="Entry id"), kb_completer)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Sync with the remote store")
    sync_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and sync periodically",
    )
    sync_parser.add_argument(
        "--interval",
        type=float,
        default=30.0,
        help="Seconds between sync attempts with --watch (default: 30)",
    )

    # status command
    subparsers.add_parser("status", help="Show sync statistics")

    # retry command
    subparsers.add_parser("retry", help="Retry records that failed to sync")

    # cache command
    cache_parser = subparsers.add_parser("cache", help="Manage the local cache")
    cache_sub = cache_parser.add_subparsers(dest="action", required=True)
    cache_sub.add_parser("stats", help="Show cache statistics")
    cache_sub.add_parser("evict", help="Remove expired entries")
    cache_sub.add_parser("clear", help="Remove all entries")

    # complete command
    complete_parser = subparsers.add_parser("complete", help="Generate text completion")
    complete_parser.add_argument("prompt", help="Prompt text")
    complete_parser.add_argument("--context", help="Surrounding text")
    complete_parser.add_argument("--language", help="Output language")
    complete_parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate")
    complete_parser.add_argument("--temperature", type=float, help="Sampling temperature")
    complete_parser.add_argument(
        "--stream",
        action="store_true",
        help="Print the completion as it is generated",
    )

    # reset command
    reset_parser = subparsers.add_parser("reset", help="Delete all offline data")
    reset_parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )

    # completions command
    completions_parser = subparsers.add_parser(
        "completions",
        help="Output shell completion script",
    )
    completions_parser.add_argument(
        "shell",
        choices=["bash", "zsh", "fish"],
        help="Shell type",
    )

    return parser


def configure_logging(verbose: bool) -> None:
    """Route log records through rich on the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )
    if not verbose:
        # Keep per-request client logs out of normal output
        logging.getLogger("httpx").setLevel(logging.WARNING)


def _read_content(args: argparse.Namespace) -> str | None:
    if getattr(args, "file", None):
        return args.file.read_text()
    return getattr(args, "content", None)


def cmd_session(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the session command."""
    if args.action == "set":
        manager.set_session(args.user_id)
        print_success(f"Active user: {args.user_id}")
    elif args.action == "clear":
        manager.set_session(None)
        print_success("Session cleared")
    elif manager.user_id:
        console.print(f"Active user: [bold]{manager.user_id}[/bold]")
    else:
        print_warning("No active session. Run: copytab session set <user-id>")
    return 0


def cmd_project(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the project command."""
    if args.action == "add":
        project = manager.save_project(
            args.name,
            description=args.description,
            is_public=args.public,
            tags=args.tags,
        )
        print_success(f"Project saved offline with ID: {project['id']}")
        return 0

    if args.action == "delete":
        if manager.delete_project(args.id, cascade=args.cascade):
            print_success(f"Deleted project: {args.id}")
            return 0
        print_error(f"Project not found: {args.id}")
        return 1

    projects = manager.get_projects()
    if not projects:
        print_warning("No projects found.")
        return 0
    console.print(f"[bold]Projects ({len(projects)}):[/bold]")
    for project in projects:
        print_list_item(project, label_field="name")
    return 0


def cmd_doc(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the doc command."""
    if args.action == "add":
        document = manager.save_document(
            title=args.title,
            content=_read_content(args),
            project_id=args.project,
            tags=args.tags,
        )
        print_success(f"Document saved offline with ID: {document['id']}")
        return 0

    if args.action == "edit":
        content = _read_content(args)
        if args.title is None and content is None and args.project is None and args.tags is None:
            print_error("Nothing to update. Provide --title, --content, --file, --project or --tags.")
            return 1
        document = manager.save_document(
            title=args.title,
            content=content,
            project_id=args.project,
            document_id=args.id,
            tags=args.tags,
        )
        if document is None:
            print_error(f"Document not found: {args.id}")
            return 1
        print_success(f"Updated document: {document['id']}")
        return 0

    if args.action == "show":
        document = manager.get_document(args.id)
        if document is None:
            print_error(f"Document not found: {args.id}")
            return 1
        if args.raw:
            print(document.get("content") or "")
        else:
            print_document(document)
        return 0

    if args.action == "delete":
        if manager.delete_document(args.id):
            print_success(f"Deleted document: {args.id}")
            return 0
        print_error(f"Document not found: {args.id}")
        return 1

    if args.action == "search":
        documents = manager.search_documents(args.text)
        if not documents:
            print_warning(f"No documents matching '{args.text}'.")
            return 0
        console.print(f"[bold]Found {len(documents)} document(s):[/bold]")
    else:
        documents = manager.get_documents(args.project)
        if not documents:
            print_warning("No documents found.")
            return 0
        console.print(f"[bold]Documents ({len(documents)}):[/bold]")
    for document in documents:
        print_list_item(document)
    return 0


def cmd_kb(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the kb command."""
    if args.action == "add":
        entry = manager.save_standard_info(
            title=args.title,
            content=_read_content(args),
            category=args.category,
            tags=args.tags,
        )
        print_success(f"Entry saved offline with ID: {entry['id']}")
        return 0

    if args.action == "delete":
        if manager.delete_standard_info(args.id):
            print_success(f"Deleted entry: {args.id}")
            return 0
        print_error(f"Entry not found: {args.id}")
        return 1

    if args.action == "search":
        entries = manager.search_standard_info(args.text)
    else:
        entries = manager.get_standard_info(args.category)
    if not entries:
        print_warning("No entries found.")
        return 0
    console.print(f"[bold]Entries ({len(entries)}):[/bold]")
    for entry in entries:
        print_list_item(entry)
    return 0


async def _sync_once(manager: OfflineManager) -> int:
    if not await manager.check_connectivity():
        print_warning("Remote store unreachable. Local changes stay queued.")
        return 1
    result = await manager.sync()
    if result is None:
        print_warning("Sync did not run (no active session or a sync is in progress).")
        return 1
    print_sync_result(result)
    state = manager.state
    if state.sync_error:
        print_error(state.sync_error)
        return 1
    if result.failed:
        print_warning(f"{result.failed} record(s) failed and will be retried on the next sync.")
    else:
        print_success("Sync complete")
    return 0


async def cmd_sync(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the sync command."""
    if not manager.user_id:
        print_error("No active session. Run: copytab session set <user-id>")
        return 1
    if not args.watch:
        return await _sync_once(manager)

    console.print(f"Syncing every {args.interval:g}s. Press Ctrl+C to stop.")
    while True:
        await _sync_once(manager)
        await asyncio.sleep(args.interval)


def cmd_status(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the status command."""
    stats = manager.sync_stats()
    print_sync_stats(stats, manager.state)
    recorded = manager.last_sync()
    if recorded and recorded != stats.last_sync_at:
        console.print(f"Last successful cycle: [dim]{format_timestamp(recorded)}[/dim]")

    failed = manager.failed_items()
    if failed:
        console.print("\n[bold]Failed records:[/bold]")
        for item in failed[:10]:
            console.print(
                f"  [dim]{item['table_name']}/{item['record_id']}[/dim] "
                f"(attempts: {item['retry_count']}): [red]{item['last_error']}[/red]"
            )
        if len(failed) > 10:
            console.print(f"  [dim]... and {len(failed) - 10} more[/dim]")
    return 0


def cmd_retry(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the retry command."""
    count = manager.retry_failed()
    if count:
        print_success(f"{count} record(s) will be retried on the next sync.")
    else:
        print_warning("No failed records.")
    return 0


def cmd_cache(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the cache command."""
    if args.action == "evict":
        print_success(f"Evicted {manager.evict_expired_cache()} expired entries.")
    elif args.action == "clear":
        print_success(f"Removed {manager.clear_cache()} entries.")
    else:
        table = create_stats_table("Cache Statistics")
        for scope, counts in manager.cache_stats().items():
            table.add_row(f"{scope}: total", str(counts["total"]))
            table.add_row(f"{scope}: expired", str(counts["expired"]))
        console.print(table)
    return 0


async def cmd_complete(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the complete command."""
    request = CompletionRequest(
        prompt=args.prompt,
        context=args.context,
        language=args.language,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
    )
    if args.stream and manager.completion is not None:
        async for chunk in manager.completion.stream(request):
            console.print(chunk, end="", markup=False, highlight=False)
        console.print()
        return 0

    response = await manager.complete(request)
    console.print(response.text, markup=False, highlight=False)
    if response.usage and args.verbose:
        console.print(f"[dim]tokens: {response.usage}[/dim]")
    return 0


def cmd_reset(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Handle the reset command."""
    if not args.force:
        stats = manager.sync_stats() if manager.user_id else None
        if stats is not None and stats.unsynced:
            print_warning(f"{stats.unsynced} local change(s) have not been synced.")
        console.print("[bold red]Delete ALL offline data?[/bold red] [y/N] ", end="")
        response = input().strip().lower()
        if response != "y":
            print_warning("Aborted.")
            return 0

    manager.clear_all_offline_data()
    print_success("All offline data deleted.")
    return 0


def cmd_completions(args: argparse.Namespace) -> int:
    """Handle the completions command."""
    if not ARGCOMPLETE_AVAILABLE:
        print_error("argcomplete is not installed.")
        console.print("Install with: [cyan]pip install 'copytab[completions]'[/cyan]")
        return 1

    shell = args.shell

    if shell == "bash":
        print("""# Add this to your ~/.bashrc:
eval "$(register-python-argcomplete copytab)"
""")
    elif shell == "zsh":
        print("""# Add this to your ~/.zshrc:
autoload -U bashcompinit
bashcompinit
eval "$(register-python-argcomplete copytab)"
""")
    elif shell == "fish":
        print("""# Run this command once:
register-python-argcomplete --shell fish copytab > ~/.config/fish/completions/copytab.fish
""")

    return 0


COMMANDS = {
    "session": cmd_session,
    "project": cmd_project,
    "doc": cmd_doc,
    "kb": cmd_kb,
    "sync": cmd_sync,
    "status": cmd_status,
    "retry": cmd_retry,
    "cache": cmd_cache,
    "complete": cmd_complete,
    "reset": cmd_reset,
}


async def run_command(args: argparse.Namespace, manager: OfflineManager) -> int:
    """Dispatch a parsed command, awaiting it when it is a coroutine."""
    handler = COMMANDS[args.command]
    try:
        if inspect.iscoroutinefunction(handler):
            return await handler(args, manager)
        return handler(args, manager)
    finally:
        await manager.aclose()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()

    # Enable argcomplete if available
    if ARGCOMPLETE_AVAILABLE:
        argcomplete.autocomplete(parser)

    args = parser.parse_args(argv)

    # Handle --no-color flag and NO_COLOR environment variable
    if args.no_color or os.environ.get("NO_COLOR"):
        console.no_color = True

    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    # Handle completions command separately (doesn't need settings)
    if args.command == "completions":
        return cmd_completions(args)

    try:
        settings = load_settings(home=args.home)
        manager = OfflineManager.from_settings(settings)
    except ConfigurationError as e:
        print_error(f"Configuration: {e}")
        console.print("Set the variables in the environment or in a .env file.")
        return 1
    except CopytabError as e:
        print_error(f"Initializing offline store: {e}")
        return 1

    try:
        return asyncio.run(run_command(args, manager))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        manager.close()
        return 130
    except (CopytabError, ValueError, OSError) as e:
        logger.debug("Command failed", exc_info=True)
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
