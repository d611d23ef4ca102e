"""Terminal output formatting with rich."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from copytab.utils import create_brief, parse_timestamp

if TYPE_CHECKING:
    from copytab._sync import SyncResult, SyncState, SyncStats

# Global console instance - auto-detects TTY
console = Console()

STATUS_STYLES = {
    "synced": "green",
    "pending": "yellow",
    "error": "red",
}


def print_error(message: str) -> None:
    """Print error message in red."""
    console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print success message in green."""
    console.print(f"[green]{message}[/green]")


def print_warning(message: str) -> None:
    """Print warning message in yellow."""
    console.print(f"[yellow]{message}[/yellow]")


def format_sync_status(status: str) -> Text:
    """Format a record's sync status with color.

    Args:
        status: Status value (synced, pending or error)

    Returns:
        Rich Text object with colored status
    """
    value = getattr(status, "value", status)
    return Text(value, style=STATUS_STYLES.get(value, "white"))


def format_timestamp(value: str | None) -> str:
    """Shorten an ISO timestamp for display."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return value or "never"
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def print_content_block(content: str, language: str = "markdown") -> None:
    """Print syntax-highlighted content.

    Args:
        content: Text to display
        language: Lexer for highlighting
    """
    syntax = Syntax(content, language, theme="monokai", line_numbers=False, word_wrap=True)
    console.print(syntax)


def create_stats_table(title: str = "Sync Statistics") -> Table:
    """Create a styled table for statistics.

    Args:
        title: Table title

    Returns:
        Rich Table object
    """
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    return table


def _tag_markup(item: dict) -> str:
    tags = item.get("tags") or []
    # Escape brackets for Rich markup - use \[ to display literal [
    return f" [cyan]\\[{', '.join(tags)}][/cyan]" if tags else ""


def _status_markup(item: dict) -> str:
    status = getattr(item.get("sync_status"), "value", item.get("sync_status")) or ""
    style = STATUS_STYLES.get(status, "white")
    return f" [{style}]({status})[/{style}]" if status else ""


def print_list_item(item: dict, label_field: str = "title") -> None:
    """Print a record summary line and a content preview (for list commands).

    Args:
        item: Record dictionary
        label_field: Field shown as the record's name
    """
    label = item.get(label_field) or "(untitled)"
    group = item.get("category") or item.get("project_id")
    group_str = f" [magenta]({group})[/magenta]" if group else ""
    console.print(
        f"[dim]{item['id']}[/dim]: [bold]{label}[/bold]{_tag_markup(item)}{group_str}"
        f"{_status_markup(item)}"
    )
    if item.get("content"):
        preview = create_brief(" ".join(item["content"].split()), 100)
        console.print(f"  [dim]{escape(preview)}[/dim]")


def print_document(item: dict, include_content: bool = True) -> None:
    """Print a document or knowledge-base entry.

    Args:
        item: Record dictionary with id, title, content and tags
        include_content: Whether to display the full content
    """
    title_line = Text(item.get("title") or "(untitled)", style="bold")
    title_line.append(" ")
    title_line.append(format_sync_status(item["sync_status"]))
    console.print(title_line)

    console.print(f"  ID: [dim]{item['id']}[/dim]")
    if item.get("project_id"):
        console.print(f"  Project: [magenta]{item['project_id']}[/magenta]")
    if item.get("category"):
        console.print(f"  Category: [magenta]{item['category']}[/magenta]")
    if item.get("tags"):
        console.print(f"  Tags: [cyan]{', '.join(item['tags'])}[/cyan]")
    console.print(f"  Updated: [dim]{format_timestamp(item.get('local_updated_at'))}[/dim]")

    if include_content and item.get("content"):
        console.print()
        print_content_block(item["content"])

    console.print()


def print_sync_result(result: SyncResult) -> None:
    """Print the outcome of a sync cycle."""
    table = create_stats_table("Sync Result")
    table.add_row("Pushed", str(result.pushed))
    table.add_row("Created", str(result.created))
    table.add_row("Deleted", str(result.deleted))
    table.add_row("Pulled", str(result.pulled))
    table.add_row("Cache entries evicted", str(result.evicted))
    if result.failed:
        table.add_row("Failed", Text(str(result.failed), style="red"))
    if result.skipped_parked:
        table.add_row("Skipped (retry limit)", Text(str(result.skipped_parked), style="yellow"))
    console.print(table)

    for error in result.errors:
        console.print(f"  [red]x[/red] {error}")


def print_sync_stats(stats: SyncStats, state: SyncState | None = None) -> None:
    """Print per-table sync statistics.

    Args:
        stats: Computed statistics
        state: Optional engine state for connectivity and last error
    """
    table = Table(title="Sync Status")
    table.add_column("Table", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Synced", justify="right", style="green")
    table.add_column("Pending", justify="right", style="yellow")
    table.add_column("Error", justify="right", style="red")
    for name, counts in stats.tables.items():
        table.add_row(
            name,
            str(counts.total),
            str(counts.synced),
            str(counts.pending),
            str(counts.error),
        )
    console.print(table)

    console.print(f"Queue: [bold]{stats.queue_length}[/bold] outstanding", end="")
    if stats.parked:
        console.print(f", [red]{stats.parked} at retry limit[/red]", end="")
    console.print()
    console.print(f"Last sync: [dim]{format_timestamp(stats.last_sync_at)}[/dim]")

    if state is not None:
        online = "[green]online[/green]" if state.is_online else "[red]offline[/red]"
        console.print(f"Network: {online}")
        if state.sync_error:
            console.print(f"Last error: [red]{state.sync_error}[/red]")
