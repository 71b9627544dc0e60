"""Slash command for runtime status."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich

SECTION_ALIASES: Dict[str, Sequence[str]] = {
    "info": ("info", "summary"),
    "diagnostics": ("diagnostics", "diag", "diags"),
    "store": ("store", "entities", "sync"),
}
DEFAULT_MAX_ROWS = 5


def _resolve_sections(args: Iterable[str]) -> Tuple[List[str], bool]:
    """Return sections to render and whether all rows should be shown."""

    normalized = [arg.strip().lower() for arg in args]
    show_all = any(arg in {"--all", "-a", "all"} for arg in normalized)

    requested: List[str] = []
    for section, aliases in SECTION_ALIASES.items():
        if any(arg in aliases for arg in normalized):
            requested.append(section)

    if not requested:
        requested = list(SECTION_ALIASES.keys())

    return requested, show_all


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    config = context.config
    studio = context.studio
    sections, show_all = _resolve_sections(args)

    def _render_summary(console: Console) -> None:
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Home", str(config.home_dir))
        info.add_row("Status", config.status)
        info.add_row("Config files", str(len(config.files_loaded)))
        info.add_row("Log path", str(config.log_path or "(not initialized)"))
        if studio is not None:
            info.add_row("Store", str(studio.db.path))
            state = studio.monitor.current()
            info.add_row("Network", f"{state.connection.value} ({state.quality.value})")

        console.print(
            Panel(
                info,
                title="Runtime Status",
                border_style="green",
                padding=(0, 1),
            )
        )

    def _render_diagnostics(console: Console) -> None:
        rows = [
            (diag.level.upper(), diag.message, str(diag.source or config.home_dir))
            for diag in config.diagnostics
        ]
        if not rows:
            console.print(Panel("[green]No diagnostics reported.", title="Diagnostics", border_style="red"))
            return

        diag_table = Table(
            show_header=True,
            header_style="bold red",
            box=box.SIMPLE,
            pad_edge=False,
        )
        diag_table.add_column("Lvl", style="red", no_wrap=True)
        diag_table.add_column("Message", overflow="fold", ratio=2)
        diag_table.add_column("Source", overflow="fold", ratio=2)

        max_rows = len(rows) if show_all else DEFAULT_MAX_ROWS
        for row in rows[:max_rows]:
            diag_table.add_row(*row)

        console.print(
            Panel(diag_table, title="Diagnostics", border_style="red", padding=(0, 1))
        )
        if len(rows) > max_rows:
            console.print(
                f"\n[dim]Showing {max_rows}/{len(rows)}. "
                "Use '/status diagnostics --all' for the full list.[/dim]"
            )

    def _render_store(console: Console) -> None:
        if studio is None:
            console.print(Panel("[yellow]Store not open.", title="Entities", border_style="blue"))
            return

        counts = studio.store.status_counts()
        queue = studio.queue.stats()
        table = Table(show_header=True, header_style="bold blue", box=box.SIMPLE, pad_edge=False)
        table.add_column("Sync status", style="cyan", no_wrap=True)
        table.add_column("Entities", justify="right")
        for status, count in counts.items():
            table.add_row(status, str(count))
        console.print(Panel(table, title="Entities", border_style="blue", padding=(0, 1)))
        console.print(
            f"Queue: {queue['pending']} pending, {queue['syncing']} syncing, "
            f"{queue['failed']} failed, {queue['blocked']} blocked"
        )

    renderers = {
        "info": _render_summary,
        "diagnostics": _render_diagnostics,
        "store": _render_store,
    }

    def _render(console: Console) -> None:
        for section in sections:
            renderers[section](console)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show home, configuration diagnostics, and entity sync counts.",
    handler=_handler,
)
