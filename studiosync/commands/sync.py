"""Slash command for inspecting and driving synchronization."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..errors import NotFoundError
from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_rich,
)

MAX_ROWS = 25


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Manage entity synchronization."""

    if not args:
        return _show_status(context)

    subcommand = args[0].lower()

    if subcommand == "status":
        return _show_status(context)
    elif subcommand == "run":
        return _run_sync(context)
    elif subcommand == "queue":
        return _show_queue(context)
    elif subcommand == "conflicts":
        return _show_conflicts(context)
    elif subcommand == "resolve":
        return _resolve(context, args[1:])
    elif subcommand == "retry":
        return _retry(context, args[1:])
    elif subcommand == "issues":
        return _show_issues(context)
    elif subcommand == "help":
        return _show_help()
    else:
        return f"[sync] Unknown subcommand '{subcommand}'. Use /sync help for usage."


def _show_status(context: SlashCommandContext) -> str:
    """Show sync status."""
    engine = context.studio.engine
    status = engine.status()
    remote = context.config.section("remote")

    def _render(console: Console) -> None:
        table = Table(title="Sync Status", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")

        table.add_row("Enabled", str(status["enabled"]))
        table.add_row("Auto sync", str(status["auto_sync"]))
        table.add_row("Background loop", "running" if status["running"] else "stopped")
        table.add_row("Engine state", status["state"])
        table.add_row("Remote", remote.get("base_url") or "(not configured)")
        table.add_row("Conflict strategy", status["strategy"])

        connectivity = status["connectivity"]
        if connectivity:
            table.add_row(
                "Network",
                f"{connectivity['connection']} ({connectivity['quality']})",
            )

        queue = status["queue"]
        table.add_row(
            "Queue",
            f"{queue['pending']} pending, {queue['failed']} failed, {queue['blocked']} blocked",
        )
        table.add_row("Conflicts", str(status["conflicts"]))
        if status["backoff_remaining"]:
            table.add_row("Backoff", f"{status['backoff_remaining']}s")

        last = status["last_result"]
        if last:
            table.add_row("Last run", last["message"] or "(no message)")

        console.print(table)

    return render_rich(_render)


def _run_sync(context: SlashCommandContext) -> str:
    """Run one sync cycle now."""
    result = context.studio.engine.run_once(force=True)

    if result.skipped:
        return f"[sync] Skipped: {result.message}"
    if result.success:
        lines = [f"[sync] Sync completed: {result.message}"]
    else:
        lines = [f"[sync] Sync interrupted: {result.message}"]
    for error in result.errors[:5]:
        lines.append(f"  ! {error}")
    return "\n".join(lines)


def _show_queue(context: SlashCommandContext) -> str:
    operations = context.studio.queue.all()
    if not operations:
        return "[sync] Queue is empty."

    def _render(console: Console) -> None:
        table = Table(title=f"Sync Queue ({len(operations)} operations)", show_header=True)
        table.add_column("Op", style="dim", no_wrap=True)
        table.add_column("Entity", style="cyan")
        table.add_column("Kind")
        table.add_column("Version", justify="right")
        table.add_column("State")
        table.add_column("Attempts", justify="right")
        table.add_column("Last error", overflow="fold")
        for op in operations[:MAX_ROWS]:
            table.add_row(
                op.op_id[:8],
                f"{op.entity_type}/{op.entity_id[:8]}",
                op.kind.value,
                str(op.sync_version),
                op.state.value,
                str(op.attempts),
                op.last_error or "",
            )
        if len(operations) > MAX_ROWS:
            console.print(f"(showing first {MAX_ROWS} of {len(operations)} operations)")
        console.print(table)

    return render_rich(_render)


def _show_conflicts(context: SlashCommandContext) -> str:
    conflicts = context.studio.engine.pending_conflicts()
    if not conflicts:
        return "[sync] No conflicts waiting for a decision."

    def _render(console: Console) -> None:
        table = Table(title="Pending Conflicts", show_header=True)
        table.add_column("Conflict", style="yellow", no_wrap=True)
        table.add_column("Entity", style="cyan")
        table.add_column("Local", overflow="fold")
        table.add_column("Remote", overflow="fold")
        for record in conflicts:
            table.add_row(
                record.conflict_id,
                f"{record.entity_type}/{record.entity_id[:8]}",
                f"v{record.local.sync_version} @ {record.local.updated_at.isoformat()}",
                f"v{record.remote.sync_version} @ {record.remote.updated_at.isoformat()}",
            )
        console.print(table)
        console.print("Resolve with: /sync resolve <conflict> local|remote")

    return render_rich(_render)


def _resolve(context: SlashCommandContext, args: List[str]) -> str:
    if len(args) != 2:
        return "[sync] Usage: /sync resolve <conflict> local|remote"
    conflict_id, choice = args[0], args[1].lower()
    try:
        record = context.studio.engine.resolve_conflict(conflict_id, choice)
    except NotFoundError as exc:
        return f"[sync] {exc}"
    except ValueError as exc:
        return f"[sync] {exc}"
    return f"[sync] Conflict {record.conflict_id} resolved: kept {record.winner} (v{record.result.sync_version})."


def _retry(context: SlashCommandContext, args: List[str]) -> str:
    op_id = args[0] if args else None
    if op_id is not None:
        matches = [op.op_id for op in context.studio.queue.failed() if op.op_id.startswith(op_id)]
        if not matches:
            return f"[sync] No failed operation matches '{op_id}'."
        op_id = matches[0]
    count = context.studio.engine.retry_failed(op_id)
    if not count:
        return "[sync] No failed operations to retry."
    return f"[sync] Queued {count} failed operation(s) for retry."


def _show_issues(context: SlashCommandContext) -> str:
    issues = context.studio.feed.recent(MAX_ROWS)
    if not issues:
        return "[sync] No sync issues reported."

    def _render(console: Console) -> None:
        table = Table(title="Recent Sync Issues", show_header=True)
        table.add_column("When", style="dim", no_wrap=True)
        table.add_column("Kind", style="red")
        table.add_column("Entity", style="cyan")
        table.add_column("Message", overflow="fold")
        for issue in reversed(issues):
            entity = f"{issue.entity_type or '-'}/{(issue.entity_id or '-')[:8]}"
            table.add_row(
                issue.timestamp.strftime("%H:%M:%S"),
                issue.display_title,
                entity,
                issue.message,
            )
        console.print(table)
        hint = issues[-1].kind.recovery_suggestion
        console.print(f"[dim]{hint}[/dim]")

    return render_rich(_render)


def _show_help() -> str:
    """Show sync command help."""
    return """[sync] Usage:
  /sync                               Show sync status
  /sync status                        Show sync status
  /sync run                           Push queued changes and pull remote ones now
  /sync queue                         List queued operations
  /sync conflicts                     List conflicts waiting for a decision
  /sync resolve <conflict> local|remote   Decide a conflict
  /sync retry [op]                    Retry failed operations
  /sync issues                        Show recent sync problems
  /sync help                          Show this help

Configuration (in $STUDIOSYNC_HOME/config):
  sync:
    enabled: true
    auto_sync: true
    min_quality: good          # none, poor, good, excellent
    conflict_strategy: last_write_wins  # field_merge, manual, local_wins, remote_wins
  remote:
    base_url: https://studio.example.com"""


COMMAND = SlashCommand(
    name="sync",
    description="Inspect and drive sync. Usage: /sync [status|run|queue|conflicts|resolve|retry|issues]",
    handler=_handler,
    requires_studio=True,
)
