"""Slash command for browsing and adding members."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..errors import InputError, StudioSyncError
from ..slash_commands import SlashCommand, SlashCommandContext, render_rich


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    if not args or args[0].lower() == "list":
        return _list_members(context, args[1:] if args else [])

    subcommand = args[0].lower()
    if subcommand == "add":
        return _add_member(context, args[1:])
    return "[members] Usage: /members [list [search]] | /members add <first> <last> <email> [phone]"


def _list_members(context: SlashCommandContext, args: List[str]) -> str:
    service = context.studio.members
    members = service.search(" ".join(args)) if args else service.all_members()
    if not members:
        return "[members] No members yet."

    def _render(console: Console) -> None:
        table = Table(title=f"Members ({len(members)})", show_header=True)
        table.add_column("Id", style="dim", no_wrap=True)
        table.add_column("Name", style="cyan")
        table.add_column("Email")
        table.add_column("Phone")
        table.add_column("Sync", no_wrap=True)
        for member in members:
            table.add_row(
                member.id[:8],
                member.full_name,
                member.email,
                member.phone_number or "",
                f"{member.sync_status.value} v{member.sync_version}",
            )
        console.print(table)

    return render_rich(_render)


def _add_member(context: SlashCommandContext, args: List[str]) -> str:
    if len(args) < 3:
        return "[members] Usage: /members add <first> <last> <email> [phone]"
    first, last, email = args[0], args[1], args[2]
    phone = args[3] if len(args) > 3 else None
    try:
        member = context.studio.members.create_member(first, last, email, phone)
    except (InputError, StudioSyncError) as exc:
        return f"[members] {exc}"
    return f"[members] Added {member.full_name} ({member.id[:8]}), queued for sync."


COMMAND = SlashCommand(
    name="members",
    description="List, search, or add members. Usage: /members [list|add]",
    handler=_handler,
    requires_studio=True,
)
