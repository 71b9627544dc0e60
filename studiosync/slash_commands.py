"""Shared slash command registry and helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
import shutil
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle

if TYPE_CHECKING:  # pragma: no cover
    from .context import StudioContext

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], str]


@dataclass
class SlashCommandContext:
    """Context passed into each slash command handler."""

    config: ConfigurationBundle
    router: "CommandRouter"
    studio: Optional["StudioContext"] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SlashCommand:
    """Metadata about a slash command."""

    name: str
    description: str
    handler: SlashCommandHandler
    requires_studio: bool = False


class CommandRouter:
    """Registry + dispatcher for slash commands."""

    def __init__(
        self,
        config: ConfigurationBundle,
        studio: Optional["StudioContext"] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.studio = studio
        self._commands: Dict[str, SlashCommand] = {}
        self.metadata = metadata or {}

    def register(self, command: SlashCommand) -> None:
        self._commands[command.name.lower()] = command

    def handle(self, command_name: str, args: List[str]) -> str:
        command = self._commands.get(command_name.lower())
        if command is None:
            return f"[router] Unknown command '/{command_name}'. Use /help to list commands."
        if command.requires_studio and self.studio is None:
            return (
                f"[router] '/{command_name}' needs an open studio store "
                f"(configuration status: {self.config.status})."
            )
        context = SlashCommandContext(
            config=self.config,
            router=self,
            studio=self.studio,
            metadata=self.metadata,
        )
        return command.handler(context, args)

    def dispatch(self, line: str) -> Optional[str]:
        """Run one input line of the form ``/name arg ...``."""
        text = line.strip()
        if not text:
            return None
        if not text.startswith("/"):
            return "[router] Commands start with '/'. Use /help to list commands."
        parts = text[1:].split()
        if not parts:
            return None
        return self.handle(parts[0], parts[1:])

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands.keys())

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]

    def get(self, command_name: str) -> Optional[SlashCommand]:
        return self._commands.get(command_name.lower())


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    """Render a help table listing slash commands."""

    def _render(console: Console) -> None:
        table = Table(title="Slash Commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Description")
        table.add_column("Store", justify="center", no_wrap=True)
        for cmd in commands:
            table.add_row(f"/{cmd.name}", cmd.description, "yes" if cmd.requires_studio else "")
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(80, 24))
    # Clamp to a reasonable minimum so Rich does not choke on ultra-small widths.
    width = max(20, terminal_size.columns)
    height = max(10, terminal_size.lines)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        height=height,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


__all__ = [
    "CommandRouter",
    "SlashCommand",
    "SlashCommandContext",
    "render_help_table",
    "render_rich",
]
