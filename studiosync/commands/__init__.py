"""Slash command registry."""

from __future__ import annotations

from .help import COMMAND as HELP_COMMAND
from .members import COMMAND as MEMBERS_COMMAND
from .status import COMMAND as STATUS_COMMAND
from .sync import COMMAND as SYNC_COMMAND

COMMANDS = [
    STATUS_COMMAND,
    HELP_COMMAND,
    SYNC_COMMAND,
    MEMBERS_COMMAND,
]

__all__ = ["COMMANDS"]
