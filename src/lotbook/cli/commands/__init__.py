"""Commands __init__ - exports all commands."""

from lotbook.cli.commands.positions import positions_command
from lotbook.cli.commands.replay import replay_command

__all__ = ["positions_command", "replay_command"]
