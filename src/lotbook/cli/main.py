"""lotbook CLI main entry point."""

import click

from lotbook import __version__
from lotbook.cli.commands import positions_command, replay_command


@click.group()
@click.version_option(version=__version__)
def main():
    """lotbook - Lot-based position and P&L accounting"""
    pass


# Register commands
main.add_command(replay_command)
main.add_command(positions_command)


if __name__ == "__main__":
    main()
