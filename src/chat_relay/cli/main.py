"""Main CLI entry point for chat-relay."""

import click

from chat_relay.cli.commands.archive import (
    backup,
    backups,
    delete_snapshot,
    restore_backup,
    snapshots,
)
from chat_relay.cli.commands.run import run
from chat_relay.cli.commands.stats import log, reset_stats, stats


@click.group()
def cli():
    """Chat Relay: turn-taking conversations between two chat agents."""
    pass


cli.add_command(run)
cli.add_command(stats)
cli.add_command(log)
cli.add_command(reset_stats)
cli.add_command(snapshots)
cli.add_command(delete_snapshot)
cli.add_command(backups)
cli.add_command(backup)
cli.add_command(restore_backup)


if __name__ == "__main__":
    cli()
