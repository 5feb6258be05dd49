"""Snapshot and backup commands."""

import click

from chat_relay.cli.options import run_offline, state_dir_option


@click.command()
@state_dir_option
def snapshots(state_dir):
    """List saved snapshots, newest first."""
    items = run_offline(state_dir, lambda controller: controller.get_snapshots())
    if not items:
        click.echo("No snapshots")
        return
    for snapshot in items:
        description = f" - {snapshot.description}" if snapshot.description else ""
        click.echo(
            f"{snapshot.id}  {snapshot.timestamp.isoformat()}  "
            f"{snapshot.session_id}  {snapshot.topic}{description}"
        )


@click.command(name="delete-snapshot")
@click.argument("snapshot_id")
@state_dir_option
def delete_snapshot(snapshot_id, state_dir):
    """Delete a snapshot."""
    run_offline(state_dir, lambda controller: controller.delete_snapshot(snapshot_id))
    click.echo(f"Deleted snapshot {snapshot_id}")


@click.command()
@state_dir_option
def backups(state_dir):
    """List backups, newest first."""
    items = run_offline(state_dir, lambda controller: controller.get_backups())
    if not items:
        click.echo("No backups")
        return
    for backup in items:
        click.echo(backup.timestamp.isoformat())


@click.command()
@state_dir_option
def backup(state_dir):
    """Back up snapshots, conversation log and stats."""
    created = run_offline(state_dir, lambda controller: controller.create_backup())
    click.echo(f"Created backup {created.timestamp.isoformat()}")


@click.command(name="restore-backup")
@click.argument("timestamp")
@state_dir_option
def restore_backup(timestamp, state_dir):
    """Replace snapshots, conversation log and stats with a backup."""
    run_offline(state_dir, lambda controller: controller.restore_backup(timestamp))
    click.echo(f"Restored backup {timestamp}")
