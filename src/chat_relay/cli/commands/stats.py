"""Stats and conversation log commands."""

import json

import click

from chat_relay.cli.options import run_offline, state_dir_option


@click.command()
@state_dir_option
def stats(state_dir):
    """Show relay statistics."""
    report = run_offline(state_dir, lambda controller: controller.get_stats())
    click.echo(json.dumps(report, indent=2))


@click.command(name="reset-stats")
@state_dir_option
def reset_stats(state_dir):
    """Reset relay statistics."""
    run_offline(state_dir, lambda controller: controller.reset_stats())
    click.echo("Statistics reset")


@click.command()
@click.option("--limit", type=int, default=20, show_default=True, help="Number of entries")
@click.option("--session", "session_id", help="Only entries of this session")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON entries")
@state_dir_option
def log(limit, session_id, as_json, state_dir):
    """Show the conversation log."""
    entries = run_offline(state_dir, lambda controller: controller.get_conversation_log())
    if session_id:
        entries = [e for e in entries if e.session_id == session_id]
    entries = entries[-limit:] if limit > 0 else entries

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    if not entries:
        click.echo("No conversation log entries")
        return
    for entry in entries:
        speaker = "topic" if entry.speaker_index is None else f"endpoint-{entry.speaker_index}"
        click.echo(f"[{entry.timestamp.isoformat()}] {entry.session_id} {speaker}: {entry.content}")