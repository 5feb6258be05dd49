"""Run command: relay a conversation between two endpoints until stopped."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

from chat_relay.cli.options import make_controller, state_dir_option
from chat_relay.constants import SETTINGS_FILE
from chat_relay.errors import ChatRelayError, ConfigurationError
from chat_relay.models.session import RelayStatus
from chat_relay.models.settings import RelaySettings
from chat_relay.services.controller import SessionController

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_settings(
    settings_path: Optional[Path],
    endpoints: Tuple[str, ...],
    topic: Optional[str],
    timeout_ms: Optional[int],
    close_on_stop: bool,
) -> RelaySettings:
    """Settings file (if any) overridden by command line options."""
    if settings_path is not None:
        settings = RelaySettings.from_file(settings_path)
    elif SETTINGS_FILE.is_file():
        settings = RelaySettings.from_file(SETTINGS_FILE)
    else:
        settings = RelaySettings()

    updates: Dict[str, Any] = {}
    if endpoints:
        updates["endpoint_addresses"] = list(endpoints)
    if topic:
        updates["topic"] = topic
    if timeout_ms is not None:
        updates["timeout_ms"] = timeout_ms
    if close_on_stop:
        updates["close_on_stop"] = True
    return settings.model_copy(update=updates)


def _echo_message(message: Dict[str, Any]) -> None:
    if message["type"] == "notification":
        click.echo(f"[{message['level']}] {message['message']}", err=True)


async def _wait_until_done(controller: SessionController, stop_event: asyncio.Event) -> None:
    while not stop_event.is_set() and controller.status != RelayStatus.IDLE:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            pass


async def _run(
    controller: SessionController, resume: bool, from_snapshot: Optional[str]
) -> bool:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await controller.open()
    interrupted = False
    try:
        if from_snapshot:
            started = await controller.restore_snapshot(from_snapshot)
        elif resume and await controller.resume():
            started = True
        else:
            if resume:
                click.echo("No resumable session found, starting a new one")
            started = await controller.start()
        if not started:
            return False

        click.echo("Chat relay running, press Ctrl+C to stop")
        await _wait_until_done(controller, stop_event)
        interrupted = stop_event.is_set()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        # Interrupted sessions stay resumable with --resume
        await controller.close(preserve_session=interrupted)
    return True


@click.command()
@click.option(
    "--settings",
    "settings_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help=f"JSON settings file (default: {SETTINGS_FILE} if present)",
)
@click.option(
    "--endpoint",
    "endpoints",
    multiple=True,
    help="Endpoint address, given twice: tmux:session:window or http://host:port/terminals/<id>",
)
@click.option("--topic", help="Conversation topic sent to the first endpoint")
@click.option("--timeout-ms", type=int, help="Settle delay before the first prompt")
@click.option("--close-on-stop", is_flag=True, help="Close both endpoints when the relay stops")
@click.option("--resume", is_flag=True, help="Resume the last interrupted session if possible")
@click.option("--from-snapshot", help="Restore the given snapshot and continue from it")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
@state_dir_option
def run(
    settings_path,
    endpoints,
    topic,
    timeout_ms,
    close_on_stop,
    resume,
    from_snapshot,
    log_level,
    state_dir,
):
    """Relay a conversation between two chat agent endpoints."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    try:
        settings = build_settings(settings_path, endpoints, topic, timeout_ms, close_on_stop)
        if not from_snapshot and not resume:
            settings.require_startable(settings.topic)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    controller = make_controller(state_dir, settings)
    controller.add_listener(_echo_message)
    try:
        started = asyncio.run(_run(controller, resume, from_snapshot))
    except ChatRelayError as e:
        raise click.ClickException(str(e))
    if not started:
        raise click.ClickException("Chat relay failed to start")
