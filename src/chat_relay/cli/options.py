"""Options and helpers shared by the chat-relay commands."""

import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable, Optional

import click

from chat_relay.clients.storage import JsonFileStore
from chat_relay.constants import STATE_DIR
from chat_relay.errors import ChatRelayError
from chat_relay.models.config import RelayConfig
from chat_relay.models.settings import RelaySettings
from chat_relay.services.controller import SessionController

state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=STATE_DIR,
    show_default=True,
    help="Directory holding the relay's persisted state",
)


def make_controller(state_dir: Path, settings: Optional[RelaySettings] = None) -> SessionController:
    return SessionController(
        settings or RelaySettings(), JsonFileStore(state_dir), RelayConfig.from_env()
    )


def run_offline(state_dir: Path, operation: Callable[[SessionController], Any]) -> Any:
    """Run a query or maintenance operation against the persisted state only."""

    async def _run() -> Any:
        controller = make_controller(state_dir)
        await controller.load()
        result = operation(controller)
        if inspect.isawaitable(result):
            result = await result
        return result

    try:
        return asyncio.run(_run())
    except ChatRelayError as e:
        raise click.ClickException(str(e))
