"""Surface factory: picks the adapter for an endpoint address."""

import logging

from chat_relay.errors import ChannelError, ConfigurationError
from chat_relay.surfaces.api import ApiSurface
from chat_relay.surfaces.base import BaseSurface
from chat_relay.surfaces.terminal import TerminalSurface

logger = logging.getLogger(__name__)


def create_surface(address: str) -> BaseSurface:
    """``http(s)://.../terminals/<id>`` -> ApiSurface, anything else -> TerminalSurface."""
    try:
        if address.startswith(("http://", "https://")):
            return ApiSurface(address)
        return TerminalSurface(address)
    except ValueError as e:
        raise ConfigurationError(str(e))


async def endpoint_exists(address: str) -> bool:
    """Resolve an endpoint address; False when it is malformed or gone."""
    try:
        surface = create_surface(address)
    except ConfigurationError as e:
        logger.warning(f"Cannot resolve endpoint {address}: {e}")
        return False
    try:
        return await surface.exists()
    except ChannelError as e:
        logger.warning(f"Cannot reach endpoint {address}: {e}")
        return False
    finally:
        await surface.close()
