"""Change sources: how an endpoint agent learns that its surface changed."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from chat_relay.constants import CHANGE_POLL_INTERVAL
from chat_relay.errors import ChannelError
from chat_relay.models.agent import Observation
from chat_relay.surfaces.base import BaseSurface

logger = logging.getLogger(__name__)

OnChange = Callable[[Observation], None]
OnLost = Callable[[], None]


class ChangeSource(ABC):
    """Delivers batches of surface changes to a single subscriber."""

    @abstractmethod
    def start(self, on_change: OnChange, on_lost: Optional[OnLost] = None) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def current(self) -> Observation:
        """The most recent observation of the surface."""
        pass


class PollingChangeSource(ChangeSource):
    """Polls ``surface.observe()`` and reports an observation whenever it differs.

    The first poll after ``start`` always reports, acting as the baseline.
    """

    def __init__(self, surface: BaseSurface, interval: float = CHANGE_POLL_INTERVAL):
        self.surface = surface
        self.interval = interval
        self._current = Observation()
        self._task: Optional[asyncio.Task] = None

    def current(self) -> Observation:
        return self._current

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, on_change: OnChange, on_lost: Optional[OnLost] = None) -> None:
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._poll(on_change, on_lost))

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _poll(self, on_change: OnChange, on_lost: Optional[OnLost]) -> None:
        previous: Optional[Observation] = None
        while True:
            try:
                observation = await self.surface.observe()
            except (ChannelError, ValueError) as e:
                logger.debug(f"Observation of {self.surface.address} failed: {e}")
                if not await self._still_exists():
                    logger.warning(f"Surface {self.surface.address} disappeared")
                    if on_lost is not None:
                        on_lost()
                    return
            else:
                self._current = observation
                if observation != previous:
                    previous = observation
                    on_change(observation)
            await asyncio.sleep(self.interval)

    async def _still_exists(self) -> bool:
        try:
            return await self.surface.exists()
        except ChannelError:
            # Unreachable is not gone; keep polling
            return True
