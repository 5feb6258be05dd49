"""Recovery subsystem: periodic tasks, the stall watchdog and the endpoint health monitor."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from chat_relay import constants
from chat_relay.errors import ChatRelayError, EndpointLostError
from chat_relay.models.controller_state import ControllerState
from chat_relay.services.state_machine import is_stalled
from chat_relay.surfaces.manager import endpoint_exists

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped.

    Relay errors raised by the callback are logged and the loop keeps going.
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[object]], name: str):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> None:
        task, self._task = self._task, None
        # Stopped from inside its own callback: the loop exits on its next check
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._task is not asyncio.current_task():
                return
            try:
                await self.callback()
            except ChatRelayError as e:
                logger.error(f"{self.name} failed: {e}")


class Watchdog:
    """Stops a RUNNING session that made no progress for ``stall_timeout`` seconds."""

    def __init__(
        self,
        state: ControllerState,
        on_stall: Callable[[], Awaitable[None]],
        interval: float = constants.WATCHDOG_INTERVAL,
        stall_timeout: float = constants.STALL_TIMEOUT,
    ):
        self.state = state
        self.on_stall = on_stall
        self.stall_timeout = stall_timeout
        self._task = PeriodicTask(interval, self.check, "watchdog")

    @property
    def armed(self) -> bool:
        return self._task.running

    def arm(self) -> None:
        self._task.start()

    def disarm(self) -> None:
        self._task.stop()

    async def check(self) -> bool:
        if not is_stalled(self.state, self.stall_timeout):
            return False
        logger.warning(f"No reply for over {self.stall_timeout:.0f}s, conversation stalled")
        await self.on_stall()
        return True


class HealthMonitor:
    """Verifies that the configured endpoints still exist.

    A missing endpoint is reported through ``on_lost``; after
    ``max_failures`` consecutive failed checks ``on_disable`` is called.
    A passing check resets the failure count and the backoff state.
    """

    def __init__(
        self,
        state: ControllerState,
        addresses: Callable[[], List[str]],
        on_lost: Callable[[EndpointLostError], Awaitable[None]],
        on_disable: Callable[[], Awaitable[None]],
        check_endpoint: Callable[[str], Awaitable[bool]] = endpoint_exists,
        interval: float = constants.HEALTH_CHECK_INTERVAL,
        max_failures: int = constants.MAX_HEALTH_FAILURES,
    ):
        self.state = state
        self.addresses = addresses
        self.on_lost = on_lost
        self.on_disable = on_disable
        self.check_endpoint = check_endpoint
        self.max_failures = max_failures
        self._task = PeriodicTask(interval, self.check, "health-check")

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    async def _verify(self) -> None:
        missing = [a for a in self.addresses() if not await self.check_endpoint(a)]
        if missing:
            raise EndpointLostError(f"Endpoint(s) no longer present: {', '.join(missing)}")

    async def check(self) -> bool:
        if not self.addresses():
            return True
        try:
            await self._verify()
        except EndpointLostError as e:
            self.state.health_failures += 1
            logger.warning(
                f"Health check failed ({self.state.health_failures}/{self.max_failures}): {e}"
            )
            if self.state.session is not None:
                await self.on_lost(e)
            if self.state.health_failures >= self.max_failures and self.state.enabled:
                logger.error("Too many failed health checks, disabling chat relay")
                await self.on_disable()
            return False

        if self.state.health_failures:
            logger.info("Health check passed, endpoints are back")
        self.state.health_failures = 0
        self.state.backoff.reset()
        return True
