"""Endpoint agent: drives one endpoint surface on behalf of the controller.

The agent answers controller commands (``submit``, ``checkAlive``,
``reset``, ``debugInfo``) and emits events keyed by its identity. It never
touches the conversation session or persisted state.
"""

import logging
from typing import Any, Callable, Dict, Optional

from chat_relay.agents.change_source import ChangeSource, PollingChangeSource
from chat_relay.agents.detector import ResponseCompletionDetector
from chat_relay.errors import ChannelError, RelayStateError, SurfaceNotFound
from chat_relay.models.agent import AgentEvent, AgentEventType, ConnectionState
from chat_relay.models.config import RelayConfig
from chat_relay.surfaces.base import BaseSurface
from chat_relay.utils.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

Emit = Callable[[AgentEvent], None]

TIMEOUT_REASON = "timeout"


class EndpointAgent:
    def __init__(
        self,
        agent_id: str,
        surface: BaseSurface,
        emit: Emit,
        config: Optional[RelayConfig] = None,
        source: Optional[ChangeSource] = None,
    ):
        self.agent_id = agent_id
        self.surface = surface
        self.emit = emit
        self.config = config or RelayConfig()
        self.sequence_id = 0
        self.detector = ResponseCompletionDetector(
            source or PollingChangeSource(surface, self.config.change_poll_interval),
            on_reply=self._on_reply,
            on_timeout=self._on_timeout,
            on_lost=self._on_lost,
            stability_window=self.config.stability_window,
            force_timeout=self.config.force_timeout,
            response_timeout=self.config.response_timeout,
            min_reply_length=self.config.min_reply_length,
        )
        self.backoff = ExponentialBackoff(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            max_retries=self.config.backoff_max_retries,
            rate_limit_delay=self.config.rate_limit_delay,
        )

    @property
    def address(self) -> str:
        return self.surface.address

    async def handle(
        self, command: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Dispatch one controller command and return its acknowledgement."""
        payload = payload or {}
        if command == "submit":
            return await self.submit(payload.get("text", ""))
        if command == "checkAlive":
            return await self.check_alive()
        if command == "reset":
            self.reset()
            return {"success": True}
        if command == "debugInfo":
            return await self.debug_info()
        raise ValueError(f"Unknown command: {command}")

    async def submit(self, text: str) -> Dict[str, Any]:
        if not self.detector.at_rest:
            raise RelayStateError(
                f"{self.agent_id} is still waiting for a reply ({self.detector.state.value})"
            )
        if not text:
            raise ValueError("Cannot submit an empty message")

        try:
            probe = await self.backoff.run(
                self.surface.locate_input, label=f"Locating input on {self.agent_id}"
            )
            baseline = await self.surface.read_reply()
        except (SurfaceNotFound, ChannelError) as e:
            return self._send_failed(str(e))

        logger.debug(f"{self.agent_id}: input located via {probe}")
        self.detector.begin(baseline)
        try:
            await self.surface.write_input(text)
            await self.surface.submit()
        except (SurfaceNotFound, ChannelError) as e:
            self.detector.reset()
            return self._send_failed(str(e))
        except BaseException:
            # Includes cancellation by a channel timeout
            self.detector.reset()
            raise

        self.detector.observe()
        logger.info(f"{self.agent_id}: submitted {len(text)} chars")
        return {"success": True}

    async def check_alive(self) -> Dict[str, Any]:
        try:
            alive = await self.surface.exists()
        except ChannelError as e:
            logger.warning(f"{self.agent_id}: liveness check failed: {e}")
            alive = False
        return {"alive": alive, "identity": self.agent_id}

    def reset(self) -> None:
        if not self.detector.at_rest:
            logger.info(f"{self.agent_id}: resetting detector from {self.detector.state.value}")
        self.detector.reset()

    async def debug_info(self) -> Dict[str, Any]:
        info = await self.surface.debug_info()
        info.update(
            {
                "identity": self.agent_id,
                "detector_state": self.detector.state.value,
                "last_text_length": len(self.detector.last_text),
                "sequence_id": self.sequence_id,
            }
        )
        return info

    async def close(self, remove_endpoint: bool = False) -> None:
        self.detector.reset()
        await self.surface.close(remove_endpoint)

    def _send_failed(self, reason: str) -> Dict[str, Any]:
        logger.error(f"{self.agent_id}: send failed: {reason}")
        self.emit(
            AgentEvent(type=AgentEventType.SEND_ERROR, agent_id=self.agent_id, reason=reason)
        )
        return {"success": False, "reason": reason}

    def _on_reply(self, text: str, forced: bool, from_timeout: bool) -> None:
        self.sequence_id += 1
        logger.info(
            f"{self.agent_id}: reply #{self.sequence_id} observed "
            f"({len(text)} chars, forced={forced}, from_timeout={from_timeout})"
        )
        self.emit(
            AgentEvent(
                type=AgentEventType.REPLY_OBSERVED,
                agent_id=self.agent_id,
                text=text,
                forced=forced,
                from_timeout=from_timeout,
                sequence_id=self.sequence_id,
            )
        )

    def _on_timeout(self, message: str) -> None:
        logger.warning(f"{self.agent_id}: {message}")
        self.emit(
            AgentEvent(
                type=AgentEventType.RESPONSE_ERROR, agent_id=self.agent_id, reason=TIMEOUT_REASON
            )
        )

    def _on_lost(self) -> None:
        self.emit(
            AgentEvent(
                type=AgentEventType.CONNECTION_STATUS,
                agent_id=self.agent_id,
                connection=ConnectionState.OFFLINE,
            )
        )
