"""Message channel between the controller and one endpoint agent."""

import asyncio
import logging
from typing import Any, Dict, Optional

from chat_relay.agents.endpoint_agent import EndpointAgent
from chat_relay.constants import CHANNEL_TIMEOUT
from chat_relay.errors import ChannelError, ChatRelayError

logger = logging.getLogger(__name__)


class AgentChannel:
    """Request/acknowledge round-trips to an agent, bounded by a timeout.

    Every delivery failure (timeout, agent-side error, closed channel)
    surfaces as ``ChannelError``.
    """

    def __init__(self, agent: EndpointAgent, timeout: float = CHANNEL_TIMEOUT):
        self.agent = agent
        self.timeout = timeout
        self.closed = False

    @property
    def agent_id(self) -> str:
        return self.agent.agent_id

    async def request(
        self, command: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if self.closed:
            raise ChannelError(f"Channel to {self.agent_id} is closed")
        try:
            return await asyncio.wait_for(self.agent.handle(command, payload), self.timeout)
        except asyncio.TimeoutError:
            raise ChannelError(f"{command} to {self.agent_id} timed out after {self.timeout}s")
        except (ChatRelayError, ValueError) as e:
            raise ChannelError(f"{command} to {self.agent_id} failed: {e}")

    async def close(self, remove_endpoint: bool = False) -> None:
        """Close the channel and tear the agent down; never raises."""
        if self.closed:
            return
        self.closed = True
        try:
            await self.agent.close(remove_endpoint)
        except Exception as e:
            logger.warning(f"Failed to tear down {self.agent_id}: {e}")
