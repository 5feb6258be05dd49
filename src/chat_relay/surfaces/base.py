"""Base surface interface: the adapter between an endpoint agent and a concrete endpoint."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from chat_relay.models.agent import Observation


class BaseSurface(ABC):
    """Abstract base class for endpoint surfaces.

    A surface knows how to find the input and submit control of one
    endpoint, how to type into it, and how to read the latest reply
    candidate and in-progress indicator. It knows nothing about turns.
    """

    def __init__(self, address: str):
        self.address = address

    @abstractmethod
    async def exists(self) -> bool:
        """Whether the endpoint is still present."""
        pass

    @abstractmethod
    async def locate_input(self) -> str:
        """Locate the input surface and submit control.

        Returns the name of the probe that matched.

        Raises:
            SurfaceNotFound: If no probe matches.
        """
        pass

    @abstractmethod
    async def write_input(self, text: str) -> None:
        """Write text into the input surface and trigger its change signalling."""
        pass

    @abstractmethod
    async def submit(self) -> None:
        """Invoke the submit control."""
        pass

    @abstractmethod
    async def observe(self) -> Observation:
        """Latest reply candidate text and whether a reply is still in progress."""
        pass

    async def read_reply(self) -> Optional[str]:
        return (await self.observe()).text

    async def debug_info(self) -> Dict[str, Any]:
        observation = await self.observe()
        return {
            "address": self.address,
            "reply_length": len(observation.text or ""),
            "loading": observation.loading,
        }

    async def close(self, remove_endpoint: bool = False) -> None:
        """Release resources; optionally remove the endpoint itself."""
        pass
