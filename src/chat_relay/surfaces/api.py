"""API surface: a terminal hosted by a cao-server, driven over its REST API."""

import logging
from typing import Optional, Tuple

import httpx

from chat_relay.constants import API_REQUEST_TIMEOUT
from chat_relay.errors import ChannelError, SurfaceNotFound
from chat_relay.models.agent import Observation
from chat_relay.surfaces.base import BaseSurface

logger = logging.getLogger(__name__)

READY_STATUSES = ("idle", "completed")


def parse_api_address(address: str) -> Tuple[str, str]:
    """Split ``http://host:port[/prefix]/terminals/<id>`` into base URL and terminal id."""
    url = httpx.URL(address)
    if url.scheme not in ("http", "https"):
        raise ValueError(f"Invalid API address '{address}', expected http(s)://")
    prefix, sep, terminal_id = url.path.rstrip("/").rpartition("/terminals/")
    if not sep or not terminal_id or "/" in terminal_id:
        raise ValueError(f"Invalid API address '{address}', expected .../terminals/<id>")
    base_url = f"{url.scheme}://{url.netloc.decode('ascii')}{prefix}"
    return base_url, terminal_id


class ApiSurface(BaseSurface):
    """Talks to ``/terminals/{id}`` endpoints of a cao-server."""

    def __init__(
        self,
        address: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = API_REQUEST_TIMEOUT,
    ):
        super().__init__(address)
        self.base_url, self.terminal_id = parse_api_address(address)
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._pending_input: Optional[str] = None

    async def _get_status(self) -> Optional[str]:
        """Terminal status, or None when the server does not know the terminal."""
        try:
            r = await self._client.get(f"/terminals/{self.terminal_id}")
            if r.status_code == 404:
                return None
            r.raise_for_status()
            return r.json().get("status", "unknown")
        except httpx.HTTPError as e:
            raise ChannelError(f"Failed to reach {self.address}: {e}")

    async def exists(self) -> bool:
        return await self._get_status() is not None

    async def locate_input(self) -> str:
        status = await self._get_status()
        if status is None:
            raise SurfaceNotFound(f"Terminal {self.terminal_id} not found at {self.base_url}")
        if status not in READY_STATUSES:
            raise SurfaceNotFound(f"Terminal {self.terminal_id} not ready (status={status})")
        return f"terminal_{status}"

    async def write_input(self, text: str) -> None:
        # The server takes the whole message in one request on submit
        self._pending_input = text

    async def submit(self) -> None:
        if self._pending_input is None:
            raise SurfaceNotFound(f"Nothing written to terminal {self.terminal_id}")
        try:
            r = await self._client.post(
                f"/terminals/{self.terminal_id}/input",
                params={"message": self._pending_input},
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelError(f"Failed to send input to {self.address}: {e}")
        self._pending_input = None

    async def observe(self) -> Observation:
        status = await self._get_status()
        if status is None:
            return Observation()
        try:
            r = await self._client.get(
                f"/terminals/{self.terminal_id}/output", params={"mode": "last"}
            )
            r.raise_for_status()
            text = r.json().get("output") or None
        except httpx.HTTPStatusError:
            # No assistant marker yet: the server has nothing to extract
            text = None
        except httpx.HTTPError as e:
            raise ChannelError(f"Failed to read output from {self.address}: {e}")
        return Observation(text=text.strip() if text else None, loading=status == "processing")

    async def close(self, remove_endpoint: bool = False) -> None:
        if remove_endpoint:
            try:
                r = await self._client.post(f"/terminals/{self.terminal_id}/exit")
                r.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(f"Failed to exit terminal {self.terminal_id}: {e}")
        await self._client.aclose()
