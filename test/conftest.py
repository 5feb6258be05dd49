"""Shared fakes: a scriptable endpoint surface and a synthetic change source."""

from typing import Dict, List, Optional

import pytest

from chat_relay.agents.change_source import ChangeSource
from chat_relay.errors import ChannelError, SurfaceNotFound
from chat_relay.models.agent import Observation
from chat_relay.models.config import RelayConfig
from chat_relay.surfaces.base import BaseSurface

LEFT = "tmux:relay:left"
RIGHT = "tmux:relay:right"


class FakeSurface(BaseSurface):
    """An endpoint whose reply text and presence are set by the test."""

    def __init__(self, address: str):
        super().__init__(address)
        self.present = True
        self.ready = True
        self.reply: Optional[str] = None
        self.loading = False
        self.written: Optional[str] = None
        self.submitted: List[str] = []
        self.closed = 0
        self.removed = False

    async def exists(self) -> bool:
        return self.present

    async def locate_input(self) -> str:
        if not self.present or not self.ready:
            raise SurfaceNotFound(f"No input on {self.address}")
        return "fake_prompt"

    async def write_input(self, text: str) -> None:
        self.written = text

    async def submit(self) -> None:
        self.submitted.append(self.written)
        self.written = None

    async def observe(self) -> Observation:
        if not self.present:
            raise ChannelError(f"{self.address} is gone")
        return Observation(text=self.reply, loading=self.loading)

    async def close(self, remove_endpoint: bool = False) -> None:
        self.closed += 1
        self.removed = self.removed or remove_endpoint


class SyntheticChangeSource(ChangeSource):
    """Change batches are pushed by the test instead of polled."""

    def __init__(self):
        self._current = Observation()
        self.on_change = None
        self.on_lost = None
        self.starts = 0

    def start(self, on_change, on_lost=None) -> None:
        self.on_change = on_change
        self.on_lost = on_lost
        self.starts += 1

    def stop(self) -> None:
        self.on_change = None

    def current(self) -> Observation:
        return self._current

    def push(self, text: Optional[str], loading: bool = False) -> None:
        self._current = Observation(text=text, loading=loading)
        if self.on_change is not None:
            self.on_change(self._current)

    def lose(self) -> None:
        if self.on_lost is not None:
            self.on_lost()


@pytest.fixture
def change_source() -> SyntheticChangeSource:
    return SyntheticChangeSource()


@pytest.fixture
def surfaces() -> Dict[str, FakeSurface]:
    return {LEFT: FakeSurface(LEFT), RIGHT: FakeSurface(RIGHT)}


@pytest.fixture
def fast_config() -> RelayConfig:
    return RelayConfig(
        stability_window=0.02,
        force_timeout=5.0,
        response_timeout=10.0,
        min_reply_length=1,
        change_poll_interval=0.01,
        channel_timeout=1.0,
        send_retry_delay=0.01,
        inject_settle_delay=0.0,
        dispatch_delay=0.0,
        backoff_base_delay=0.01,
        backoff_max_delay=0.05,
        watchdog_interval=60.0,
        health_check_interval=60.0,
        session_save_interval=60.0,
        backup_interval=3600.0,
        snapshot_sweep_interval=600.0,
    )
