"""Response-completion detector.

Endpoints render their replies incrementally and never say when they are
done. The detector infers completion from stability of the observed text:

* every change batch with a usable candidate (present, not loading, long
  enough) that differs from the last-seen text moves to STABILIZING and
  rearms the stability timer. Until the surface shows any change after the
  submit, the reply visible before it (the baseline) is not a candidate;
* the stability timer delivers once the candidate still equals last-seen;
* a one-shot force timer, armed on the first change, delivers whatever is
  current so endpoints that never settle cannot block the relay;
* an overall response timer scrapes once more and either delivers or
  reports a timeout.

All timers are ``loop.call_later`` handles on the running event loop.
"""

import asyncio
import logging
from typing import Callable, Optional

from chat_relay import constants
from chat_relay.agents.change_source import ChangeSource
from chat_relay.errors import RelayStateError
from chat_relay.models.agent import DetectorState, Observation

logger = logging.getLogger(__name__)

OnReply = Callable[[str, bool, bool], None]
OnTimeout = Callable[[str], None]
OnLost = Callable[[], None]

ACTIVE_STATES = (DetectorState.SENT, DetectorState.OBSERVING, DetectorState.STABILIZING)


class ResponseCompletionDetector:
    def __init__(
        self,
        source: ChangeSource,
        on_reply: OnReply,
        on_timeout: OnTimeout,
        on_lost: Optional[OnLost] = None,
        stability_window: float = constants.STABILITY_WINDOW,
        force_timeout: float = constants.FORCE_TIMEOUT,
        response_timeout: float = constants.RESPONSE_TIMEOUT,
        min_reply_length: int = constants.MIN_REPLY_LENGTH,
    ):
        self.source = source
        self.on_reply = on_reply
        self.on_timeout = on_timeout
        self.on_lost = on_lost
        self.stability_window = stability_window
        self.force_timeout = force_timeout
        self.response_timeout = response_timeout
        self.min_reply_length = min_reply_length

        self.state = DetectorState.IDLE
        self.last_text = ""
        self.baseline: Optional[str] = None
        self._stability_handle: Optional[asyncio.TimerHandle] = None
        self._force_handle: Optional[asyncio.TimerHandle] = None
        self._total_handle: Optional[asyncio.TimerHandle] = None

    @property
    def at_rest(self) -> bool:
        return self.state in (DetectorState.IDLE, DetectorState.DELIVERED)

    def begin(self, baseline: Optional[str] = None) -> None:
        """Prepare for a new submission: clear residual tracked text and move to SENT.

        ``baseline`` is the reply visible before submitting; it is not taken
        for the new reply until the surface has changed after the submit.
        """
        if not self.at_rest:
            raise RelayStateError(f"Cannot submit while detector is {self.state.value}")
        self._cancel_timers()
        self.last_text = ""
        self.baseline = baseline.strip() if baseline else None
        self.state = DetectorState.SENT

    def observe(self) -> None:
        """Start watching for the reply after the submit control was invoked."""
        if self.state != DetectorState.SENT:
            raise RelayStateError(f"Cannot observe while detector is {self.state.value}")
        self.state = DetectorState.OBSERVING
        loop = asyncio.get_running_loop()
        self._total_handle = loop.call_later(self.response_timeout, self._on_response_timeout)
        self.source.start(self._on_change, self._on_surface_lost)

    def reset(self) -> None:
        """Forcibly return to IDLE, dropping timers and tracked text."""
        self._cancel_timers()
        self.source.stop()
        self.last_text = ""
        self.baseline = None
        self.state = DetectorState.IDLE

    def _candidate(self, observation: Observation, allow_loading: bool = False) -> Optional[str]:
        if not observation.text or (observation.loading and not allow_loading):
            return None
        text = observation.text.strip()
        if len(text) < self.min_reply_length:
            return None
        if self.baseline is not None and text == self.baseline:
            return None
        return text

    def _on_change(self, observation: Observation) -> None:
        if self.state not in (DetectorState.OBSERVING, DetectorState.STABILIZING):
            return
        if self.baseline is not None and (
            observation.loading or (observation.text or "").strip() != self.baseline
        ):
            # The surface moved on, so identical text from here on is a new reply
            self.baseline = None
        text = self._candidate(observation)
        if text is None:
            return

        loop = asyncio.get_running_loop()
        if text != self.last_text:
            logger.debug(f"Reply changed ({len(text)} chars), waiting for stability")
            self.last_text = text
            self.state = DetectorState.STABILIZING
            self._cancel(self._stability_handle)
            self._stability_handle = loop.call_later(self.stability_window, self._on_stable)
            if self._force_handle is None:
                self._force_handle = loop.call_later(self.force_timeout, self._on_force)
        elif self.state == DetectorState.STABILIZING and self._stability_handle is None:
            self._stability_handle = loop.call_later(self.stability_window, self._on_stable)

    def _on_stable(self) -> None:
        self._stability_handle = None
        if self.state != DetectorState.STABILIZING:
            return
        current = self._candidate(self.source.current())
        if current is None or current != self.last_text:
            # A later change batch rearms the timer
            return
        self._deliver(current, forced=False)

    def _on_force(self) -> None:
        self._force_handle = None
        if self.state not in (DetectorState.OBSERVING, DetectorState.STABILIZING):
            return
        logger.info("Force timeout triggered - delivering reply anyway")
        text = self._candidate(self.source.current(), allow_loading=True) or self.last_text
        self._deliver(text, forced=True)

    def _on_response_timeout(self) -> None:
        self._total_handle = None
        if self.state not in ACTIVE_STATES:
            return
        logger.warning("Response timeout reached")
        text = self._candidate(self.source.current(), allow_loading=True)
        if text is not None:
            logger.info(f"Found reply after timeout ({len(text)} chars)")
            self._deliver(text, forced=False, from_timeout=True)
            return
        self.reset()
        self.on_timeout("No response received within timeout.")

    def _on_surface_lost(self) -> None:
        if self.state not in ACTIVE_STATES:
            return
        self.reset()
        if self.on_lost is not None:
            self.on_lost()

    def _deliver(self, text: str, forced: bool, from_timeout: bool = False) -> None:
        self._cancel_timers()
        self.source.stop()
        self.state = DetectorState.DELIVERED
        self.on_reply(text, forced, from_timeout)

    def _cancel_timers(self) -> None:
        for handle in (self._stability_handle, self._force_handle, self._total_handle):
            self._cancel(handle)
        self._stability_handle = None
        self._force_handle = None
        self._total_handle = None

    @staticmethod
    def _cancel(handle: Optional[asyncio.TimerHandle]) -> None:
        if handle is not None:
            handle.cancel()
