"""Tmux client: thin libtmux wrapper used by terminal endpoint surfaces."""

import logging
from typing import List, Optional

import libtmux

from chat_relay.constants import TMUX_HISTORY_LINES

logger = logging.getLogger(__name__)


class TmuxClient:
    """Addresses panes by (session name, window name or index)."""

    def __init__(self) -> None:
        self._server: Optional[libtmux.Server] = None

    @property
    def server(self) -> libtmux.Server:
        if self._server is None:
            self._server = libtmux.Server()
        return self._server

    def _get_window(self, session_name: str, window_name: str):
        session = self.server.sessions.get(session_name=session_name, default=None)
        if session is None:
            return None
        if window_name.isdigit():
            return session.windows.get(window_index=window_name, default=None)
        return session.windows.get(window_name=window_name, default=None)

    def _get_pane(self, session_name: str, window_name: str):
        window = self._get_window(session_name, window_name)
        if window is None:
            raise ValueError(f"Window '{session_name}:{window_name}' not found")
        pane = window.active_pane
        if pane is None:
            raise ValueError(f"Window '{session_name}:{window_name}' has no active pane")
        return pane

    def window_exists(self, session_name: str, window_name: str) -> bool:
        try:
            return self._get_window(session_name, window_name) is not None
        except Exception as e:
            logger.warning(f"Failed to query tmux window {session_name}:{window_name}: {e}")
            return False

    def send_keys(self, session_name: str, window_name: str, text: str, enter: bool = True) -> None:
        """Type text literally into the pane, line by line, then optionally press Enter.

        Lines are joined with C-j so a multi-line prompt is submitted once.
        """
        pane = self._get_pane(session_name, window_name)
        lines = text.split("\n")
        for idx, line in enumerate(lines):
            if line:
                pane.send_keys(line, enter=False, suppress_history=False, literal=True)
            if idx < len(lines) - 1:
                pane.send_keys("C-j", enter=False, suppress_history=False, literal=False)
        if enter:
            self.send_enter(session_name, window_name)

    def send_enter(self, session_name: str, window_name: str) -> None:
        pane = self._get_pane(session_name, window_name)
        pane.send_keys("Enter", enter=False, suppress_history=False, literal=False)

    def get_history(
        self, session_name: str, window_name: str, tail_lines: Optional[int] = None
    ) -> str:
        """Capture the last ``tail_lines`` lines of the pane (scrollback included)."""
        pane = self._get_pane(session_name, window_name)
        lines: List[str] = pane.cmd(
            "capture-pane", "-p", "-J", "-S", f"-{tail_lines or TMUX_HISTORY_LINES}"
        ).stdout
        return "\n".join(lines)

    def kill_window(self, session_name: str, window_name: str) -> None:
        window = self._get_window(session_name, window_name)
        if window is None:
            return
        window.kill()
        logger.info(f"Killed tmux window {session_name}:{window_name}")


tmux_client = TmuxClient()
