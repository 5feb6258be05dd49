"""Unit tests for the libtmux wrapper."""

from unittest.mock import MagicMock, call

import pytest

from chat_relay.clients.tmux import TmuxClient


@pytest.fixture
def client():
    tmux = TmuxClient()
    tmux._server = MagicMock()
    return tmux


@pytest.fixture
def pane(client):
    window = MagicMock()
    client._server.sessions.get.return_value.windows.get.return_value = window
    return window.active_pane


class TestTmuxClient:
    def test_window_lookup_by_name_and_index(self, client):
        session = client._server.sessions.get.return_value

        assert client.window_exists("relay", "left") is True
        session.windows.get.assert_called_with(window_name="left", default=None)

        client.window_exists("relay", "1")
        session.windows.get.assert_called_with(window_index="1", default=None)

    def test_missing_session(self, client):
        client._server.sessions.get.return_value = None

        assert client.window_exists("relay", "left") is False
        with pytest.raises(ValueError, match="not found"):
            client.get_history("relay", "left")

    def test_query_failure_reads_as_missing(self, client):
        client._server.sessions.get.side_effect = RuntimeError("no server running")

        assert client.window_exists("relay", "left") is False

    def test_send_keys_joins_lines_with_ctrl_j(self, client, pane):
        client.send_keys("relay", "left", "first\nsecond", enter=True)

        assert pane.send_keys.call_args_list == [
            call("first", enter=False, suppress_history=False, literal=True),
            call("C-j", enter=False, suppress_history=False, literal=False),
            call("second", enter=False, suppress_history=False, literal=True),
            call("Enter", enter=False, suppress_history=False, literal=False),
        ]

    def test_get_history(self, client, pane):
        pane.cmd.return_value.stdout = ["line one", "line two"]

        assert client.get_history("relay", "left", 50) == "line one\nline two"
        pane.cmd.assert_called_once_with("capture-pane", "-p", "-J", "-S", "-50")

    def test_kill_window(self, client):
        window = client._server.sessions.get.return_value.windows.get.return_value

        client.kill_window("relay", "left")

        window.kill.assert_called_once()
