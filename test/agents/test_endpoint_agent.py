"""Unit tests for the endpoint agent's command handling and event emission."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from chat_relay.agents.endpoint_agent import TIMEOUT_REASON, EndpointAgent
from chat_relay.errors import RelayStateError
from chat_relay.models.agent import AgentEventType, ConnectionState, DetectorState
from conftest import LEFT, FakeSurface


def make_agent(change_source, config, surface=None):
    events = []
    agent = EndpointAgent(
        "endpoint-0-test",
        surface or FakeSurface(LEFT),
        events.append,
        config=config,
        source=change_source,
    )
    return agent, events


class TestSubmit:
    def test_submit_writes_and_observes(self, change_source, fast_config):
        async def scenario():
            agent, events = make_agent(change_source, fast_config)
            ack = await agent.handle("submit", {"text": "Hello there"})
            state = agent.detector.state
            change_source.push("Hi, nice to meet you")
            await asyncio.sleep(0.1)
            return agent, events, ack, state

        agent, events, ack, state = asyncio.run(scenario())

        assert ack == {"success": True}
        assert state == DetectorState.OBSERVING
        assert agent.surface.submitted == ["Hello there"]
        assert len(events) == 1
        assert events[0].type == AgentEventType.REPLY_OBSERVED
        assert events[0].text == "Hi, nice to meet you"
        assert events[0].sequence_id == 1
        assert events[0].agent_id == "endpoint-0-test"

    def test_sequence_id_increases_per_delivery(self, change_source, fast_config):
        async def scenario():
            agent, events = make_agent(change_source, fast_config)
            await agent.submit("First")
            change_source.push("First answer")
            await asyncio.sleep(0.1)
            agent.surface.reply = "First answer"
            await agent.submit("Second")
            change_source.push("Second answer")
            await asyncio.sleep(0.1)
            return events

        events = asyncio.run(scenario())

        assert [e.sequence_id for e in events] == [1, 2]
        assert [e.text for e in events] == ["First answer", "Second answer"]

    @patch("chat_relay.utils.backoff.asyncio.sleep", new_callable=AsyncMock)
    def test_missing_input_emits_send_error(self, mock_sleep, change_source, fast_config):
        surface = FakeSurface(LEFT)
        surface.ready = False

        async def scenario():
            agent, events = make_agent(change_source, fast_config, surface)
            ack = await agent.submit("Hello there")
            return agent, events, ack

        agent, events, ack = asyncio.run(scenario())

        assert ack["success"] is False
        assert "No input" in ack["reason"]
        assert [e.type for e in events] == [AgentEventType.SEND_ERROR]
        assert mock_sleep.await_count == fast_config.backoff_max_retries
        assert agent.detector.state == DetectorState.IDLE

    def test_failed_write_leaves_detector_ready_for_retry(self, change_source, fast_config):
        surface = FakeSurface(LEFT)

        async def vanished_pane(text):
            raise ValueError("Window 'relay:left' not found")

        async def scenario():
            agent, _ = make_agent(change_source, fast_config, surface)
            with patch.object(surface, "write_input", side_effect=vanished_pane):
                with pytest.raises(ValueError):
                    await agent.submit("Hello there")
            state_after_failure = agent.detector.state
            ack = await agent.submit("Hello again")
            agent.reset()
            return state_after_failure, ack

        state_after_failure, ack = asyncio.run(scenario())

        assert state_after_failure == DetectorState.IDLE
        assert ack == {"success": True}
        assert surface.submitted == ["Hello again"]

    def test_cancelled_submit_resets_detector(self, change_source, fast_config):
        surface = FakeSurface(LEFT)

        async def slow_submit():
            await asyncio.sleep(1)

        async def scenario():
            agent, _ = make_agent(change_source, fast_config, surface)
            with patch.object(surface, "submit", side_effect=slow_submit):
                with pytest.raises(asyncio.TimeoutError):
                    await asyncio.wait_for(agent.submit("Hello there"), timeout=0.05)
            return agent.detector.state

        assert asyncio.run(scenario()) == DetectorState.IDLE
        assert surface.submitted == []

    def test_submit_while_waiting_raises(self, change_source, fast_config):
        async def scenario():
            agent, _ = make_agent(change_source, fast_config)
            await agent.submit("Hello there")
            with pytest.raises(RelayStateError):
                await agent.submit("Again")
            agent.reset()

        asyncio.run(scenario())

    def test_empty_submit_raises(self, change_source, fast_config):
        async def scenario():
            agent, _ = make_agent(change_source, fast_config)
            with pytest.raises(ValueError):
                await agent.handle("submit", {"text": ""})

        asyncio.run(scenario())


class TestOtherCommands:
    def test_check_alive(self, change_source, fast_config):
        surface = FakeSurface(LEFT)

        async def scenario():
            agent, _ = make_agent(change_source, fast_config, surface)
            alive = await agent.handle("checkAlive")
            surface.present = False
            gone = await agent.handle("checkAlive")
            return alive, gone

        alive, gone = asyncio.run(scenario())

        assert alive == {"alive": True, "identity": "endpoint-0-test"}
        assert gone == {"alive": False, "identity": "endpoint-0-test"}

    def test_reset_returns_detector_to_idle(self, change_source, fast_config):
        async def scenario():
            agent, _ = make_agent(change_source, fast_config)
            await agent.submit("Hello there")
            ack = await agent.handle("reset")
            return agent, ack

        agent, ack = asyncio.run(scenario())

        assert ack == {"success": True}
        assert agent.detector.state == DetectorState.IDLE

    def test_debug_info(self, change_source, fast_config):
        async def scenario():
            agent, _ = make_agent(change_source, fast_config)
            return await agent.handle("debugInfo")

        info = asyncio.run(scenario())

        assert info["identity"] == "endpoint-0-test"
        assert info["address"] == LEFT
        assert info["detector_state"] == "idle"

    def test_unknown_command_raises(self, change_source, fast_config):
        async def scenario():
            agent, _ = make_agent(change_source, fast_config)
            await agent.handle("explode")

        with pytest.raises(ValueError, match="Unknown command"):
            asyncio.run(scenario())


class TestEvents:
    def test_response_timeout_emits_response_error(self, change_source, fast_config):
        config = fast_config.model_copy(update={"response_timeout": 0.05})

        async def scenario():
            agent, events = make_agent(change_source, config)
            await agent.submit("Hello there")
            await asyncio.sleep(0.1)
            return events

        events = asyncio.run(scenario())

        assert [e.type for e in events] == [AgentEventType.RESPONSE_ERROR]
        assert events[0].reason == TIMEOUT_REASON

    def test_lost_surface_emits_offline(self, change_source, fast_config):
        async def scenario():
            agent, events = make_agent(change_source, fast_config)
            await agent.submit("Hello there")
            change_source.lose()
            return events

        events = asyncio.run(scenario())

        assert events[0].type == AgentEventType.CONNECTION_STATUS
        assert events[0].connection == ConnectionState.OFFLINE

    def test_close_removes_endpoint_when_asked(self, change_source, fast_config):
        surface = FakeSurface(LEFT)

        async def scenario():
            agent, _ = make_agent(change_source, fast_config, surface)
            await agent.close(remove_endpoint=True)

        asyncio.run(scenario())

        assert surface.closed == 1
        assert surface.removed is True
