"""Session controller: owns the conversation state machine and drives two endpoint agents.

All agent events arrive on one queue consumed by a single task, so event
handlers never interleave. Every handler re-validates the sender against
the agents bound to the live session.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from chat_relay import constants
from chat_relay.agents.endpoint_agent import TIMEOUT_REASON, EndpointAgent
from chat_relay.clients.storage import JsonFileStore
from chat_relay.errors import (
    ChannelError,
    ChatRelayError,
    EndpointLostError,
    PersistenceError,
    RelayDisabledError,
    RelayStateError,
    ResponseTimeoutError,
)
from chat_relay.models.agent import AgentEvent, AgentEventType, ConnectionState
from chat_relay.models.archive import Backup, Snapshot
from chat_relay.models.config import RelayConfig
from chat_relay.models.controller_state import ControllerState
from chat_relay.models.conversation_log import ConversationLogEntry
from chat_relay.models.session import ConversationSession, RelayStatus, utcnow
from chat_relay.models.settings import RelaySettings
from chat_relay.models.stats import ErrorKind, Stats
from chat_relay.services.channel import AgentChannel
from chat_relay.services.persistence import PersistenceService
from chat_relay.services.prompts import (
    build_follow_up_prompt,
    build_holding_prompt,
    build_seed_prompt,
)
from chat_relay.services.recovery import HealthMonitor, PeriodicTask, Watchdog
from chat_relay.services.state_machine import (
    apply_error,
    apply_reply,
    begin_session,
    classify_error,
    clear_session,
    install_session,
    session_log,
)
from chat_relay.surfaces.base import BaseSurface
from chat_relay.surfaces.manager import create_surface, endpoint_exists
from chat_relay.utils.backoff import ExponentialBackoff
from chat_relay.utils.codec import Codec

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


class SessionController:
    def __init__(
        self,
        settings: RelaySettings,
        store: JsonFileStore,
        config: Optional[RelayConfig] = None,
        surface_factory: Callable[[str], BaseSurface] = create_surface,
        check_endpoint=endpoint_exists,
        codec: Optional[Codec] = None,
    ):
        self.settings = settings
        self.config = config or RelayConfig()
        self.surface_factory = surface_factory
        self.state = ControllerState()
        self.persistence = PersistenceService(store, codec, self.config, check_endpoint)

        self._events: "asyncio.Queue[AgentEvent]" = asyncio.Queue()
        self._channels: List[Optional[AgentChannel]] = [None] * constants.ENDPOINT_COUNT
        self._pending = [False] * constants.ENDPOINT_COUNT
        self._listeners: List[Listener] = []
        self._event_task: Optional[asyncio.Task] = None

        self.watchdog = Watchdog(
            self.state,
            self._on_stall,
            interval=self.config.watchdog_interval,
            stall_timeout=self.config.stall_timeout,
        )
        self.health = HealthMonitor(
            self.state,
            addresses=self._health_addresses,
            on_lost=self._on_endpoint_lost,
            on_disable=self.disable,
            check_endpoint=check_endpoint,
            interval=self.config.health_check_interval,
            max_failures=self.config.max_health_failures,
        )
        self._periodic = [
            PeriodicTask(self.config.session_save_interval, self._save_session, "session-save"),
            PeriodicTask(self.config.backup_interval, self.create_backup, "backup"),
            PeriodicTask(
                self.config.snapshot_sweep_interval, self.validate_snapshots, "snapshot-sweep"
            ),
        ]

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def load(self) -> None:
        """Load the persisted log and stats."""
        try:
            self.state.log_entries = await self.persistence.load_log()
            self.state.stats = await self.persistence.load_stats()
        except PersistenceError as e:
            logger.warning(f"Starting with empty log and stats: {e}")

    async def open(self) -> None:
        """Load persisted state, then start the event task and periodic jobs."""
        await self.load()
        if self._event_task is None:
            self._event_task = asyncio.get_running_loop().create_task(self._consume_events())
        self.health.start()
        for task in self._periodic:
            task.start()

    async def close(self, preserve_session: bool = False) -> None:
        """Shut the controller down.

        With ``preserve_session`` a running session is saved for a later
        ``resume()`` instead of being stopped.
        """
        if preserve_session and self.state.status == RelayStatus.RUNNING:
            await self.suspend()
        else:
            await self.stop()
        self.health.stop()
        for task in self._periodic:
            task.stop()
        if self._event_task is not None:
            self._event_task.cancel()
            try:
                await self._event_task
            except asyncio.CancelledError:
                pass
            self._event_task = None

    @property
    def status(self) -> RelayStatus:
        return self.state.status

    async def start(self, topic: Optional[str] = None) -> bool:
        """Start a relay on the configured endpoints.

        Returns False when startup failed; the failure is reported as a
        notification and the controller is back to IDLE.

        Raises:
            ConfigurationError: Not exactly two non-blank addresses, or no topic.
            RelayDisabledError: The circuit breaker disabled the relay.
            RelayStateError: A relay is already running.
        """
        if not self.state.enabled:
            raise RelayDisabledError("Chat relay is disabled, enable it first")
        if self.state.status != RelayStatus.IDLE:
            raise RelayStateError(f"Cannot start while {self.state.status.value}")
        topic = (topic or self.settings.topic).strip()
        endpoints = self.settings.require_startable(topic)

        logger.info(f"Starting chat relay between {endpoints[0]} and {endpoints[1]}")
        self.state.status = RelayStatus.STARTING
        self._broadcast_status()
        try:
            for index, address in enumerate(endpoints):
                self._bind_agent(index, address)
            await asyncio.sleep(self.settings.settle_delay)
            for index in range(constants.ENDPOINT_COUNT):
                await self._ensure_ready(index)

            begin_session(self.state, endpoints, topic, max_log_entries=self.config.log_max_entries)
            if not await self._send(0, build_seed_prompt(topic)):
                raise ChannelError("Failed to send the topic to endpoint 0")
            if not await self._send(1, build_holding_prompt()):
                raise ChannelError("Failed to send the holding prompt to endpoint 1")
        except ChatRelayError as e:
            self._notify(f"Failed to start chat relay: {e}", "error")
            await self._teardown()
            clear_session(self.state)
            self._broadcast_status()
            return False

        self.state.session.last_message_time = utcnow()
        self.state.status = RelayStatus.RUNNING
        self.watchdog.arm()
        await self._persist_turn()
        logger.info(f"Chat relay running, session {self.state.session.session_id}")
        return True

    async def stop(self) -> None:
        """Stop the relay from any state. Idempotent, never raises."""
        if (
            self.state.status == RelayStatus.IDLE
            and self.state.session is None
            and not any(self._channels)
        ):
            return
        logger.info("Stopping chat relay")
        self.state.status = RelayStatus.STOPPING
        self.watchdog.disarm()
        await self._teardown()
        self.state.stats = Stats()
        clear_session(self.state)
        await self._safely(self.persistence.clear_session(), "clear session state")
        await self._safely(self.persistence.save_stats(self.state.stats), "save stats")
        self._broadcast_status()

    async def suspend(self) -> None:
        """Persist the live session and release the agents without ending the conversation."""
        if self.state.session is None:
            return
        logger.info(f"Suspending session {self.state.session.session_id}")
        await self._save_session()
        await self._safely(self.persistence.save_log(self.state.log_entries), "save log")
        self.watchdog.disarm()
        await self._teardown(remove_endpoint=False)
        clear_session(self.state)
        self._broadcast_status()

    async def enable(self) -> None:
        """Explicit re-enable: clears the circuit breaker and backoff state."""
        self.state.enabled = True
        self.state.backoff.reset()
        self.state.health_failures = 0
        logger.info("Chat relay enabled")
        self._broadcast_status()

    async def disable(self) -> None:
        self.state.enabled = False
        await self.stop()
        logger.info("Chat relay disabled")
        self._notify("Chat relay disabled, re-enable it to continue", "warning")
        self._broadcast_status()

    def update_settings(self, settings: RelaySettings) -> None:
        """Replace the settings wholesale; a new configuration is a fresh attempt."""
        self.settings = settings
        self.state.backoff.reset()
        logger.info("Settings updated, backoff and error counters reset")
        self._broadcast_status()

    async def resume(self) -> bool:
        """Resume the persisted session if it is still eligible."""
        if not self.state.enabled or self.state.status != RelayStatus.IDLE:
            return False
        saved = await self.persistence.load_resumable_session()
        if saved is None:
            return False
        logger.info(f"Resuming session {saved.session.session_id}")
        self.state.stats = saved.stats
        self.state.backoff.retry_count = saved.backoff.retry_count
        self.state.backoff.consecutive_errors = saved.backoff.consecutive_errors
        self.state.backoff.is_rate_limited = saved.backoff.is_rate_limited
        return await self._activate(saved.session)

    # ==========================================================================
    # Agent bindings
    # ==========================================================================

    def _bind_agent(self, index: int, address: str) -> AgentChannel:
        agent = EndpointAgent(
            agent_id=f"endpoint-{index}-{uuid.uuid4().hex[:6]}",
            surface=self.surface_factory(address),
            emit=self.post_event,
            config=self.config,
        )
        channel = AgentChannel(agent, timeout=self.config.channel_timeout)
        self._channels[index] = channel
        self._pending[index] = False
        logger.debug(f"Bound {agent.agent_id} to {address}")
        return channel

    def _index_of(self, agent_id: str) -> Optional[int]:
        for index, channel in enumerate(self._channels):
            if channel is not None and channel.agent_id == agent_id:
                return index
        return None

    def _channel(self, index: int) -> AgentChannel:
        channel = self._channels[index]
        if channel is None:
            raise ChannelError(f"No agent bound to endpoint {index}")
        return channel

    async def _teardown(self, remove_endpoint: Optional[bool] = None) -> None:
        if remove_endpoint is None:
            remove_endpoint = self.settings.close_on_stop
        channels, self._channels = self._channels, [None] * constants.ENDPOINT_COUNT
        self._pending = [False] * constants.ENDPOINT_COUNT
        for channel in channels:
            if channel is not None:
                await channel.close(remove_endpoint=remove_endpoint)

    def _backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(
            state=self.state.backoff,
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            max_retries=self.config.backoff_max_retries,
            rate_limit_delay=self.config.rate_limit_delay,
        )

    async def _ensure_ready(self, index: int) -> None:
        """Poll readiness with backoff; inject a fresh agent if it stays unresponsive."""

        async def check_alive() -> None:
            ack = await self._channel(index).request("checkAlive")
            if not ack.get("alive"):
                raise ChannelError(f"Endpoint {index} is not responding")

        try:
            await self._backoff().run(check_alive, label=f"Readiness of endpoint {index}")
        except ChannelError:
            address = self._channel(index).agent.address
            logger.warning(f"Endpoint {index} unresponsive, injecting a fresh agent")
            await self._channel(index).close()
            self._bind_agent(index, address)
            await asyncio.sleep(self.config.inject_settle_delay)
            await check_alive()

    async def _send(self, index: int, text: str) -> bool:
        """Submit ``text`` to endpoint ``index``, retrying with fresh readiness checks.

        Returns False (after notifying) instead of raising when retries run out.
        """
        reason = "unknown error"
        for attempt in range(1, self.config.send_max_retries + 1):
            try:
                await self._ensure_ready(index)
                channel = self._channel(index)
                if self._pending[index]:
                    # No delivery seen since the last submit; re-sync the detector
                    await channel.request("reset")
                    self._pending[index] = False
                ack = await channel.request("submit", {"text": text})
                if ack.get("success"):
                    self._pending[index] = True
                    return True
                reason = ack.get("reason") or "submit was rejected"
            except ChannelError as e:
                reason = str(e)
            logger.warning(
                f"Send to endpoint {index} failed (attempt {attempt}/"
                f"{self.config.send_max_retries}): {reason}"
            )
            if attempt < self.config.send_max_retries:
                await asyncio.sleep(self.config.send_retry_delay)

        self._notify(f"Failed to send message to endpoint {index}: {reason}", "error")
        return False

    # ==========================================================================
    # Agent events
    # ==========================================================================

    def post_event(self, event: AgentEvent) -> None:
        self._events.put_nowait(event)

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except ChatRelayError as e:
                logger.error(f"Failed to handle {event.type.value} from {event.agent_id}: {e}")
            except Exception:
                logger.exception(
                    f"Unexpected error handling {event.type.value} from {event.agent_id}"
                )
            finally:
                self._events.task_done()

    async def drain_events(self) -> None:
        """Wait until every queued agent event has been handled."""
        await self._events.join()

    async def _handle_event(self, event: AgentEvent) -> None:
        index = self._index_of(event.agent_id)
        if index is None:
            logger.debug(f"Ignoring {event.type.value} from unbound agent {event.agent_id}")
            return
        if event.type != AgentEventType.CONNECTION_STATUS:
            self._pending[index] = False

        if event.type == AgentEventType.REPLY_OBSERVED:
            await self._on_reply_observed(index, event)
        elif event.type == AgentEventType.RESPONSE_ERROR:
            if event.reason == TIMEOUT_REASON:
                error = ResponseTimeoutError(f"No reply from endpoint {index} within timeout")
            else:
                error = ChatRelayError(event.reason or "response error")
            await self._on_agent_error(index, error)
        elif event.type == AgentEventType.SEND_ERROR:
            # Counted once by _send when its retries run out
            logger.warning(f"Endpoint {index} reported a send error: {event.reason}")
        elif event.type == AgentEventType.CONNECTION_STATUS:
            if event.connection == ConnectionState.OFFLINE:
                await self._on_endpoint_lost(EndpointLostError(f"Endpoint {index} disappeared"))

    async def _on_reply_observed(self, index: int, event: AgentEvent) -> None:
        dispatch = apply_reply(
            self.state,
            index,
            event.text,
            event.sequence_id,
            max_log_entries=self.config.log_max_entries,
        )
        if dispatch is None:
            return
        if event.forced or event.from_timeout:
            logger.info(
                f"Accepted partial reply from endpoint {index} "
                f"(forced={event.forced}, from_timeout={event.from_timeout})"
            )
        await self._persist_turn()

        await asyncio.sleep(self.config.dispatch_delay)
        if self.state.status != RelayStatus.RUNNING:
            return
        logger.info(f"Relaying reply of endpoint {index} to endpoint {dispatch.target_index}")
        if not await self._send(dispatch.target_index, dispatch.prompt):
            await self._on_agent_error(
                dispatch.target_index,
                ChannelError(f"Failed to relay message to endpoint {dispatch.target_index}"),
            )

    async def _on_agent_error(self, index: int, error: Exception) -> None:
        if self.state.session is None:
            logger.info(f"Ignoring error from endpoint {index} without a session: {error}")
            return
        kind = classify_error(error)
        self._notify(f"Endpoint {index} error ({kind.value}): {error}", "error")
        if apply_error(self.state, kind, self.config.error_threshold):
            self.watchdog.disarm()
            await self._teardown()
            clear_session(self.state)
            await self._safely(self.persistence.clear_session(), "clear session state")
            self._notify("Chat relay disabled after repeated errors", "error")
        await self._safely(self.persistence.save_stats(self.state.stats), "save stats")
        self._broadcast_status()

    async def _on_endpoint_lost(self, error: EndpointLostError) -> None:
        if self.state.session is None:
            return
        logger.error(f"Discarding session {self.state.session.session_id}: {error}")
        self.state.stats.record_error(ErrorKind.CONNECTION_DROP)
        self._notify(str(error), "error")
        self.watchdog.disarm()
        await self._teardown()
        clear_session(self.state)
        await self._safely(self.persistence.clear_session(), "clear session state")
        await self._safely(self.persistence.save_stats(self.state.stats), "save stats")
        self._broadcast_status()

    async def _on_stall(self) -> None:
        await self._on_agent_error(
            self.state.session.current_speaker_index if self.state.session else 0,
            ResponseTimeoutError("Conversation stalled, no reply received"),
        )
        await self.stop()

    def _health_addresses(self) -> List[str]:
        if self.state.session is not None:
            return list(self.state.session.endpoints)
        return [a for a in self.settings.endpoint_addresses if a and a.strip()]

    # ==========================================================================
    # Persistence
    # ==========================================================================

    async def _safely(self, operation, what: str) -> None:
        try:
            await operation
        except PersistenceError as e:
            logger.warning(f"Failed to {what}: {e}")

    async def _save_session(self) -> None:
        if self.state.session is None or self.state.status != RelayStatus.RUNNING:
            return
        await self._safely(
            self.persistence.save_session(self.state.session, self.state.stats, self.state.backoff),
            "save session state",
        )

    async def _persist_turn(self) -> None:
        await self._safely(self.persistence.save_log(self.state.log_entries), "save log")
        await self._safely(self.persistence.save_stats(self.state.stats), "save stats")
        await self._save_session()
        self._broadcast_status()

    async def _activate(self, session: ConversationSession) -> bool:
        """Rebind agents to a restored session's endpoints and resend its pending prompt."""
        self.state.status = RelayStatus.STARTING
        try:
            for index, address in enumerate(session.endpoints):
                self._bind_agent(index, address)
            for index in range(constants.ENDPOINT_COUNT):
                await self._ensure_ready(index)
        except ChatRelayError as e:
            self._notify(f"Failed to restore session {session.session_id}: {e}", "error")
            await self._teardown()
            clear_session(self.state)
            self._broadcast_status()
            return False

        install_session(self.state, session)
        session.last_message_time = utcnow()
        self.state.status = RelayStatus.RUNNING
        self.watchdog.arm()
        await self._persist_turn()
        await self._resend_pending()
        return True

    async def _resend_pending(self) -> None:
        session = self.state.session
        if not session.history:
            index, prompt = 0, build_seed_prompt(session.topic)
        else:
            index = session.expected_sender_index
            prompt = build_follow_up_prompt(session, session.history[-1].text)
        logger.info(f"Resending pending prompt to endpoint {index}")
        if not await self._send(index, prompt):
            await self._on_agent_error(index, ChannelError("Failed to resend pending prompt"))

    # ==========================================================================
    # UI operations
    # ==========================================================================

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.state.stats.report(now)

    def get_conversation_log(self) -> List[ConversationLogEntry]:
        return list(self.state.log_entries)

    async def get_snapshots(self) -> List[Snapshot]:
        return await self.persistence.get_snapshots()

    async def get_backups(self) -> List[Backup]:
        return await self.persistence.get_backups()

    async def create_snapshot(self, description: str = "") -> Snapshot:
        if self.state.session is None:
            raise RelayStateError("No active session to snapshot")
        return await self.persistence.create_snapshot(
            self.state.session, session_log(self.state), description
        )

    async def restore_snapshot(self, snapshot_id: str) -> bool:
        payload = await self.persistence.load_snapshot(snapshot_id)
        await self.stop()
        if not self.state.enabled:
            raise RelayDisabledError("Chat relay is disabled, enable it first")

        session_id = payload.session.session_id
        self.state.log_entries = [
            e for e in self.state.log_entries if e.session_id != session_id
        ] + payload.log_entries
        del self.state.log_entries[: -self.config.log_max_entries]
        logger.info(f"Restoring snapshot {snapshot_id} (session {session_id})")
        return await self._activate(payload.session)

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self.persistence.delete_snapshot(snapshot_id)

    async def validate_snapshots(self) -> int:
        return await self.persistence.validate_snapshots()

    async def create_backup(self) -> Backup:
        return await self.persistence.create_backup(self.state.log_entries, self.state.stats)

    async def restore_backup(self, timestamp: Union[str, datetime]) -> None:
        """Replace snapshots, log and stats wholesale with a backup's content."""
        payload = await self.persistence.load_backup(timestamp)
        await self.persistence.save_snapshots(payload.snapshots)
        self.state.log_entries = payload.log
        self.state.stats = payload.stats
        await self.persistence.save_log(self.state.log_entries)
        await self.persistence.save_stats(self.state.stats)
        logger.info(f"Restored backup {timestamp}")
        self._broadcast_status()

    async def reset_stats(self) -> None:
        self.state.stats = Stats()
        await self.persistence.save_stats(self.state.stats)
        self._broadcast_status()

    async def debug_info(self, index: int) -> Dict[str, Any]:
        return await self._channel(index).request("debugInfo")

    # ==========================================================================
    # Listeners
    # ==========================================================================

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, message: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.warning(f"Listener failed on {message['type']}: {e}")

    def _broadcast_status(self) -> None:
        self._publish(
            {
                "type": "statusUpdate",
                "enabled": self.state.enabled,
                "status": self.state.status.value,
                "stats": self.get_stats(),
                "log": [e.model_dump(mode="json") for e in self.state.log_entries],
            }
        )

    def _notify(self, message: str, level: str = "info") -> None:
        getattr(logger, level, logger.info)(message)
        self._publish({"type": "notification", "level": level, "message": message})
