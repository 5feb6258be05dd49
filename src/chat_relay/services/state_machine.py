"""Conversation state machine: pure transitions over ``ControllerState``.

Nothing here performs I/O. The controller calls these handlers from its
single event task and acts on what they return (a dispatch to make, a
breaker that tripped).
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from chat_relay import constants
from chat_relay.errors import (
    ChannelError,
    EndpointLostError,
    RelayStateError,
    SurfaceNotFound,
)
from chat_relay.models.controller_state import ControllerState
from chat_relay.models.conversation_log import ConversationLogEntry, LogKind
from chat_relay.models.session import ConversationSession, HistoryEntry, RelayStatus, utcnow
from chat_relay.models.stats import ErrorKind
from chat_relay.services.prompts import build_follow_up_prompt

logger = logging.getLogger(__name__)


@dataclass
class Dispatch:
    """A prompt the controller must send next."""

    target_index: int
    prompt: str


def generate_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:8]}"


def append_log(
    state: ControllerState,
    entry: ConversationLogEntry,
    max_entries: int = constants.LOG_MAX_ENTRIES,
) -> None:
    """Append to the bounded log, evicting the oldest entries."""
    state.log_entries.append(entry)
    if len(state.log_entries) > max_entries:
        del state.log_entries[: len(state.log_entries) - max_entries]


def begin_session(
    state: ControllerState,
    endpoints: List[str],
    topic: str,
    now: Optional[datetime] = None,
    max_log_entries: int = constants.LOG_MAX_ENTRIES,
) -> ConversationSession:
    """Install a fresh session: endpoint 0 got the seed, endpoint 1 the holding prompt."""
    if state.session is not None:
        raise RelayStateError(f"Session {state.session.session_id} is still active")
    now = now or utcnow()
    session = ConversationSession(
        session_id=generate_session_id(),
        endpoints=list(endpoints),
        topic=topic,
        current_speaker_index=1,
        last_message_time=now,
    )
    state.session = session
    state.log_session_id = session.session_id
    if state.stats.start_time is None:
        state.stats.start_time = now
    append_log(
        state,
        ConversationLogEntry(
            timestamp=now, session_id=session.session_id, kind=LogKind.TOPIC, content=topic
        ),
        max_log_entries,
    )
    return session


def install_session(state: ControllerState, session: ConversationSession) -> None:
    """Install a restored session; its agents are freshly bound so sequence ids restart."""
    session.sequence_ids = [0] * constants.ENDPOINT_COUNT
    state.session = session
    state.log_session_id = session.session_id


def apply_reply(
    state: ControllerState,
    speaker_index: int,
    text: str,
    sequence_id: int = 0,
    now: Optional[datetime] = None,
    max_log_entries: int = constants.LOG_MAX_ENTRIES,
) -> Optional[Dispatch]:
    """Accept one observed reply, or return None when it must be ignored."""
    session = state.session
    if state.status != RelayStatus.RUNNING or session is None:
        logger.info(f"Ignoring reply from endpoint {speaker_index}: relay is {state.status.value}")
        return None
    if speaker_index != session.expected_sender_index:
        logger.info(
            f"Ignoring reply from endpoint {speaker_index}: "
            f"expected endpoint {session.expected_sender_index}"
        )
        return None
    if sequence_id and sequence_id <= session.sequence_ids[speaker_index]:
        logger.info(f"Ignoring duplicate reply #{sequence_id} from endpoint {speaker_index}")
        return None

    now = now or utcnow()
    response_time = (now - session.last_message_time).total_seconds()
    if sequence_id:
        session.sequence_ids[speaker_index] = sequence_id
    session.history.append(
        HistoryEntry(source=session.source_name(speaker_index), text=text, timestamp=now)
    )
    append_log(
        state,
        ConversationLogEntry(
            timestamp=now,
            session_id=session.session_id,
            kind=LogKind.RESPONSE,
            content=text,
            speaker_index=speaker_index,
        ),
        max_log_entries,
    )
    state.stats.record_message(response_time, now)
    state.backoff.consecutive_errors = 0

    target_index = session.current_speaker_index
    prompt = build_follow_up_prompt(session, text)
    session.current_speaker_index = 1 - target_index
    session.last_message_time = now
    return Dispatch(target_index=target_index, prompt=prompt)


def classify_error(error: Union[BaseException, str]) -> ErrorKind:
    """Map an error (or an agent's reason string) to a stats bucket."""
    if isinstance(error, EndpointLostError):
        return ErrorKind.CONNECTION_DROP
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, (ChannelError, SurfaceNotFound)):
        return ErrorKind.NETWORK
    message = str(error).lower()
    if "timeout" in message or "timed out" in message:
        return ErrorKind.TIMEOUT
    if "network" in message or "connection" in message:
        return ErrorKind.NETWORK
    return ErrorKind.OTHER


def apply_error(
    state: ControllerState,
    kind: ErrorKind,
    threshold: int = constants.ERROR_THRESHOLD,
    now: Optional[datetime] = None,
) -> bool:
    """Count one controller-level error; True when the circuit breaker trips."""
    state.stats.record_error(kind, now)
    state.backoff.consecutive_errors += 1
    tripped = state.backoff.consecutive_errors >= threshold
    if tripped:
        logger.error(
            f"{state.backoff.consecutive_errors} consecutive errors, disabling chat relay"
        )
        state.status = RelayStatus.FAILED
        state.enabled = False
    return tripped


def is_stalled(
    state: ControllerState,
    stall_timeout: float = constants.STALL_TIMEOUT,
    now: Optional[datetime] = None,
) -> bool:
    if state.status != RelayStatus.RUNNING or state.session is None:
        return False
    idle_for = ((now or utcnow()) - state.session.last_message_time).total_seconds()
    return idle_for > stall_timeout


def clear_session(state: ControllerState) -> None:
    state.session = None
    state.log_session_id = None
    state.status = RelayStatus.IDLE


def session_log(state: ControllerState) -> List[ConversationLogEntry]:
    """Log entries of the current log session."""
    if state.log_session_id is None:
        return []
    return [e for e in state.log_entries if e.session_id == state.log_session_id]
