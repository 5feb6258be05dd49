"""The single owned state value of the session controller."""

from typing import List, Optional

from pydantic import BaseModel, Field

from chat_relay.models.conversation_log import ConversationLogEntry
from chat_relay.models.session import ConversationSession, RelayStatus
from chat_relay.models.stats import BackoffState, Stats


class ControllerState(BaseModel):
    """Everything the conversation state machine reads or mutates.

    Passed explicitly to every handler in
    :mod:`chat_relay.services.state_machine`; nothing else owns session state.
    """

    status: RelayStatus = RelayStatus.IDLE
    enabled: bool = True
    session: Optional[ConversationSession] = None
    stats: Stats = Field(default_factory=Stats)
    backoff: BackoffState = Field(default_factory=BackoffState)
    log_entries: List[ConversationLogEntry] = Field(default_factory=list)
    log_session_id: Optional[str] = None
    health_failures: int = 0
