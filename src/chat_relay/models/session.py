"""Conversation session models."""

from datetime import datetime, timezone
from enum import Enum
from typing import List

from pydantic import BaseModel, Field, field_validator

from chat_relay.constants import ENDPOINT_COUNT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RelayStatus(str, Enum):
    """Lifecycle of the controller's conversation state machine."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class HistoryEntry(BaseModel):
    """One completed turn."""

    source: str
    text: str
    timestamp: datetime = Field(default_factory=utcnow)


class ConversationSession(BaseModel):
    """The unit of an active relay run.

    ``current_speaker_index`` is always the endpoint that receives the next
    prompt; the endpoint whose reply is awaited is its complement.
    """

    session_id: str
    endpoints: List[str]
    topic: str
    current_speaker_index: int = 1
    history: List[HistoryEntry] = Field(default_factory=list)
    last_message_time: datetime = Field(default_factory=utcnow)
    sequence_ids: List[int] = Field(default_factory=lambda: [0] * ENDPOINT_COUNT)

    @field_validator("endpoints")
    @classmethod
    def _exactly_two_endpoints(cls, value: List[str]) -> List[str]:
        if len(value) != ENDPOINT_COUNT:
            raise ValueError(f"a session needs exactly {ENDPOINT_COUNT} endpoints")
        return value

    @field_validator("current_speaker_index")
    @classmethod
    def _valid_index(cls, value: int) -> int:
        if value not in (0, 1):
            raise ValueError("current_speaker_index must be 0 or 1")
        return value

    @property
    def expected_sender_index(self) -> int:
        return 1 - self.current_speaker_index

    def source_name(self, index: int) -> str:
        return f"endpoint-{index}"
