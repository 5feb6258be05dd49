"""Conversation log models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from chat_relay.models.session import utcnow


class LogKind(str, Enum):
    TOPIC = "topic"
    RESPONSE = "response"


class ConversationLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: Optional[str] = None
    kind: LogKind
    content: str
    speaker_index: Optional[int] = None
    success: bool = True
