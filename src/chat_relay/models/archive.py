"""Snapshot and backup records.

Both hold their payload compressed and base64 encoded in ``data`` so the
record itself stays a plain JSON document.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from chat_relay.models.conversation_log import ConversationLogEntry
from chat_relay.models.session import ConversationSession, utcnow
from chat_relay.models.stats import Stats


class Snapshot(BaseModel):
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    description: str = ""
    session_id: Optional[str] = None
    topic: str = ""
    data: str


class SnapshotPayload(BaseModel):
    """Decompressed content of a snapshot."""

    session: ConversationSession
    log_entries: List[ConversationLogEntry] = Field(default_factory=list)


class Backup(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    data: str


class BackupPayload(BaseModel):
    """Decompressed content of a backup."""

    snapshots: List[Snapshot] = Field(default_factory=list)
    log: List[ConversationLogEntry] = Field(default_factory=list)
    stats: Stats = Field(default_factory=Stats)
