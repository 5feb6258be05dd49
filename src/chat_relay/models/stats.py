"""Relay statistics and backoff state."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from chat_relay.models.session import utcnow


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    CONNECTION_DROP = "connection_drop"
    OTHER = "other"


class ErrorCounts(BaseModel):
    network: int = 0
    timeout: int = 0
    connection_drop: int = 0
    other: int = 0

    def total(self) -> int:
        return self.network + self.timeout + self.connection_drop + self.other


class Stats(BaseModel):
    """Counters of one relay process. Derived values are computed on read."""

    messages_exchanged: int = 0
    errors: ErrorCounts = Field(default_factory=ErrorCounts)
    total_response_time: float = 0.0
    average_response_time: float = 0.0
    start_time: Optional[datetime] = None

    def record_message(self, response_time: float, now: Optional[datetime] = None) -> None:
        """Count one relayed reply and fold its response time (seconds) into the average."""
        if self.start_time is None:
            self.start_time = now or utcnow()
        self.messages_exchanged += 1
        self.total_response_time += max(response_time, 0.0)
        self.average_response_time = self.total_response_time / self.messages_exchanged

    def record_error(self, kind: ErrorKind, now: Optional[datetime] = None) -> None:
        if self.start_time is None:
            self.start_time = now or utcnow()
        setattr(self.errors, kind.value, getattr(self.errors, kind.value) + 1)

    def running_time(self, now: Optional[datetime] = None) -> float:
        if self.start_time is None:
            return 0.0
        return ((now or utcnow()) - self.start_time).total_seconds()

    def success_rate(self) -> float:
        if not self.messages_exchanged:
            return 0.0
        rate = (self.messages_exchanged - self.errors.total()) / self.messages_exchanged
        return round(rate * 100, 2)

    def report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Stats plus derived running time and success rate, JSON ready."""
        data = self.model_dump(mode="json")
        data["running_time"] = self.running_time(now)
        data["success_rate"] = self.success_rate()
        return data


class BackoffState(BaseModel):
    """Process-scoped retry bookkeeping."""

    retry_count: int = 0
    consecutive_errors: int = 0
    is_rate_limited: bool = False

    def reset(self) -> None:
        self.retry_count = 0
        self.consecutive_errors = 0
        self.is_rate_limited = False
