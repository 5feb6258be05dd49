"""Endpoint agent models: detector states and agent -> controller events."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class DetectorState(str, Enum):
    """Response-completion detector states.

    DELIVERED is a resting state like IDLE: the next submit may start from it.
    """

    IDLE = "idle"
    SENT = "sent"
    OBSERVING = "observing"
    STABILIZING = "stabilizing"
    DELIVERED = "delivered"


class AgentEventType(str, Enum):
    REPLY_OBSERVED = "replyObserved"
    SEND_ERROR = "sendError"
    RESPONSE_ERROR = "responseError"
    CONNECTION_STATUS = "connectionStatus"


class ConnectionState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class AgentEvent(BaseModel):
    """An event emitted by an endpoint agent, keyed by the agent's identity."""

    type: AgentEventType
    agent_id: str
    text: str = ""
    forced: bool = False
    from_timeout: bool = False
    sequence_id: int = 0
    reason: Optional[str] = None
    connection: Optional[ConnectionState] = None


class Observation(BaseModel):
    """What a change source saw on the endpoint surface at one instant."""

    text: Optional[str] = None
    loading: bool = False
