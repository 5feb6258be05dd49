"""Relay settings pushed in by the settings collaborator."""

import json
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, ValidationError

from chat_relay.constants import DEFAULT_SETTLE_TIMEOUT_MS, ENDPOINT_COUNT
from chat_relay.errors import ConfigurationError

VALID_SETTINGS_KEYS = frozenset({"endpoint_addresses", "timeout_ms", "topic", "close_on_stop"})


class RelaySettings(BaseModel):
    """Endpoint addresses, settle timeout and topic.

    Updates always replace the whole value; there is no partial merge.
    """

    endpoint_addresses: List[str] = Field(default_factory=list)
    timeout_ms: int = DEFAULT_SETTLE_TIMEOUT_MS
    topic: str = ""
    close_on_stop: bool = False

    def require_startable(self, topic: str) -> List[str]:
        """Validate that a relay can start on these settings.

        Returns the stripped endpoint addresses to bind.

        Raises:
            ConfigurationError: Not exactly two non-blank addresses, no topic,
                or a negative settle timeout.
        """
        if len(self.endpoint_addresses) != ENDPOINT_COUNT:
            raise ConfigurationError(
                f"Need exactly {ENDPOINT_COUNT} endpoint addresses for chat relay, "
                f"got {len(self.endpoint_addresses)}"
            )
        addresses = [a.strip() for a in self.endpoint_addresses]
        if not all(addresses):
            raise ConfigurationError("Endpoint addresses must not be blank")
        if not topic or not topic.strip():
            raise ConfigurationError("Topic must not be empty")
        if self.timeout_ms < 0:
            raise ConfigurationError("timeout_ms must not be negative")
        return addresses

    @property
    def settle_delay(self) -> float:
        return self.timeout_ms / 1000.0

    @classmethod
    def from_file(cls, path: Path) -> "RelaySettings":
        """Load settings from a JSON file, rejecting unknown keys."""
        if not path.is_file():
            raise ConfigurationError(f"Settings file not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in settings file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file {path} must contain a JSON object")

        unknown = set(data.keys()) - VALID_SETTINGS_KEYS
        if unknown:
            raise ConfigurationError(f"Unknown settings keys: {', '.join(sorted(unknown))}")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings in {path}: {e}")
