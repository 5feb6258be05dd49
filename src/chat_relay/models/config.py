"""Single configuration surface for relay timing and thresholds."""

import logging
import os
from typing import Mapping, Optional

from pydantic import BaseModel

from chat_relay import constants

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_RELAY_"


def _get_float_env(env: Mapping[str, str], name: str, default: float) -> float:
    """Parse float env var with safe fallback."""
    try:
        return float(env.get(name, str(default)))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid value for {name}: {env.get(name)!r}")
        return default


def _get_int_env(env: Mapping[str, str], name: str, default: int) -> int:
    """Parse int env var with safe fallback."""
    try:
        return int(env.get(name, str(default)))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid value for {name}: {env.get(name)!r}")
        return default


class RelayConfig(BaseModel):
    """Named, testable defaults for every relay constant.

    Durations are seconds. Tests shrink them to milliseconds instead of
    patching module constants.
    """

    stability_window: float = constants.STABILITY_WINDOW
    force_timeout: float = constants.FORCE_TIMEOUT
    response_timeout: float = constants.RESPONSE_TIMEOUT
    min_reply_length: int = constants.MIN_REPLY_LENGTH
    change_poll_interval: float = constants.CHANGE_POLL_INTERVAL

    channel_timeout: float = constants.CHANNEL_TIMEOUT
    send_max_retries: int = constants.SEND_MAX_RETRIES
    send_retry_delay: float = constants.SEND_RETRY_DELAY
    inject_settle_delay: float = constants.INJECT_SETTLE_DELAY
    dispatch_delay: float = constants.DISPATCH_DELAY

    error_threshold: int = constants.ERROR_THRESHOLD
    watchdog_interval: float = constants.WATCHDOG_INTERVAL
    stall_timeout: float = constants.STALL_TIMEOUT
    health_check_interval: float = constants.HEALTH_CHECK_INTERVAL
    max_health_failures: int = constants.MAX_HEALTH_FAILURES

    backoff_base_delay: float = constants.BACKOFF_BASE_DELAY
    backoff_max_delay: float = constants.BACKOFF_MAX_DELAY
    backoff_max_retries: int = constants.BACKOFF_MAX_RETRIES
    rate_limit_delay: float = constants.RATE_LIMIT_DELAY

    log_max_entries: int = constants.LOG_MAX_ENTRIES
    max_snapshots: int = constants.MAX_SNAPSHOTS
    max_backups: int = constants.MAX_BACKUPS
    session_save_interval: float = constants.SESSION_SAVE_INTERVAL
    backup_interval: float = constants.BACKUP_INTERVAL
    snapshot_sweep_interval: float = constants.SNAPSHOT_SWEEP_INTERVAL
    session_stale_after: float = constants.SESSION_STALE_AFTER

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Build a config from defaults overridden by CHAT_RELAY_<FIELD> env vars."""
        if env is None:
            env = os.environ

        values = {}
        for name, field in cls.model_fields.items():
            env_name = f"{ENV_PREFIX}{name.upper()}"
            if env_name not in env or env[env_name] == "":
                continue
            if field.annotation is int:
                values[name] = _get_int_env(env, env_name, field.default)
            else:
                values[name] = _get_float_env(env, env_name, field.default)
        return cls(**values)
