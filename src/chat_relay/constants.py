"""Constants for the chat relay application.

This module defines the named defaults used throughout the relay: endpoint
timing, response-completion detection, recovery thresholds and persistence
bounds. Every value here can be overridden at runtime through
:class:`chat_relay.models.config.RelayConfig` (``CHAT_RELAY_*`` env vars).

The relay drives a turn-taking conversation between two chat agent
endpoints (CLI agents in tmux panes, or terminals hosted by a cao-server).
"""

from pathlib import Path

# =============================================================================
# Application Directory Structure
# =============================================================================
# Base directory for all relay data (~/.chat-relay)
RELAY_HOME_DIR = Path.home() / ".chat-relay"

# Durable key/value state (session, log, snapshots, backups, stats)
STATE_DIR = RELAY_HOME_DIR / "state"

# Default settings file read by `chat-relay run` when --settings is not given
SETTINGS_FILE = RELAY_HOME_DIR / "settings.json"

# =============================================================================
# Session Configuration
# =============================================================================
# A relay always runs between exactly this many endpoints
ENDPOINT_COUNT = 2

# Delay (ms) to let freshly bound endpoints settle before the readiness checks
DEFAULT_SETTLE_TIMEOUT_MS = 5000

# Pause between activating the next endpoint and dispatching its prompt (s)
DISPATCH_DELAY = 0.5

# =============================================================================
# Response-Completion Detection
# =============================================================================
# Observed reply text must stay unchanged this long to count as complete (s)
STABILITY_WINDOW = 1.5

# Accept a still-changing reply after this long (s), once per submission
FORCE_TIMEOUT = 10.0

# Give up on a submission without any delivery after this long (s)
RESPONSE_TIMEOUT = 60.0

# Reply candidates shorter than this are trivial fragments and ignored
MIN_REPLY_LENGTH = 5

# Polling interval of the change source watching an endpoint surface (s)
CHANGE_POLL_INTERVAL = 0.3

# Maximum lines of terminal history captured when observing a tmux endpoint
TMUX_HISTORY_LINES = 200

# =============================================================================
# Message Channel
# =============================================================================
# Timeout for one controller -> agent round-trip (s)
CHANNEL_TIMEOUT = 10.0

# Message-send retry: attempts and fixed delay between them (s)
SEND_MAX_RETRIES = 3
SEND_RETRY_DELAY = 1.0

# Wait after re-injecting an unresponsive agent adapter (s)
INJECT_SETTLE_DELAY = 0.5

# =============================================================================
# Recovery Configuration
# =============================================================================
# Consecutive errors that trip the circuit breaker and disable the relay
ERROR_THRESHOLD = 3

# Watchdog: check interval and the no-progress threshold that stops a session (s)
WATCHDOG_INTERVAL = 10.0
STALL_TIMEOUT = 120.0

# Health check: interval (s) and consecutive failures before disabling the relay
HEALTH_CHECK_INTERVAL = 60.0
MAX_HEALTH_FAILURES = 3

# Exponential backoff: base delay, cap and retry ceiling
BACKOFF_BASE_DELAY = 1.0
BACKOFF_MAX_DELAY = 30.0
BACKOFF_MAX_RETRIES = 3

# Dedicated delay when a failure looks rate-limit shaped (s)
RATE_LIMIT_DELAY = 60.0
RATE_LIMIT_MARKERS = ("rate limit", "too many requests")

# =============================================================================
# Persistence Configuration
# =============================================================================
# Ring buffer size of the conversation log
LOG_MAX_ENTRIES = 100

# Bounded snapshot and backup collections (newest first)
MAX_SNAPSHOTS = 10
MAX_BACKUPS = 5

# Periodic session save, backup and snapshot validation intervals (s)
SESSION_SAVE_INTERVAL = 30.0
BACKUP_INTERVAL = 3600.0
SNAPSHOT_SWEEP_INTERVAL = 600.0

# A saved session older than this is not resumed (s)
SESSION_STALE_AFTER = 30 * 60.0

# Storage keys, one durable document each
SESSION_STATE_KEY = "session_state"
CONVERSATION_LOG_KEY = "conversation_log"
SNAPSHOTS_KEY = "snapshots"
BACKUPS_KEY = "backups"
STATS_KEY = "stats"

# =============================================================================
# API Endpoint Configuration
# =============================================================================
# Request timeout for endpoints hosted by a cao-server (s)
API_REQUEST_TIMEOUT = 30.0
