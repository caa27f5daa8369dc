"""Configuration module for the session monitor.

Centralizes all configuration constants and environment variables
to eliminate scattered magic numbers and duplicated settings.
"""

import os
from pathlib import Path

# ============================================================================
# Path Configuration
# ============================================================================

# Root of the CLI agent's data directory (transcripts + history index)
CLAUDE_DATA_DIR = Path(
    os.getenv("CLAUDE_DATA_DIR", str(Path.home() / ".claude"))
).expanduser()

# Database path for persisted session -> repository mappings
DB_PATH = Path(
    os.getenv("MONITOR_DB_PATH", str(Path.home() / ".claude" / "session_monitor.db"))
).expanduser()


# ============================================================================
# Activity State Thresholds (seconds)
# ============================================================================

# Seconds a tool use may stay unresolved before we assume it awaits approval
DEFAULT_APPROVAL_TIMEOUT_SECONDS = int(os.getenv("MONITOR_APPROVAL_TIMEOUT", "5"))

# Lower bound accepted for the approval timeout
MIN_APPROVAL_TIMEOUT_SECONDS = 1

# Any session silent for longer than this is idle, whatever it was doing
IDLE_TIMEOUT_SECONDS = 300

# After a tool result or user message the agent is assumed to be working
# for this long
WORKING_WINDOW_SECONDS = 60

# Thinking blocks decay to idle faster
THINKING_WINDOW_SECONDS = 30

# Tools that run as untracked background agents and never ask for approval
BACKGROUND_TOOLS = frozenset({"Task"})


# ============================================================================
# File Tailing
# ============================================================================

# Health check period for each tailed session
HEALTH_CHECK_INTERVAL = 1.0

# If the file grew but no event arrived within this window, the OS
# watcher is considered stale
STALE_WATCHER_GRACE_SECONDS = 5.0

# Capacity of the recent-activity ring buffer
MAX_RECENT_ACTIVITIES = 100

# Watchfiles debounce (milliseconds)
WATCH_DEBOUNCE_MS = 50


# ============================================================================
# Session Matching
# ============================================================================

# Transcript modified within this window => session is "active"
ACTIVE_RECENCY_SECONDS = 60

# Bytes read from the head of a transcript when looking for gitBranch/slug
SESSION_HEAD_READ_BYTES = 16384


# ============================================================================
# Git Configuration
# ============================================================================

# Hard timeout for git subprocesses
GIT_COMMAND_TIMEOUT = 3.0


# ============================================================================
# Token Configuration
# ============================================================================

# Pricing per million tokens, keyed by model family
PRICING = {
    'opus': {
        'input_per_mtok': 15.00,
        'output_per_mtok': 75.00,
        'cache_read_per_mtok': 1.50,
        'cache_write_per_mtok': 18.75,
    },
    'sonnet': {
        'input_per_mtok': 3.00,
        'output_per_mtok': 15.00,
        'cache_read_per_mtok': 0.30,
        'cache_write_per_mtok': 3.75,
    },
    'haiku': {
        'input_per_mtok': 0.25,
        'output_per_mtok': 1.25,
        'cache_read_per_mtok': 0.025,
        'cache_write_per_mtok': 0.30,
    },
}

# Unknown models are priced as Opus
DEFAULT_PRICING_FAMILY = 'opus'


# ============================================================================
# Server Configuration
# ============================================================================

# Default host and port
DEFAULT_HOST = os.getenv("MONITOR_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("MONITOR_PORT", "8000"))


# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL = os.getenv("MONITOR_LOG_LEVEL", "INFO").upper()

# Entries kept in memory for /api/logs and log_history
LOG_BUFFER_SIZE = int(os.getenv("MONITOR_LOG_BUFFER_SIZE", "500"))

# Whether log records are buffered for WebSocket clients at all
LOG_STREAM_ENABLED = os.getenv("MONITOR_LOG_STREAM", "true").lower() == "true"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
