"""Detection modules for agent session parsing and matching.

This package contains modules for:
- Transcript line decoding (jsonl_parser.py)
- Folding entries into a per-session aggregate (aggregator.py)
- Activity status inference (activity.py)
- History index and transcript head reads (history.py)
- Session to worktree matching (matcher.py)

Import functions from here for a clean API:
    from src.monitor.detection import decode_entry, parse_session_file
"""

# Domain models
from .models import (
    ActivityEntry,
    ActivityType,
    CLISession,
    CodeChangeInput,
    HistoryEntry,
    ParseResult,
    PendingToolUse,
    SelectedRepository,
    SessionMetadata,
    SessionMonitorState,
    SessionRepoMapping,
    SessionStatus,
    WorktreeBranch,
)

# Transcript decoding
from .jsonl_parser import (
    TranscriptEntry,
    decode_entry,
    decode_tool_input,
)

# Aggregation
from .aggregator import (
    apply_entries,
    parse_new_lines,
    parse_session_file,
    process_entry,
)

# Activity status
from .activity import (
    clamp_approval_timeout,
    compute_status,
    is_approval_transition,
    update_current_status,
)

# History index
from .history import (
    parse_history,
    read_session_metadata,
    read_session_metadata_batch,
    session_file_path,
)

# Session matching
from .matcher import RepositorySessionMatcher

__all__ = [
    # Domain models
    'ActivityEntry',
    'ActivityType',
    'CLISession',
    'CodeChangeInput',
    'HistoryEntry',
    'ParseResult',
    'PendingToolUse',
    'SelectedRepository',
    'SessionMetadata',
    'SessionMonitorState',
    'SessionRepoMapping',
    'SessionStatus',
    'WorktreeBranch',
    # Transcript decoding
    'TranscriptEntry',
    'decode_entry',
    'decode_tool_input',
    # Aggregation
    'apply_entries',
    'parse_new_lines',
    'parse_session_file',
    'process_entry',
    # Activity status
    'clamp_approval_timeout',
    'compute_status',
    'is_approval_transition',
    'update_current_status',
    # History index
    'parse_history',
    'read_session_metadata',
    'read_session_metadata_batch',
    'session_file_path',
    # Session matching
    'RepositorySessionMatcher',
]
