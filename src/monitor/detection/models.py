"""Domain models for session monitoring.

Transcript-side models (statuses, activities, the parse aggregate and the
published snapshot) and repository-side models (repositories, worktrees,
sessions, history entries and persisted mappings).
"""

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import MAX_RECENT_ACTIVITIES
from ..types import (
    ActivityPayload,
    CodeChangePayload,
    PendingToolUsePayload,
    RepositoryPayload,
    SessionPayload,
    SessionStatePayload,
    StatusPayload,
    WorktreePayload,
)
from ..utils import calculate_cost, isoformat


# ============================================================================
# Session Status
# ============================================================================

IDLE = 'idle'
THINKING = 'thinking'
EXECUTING_TOOL = 'executing_tool'
AWAITING_APPROVAL = 'awaiting_approval'
WAITING_FOR_USER = 'waiting_for_user'


@dataclass(frozen=True)
class SessionStatus:
    """Coarse activity state of a session.

    `tool` is set for EXECUTING_TOOL and AWAITING_APPROVAL only.
    """
    kind: str
    tool: Optional[str] = None

    @classmethod
    def idle(cls) -> 'SessionStatus':
        return cls(IDLE)

    @classmethod
    def thinking(cls) -> 'SessionStatus':
        return cls(THINKING)

    @classmethod
    def executing_tool(cls, name: str) -> 'SessionStatus':
        return cls(EXECUTING_TOOL, name)

    @classmethod
    def awaiting_approval(cls, tool: str) -> 'SessionStatus':
        return cls(AWAITING_APPROVAL, tool)

    @classmethod
    def waiting_for_user(cls) -> 'SessionStatus':
        return cls(WAITING_FOR_USER)

    @property
    def is_awaiting_approval(self) -> bool:
        return self.kind == AWAITING_APPROVAL

    @property
    def display_name(self) -> str:
        if self.kind == THINKING:
            return "Working"
        if self.kind == EXECUTING_TOOL:
            return f"Tool: {self.tool}"
        if self.kind == WAITING_FOR_USER:
            return "Ready"
        if self.kind == AWAITING_APPROVAL:
            return f"Awaiting approval: {self.tool}"
        return "Idle"

    def to_dict(self) -> StatusPayload:
        payload: StatusPayload = {'kind': self.kind, 'displayName': self.display_name}
        if self.tool is not None:
            payload['tool'] = self.tool
        return payload


# ============================================================================
# Activities
# ============================================================================

TOOL_USE = 'tool_use'
TOOL_RESULT = 'tool_result'
USER_MESSAGE = 'user_message'
ASSISTANT_MESSAGE = 'assistant_message'
THINKING_ACTIVITY = 'thinking'


@dataclass(frozen=True)
class ActivityType:
    """Kind of a recorded activity.

    `name` is set for tool uses and results, `success` for results only.
    """
    kind: str
    name: Optional[str] = None
    success: Optional[bool] = None

    @classmethod
    def tool_use(cls, name: str) -> 'ActivityType':
        return cls(TOOL_USE, name)

    @classmethod
    def tool_result(cls, name: str, success: bool) -> 'ActivityType':
        return cls(TOOL_RESULT, name, success)

    @classmethod
    def user_message(cls) -> 'ActivityType':
        return cls(USER_MESSAGE)

    @classmethod
    def assistant_message(cls) -> 'ActivityType':
        return cls(ASSISTANT_MESSAGE)

    @classmethod
    def thinking(cls) -> 'ActivityType':
        return cls(THINKING_ACTIVITY)


@dataclass(frozen=True)
class CodeChangeInput:
    """Full input of a code-changing tool (Edit, Write, MultiEdit)."""
    tool_type: str
    file_path: str
    old_string: Optional[str] = None
    new_string: Optional[str] = None
    replace_all: Optional[bool] = None
    edits: Optional[tuple[dict[str, str], ...]] = None

    @property
    def file_name(self) -> str:
        return Path(self.file_path).name

    def to_dict(self) -> CodeChangePayload:
        payload: CodeChangePayload = {
            'toolType': self.tool_type,
            'filePath': self.file_path,
            'fileName': self.file_name,
        }
        if self.old_string is not None:
            payload['oldString'] = self.old_string
        if self.new_string is not None:
            payload['newString'] = self.new_string
        if self.replace_all is not None:
            payload['replaceAll'] = self.replace_all
        if self.edits is not None:
            payload['edits'] = [dict(edit) for edit in self.edits]
        return payload


@dataclass(frozen=True)
class ActivityEntry:
    """One entry of the recent-activity log."""
    timestamp: datetime
    type: ActivityType
    description: str
    tool_input: Optional[CodeChangeInput] = None

    def to_dict(self) -> ActivityPayload:
        payload: ActivityPayload = {
            'timestamp': self.timestamp.isoformat(),
            'kind': self.type.kind,
            'description': self.description,
        }
        if self.type.name is not None:
            payload['toolName'] = self.type.name
        if self.type.success is not None:
            payload['success'] = self.type.success
        if self.tool_input is not None:
            payload['toolInput'] = self.tool_input.to_dict()
        return payload


@dataclass(frozen=True)
class PendingToolUse:
    """A tool use that has not received its result yet."""
    tool_name: str
    tool_use_id: str
    timestamp: datetime
    input: Optional[str] = None
    code_change: Optional[CodeChangeInput] = None

    def to_dict(self) -> PendingToolUsePayload:
        payload: PendingToolUsePayload = {
            'toolName': self.tool_name,
            'toolUseId': self.tool_use_id,
            'timestamp': self.timestamp.isoformat(),
        }
        if self.input is not None:
            payload['input'] = self.input
        return payload


def _new_activity_buffer() -> deque:
    return deque(maxlen=MAX_RECENT_ACTIVITIES)


@dataclass
class ParseResult:
    """Mutable per-session aggregate folded from transcript entries.

    Owned by exactly one tailer; observers only ever see SessionMonitorState
    snapshots built from it.
    """
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    message_count: int = 0
    tool_calls: dict[str, int] = field(default_factory=dict)
    pending_tool_uses: dict[str, PendingToolUse] = field(default_factory=dict)
    recent_activities: deque = field(default_factory=_new_activity_buffer)
    last_activity_at: Optional[datetime] = None
    session_started_at: Optional[datetime] = None
    current_status: SessionStatus = field(default_factory=SessionStatus.idle)
    git_branch: Optional[str] = None

    def last_user_message(self) -> Optional[str]:
        """Description of the most recent user message activity, if any."""
        for activity in reversed(self.recent_activities):
            if activity.type.kind == USER_MESSAGE:
                return activity.description
        return None


# ============================================================================
# Published Snapshot
# ============================================================================

@dataclass(frozen=True)
class SessionMonitorState:
    """Immutable real-time monitoring snapshot of one session."""
    status: SessionStatus
    current_tool: Optional[str]
    last_activity_at: Optional[datetime]
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_creation_tokens: int
    message_count: int
    tool_calls: dict[str, int]
    session_started_at: Optional[datetime]
    model: Optional[str]
    git_branch: Optional[str]
    pending_tool_use: Optional[PendingToolUse]
    recent_activities: tuple[ActivityEntry, ...]

    @classmethod
    def from_parse_result(cls, result: ParseResult) -> 'SessionMonitorState':
        # The first opened tool that is still unresolved
        pending = next(iter(result.pending_tool_uses.values()), None)
        return cls(
            status=result.current_status,
            current_tool=pending.tool_name if pending else None,
            last_activity_at=result.last_activity_at,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cache_read_tokens=result.cache_read_tokens,
            cache_creation_tokens=result.cache_creation_tokens,
            message_count=result.message_count,
            tool_calls=dict(result.tool_calls),
            session_started_at=result.session_started_at,
            model=result.model,
            git_branch=result.git_branch,
            pending_tool_use=pending,
            recent_activities=tuple(result.recent_activities),
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def session_duration(self) -> Optional[float]:
        if self.session_started_at is None or self.last_activity_at is None:
            return None
        return (self.last_activity_at - self.session_started_at).total_seconds()

    @property
    def estimated_cost(self) -> float:
        return calculate_cost({
            'input_tokens': self.input_tokens,
            'output_tokens': self.output_tokens,
            'cache_read_input_tokens': self.cache_read_tokens,
            'cache_creation_input_tokens': self.cache_creation_tokens,
        }, self.model)

    def to_dict(self) -> SessionStatePayload:
        return {
            'status': self.status.to_dict(),
            'currentTool': self.current_tool,
            'lastActivityAt': isoformat(self.last_activity_at),
            'inputTokens': self.input_tokens,
            'outputTokens': self.output_tokens,
            'cacheReadTokens': self.cache_read_tokens,
            'cacheCreationTokens': self.cache_creation_tokens,
            'totalTokens': self.total_tokens,
            'messageCount': self.message_count,
            'toolCalls': dict(self.tool_calls),
            'sessionStartedAt': isoformat(self.session_started_at),
            'sessionDuration': self.session_duration,
            'model': self.model,
            'gitBranch': self.git_branch,
            'estimatedCost': self.estimated_cost,
            'pendingToolUse': self.pending_tool_use.to_dict() if self.pending_tool_use else None,
            'recentActivities': [a.to_dict() for a in self.recent_activities],
        }


# ============================================================================
# Repositories, Worktrees and Sessions
# ============================================================================

@dataclass(frozen=True)
class HistoryEntry:
    """One record of the global history index."""
    display: str
    timestamp: int  # milliseconds since epoch
    project: str
    session_id: str

    @property
    def date(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000.0, tz=timezone.utc)


@dataclass(frozen=True)
class SessionMetadata:
    """Facts read from the head of a transcript and its file attributes."""
    branch: Optional[str] = None
    slug: Optional[str] = None
    modified_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionRepoMapping:
    """Persisted assignment of a session to its parent repository."""
    session_id: str
    parent_repo_path: str
    worktree_path: str
    assigned_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CLISession:
    """A CLI agent session discovered through the history index."""
    id: str
    project_path: str
    branch_name: Optional[str] = None
    is_worktree: bool = False
    last_activity_at: Optional[datetime] = None
    message_count: int = 0
    is_active: bool = False
    first_message: Optional[str] = None
    last_message: Optional[str] = None
    slug: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def display_name(self) -> str:
        return self.slug or self.short_id

    @property
    def project_name(self) -> str:
        return Path(self.project_path).name

    def to_dict(self) -> SessionPayload:
        return {
            'id': self.id,
            'shortId': self.short_id,
            'displayName': self.display_name,
            'projectPath': self.project_path,
            'projectName': self.project_name,
            'branchName': self.branch_name,
            'isWorktree': self.is_worktree,
            'lastActivityAt': isoformat(self.last_activity_at),
            'messageCount': self.message_count,
            'isActive': self.is_active,
            'firstMessage': self.first_message,
            'lastMessage': self.last_message,
            'slug': self.slug,
        }


@dataclass(frozen=True)
class WorktreeBranch:
    """A checkout (main or linked worktree) of a monitored repository."""
    name: str
    path: str
    is_worktree: bool = False
    sessions: tuple[CLISession, ...] = ()

    def with_sessions(self, sessions) -> 'WorktreeBranch':
        return replace(self, sessions=tuple(sessions))

    @property
    def active_session_count(self) -> int:
        return sum(1 for s in self.sessions if s.is_active)

    def to_dict(self) -> WorktreePayload:
        return {
            'name': self.name,
            'path': self.path,
            'isWorktree': self.is_worktree,
            'activeSessionCount': self.active_session_count,
            'sessions': [s.to_dict() for s in self.sessions],
        }


@dataclass(frozen=True)
class SelectedRepository:
    """A repository selected for session monitoring."""
    path: str
    worktrees: tuple[WorktreeBranch, ...] = ()
    name: str = ''

    def __post_init__(self):
        if not self.name:
            object.__setattr__(self, 'name', Path(self.path).name)

    def with_worktrees(self, worktrees) -> 'SelectedRepository':
        return replace(self, worktrees=tuple(worktrees))

    @property
    def total_session_count(self) -> int:
        return sum(len(w.sessions) for w in self.worktrees)

    @property
    def active_session_count(self) -> int:
        return sum(w.active_session_count for w in self.worktrees)

    def to_dict(self) -> RepositoryPayload:
        return {
            'path': self.path,
            'name': self.name,
            'totalSessionCount': self.total_session_count,
            'activeSessionCount': self.active_session_count,
            'worktrees': [w.to_dict() for w in self.worktrees],
        }
