"""Type definitions for the session monitor's JSON payloads.

This module provides TypedDict definitions documenting the shapes that are
broadcast over WebSocket and returned by the HTTP API.
"""

from typing import TypedDict
from typing_extensions import NotRequired


class StatusPayload(TypedDict):
    """Serialized SessionStatus."""
    kind: str  # 'idle', 'thinking', 'executing_tool', 'awaiting_approval', 'waiting_for_user'
    displayName: str
    tool: NotRequired[str]


class CodeChangePayload(TypedDict):
    """Full input of an Edit/Write/MultiEdit tool use."""
    toolType: str
    filePath: str
    fileName: str
    oldString: NotRequired[str]
    newString: NotRequired[str]
    replaceAll: NotRequired[bool]
    edits: NotRequired[list[dict[str, str]]]


class ActivityPayload(TypedDict):
    """One recent-activity entry."""
    timestamp: str
    kind: str
    description: str
    toolName: NotRequired[str]
    success: NotRequired[bool]
    toolInput: NotRequired[CodeChangePayload]


class PendingToolUsePayload(TypedDict):
    """A tool use still waiting for its result."""
    toolName: str
    toolUseId: str
    timestamp: str
    input: NotRequired[str]


class SessionStatePayload(TypedDict):
    """Real-time monitoring state of one session."""
    status: StatusPayload
    currentTool: str | None
    lastActivityAt: str | None
    inputTokens: int
    outputTokens: int
    cacheReadTokens: int
    cacheCreationTokens: int
    totalTokens: int
    messageCount: int
    toolCalls: dict[str, int]
    sessionStartedAt: str | None
    sessionDuration: float | None
    model: str | None
    gitBranch: str | None
    estimatedCost: float
    pendingToolUse: PendingToolUsePayload | None
    recentActivities: list[ActivityPayload]


class SessionPayload(TypedDict):
    """A session assigned to a worktree."""
    id: str
    shortId: str
    displayName: str
    projectPath: str
    projectName: str
    branchName: str | None
    isWorktree: bool
    lastActivityAt: str | None
    messageCount: int
    isActive: bool
    firstMessage: str | None
    lastMessage: str | None
    slug: str | None


class WorktreePayload(TypedDict):
    """A worktree and its sessions."""
    name: str
    path: str
    isWorktree: bool
    activeSessionCount: int
    sessions: list[SessionPayload]


class RepositoryPayload(TypedDict):
    """A monitored repository."""
    path: str
    name: str
    totalSessionCount: int
    activeSessionCount: int
    worktrees: list[WorktreePayload]
