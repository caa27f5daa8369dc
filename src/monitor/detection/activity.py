"""Activity state inference for monitored sessions.

The transcript never says what the agent is doing right now, so the status
is inferred from the last recorded activity and how long ago it happened:

- tool use without result, short wait -> executing the tool
- tool use without result, longer than the approval timeout -> awaiting approval
- tool result or user message -> thinking, for a minute
- thinking block -> thinking, for 30 seconds
- assistant text -> waiting for the user
- nothing for five minutes -> idle

Several branches depend only on elapsed time, so callers must re-run this
periodically and not only when new lines arrive.
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Optional

from ..config import (
    BACKGROUND_TOOLS,
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    IDLE_TIMEOUT_SECONDS,
    MIN_APPROVAL_TIMEOUT_SECONDS,
    THINKING_WINDOW_SECONDS,
    WORKING_WINDOW_SECONDS,
)
from .models import (
    ASSISTANT_MESSAGE,
    THINKING_ACTIVITY,
    TOOL_RESULT,
    TOOL_USE,
    USER_MESSAGE,
    ActivityEntry,
    ActivityType,
    ParseResult,
    SessionStatus,
)


def clamp_approval_timeout(seconds: int) -> int:
    """Approval timeouts below one second are raised to one second."""
    return max(MIN_APPROVAL_TIMEOUT_SECONDS, int(seconds))


def status_for(
    activity_type: ActivityType,
    elapsed: float,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    background_tools: Iterable[str] = BACKGROUND_TOOLS,
) -> SessionStatus:
    """Pure status rule for the last activity and seconds elapsed since it."""
    if elapsed > IDLE_TIMEOUT_SECONDS:
        return SessionStatus.idle()

    kind = activity_type.kind

    if kind == TOOL_USE:
        name = activity_type.name or 'unknown'
        # Background tools report no result until they finish and never
        # ask for approval
        if name in background_tools:
            return SessionStatus.executing_tool(name)
        if elapsed > approval_timeout_seconds:
            return SessionStatus.awaiting_approval(name)
        return SessionStatus.executing_tool(name)

    if kind in (TOOL_RESULT, USER_MESSAGE):
        if elapsed < WORKING_WINDOW_SECONDS:
            return SessionStatus.thinking()
        return SessionStatus.idle()

    if kind == ASSISTANT_MESSAGE:
        return SessionStatus.waiting_for_user()

    if kind == THINKING_ACTIVITY:
        if elapsed < THINKING_WINDOW_SECONDS:
            return SessionStatus.thinking()
        return SessionStatus.idle()

    return SessionStatus.idle()


def compute_status(
    last_activity: Optional[ActivityEntry],
    now: Optional[datetime] = None,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    background_tools: Iterable[str] = BACKGROUND_TOOLS,
) -> SessionStatus:
    """Status for a session whose most recent activity is `last_activity`."""
    if last_activity is None:
        return SessionStatus.idle()

    now = now or datetime.now(timezone.utc)
    elapsed = (now - last_activity.timestamp).total_seconds()
    return status_for(
        last_activity.type,
        elapsed,
        approval_timeout_seconds=approval_timeout_seconds,
        background_tools=background_tools,
    )


def update_current_status(
    result: ParseResult,
    now: Optional[datetime] = None,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    background_tools: Iterable[str] = BACKGROUND_TOOLS,
) -> SessionStatus:
    """Recompute and store result.current_status; returns the new status."""
    last_activity = result.recent_activities[-1] if result.recent_activities else None
    result.current_status = compute_status(
        last_activity,
        now=now,
        approval_timeout_seconds=approval_timeout_seconds,
        background_tools=background_tools,
    )
    return result.current_status


def is_approval_transition(previous: SessionStatus, current: SessionStatus) -> bool:
    """True when a session has just started awaiting approval."""
    return current.is_awaiting_approval and not previous.is_awaiting_approval
