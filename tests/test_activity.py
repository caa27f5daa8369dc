"""Tests for activity status inference."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from src.monitor.detection.activity import (
    clamp_approval_timeout,
    compute_status,
    is_approval_transition,
    status_for,
    update_current_status,
)
from src.monitor.detection.aggregator import parse_new_lines
from src.monitor.detection.models import (
    ActivityEntry,
    ActivityType,
    ParseResult,
    SessionStatus,
)

T0 = datetime(2026, 1, 9, 10, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def activity(activity_type: ActivityType) -> ActivityEntry:
    return ActivityEntry(timestamp=T0, type=activity_type, description='')


class TestBashTimeline:
    """One unanswered Bash tool use, re-evaluated as time passes."""

    @pytest.fixture
    def result(self):
        line = json.dumps({
            'type': 'assistant',
            'timestamp': '2026-01-09T10:00:00.000Z',
            'message': {
                'role': 'assistant',
                'content': [{'type': 'tool_use', 'id': 'b1', 'name': 'Bash', 'input': {'command': 'npm test'}}],
            },
        })
        result = ParseResult()
        parse_new_lines([line], result, approval_timeout_seconds=5, now=T0)
        return result

    def test_executing_after_two_seconds(self, result):
        status = update_current_status(result, now=at(2), approval_timeout_seconds=5)
        assert status == SessionStatus.executing_tool('Bash')

    def test_awaiting_approval_after_six_seconds(self, result):
        status = update_current_status(result, now=at(6), approval_timeout_seconds=5)
        assert status == SessionStatus.awaiting_approval('Bash')
        assert result.current_status.display_name == 'Awaiting approval: Bash'

    def test_idle_after_301_seconds(self, result):
        status = update_current_status(result, now=at(301), approval_timeout_seconds=5)
        assert status == SessionStatus.idle()


class TestStatusFor:
    """Tests for the pure status rule."""

    def test_tool_use_at_timeout_boundary(self):
        assert status_for(ActivityType.tool_use('Edit'), 5, 5) == SessionStatus.executing_tool('Edit')
        assert status_for(ActivityType.tool_use('Edit'), 5.1, 5) == SessionStatus.awaiting_approval('Edit')

    def test_background_tool_never_awaits_approval(self):
        status = status_for(ActivityType.tool_use('Task'), 120, 5)
        assert status == SessionStatus.executing_tool('Task')

    def test_background_tools_are_configurable(self):
        tools = frozenset({'Task', 'LongRunner'})
        assert status_for(ActivityType.tool_use('LongRunner'), 60, 5, tools) == SessionStatus.executing_tool('LongRunner')
        assert status_for(ActivityType.tool_use('Task'), 60, 5, frozenset()) == SessionStatus.awaiting_approval('Task')

    def test_background_tool_still_goes_idle(self):
        assert status_for(ActivityType.tool_use('Task'), 301, 5) == SessionStatus.idle()

    @pytest.mark.parametrize('activity_type', [
        ActivityType.tool_result('Bash', True),
        ActivityType.user_message(),
    ])
    def test_working_window(self, activity_type):
        assert status_for(activity_type, 59) == SessionStatus.thinking()
        assert status_for(activity_type, 60) == SessionStatus.idle()

    def test_thinking_window(self):
        assert status_for(ActivityType.thinking(), 29) == SessionStatus.thinking()
        assert status_for(ActivityType.thinking(), 30) == SessionStatus.idle()

    def test_assistant_message_waits_for_user(self):
        assert status_for(ActivityType.assistant_message(), 200) == SessionStatus.waiting_for_user()

    def test_idle_threshold(self):
        assert status_for(ActivityType.assistant_message(), 300) == SessionStatus.waiting_for_user()
        assert status_for(ActivityType.assistant_message(), 300.5) == SessionStatus.idle()

    @pytest.mark.parametrize('timeout', [1, 2, 5, 30, 120])
    @pytest.mark.parametrize('elapsed', [0, 0.5, 3, 45, 299, 301])
    def test_purity(self, timeout, elapsed):
        for activity_type in (
            ActivityType.tool_use('Bash'),
            ActivityType.tool_result('Bash', False),
            ActivityType.user_message(),
            ActivityType.assistant_message(),
            ActivityType.thinking(),
        ):
            first = status_for(activity_type, elapsed, timeout)
            second = status_for(activity_type, elapsed, timeout)
            assert first == second


class TestComputeStatus:
    """Tests for compute_status and update_current_status."""

    def test_no_activity_is_idle(self):
        assert compute_status(None, now=T0) == SessionStatus.idle()

    def test_uses_elapsed_since_activity(self):
        entry = activity(ActivityType.thinking())
        assert compute_status(entry, now=at(10)) == SessionStatus.thinking()
        assert compute_status(entry, now=at(40)) == SessionStatus.idle()

    def test_update_uses_last_activity(self):
        result = ParseResult()
        result.recent_activities.append(activity(ActivityType.tool_use('Bash')))
        result.recent_activities.append(activity(ActivityType.assistant_message()))

        assert update_current_status(result, now=at(100)) == SessionStatus.waiting_for_user()
        assert result.current_status == SessionStatus.waiting_for_user()


class TestApprovalTimeout:
    def test_clamped_to_one_second(self):
        assert clamp_approval_timeout(0) == 1
        assert clamp_approval_timeout(-5) == 1
        assert clamp_approval_timeout(7) == 7

    def test_transition_detection(self):
        waiting = SessionStatus.awaiting_approval('Bash')
        assert is_approval_transition(SessionStatus.executing_tool('Bash'), waiting)
        assert not is_approval_transition(waiting, waiting)
        assert not is_approval_transition(waiting, SessionStatus.thinking())


class TestSessionStatusDisplay:
    def test_display_names(self):
        assert SessionStatus.thinking().display_name == 'Working'
        assert SessionStatus.executing_tool('Read').display_name == 'Tool: Read'
        assert SessionStatus.waiting_for_user().display_name == 'Ready'
        assert SessionStatus.idle().display_name == 'Idle'

    def test_to_dict(self):
        assert SessionStatus.awaiting_approval('Bash').to_dict() == {
            'kind': 'awaiting_approval',
            'displayName': 'Awaiting approval: Bash',
            'tool': 'Bash',
        }
        assert 'tool' not in SessionStatus.idle().to_dict()
