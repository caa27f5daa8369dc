"""Tests for WebSocket connection management."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from src.monitor.detection.models import (
    ParseResult,
    SelectedRepository,
    SessionMonitorState,
    WorktreeBranch,
)
from src.monitor.file_watcher import StateUpdate
from src.monitor.websocket import (
    ConnectionManager,
    forward_updates_loop,
    repositories_message,
    session_state_message,
)


class TestConnectionManager:
    """Tests for ConnectionManager class."""

    @pytest.fixture
    def manager(self):
        """Create a fresh connection manager for each test."""
        return ConnectionManager()

    @pytest.mark.asyncio
    async def test_initial_state(self, manager):
        """Test initial state of connection manager."""
        assert manager.connection_count == 0
        assert manager.active_connections == []

    @pytest.mark.asyncio
    async def test_connect_adds_connection(self, manager):
        """Test connecting a WebSocket."""
        mock_ws = AsyncMock()

        await manager.connect(mock_ws)

        assert manager.connection_count == 1
        assert mock_ws in manager.active_connections
        mock_ws.accept.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect_removes_connection(self, manager):
        """Test disconnecting a WebSocket."""
        mock_ws = AsyncMock()
        await manager.connect(mock_ws)

        await manager.disconnect(mock_ws)

        assert manager.connection_count == 0
        assert mock_ws not in manager.active_connections

    @pytest.mark.asyncio
    async def test_disconnect_nonexistent_connection(self, manager):
        """Test disconnecting a connection that doesn't exist."""
        mock_ws = AsyncMock()

        # Should not raise
        await manager.disconnect(mock_ws)

        assert manager.connection_count == 0

    @pytest.mark.asyncio
    async def test_multiple_connections(self, manager):
        """Test managing multiple connections."""
        ws1 = AsyncMock()
        ws2 = AsyncMock()
        ws3 = AsyncMock()

        await manager.connect(ws1)
        await manager.connect(ws2)
        await manager.connect(ws3)

        assert manager.connection_count == 3

        await manager.disconnect(ws2)

        assert manager.connection_count == 2
        assert ws1 in manager.active_connections
        assert ws2 not in manager.active_connections
        assert ws3 in manager.active_connections

    @pytest.mark.asyncio
    async def test_broadcast_to_all(self, manager):
        """Test broadcasting message to all connections."""
        ws1 = AsyncMock()
        ws2 = AsyncMock()

        await manager.connect(ws1)
        await manager.connect(ws2)

        message = {'type': 'test', 'data': 'hello'}
        await manager.broadcast(message)

        expected = json.dumps(message)
        ws1.send_text.assert_called_once_with(expected)
        ws2.send_text.assert_called_once_with(expected)

    @pytest.mark.asyncio
    async def test_broadcast_no_connections(self, manager):
        """Test broadcast with no connections does nothing."""
        message = {'type': 'test'}

        # Should not raise
        await manager.broadcast(message)

    @pytest.mark.asyncio
    async def test_broadcast_handles_disconnected_client(self, manager):
        """Test that failed sends result in client disconnect."""
        ws_good = AsyncMock()
        ws_bad = AsyncMock()
        ws_bad.send_text.side_effect = Exception("Connection closed")

        await manager.connect(ws_good)
        await manager.connect(ws_bad)

        assert manager.connection_count == 2

        await manager.broadcast({'type': 'test'})

        # Bad connection should be removed
        assert ws_bad not in manager.active_connections
        # Good connection should remain
        assert ws_good in manager.active_connections

    @pytest.mark.asyncio
    async def test_connection_count_property(self, manager):
        """Test connection_count property."""
        assert manager.connection_count == 0

        ws1 = AsyncMock()
        await manager.connect(ws1)
        assert manager.connection_count == 1

        ws2 = AsyncMock()
        await manager.connect(ws2)
        assert manager.connection_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_connect_disconnect(self, manager):
        """Test concurrent connect and disconnect operations."""
        websockets = [AsyncMock() for _ in range(5)]

        # Connect all concurrently
        await asyncio.gather(*[manager.connect(ws) for ws in websockets])

        assert manager.connection_count == 5

        # Disconnect some concurrently
        await asyncio.gather(*[manager.disconnect(ws) for ws in websockets[:3]])

        assert manager.connection_count == 2


class TestConnectionManagerThreadSafety:
    """Tests for thread safety of ConnectionManager."""

    @pytest.mark.asyncio
    async def test_lock_exists(self):
        """Test that manager has a lock for thread safety."""
        manager = ConnectionManager()
        assert manager._lock is not None
        assert isinstance(manager._lock, asyncio.Lock)

    @pytest.mark.asyncio
    async def test_concurrent_broadcasts(self):
        """Test concurrent broadcast operations."""
        manager = ConnectionManager()
        ws = AsyncMock()
        await manager.connect(ws)

        # Multiple concurrent broadcasts
        messages = [{'type': 'test', 'id': i} for i in range(10)]

        await asyncio.gather(*[manager.broadcast(msg) for msg in messages])

        # All messages should be sent
        assert ws.send_text.call_count == 10


class TestLogSubscriptions:
    """Tests for log streaming to subscribed clients."""

    @pytest.mark.asyncio
    async def test_subscribe_sends_history(self):
        manager = ConnectionManager()
        ws = AsyncMock()

        await manager.subscribe_to_logs(ws, namespaces=['watcher'])

        assert manager.log_subscriber_count == 1
        sent = json.loads(ws.send_text.call_args.args[0])
        assert sent['type'] == 'log_history'

    @pytest.mark.asyncio
    async def test_namespace_filter(self):
        manager = ConnectionManager()
        watcher_ws = AsyncMock()
        all_ws = AsyncMock()
        await manager.subscribe_to_logs(watcher_ws, namespaces=['watcher'])
        await manager.subscribe_to_logs(all_ws)
        watcher_ws.send_text.reset_mock()
        all_ws.send_text.reset_mock()

        await manager.broadcast_log({'namespace': 'matcher', 'message': 'x'})

        watcher_ws.send_text.assert_not_called()
        all_ws.send_text.assert_called_once_with(json.dumps({
            "type": "log",
            "log": {"namespace": "matcher", "message": "x"},
        }))

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        manager = ConnectionManager()
        ws = AsyncMock()
        await manager.subscribe_to_logs(ws)

        await manager.subscribe_to_logs(ws, enabled=False)

        assert manager.log_subscriber_count == 0


class TestMessages:
    """Tests for the broadcast message builders."""

    def test_repositories_message(self):
        repo = SelectedRepository(
            path='/work/app',
            worktrees=(WorktreeBranch(name='main', path='/work/app'),),
        )

        message = repositories_message([repo])

        assert message['type'] == 'repositories_update'
        assert message['repositories'][0]['path'] == '/work/app'
        assert message['repositories'][0]['name'] == 'app'
        assert 'timestamp' in message

    def test_session_state_message(self):
        state = SessionMonitorState.from_parse_result(ParseResult())

        message = session_state_message(StateUpdate(session_id='s1', state=state))

        assert message['type'] == 'session_state'
        assert message['sessionId'] == 's1'
        assert message['state']['status']['kind'] == 'idle'
        json.dumps(message)


class TestForwardUpdatesLoop:
    """Tests for forward_updates_loop."""

    @pytest.mark.asyncio
    async def test_forwards_in_order(self):
        manager = ConnectionManager()
        ws = AsyncMock()
        await manager.connect(ws)
        queue = asyncio.Queue()

        task = asyncio.create_task(forward_updates_loop(manager, queue, lambda n: {'n': n}))
        for n in range(3):
            queue.put_nowait(n)
        while not queue.empty():
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        task.cancel()
        await task

        sent = [json.loads(call.args[0]) for call in ws.send_text.call_args_list]
        assert sent == [{'n': 0}, {'n': 1}, {'n': 2}]

    @pytest.mark.asyncio
    async def test_survives_conversion_errors(self):
        manager = ConnectionManager()
        ws = AsyncMock()
        await manager.connect(ws)
        queue = asyncio.Queue()

        def to_message(item):
            if item == 'bad':
                raise ValueError('cannot convert')
            return {'item': item}

        task = asyncio.create_task(forward_updates_loop(manager, queue, to_message))
        queue.put_nowait('bad')
        queue.put_nowait('good')
        while not queue.empty():
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        task.cancel()
        await task

        ws.send_text.assert_called_once_with(json.dumps({'item': 'good'}))
