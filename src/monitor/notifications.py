"""Approval notifications.

Tailers call a notifier when a session starts awaiting approval. Delivery
is up to the notifier; the ones here log the event and push it to
WebSocket clients.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__, namespace='monitor')


class ApprovalNotifier:
    """Base notifier: records the request in the log."""

    async def notify_approval_required(
        self,
        session_id: str,
        tool_name: str,
        project_path: str,
        model: Optional[str] = None,
        last_message: Optional[str] = None,
    ) -> None:
        logger.info(
            f"Session {session_id[:8]} in {Path(project_path).name} "
            f"is waiting for approval of {tool_name}"
        )


class WebSocketApprovalNotifier(ApprovalNotifier):
    """Broadcasts an `approval_required` message to every WebSocket client."""

    def __init__(self, ws_manager):
        self.ws_manager = ws_manager

    async def notify_approval_required(
        self,
        session_id: str,
        tool_name: str,
        project_path: str,
        model: Optional[str] = None,
        last_message: Optional[str] = None,
    ) -> None:
        await super().notify_approval_required(session_id, tool_name, project_path, model, last_message)
        await self.ws_manager.broadcast({
            'type': 'approval_required',
            'sessionId': session_id,
            'toolName': tool_name,
            'projectPath': project_path,
            'model': model,
            'lastMessage': last_message,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })
