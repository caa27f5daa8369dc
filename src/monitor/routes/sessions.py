"""Session monitoring routes."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..logging_config import get_logger

logger = get_logger(__name__, namespace='api')

router = APIRouter(prefix="/api", tags=["sessions"])


class MonitorRequest(BaseModel):
    project_path: str = Field(alias="projectPath")


@router.post("/sessions/{session_id}/monitor")
async def start_monitoring(session_id: str, body: MonitorRequest, request: Request):
    """Start tailing a session transcript."""
    state = await request.app.state.watcher.start_monitoring(session_id, body.project_path)
    if state is None:
        raise HTTPException(status_code=400, detail=f"No session file found for {session_id}")
    return {"sessionId": session_id, "state": state.to_dict()}


@router.delete("/sessions/{session_id}/monitor")
async def stop_monitoring(session_id: str, request: Request):
    """Stop tailing a session transcript."""
    stopped = await request.app.state.watcher.stop_monitoring(session_id)
    if not stopped:
        raise HTTPException(status_code=404, detail="Session not monitored")
    return {"success": True}


@router.get("/sessions/{session_id}/state")
def get_session_state(session_id: str, request: Request):
    """Get the latest state of a monitored session."""
    state = request.app.state.watcher.get_state(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Session not monitored")
    return {"sessionId": session_id, "state": state.to_dict()}
