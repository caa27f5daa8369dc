"""Runtime settings and log routes."""

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..logging_config import get_logger, get_ws_log_handler, set_log_level

logger = get_logger(__name__, namespace='api')

router = APIRouter(prefix="/api", tags=["settings"])

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ApprovalTimeoutRequest(BaseModel):
    seconds: int


class LogLevelRequest(BaseModel):
    level: str


@router.get("/settings")
def get_settings(request: Request):
    """Current monitor settings."""
    watcher = request.app.state.watcher
    return {
        "approvalTimeoutSeconds": watcher.get_approval_timeout(),
        "backgroundTools": sorted(watcher.background_tools),
        "logLevel": logging.getLevelName(logging.getLogger().level),
        "monitoredSessions": watcher.monitored_sessions(),
    }


@router.put("/settings/approval-timeout")
def set_approval_timeout(body: ApprovalTimeoutRequest, request: Request):
    """Set how long a tool may wait for a result before it counts as awaiting approval."""
    seconds = request.app.state.watcher.set_approval_timeout(body.seconds)
    store = request.app.state.monitor.store
    if store is not None:
        try:
            store.set_approval_timeout(seconds)
        except sqlite3.Error as e:
            logger.warning(f"Failed to save approval timeout: {e}")
    return {"approvalTimeoutSeconds": seconds}


@router.get("/logs")
def get_logs(count: int = 100, namespace: Optional[str] = None):
    """Recent log entries from the in-memory buffer, optionally for one namespace."""
    logs = get_ws_log_handler().get_history(count, {namespace} if namespace else None)
    return {"logs": logs, "count": len(logs)}


@router.put("/logs/level")
def update_log_level(body: LogLevelRequest):
    """Change the log level at runtime."""
    level = body.level.upper()
    if level not in LOG_LEVELS:
        raise HTTPException(status_code=400, detail=f"Invalid log level: {body.level}")
    set_log_level(level)
    logger.info(f"Log level set to {level}")
    return {"level": level}
