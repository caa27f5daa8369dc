import asyncio
import json
import sqlite3
from pathlib import Path

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import (
    BACKGROUND_TOOLS,
    CLAUDE_DATA_DIR,
    DB_PATH,
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_HOST,
    DEFAULT_PORT,
)
from .file_watcher import SessionFileWatcher, StateUpdate
from .git_tracker import detect_worktrees
from .logging_config import get_logger, get_ws_log_handler, setup_logging
from .notifications import WebSocketApprovalNotifier
from .routes import repositories_router, sessions_router, settings_router
from .session_monitor import SessionMonitorService
from .store import SessionMetadataStore
from .websocket import (
    ConnectionManager,
    forward_updates_loop,
    repositories_message,
    session_state_message,
)

logger = get_logger(__name__, namespace='api')


def open_store(db_path: Path | str):
    """Open the mapping store, or None if the database is unusable."""
    try:
        return SessionMetadataStore(db_path)
    except (sqlite3.Error, OSError) as e:
        logger.error(f"Mapping store unavailable at {db_path}, sessions will not stay pinned: {e}")
        return None


async def restore_saved_settings(store, watcher: SessionFileWatcher, monitor: SessionMonitorService) -> None:
    """Apply the saved approval timeout, then re-add the saved repositories."""
    try:
        seconds = await asyncio.to_thread(store.get_approval_timeout)
    except Exception as e:
        logger.warning(f"Could not load saved approval timeout: {e}")
        seconds = None
    if seconds is not None:
        watcher.set_approval_timeout(seconds)

    await monitor.restore_repositories()


def create_app(
    claude_path: Path | str = CLAUDE_DATA_DIR,
    db_path: Path | str = DB_PATH,
    approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    background_tools=BACKGROUND_TOOLS,
    watch_events: bool = True,
    worktree_detector=detect_worktrees,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the API app and the services it owns."""
    app = FastAPI(title="Session Monitor")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    ws_manager = ConnectionManager()
    app.state.ws_manager = ws_manager
    app.state.monitor = SessionMonitorService(
        claude_path=claude_path,
        worktree_detector=worktree_detector,
    )
    app.state.watcher = SessionFileWatcher(
        claude_path=claude_path,
        notifier=WebSocketApprovalNotifier(ws_manager),
        approval_timeout_seconds=approval_timeout_seconds,
        background_tools=background_tools,
        watch_events=watch_events,
    )
    app.state.background_tasks = []

    app.include_router(repositories_router)
    app.include_router(sessions_router)
    app.include_router(settings_router)

    @app.websocket("/ws")
    async def websocket_updates(websocket: WebSocket):
        """WebSocket endpoint for real-time monitor updates.

        Clients receive:
        - repositories_update on connect and whenever sessions are rescanned
        - session_state for every monitored session on connect and on change
        - approval_required when a session starts waiting for approval
        - log / log_history once subscribed to logs

        Clients may send:
        - {"type": "ping"}
        - {"type": "refresh"}
        - {"type": "subscribe_logs", "enabled": true, "namespaces": [...]}
        """
        await ws_manager.connect(websocket)

        try:
            await websocket.send_json(repositories_message(app.state.monitor.get_selected_repositories()))
            for session_id in app.state.watcher.monitored_sessions():
                state = app.state.watcher.get_state(session_id)
                if state is not None:
                    await websocket.send_json(session_state_message(StateUpdate(session_id, state)))

            # Keep connection alive and handle incoming messages
            while True:
                data = await websocket.receive_text()
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue  # Ignore malformed messages
                if not isinstance(msg, dict):
                    continue

                if msg.get('type') == 'ping':
                    await websocket.send_json({'type': 'pong'})

                elif msg.get('type') == 'refresh':
                    repositories = await app.state.monitor.refresh_sessions()
                    await websocket.send_json(repositories_message(repositories))

                elif msg.get('type') == 'subscribe_logs':
                    await ws_manager.subscribe_to_logs(
                        websocket,
                        enabled=msg.get('enabled', True),
                        namespaces=msg.get('namespaces'),
                    )

        except WebSocketDisconnect:
            pass
        finally:
            await ws_manager.disconnect(websocket)

    @app.on_event("startup")
    async def startup_event():
        """Open the store, restore saved settings and start forwarding tasks."""
        if configure_logging:
            setup_logging()

        store = await asyncio.to_thread(open_store, db_path)
        app.state.monitor.store = store
        if store is not None:
            await restore_saved_settings(store, app.state.watcher, app.state.monitor)

        loop = asyncio.get_running_loop()

        def broadcast_log(entry):
            # Log records may come from worker threads
            if ws_manager.log_subscriber_count:
                asyncio.run_coroutine_threadsafe(ws_manager.broadcast_log(entry.to_dict()), loop)

        get_ws_log_handler().set_broadcast_callback(broadcast_log)

        app.state.background_tasks = [
            asyncio.create_task(forward_updates_loop(
                ws_manager, app.state.monitor.subscribe(), repositories_message
            )),
            asyncio.create_task(forward_updates_loop(
                ws_manager, app.state.watcher.subscribe(), session_state_message
            )),
        ]
        logger.info("Session monitor started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop tailers and cancel background tasks on shutdown."""
        get_ws_log_handler().set_broadcast_callback(None)

        for task in app.state.background_tasks:
            task.cancel()
        app.state.background_tasks = []

        await app.state.watcher.close()
        logger.info("Session monitor stopped")

    return app


app = create_app()


def main():
    uvicorn.run("src.monitor.server:app", host=DEFAULT_HOST, port=DEFAULT_PORT)


if __name__ == "__main__":
    main()
