"""Real-time session transcript tailing using watchfiles.

Each monitored session gets a SessionTailer that:
- seeds its aggregate with a full parse of the transcript
- reads only the bytes appended since the last read on every change event
- re-runs the status rules every second, since several states are purely
  time based
- recovers from missed change events (stale watcher) and from truncation

SessionFileWatcher is the registry of tailers and fans their StateUpdates
out to subscriber queues.
"""

import asyncio
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from watchfiles import awatch

from .config import (
    BACKGROUND_TOOLS,
    CLAUDE_DATA_DIR,
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    HEALTH_CHECK_INTERVAL,
    STALE_WATCHER_GRACE_SECONDS,
    WATCH_DEBOUNCE_MS,
)
from .detection.activity import (
    clamp_approval_timeout,
    is_approval_transition,
    update_current_status,
)
from .detection.aggregator import apply_entries
from .detection.jsonl_parser import TranscriptEntry, decode_entry
from .detection.models import ParseResult, SessionMonitorState, SessionStatus
from .logging_config import get_logger
from .utils import encode_project_path

logger = get_logger(__name__, namespace='watcher')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StateUpdate:
    """A published snapshot for one session."""
    session_id: str
    state: SessionMonitorState


def read_entries(path: Path, offset: int, fragment: bytes) -> tuple[list[TranscriptEntry], int, bytes]:
    """Read `path` from `offset` to EOF and decode the complete lines.

    `fragment` is the unterminated tail left by the previous read. Returns
    (entries, new offset, new fragment). A trailing piece that is not yet a
    complete record is returned as the new fragment so the next read can
    finish it.
    """
    with open(path, 'rb') as f:
        f.seek(offset)
        data = f.read()

    pieces = (fragment + data).split(b'\n')
    tail = pieces.pop()

    entries = []
    for line in pieces:
        if not line.strip():
            continue
        entry = decode_entry(line)
        if entry is not None:
            entries.append(entry)

    if tail.strip():
        # A writer may not have emitted the newline yet for a whole record
        entry = decode_entry(tail)
        if entry is not None:
            entries.append(entry)
            tail = b''

    return entries, offset + len(data), tail


def file_size(path: Path) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


class SessionTailer:
    """Tails one session transcript and publishes its state.

    All mutation of the aggregate happens while holding `_lock`, so change
    events, health checks and refreshes never interleave.
    """

    def __init__(
        self,
        session_id: str,
        file_path: Path | str,
        publish: Callable[[StateUpdate], None],
        notifier=None,
        project_path: Optional[str] = None,
        approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        background_tools: Iterable[str] = BACKGROUND_TOOLS,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        stale_grace_seconds: float = STALE_WATCHER_GRACE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        watch_events: bool = True,
    ):
        self.session_id = session_id
        self.file_path = Path(file_path)
        self.project_path = project_path or str(self.file_path)
        self.approval_timeout_seconds = clamp_approval_timeout(approval_timeout_seconds)
        self.background_tools = frozenset(background_tools)
        self.health_check_interval = health_check_interval
        self.stale_grace_seconds = stale_grace_seconds
        self.watch_events = watch_events

        self._publish = publish
        self._notifier = notifier
        self._clock = clock

        self._lock = asyncio.Lock()
        self._result = ParseResult()
        self._offset = 0
        self._fragment = b''
        self._last_event_at = clock()
        self._backlog_seen_at: Optional[datetime] = None
        self._last_emitted_status = SessionStatus.idle()

        self._stop_event = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._notify_tasks: set[asyncio.Task] = set()
        self._running = False
        self._stopped = False

    @property
    def state(self) -> SessionMonitorState:
        return SessionMonitorState.from_parse_result(self._result)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Parse the whole file, publish it, then start following changes."""
        if self._running or self._stopped:
            return

        async with self._lock:
            await self._reparse()
            # stop() may have run while the initial parse was in flight
            if self._stopped:
                return
            self._emit(self._result.current_status)

            self._running = True
            if self.watch_events:
                self._watch_task = asyncio.create_task(self._watch_loop())
            self._health_task = asyncio.create_task(self._health_loop())
        logger.info(f"Started tailing {self.session_id} at {self.file_path}")

    async def stop(self) -> None:
        """Stop following the file. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        self._stop_event.set()

        for task in (self._watch_task, self._health_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        self._health_task = None

        # Wait out any trigger still holding the lock
        async with self._lock:
            pass
        logger.info(f"Stopped tailing {self.session_id}")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def handle_change(self) -> None:
        """Process a filesystem change event."""
        async with self._lock:
            if self._stopped:
                return
            self._last_event_at = self._clock()
            previous = self._last_emitted_status
            self._backlog_seen_at = None

            size = await asyncio.to_thread(file_size, self.file_path)
            if size is not None and size < self._offset:
                logger.warning(f"{self.session_id}: file shrank from {self._offset} to {size}, reparsing")
                await self._reparse()
                self._emit(previous)
                return

            parsed = await self._catch_up()
            if not parsed:
                self._recompute_status()
            if parsed or self._result.current_status != previous:
                self._emit(previous)

    async def health_check(self) -> None:
        """Periodic re-evaluation with stale watcher and truncation recovery."""
        async with self._lock:
            if self._stopped:
                return
            previous = self._last_emitted_status
            parsed = 0

            size = await asyncio.to_thread(file_size, self.file_path)
            if size is not None and size < self._offset:
                logger.warning(f"{self.session_id}: file shrank from {self._offset} to {size}, reparsing")
                await self._reparse()
                self._emit(previous)
                return

            now = self._clock()
            if size is not None and size > self._offset:
                # Unread bytes first seen on this tick get the full grace period
                if self._backlog_seen_at is None:
                    self._backlog_seen_at = now
                quiet_since = max(self._last_event_at, self._backlog_seen_at)
                since_event = (now - self._last_event_at).total_seconds()
                if (now - quiet_since).total_seconds() > self.stale_grace_seconds:
                    logger.warning(
                        f"Stale watcher detected for {self.session_id}: file grew from "
                        f"{self._offset} to {size} but no events in {int(since_event)}s"
                    )
                    parsed = await self._catch_up()
                    self._last_event_at = self._clock()
                    self._backlog_seen_at = None
                    if parsed:
                        logger.info(f"Recovered {parsed} missed entries for {self.session_id}")
            else:
                self._backlog_seen_at = None

            if not parsed:
                self._recompute_status()
            if parsed or self._result.current_status != previous:
                self._emit(previous)

    async def refresh(self) -> None:
        """Discard the aggregate and reparse the whole file."""
        async with self._lock:
            if self._stopped:
                return
            previous = self._last_emitted_status
            await self._reparse()
            self._emit(previous)

    # ------------------------------------------------------------------
    # Internals (called with the lock held)
    # ------------------------------------------------------------------

    async def _reparse(self) -> None:
        try:
            entries, offset, fragment = await asyncio.to_thread(read_entries, self.file_path, 0, b'')
        except OSError as e:
            logger.warning(f"Failed to read session file {self.file_path}: {e}")
            entries, offset, fragment = [], 0, b''

        self._result = ParseResult()
        self._offset = offset
        self._fragment = fragment
        self._last_event_at = self._clock()
        self._backlog_seen_at = None
        apply_entries(
            entries,
            self._result,
            approval_timeout_seconds=self.approval_timeout_seconds,
            now=self._clock(),
            background_tools=self.background_tools,
        )

    async def _catch_up(self) -> int:
        try:
            entries, offset, fragment = await asyncio.to_thread(
                read_entries, self.file_path, self._offset, self._fragment
            )
        except OSError as e:
            logger.warning(f"Failed to read new lines from {self.file_path}: {e}")
            return 0

        self._offset = offset
        self._fragment = fragment
        if not entries:
            return 0

        logger.debug(f"{self.session_id}: {len(entries)} new entries")
        return apply_entries(
            entries,
            self._result,
            approval_timeout_seconds=self.approval_timeout_seconds,
            now=self._clock(),
            background_tools=self.background_tools,
        )

    def _recompute_status(self) -> None:
        update_current_status(
            self._result,
            now=self._clock(),
            approval_timeout_seconds=self.approval_timeout_seconds,
            background_tools=self.background_tools,
        )

    def _emit(self, previous: SessionStatus) -> None:
        if self._stopped:
            return
        status = self._result.current_status
        if is_approval_transition(previous, status):
            self._notify_approval(status.tool)
        self._last_emitted_status = status
        self._publish(StateUpdate(session_id=self.session_id, state=self.state))

    def _notify_approval(self, tool_name: Optional[str]) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._notifier.notify_approval_required(
            session_id=self.session_id,
            tool_name=tool_name or 'unknown',
            project_path=self.project_path,
            model=self._result.model,
            last_message=self._result.last_user_message(),
        ))
        self._notify_tasks.add(task)
        task.add_done_callback(self._on_notify_done)

    def _on_notify_done(self, task: asyncio.Task) -> None:
        self._notify_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Approval notification failed for {self.session_id}: {error}")

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        try:
            async for _changes in awatch(
                self.file_path,
                stop_event=self._stop_event,
                debounce=WATCH_DEBOUNCE_MS,
            ):
                await self.handle_change()
        except asyncio.CancelledError:
            logger.debug(f"Watch task cancelled for {self.session_id}")
        except Exception as e:
            # The health check keeps catching up without events
            logger.error(f"File watcher error for {self.session_id}: {e}")

    async def _health_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.health_check_interval)
                await self.health_check()
            except asyncio.CancelledError:
                logger.debug(f"Health check cancelled for {self.session_id}")
                break
            except Exception as e:
                logger.error(f"Health check error for {self.session_id}: {e}")


class SessionFileWatcher:
    """Registry of session tailers.

    Subscribers receive every StateUpdate through their own asyncio.Queue,
    in the order each tailer produced them.
    """

    def __init__(
        self,
        claude_path: Path | str = CLAUDE_DATA_DIR,
        notifier=None,
        approval_timeout_seconds: int = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        background_tools: Iterable[str] = BACKGROUND_TOOLS,
        watch_events: bool = True,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        stale_grace_seconds: float = STALE_WATCHER_GRACE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.claude_path = Path(claude_path)
        self.notifier = notifier
        self.background_tools = frozenset(background_tools)
        self.watch_events = watch_events
        self.health_check_interval = health_check_interval
        self.stale_grace_seconds = stale_grace_seconds
        self._clock = clock
        self._approval_timeout = clamp_approval_timeout(approval_timeout_seconds)
        self._tailers: dict[str, SessionTailer] = {}
        self._subscribers: list[asyncio.Queue] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Settings and subscriptions
    # ------------------------------------------------------------------

    def get_approval_timeout(self) -> int:
        return self._approval_timeout

    def set_approval_timeout(self, seconds: int) -> int:
        """Set the approval timeout for current and future tailers."""
        self._approval_timeout = clamp_approval_timeout(seconds)
        for tailer in self._tailers.values():
            tailer.approval_timeout_seconds = self._approval_timeout
        logger.info(f"Approval timeout set to {self._approval_timeout}s")
        return self._approval_timeout

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, update: StateUpdate) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(update)

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def start_monitoring(self, session_id: str, project_path: str) -> Optional[SessionMonitorState]:
        """Start tailing a session, returning its initial state.

        Returns None if the transcript cannot be found. A session that is
        already monitored just has its current state published again.
        """
        async with self._lock:
            existing = self._tailers.get(session_id)
            if existing is not None:
                logger.debug(f"Already monitoring {session_id}, re-emitting state")
                state = existing.state
                self._publish(StateUpdate(session_id=session_id, state=state))
                return state

            file_path = await asyncio.to_thread(self.find_session_file, session_id, project_path)
            if file_path is None:
                logger.warning(f"Could not find session file for {session_id}")
                return None

            tailer = SessionTailer(
                session_id,
                file_path,
                self._publish,
                notifier=self.notifier,
                project_path=project_path,
                approval_timeout_seconds=self._approval_timeout,
                background_tools=self.background_tools,
                health_check_interval=self.health_check_interval,
                stale_grace_seconds=self.stale_grace_seconds,
                clock=self._clock,
                watch_events=self.watch_events,
            )
            await tailer.start()
            self._tailers[session_id] = tailer
            return tailer.state

    async def stop_monitoring(self, session_id: str) -> bool:
        """Stop tailing a session. Returns False if it was not monitored."""
        async with self._lock:
            tailer = self._tailers.pop(session_id, None)
        if tailer is None:
            return False
        await tailer.stop()
        return True

    def get_state(self, session_id: str) -> Optional[SessionMonitorState]:
        tailer = self._tailers.get(session_id)
        return tailer.state if tailer else None

    def is_monitoring(self, session_id: str) -> bool:
        return session_id in self._tailers

    def monitored_sessions(self) -> list[str]:
        return list(self._tailers)

    async def refresh_state(self, session_id: str) -> Optional[SessionMonitorState]:
        """Force a full reparse of a monitored session."""
        tailer = self._tailers.get(session_id)
        if tailer is None:
            return None
        await tailer.refresh()
        return tailer.state

    def find_session_file(self, session_id: str, project_path: str) -> Optional[Path]:
        """Locate a session transcript under the projects directory."""
        projects_dir = self.claude_path / 'projects'
        file_name = f"{session_id}.jsonl"

        encodings = [
            encode_project_path(project_path),
            project_path.replace('/', '-'),
            quote(project_path),
            project_path.replace('/', '-').replace('~', '-'),
        ]
        for encoded in encodings:
            candidate = projects_dir / encoded / file_name
            if candidate.is_file():
                return candidate

        try:
            project_dirs = sorted(p for p in projects_dir.iterdir() if p.is_dir())
        except OSError:
            return None
        for project_dir in project_dirs:
            candidate = project_dir / file_name
            if candidate.is_file():
                return candidate
        return None

    async def close(self) -> None:
        """Stop every tailer and drop all subscribers."""
        async with self._lock:
            tailers = list(self._tailers.values())
            self._tailers.clear()
        for tailer in tailers:
            await tailer.stop()
        self._subscribers.clear()
