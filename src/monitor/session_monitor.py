"""Monitoring of agent sessions across user-selected repositories.

SessionMonitorService keeps the list of selected repositories, rediscovers
their worktrees, reads the history index for sessions started inside them
and publishes the matched result to subscribers.
"""

import asyncio
import os
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import CLAUDE_DATA_DIR
from .detection.history import group_by_session, parse_history, read_session_metadata_batch
from .detection.matcher import RepositorySessionMatcher
from .detection.models import SelectedRepository, WorktreeBranch
from .git_tracker import detect_worktrees, detect_worktrees_batch
from .logging_config import get_logger

logger = get_logger(__name__, namespace='monitor')


def merge_worktrees(existing: tuple[WorktreeBranch, ...], detected: list[WorktreeBranch]) -> list[WorktreeBranch]:
    """Merge freshly detected worktrees into the known ones.

    Worktrees keep git's order. Known entries are kept by path with their
    branch name refreshed, new ones are added and removed ones dropped.
    """
    known = {w.path: w for w in existing}
    merged = []
    for worktree in detected:
        current = known.get(worktree.path)
        if current is None:
            logger.info(f"Found new worktree: {worktree.path}")
            merged.append(worktree)
        else:
            merged.append(WorktreeBranch(
                name=worktree.name,
                path=current.path,
                is_worktree=worktree.is_worktree,
                sessions=current.sessions,
            ))
    return merged


class SessionMonitorService:
    """Tracks sessions for the selected repositories."""

    def __init__(
        self,
        claude_path: Path | str = CLAUDE_DATA_DIR,
        store=None,
        worktree_detector: Callable[[str], list[WorktreeBranch]] = detect_worktrees,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.claude_path = Path(claude_path)
        self.history_file = self.claude_path / 'history.jsonl'
        self.matcher = RepositorySessionMatcher(store)
        self._detect_worktrees = worktree_detector
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._repositories: list[SelectedRepository] = []
        self._subscribers: list[asyncio.Queue] = []
        self._lock = asyncio.Lock()

    @property
    def store(self):
        """Store shared with the matcher; also holds the saved selection."""
        return self.matcher.store

    @store.setter
    def store(self, store) -> None:
        self.matcher.store = store

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, repositories: list[SelectedRepository]) -> None:
        snapshot = list(repositories)
        for queue in list(self._subscribers):
            queue.put_nowait(snapshot)

    # ------------------------------------------------------------------
    # Repository management
    # ------------------------------------------------------------------

    async def add_repository(self, path: str, persist: bool = True) -> Optional[SelectedRepository]:
        """Add a repository, detect its worktrees and scan for sessions.

        Adding an already selected path returns the existing entry. The new
        selection is saved unless `persist` is False.
        """
        path = os.path.normpath(path)
        for repo in self._repositories:
            if repo.path == path:
                logger.debug(f"Repository already added: {path}")
                return repo

        worktrees = await asyncio.to_thread(self._detect_worktrees, path)
        logger.info(f"Adding repository {path} with {len(worktrees)} worktrees")
        async with self._lock:
            self._repositories.append(SelectedRepository(path=path, worktrees=tuple(worktrees)))

        # Worktrees were just detected for this repository
        await self.refresh_sessions(skip_worktree_redetection=True)
        if persist:
            await self._persist_selection()
        return next((r for r in self._repositories if r.path == path), None)

    async def remove_repository(self, path: str) -> bool:
        """Stop monitoring a repository. Returns False if it was not selected."""
        path = os.path.normpath(path)
        async with self._lock:
            before = len(self._repositories)
            self._repositories = [r for r in self._repositories if r.path != path]
            removed = len(self._repositories) != before
            if removed:
                self._publish(self._repositories)
        if removed:
            await self._persist_selection()
        return removed

    def get_selected_repositories(self) -> list[SelectedRepository]:
        return list(self._repositories)

    async def set_selected_repositories(self, repositories: list[SelectedRepository]) -> list[SelectedRepository]:
        """Replace the whole selection, save it and refresh."""
        async with self._lock:
            self._repositories = list(repositories)
        await self._persist_selection()
        return await self.refresh_sessions()

    async def restore_repositories(self) -> list[SelectedRepository]:
        """Re-add the repositories saved by a previous run, in saved order."""
        if self.store is None:
            return []
        try:
            paths = await asyncio.to_thread(self.store.get_selected_repository_paths)
        except Exception as e:
            logger.warning(f"Could not load saved repositories: {e}")
            return []

        for path in paths:
            await self.add_repository(path, persist=False)
        if paths:
            logger.info(f"Restored {len(self._repositories)} saved repositories")
        return self.get_selected_repositories()

    async def _persist_selection(self) -> None:
        if self.store is None:
            return
        paths = [r.path for r in self._repositories]
        try:
            await asyncio.to_thread(self.store.set_selected_repository_paths, paths)
        except Exception as e:
            logger.warning(f"Failed to save repository selection: {e}")

    def get_all_monitored_paths(self) -> list[str]:
        paths = []
        for repo in self._repositories:
            for candidate in [repo.path, *(w.path for w in repo.worktrees)]:
                if candidate not in paths:
                    paths.append(candidate)
        return paths

    # ------------------------------------------------------------------
    # Session scanning
    # ------------------------------------------------------------------

    async def _redetect_worktrees(self) -> None:
        repo_paths = [r.path for r in self._repositories]
        by_path = await detect_worktrees_batch(repo_paths, self._detect_worktrees)
        self._repositories = [
            repo.with_worktrees(merge_worktrees(repo.worktrees, by_path[repo.path]))
            for repo in self._repositories
        ]

    async def refresh_sessions(self, skip_worktree_redetection: bool = False) -> list[SelectedRepository]:
        """Rescan sessions for all selected repositories and publish them."""
        async with self._lock:
            if not self._repositories:
                logger.debug("No repositories selected, publishing empty list")
                self._publish([])
                return []

            if not skip_worktree_redetection:
                await self._redetect_worktrees()

            paths = self.get_all_monitored_paths()
            history = await asyncio.to_thread(parse_history, self.history_file, paths)
            session_entries = group_by_session(history)
            logger.debug(
                f"Found {len(history)} history entries in {len(session_entries)} sessions "
                f"across {len(paths)} paths"
            )

            metadata = await read_session_metadata_batch(self.claude_path, session_entries)
            self._repositories = await self.matcher.assign(
                self._repositories,
                history,
                metadata,
                now=self._clock(),
            )

            self._publish(self._repositories)
            return list(self._repositories)
