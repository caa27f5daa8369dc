"""Session matching for monitored repositories.

This module assigns sessions discovered through the history index to the
worktrees of the monitored repositories. Each session lands in at most one
worktree, chosen in priority order:

1. A persisted mapping: only the mapped repository may take the session,
   and its mapped worktree wins outright when it still exists
2. An exact match between the session's project path and a worktree path
3. A worktree path that contains the session's project directory
   (most specific first)

Candidates from rules 2 and 3 must also pass the branch check: a session
that recorded its branch only matches a worktree on that branch, and a
session without a branch only matches a main checkout. The first accepted
match is persisted so later refreshes keep the session where it is.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import ACTIVE_RECENCY_SECONDS
from ..logging_config import get_logger
from .history import is_same_or_nested
from .models import (
    CLISession,
    HistoryEntry,
    SelectedRepository,
    SessionMetadata,
    SessionRepoMapping,
    WorktreeBranch,
)

logger = get_logger(__name__, namespace='matcher')


def branch_matches(metadata: Optional[SessionMetadata], worktree: WorktreeBranch) -> bool:
    """Branch disambiguation between repositories sharing a path."""
    branch = metadata.branch if metadata else None
    if branch:
        return branch == worktree.name
    # Old sessions without branch info only belong to main checkouts
    return not worktree.is_worktree


def is_session_active(metadata: Optional[SessionMetadata], now: datetime) -> bool:
    """A session is active if its transcript changed within the last minute."""
    if metadata is None or metadata.modified_at is None:
        return False
    return now - metadata.modified_at < timedelta(seconds=ACTIVE_RECENCY_SECONDS)


def build_session(
    session_id: str,
    entries: list[HistoryEntry],
    worktree: WorktreeBranch,
    metadata: Optional[SessionMetadata],
    now: datetime,
) -> CLISession:
    """Build the CLISession shown under `worktree`."""
    ordered = sorted(entries, key=lambda e: e.timestamp)
    return CLISession(
        id=session_id,
        project_path=entries[0].project,
        branch_name=(metadata.branch if metadata else None) or worktree.name,
        is_worktree=worktree.is_worktree,
        last_activity_at=max(e.date for e in entries),
        message_count=len(entries),
        is_active=is_session_active(metadata, now),
        first_message=ordered[0].display,
        last_message=ordered[-1].display,
        slug=metadata.slug if metadata else None,
    )


class RepositorySessionMatcher:
    """Assigns sessions to worktrees, keeping assignments sticky via a store.

    The store is optional; without it (or when it fails) matching falls back
    to the path and branch rules alone.
    """

    def __init__(self, store=None):
        self.store = store

    async def _load_mappings(self, session_ids: list[str]) -> dict[str, SessionRepoMapping]:
        if self.store is None or not session_ids:
            return {}
        try:
            return await asyncio.to_thread(self.store.get_repo_mappings, session_ids)
        except Exception as e:
            logger.warning("Mapping store unavailable, matching without stickiness: %s", e)
            return {}

    async def _persist_mapping(self, mapping: SessionRepoMapping) -> None:
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.set_repo_mapping, mapping)
        except Exception as e:
            logger.warning("Failed to persist mapping for %s: %s", mapping.session_id, e)

    def _find_worktree(
        self,
        project: str,
        metadata: Optional[SessionMetadata],
        mapping: Optional[SessionRepoMapping],
        repositories: list[SelectedRepository],
    ) -> Optional[tuple[SelectedRepository, WorktreeBranch]]:
        """Pick the single worktree a session belongs to, or None."""
        if mapping is not None:
            repositories = [r for r in repositories if r.path == mapping.parent_repo_path]
            for repo in repositories:
                for worktree in repo.worktrees:
                    if worktree.path == mapping.worktree_path:
                        return repo, worktree

        exact = []
        nested = []
        for repo in repositories:
            for worktree in repo.worktrees:
                if project == worktree.path:
                    exact.append((repo, worktree))
                elif is_same_or_nested(project, worktree.path):
                    nested.append((repo, worktree))

        # Deeper worktrees are more specific than the checkouts containing them
        nested.sort(key=lambda pair: len(pair[1].path), reverse=True)

        for repo, worktree in exact + nested:
            if branch_matches(metadata, worktree):
                return repo, worktree
        return None

    async def assign(
        self,
        repositories: list[SelectedRepository],
        history: list[HistoryEntry],
        metadata: dict[str, SessionMetadata],
        now: Optional[datetime] = None,
    ) -> list[SelectedRepository]:
        """Return copies of `repositories` with each worktree's sessions filled in.

        Sessions are sorted most recent first. Sessions that match nothing
        are left out.
        """
        now = now or datetime.now(timezone.utc)

        session_entries: dict[str, list[HistoryEntry]] = {}
        for entry in history:
            session_entries.setdefault(entry.session_id, []).append(entry)

        mappings = await self._load_mappings(list(session_entries))

        assigned: dict[tuple[str, str], list[CLISession]] = {}
        for session_id, entries in session_entries.items():
            session_metadata = metadata.get(session_id)
            mapping = mappings.get(session_id)
            match = self._find_worktree(entries[0].project, session_metadata, mapping, repositories)
            if match is None:
                logger.debug("Session %s not assigned to any worktree", session_id)
                continue

            repo, worktree = match
            if mapping is None:
                await self._persist_mapping(SessionRepoMapping(
                    session_id=session_id,
                    parent_repo_path=repo.path,
                    worktree_path=worktree.path,
                    assigned_at=now,
                ))

            session = build_session(session_id, entries, worktree, session_metadata, now)
            assigned.setdefault((repo.path, worktree.path), []).append(session)

        updated = []
        for repo in repositories:
            worktrees = []
            for worktree in repo.worktrees:
                sessions = assigned.get((repo.path, worktree.path), [])
                sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
                worktrees.append(worktree.with_sessions(sessions))
            updated.append(repo.with_worktrees(worktrees))
        return updated
