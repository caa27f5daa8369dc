"""Tests for session to worktree matching."""

from datetime import datetime, timedelta, timezone

import pytest

from src.monitor.detection.matcher import (
    RepositorySessionMatcher,
    branch_matches,
    is_session_active,
)
from src.monitor.detection.models import (
    HistoryEntry,
    SelectedRepository,
    SessionMetadata,
    SessionRepoMapping,
    WorktreeBranch,
)
from src.monitor.store import SessionMetadataStore

NOW = datetime(2026, 1, 9, 12, 0, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)


class MemoryStore:
    """In-memory stand-in for SessionMetadataStore."""

    def __init__(self):
        self.mappings = {}

    def get_repo_mappings(self, session_ids):
        return {sid: self.mappings[sid] for sid in session_ids if sid in self.mappings}

    def set_repo_mapping(self, mapping):
        self.mappings[mapping.session_id] = mapping


class BrokenStore:
    def get_repo_mappings(self, session_ids):
        raise RuntimeError("database is locked")

    def set_repo_mapping(self, mapping):
        raise RuntimeError("database is locked")


def entry(session_id, project, display='hello', offset_s=0):
    return HistoryEntry(
        display=display,
        timestamp=NOW_MS - 600_000 + offset_s * 1000,
        project=project,
        session_id=session_id,
    )


def repo(path, *worktrees):
    return SelectedRepository(
        path=path,
        worktrees=tuple(WorktreeBranch(name=n, path=p, is_worktree=linked) for n, p, linked in worktrees),
    )


def sessions_by_worktree(repositories):
    return {
        (r.path, w.path): [s.id for s in w.sessions]
        for r in repositories
        for w in r.worktrees
    }


class TestBranchMatches:
    def test_known_branch_must_match(self):
        worktree = WorktreeBranch(name='feature-x', path='/w', is_worktree=True)
        assert branch_matches(SessionMetadata(branch='feature-x'), worktree)
        assert not branch_matches(SessionMetadata(branch='main'), worktree)

    def test_unknown_branch_only_main_checkout(self):
        assert branch_matches(None, WorktreeBranch(name='main', path='/w'))
        assert branch_matches(SessionMetadata(), WorktreeBranch(name='main', path='/w'))
        assert not branch_matches(None, WorktreeBranch(name='x', path='/w', is_worktree=True))


class TestIsSessionActive:
    def test_recent_modification(self):
        assert is_session_active(SessionMetadata(modified_at=NOW - timedelta(seconds=30)), NOW)

    def test_old_modification(self):
        assert not is_session_active(SessionMetadata(modified_at=NOW - timedelta(seconds=61)), NOW)

    def test_no_metadata(self):
        assert not is_session_active(None, NOW)


class TestAssign:
    """Tests for RepositorySessionMatcher.assign."""

    @pytest.mark.asyncio
    async def test_shared_path_disambiguated_by_branch(self):
        repositories = [
            repo('/repos/a', ('main', '/tmp/shared', False)),
            repo('/repos/b', ('develop', '/repos/b', False), ('feature-x', '/tmp/shared', True)),
        ]
        history = [entry('s1', '/tmp/shared')]
        metadata = {'s1': SessionMetadata(branch='feature-x')}

        result = await RepositorySessionMatcher().assign(repositories, history, metadata, now=NOW)

        assert sessions_by_worktree(result) == {
            ('/repos/a', '/tmp/shared'): [],
            ('/repos/b', '/repos/b'): [],
            ('/repos/b', '/tmp/shared'): ['s1'],
        }

    @pytest.mark.asyncio
    async def test_mapping_is_sticky_when_second_repo_added(self):
        store = MemoryStore()
        matcher = RepositorySessionMatcher(store)
        history = [entry('s1', '/work/app')]
        metadata = {'s1': SessionMetadata(branch='main')}

        first = repo('/work/app', ('main', '/work/app', False))
        await matcher.assign([first], history, metadata, now=NOW)
        assert store.mappings['s1'].parent_repo_path == '/work/app'

        # A second repository with an equally good worktree, listed first
        second = repo('/other/app', ('main', '/work/app', False))
        result = await matcher.assign([second, first], history, metadata, now=NOW)

        assert result[0].worktrees[0].sessions == ()
        assert [s.id for s in result[1].worktrees[0].sessions] == ['s1']
        assert store.mappings['s1'].parent_repo_path == '/work/app'

    @pytest.mark.asyncio
    async def test_mapped_repo_only_even_if_worktree_moved(self):
        store = MemoryStore()
        store.set_repo_mapping(SessionRepoMapping(
            session_id='s1',
            parent_repo_path='/repos/a',
            worktree_path='/repos/a-old-worktree',
            assigned_at=NOW,
        ))
        repositories = [
            repo('/repos/b', ('main', '/repos/a', False)),
            repo('/repos/a', ('main', '/repos/a', False)),
        ]
        history = [entry('s1', '/repos/a/src')]

        result = await RepositorySessionMatcher(store).assign(repositories, history, {}, now=NOW)

        assert sessions_by_worktree(result)[('/repos/a', '/repos/a')] == ['s1']
        assert result[0].total_session_count == 0

    @pytest.mark.asyncio
    async def test_mapped_worktree_wins_directly(self):
        store = MemoryStore()
        store.set_repo_mapping(SessionRepoMapping('s1', '/repos/a', '/repos/a-wt', NOW))
        repositories = [repo('/repos/a', ('main', '/repos/a', False), ('feature', '/repos/a-wt', True))]
        # Project path and branch would otherwise point at the main checkout
        history = [entry('s1', '/repos/a')]
        metadata = {'s1': SessionMetadata(branch='main')}

        result = await RepositorySessionMatcher(store).assign(repositories, history, metadata, now=NOW)

        assert sessions_by_worktree(result)[('/repos/a', '/repos/a-wt')] == ['s1']

    @pytest.mark.asyncio
    async def test_subdirectory_prefers_most_specific_worktree(self):
        repositories = [repo(
            '/work/app',
            ('main', '/work/app', False),
            ('feature', '/work/app/.worktrees/feature', True),
        )]
        history = [
            entry('s1', '/work/app/src/pkg'),
            entry('s2', '/work/app/.worktrees/feature/tests'),
        ]
        metadata = {
            's1': SessionMetadata(branch='main'),
            's2': SessionMetadata(branch='feature'),
        }

        result = await RepositorySessionMatcher().assign(repositories, history, metadata, now=NOW)

        assert sessions_by_worktree(result) == {
            ('/work/app', '/work/app'): ['s1'],
            ('/work/app', '/work/app/.worktrees/feature'): ['s2'],
        }

    @pytest.mark.asyncio
    async def test_sibling_prefix_is_not_a_subdirectory(self):
        repositories = [repo('/work/app', ('main', '/work/app', False))]
        history = [entry('s1', '/work/app-two')]

        result = await RepositorySessionMatcher().assign(repositories, history, {}, now=NOW)

        assert result[0].total_session_count == 0

    @pytest.mark.asyncio
    async def test_session_without_branch_skips_linked_worktree(self):
        repositories = [repo('/work/app', ('main', '/work/app', False), ('wt', '/work/wt', True))]
        history = [entry('s1', '/work/wt'), entry('s2', '/work/app')]

        result = await RepositorySessionMatcher().assign(repositories, history, {}, now=NOW)

        assert sessions_by_worktree(result) == {
            ('/work/app', '/work/app'): ['s2'],
            ('/work/app', '/work/wt'): [],
        }

    @pytest.mark.asyncio
    async def test_each_session_assigned_once(self):
        repositories = [
            repo('/a', ('main', '/shared', False)),
            repo('/b', ('main', '/shared', False)),
        ]
        history = [entry('s1', '/shared')]

        result = await RepositorySessionMatcher().assign(repositories, history, {}, now=NOW)

        assert sum(r.total_session_count for r in result) == 1
        assert result[0].total_session_count == 1

    @pytest.mark.asyncio
    async def test_broken_store_falls_back_to_heuristics(self):
        repositories = [repo('/work/app', ('main', '/work/app', False))]
        history = [entry('s1', '/work/app')]

        result = await RepositorySessionMatcher(BrokenStore()).assign(repositories, history, {}, now=NOW)

        assert result[0].total_session_count == 1

    @pytest.mark.asyncio
    async def test_session_fields_and_order(self):
        repositories = [repo('/work/app', ('main', '/work/app', False))]
        history = [
            entry('old', '/work/app', display='first old', offset_s=0),
            entry('new', '/work/app', display='first new', offset_s=10),
            entry('old', '/work/app', display='last old', offset_s=20),
            entry('new', '/work/app', display='last new', offset_s=30),
            entry('new', '/work/app', display='middle new', offset_s=25),
        ]
        metadata = {
            'new': SessionMetadata(branch='main', slug='happy-otter', modified_at=NOW - timedelta(seconds=5)),
            'old': SessionMetadata(branch='main', modified_at=NOW - timedelta(hours=1)),
        }

        result = await RepositorySessionMatcher().assign(repositories, history, metadata, now=NOW)
        sessions = result[0].worktrees[0].sessions

        assert [s.id for s in sessions] == ['new', 'old']
        newest = sessions[0]
        assert newest.first_message == 'first new'
        assert newest.last_message == 'last new'
        assert newest.message_count == 3
        assert newest.is_active is True
        assert newest.slug == 'happy-otter'
        assert newest.display_name == 'happy-otter'
        assert newest.branch_name == 'main'
        assert newest.last_activity_at == datetime.fromtimestamp((NOW_MS - 570_000) / 1000, tz=timezone.utc)
        assert sessions[1].is_active is False
        assert result[0].active_session_count == 1

    @pytest.mark.asyncio
    async def test_persists_with_sqlite_store(self, tmp_path):
        store = SessionMetadataStore(tmp_path / 'monitor.db')
        repositories = [repo('/work/app', ('main', '/work/app', False))]

        await RepositorySessionMatcher(store).assign(repositories, [entry('s1', '/work/app')], {}, now=NOW)

        mapping = store.get_repo_mapping('s1')
        assert mapping.parent_repo_path == '/work/app'
        assert mapping.worktree_path == '/work/app'
        assert mapping.assigned_at == NOW
