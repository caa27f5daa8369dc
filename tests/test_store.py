"""Tests for the SQLite mapping store."""

import sqlite3
from contextlib import closing
from datetime import datetime, timezone

import pytest

from src.monitor.detection.models import SessionRepoMapping
from src.monitor.store import SELECTED_REPOSITORIES_KEY, SessionMetadataStore

ASSIGNED = datetime(2026, 1, 9, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return SessionMetadataStore(tmp_path / 'nested' / 'monitor.db')


def mapping(session_id, repo='/repos/a', worktree='/repos/a'):
    return SessionRepoMapping(
        session_id=session_id,
        parent_repo_path=repo,
        worktree_path=worktree,
        assigned_at=ASSIGNED,
    )


class TestSessionMetadataStore:
    """Tests for SessionMetadataStore."""

    def test_creates_database(self, tmp_path):
        SessionMetadataStore(tmp_path / 'nested' / 'monitor.db')
        assert (tmp_path / 'nested' / 'monitor.db').exists()

    def test_get_missing(self, store):
        assert store.get_repo_mapping('nope') is None

    def test_set_then_get(self, store):
        store.set_repo_mapping(mapping('s1'))
        assert store.get_repo_mapping('s1') == mapping('s1')

    def test_upsert_replaces(self, store):
        store.set_repo_mapping(mapping('s1'))
        store.set_repo_mapping(mapping('s1', repo='/repos/b', worktree='/repos/b-wt'))

        result = store.get_repo_mapping('s1')
        assert result.parent_repo_path == '/repos/b'
        assert result.worktree_path == '/repos/b-wt'

    def test_batch_get(self, store):
        for sid in ('s1', 's2', 's3'):
            store.set_repo_mapping(mapping(sid))

        result = store.get_repo_mappings(['s1', 's3', 'missing'])
        assert set(result) == {'s1', 's3'}
        assert result['s3'] == mapping('s3')

    def test_batch_get_large(self, store):
        ids = [f's{i}' for i in range(1200)]
        for sid in ids[::100]:
            store.set_repo_mapping(mapping(sid))

        result = store.get_repo_mappings(ids)
        assert set(result) == set(ids[::100])

    def test_batch_get_empty(self, store):
        assert store.get_repo_mappings([]) == {}

    def test_delete(self, store):
        store.set_repo_mapping(mapping('s1'))
        store.delete_repo_mapping('s1')
        assert store.get_repo_mapping('s1') is None

    def test_delete_missing_is_noop(self, store):
        store.delete_repo_mapping('never-there')

    def test_persists_across_instances(self, tmp_path):
        db = tmp_path / 'monitor.db'
        SessionMetadataStore(db).set_repo_mapping(mapping('s1'))
        assert SessionMetadataStore(db).get_repo_mapping('s1') == mapping('s1')

    def test_unusable_database_raises(self, tmp_path):
        db = tmp_path / 'not-a-db'
        db.write_bytes(b'this is definitely not sqlite' * 100)
        with pytest.raises(sqlite3.Error):
            SessionMetadataStore(db)


class TestSettings:
    """Tests for the settings table."""

    def test_missing_setting_returns_default(self, store):
        assert store.get_setting('nope') is None
        assert store.get_setting('nope', 3) == 3

    def test_set_then_get_replaces(self, store):
        store.set_setting('k', {'a': 1})
        store.set_setting('k', [1, 2])
        assert store.get_setting('k') == [1, 2]

    def test_unreadable_value_returns_default(self, store):
        with closing(sqlite3.connect(store.db_path)) as conn, conn:
            conn.execute("INSERT INTO settings (key, value) VALUES ('k', '{broken')")

        assert store.get_setting('k', 'fallback') == 'fallback'

    def test_selected_repository_paths(self, store):
        assert store.get_selected_repository_paths() == []

        store.set_selected_repository_paths(['/repos/a', '/repos/b'])
        assert store.get_selected_repository_paths() == ['/repos/a', '/repos/b']

        store.set_setting(SELECTED_REPOSITORIES_KEY, ['/repos/a', 7, None])
        assert store.get_selected_repository_paths() == ['/repos/a']

        store.set_setting(SELECTED_REPOSITORIES_KEY, 'not a list')
        assert store.get_selected_repository_paths() == []

    def test_approval_timeout(self, store):
        assert store.get_approval_timeout() is None

        store.set_approval_timeout(12)
        assert store.get_approval_timeout() == 12

        # Non-positive values fall back to the default
        store.set_approval_timeout(0)
        assert store.get_approval_timeout() is None

    def test_settings_persist_across_instances(self, tmp_path):
        db = tmp_path / 'monitor.db'
        SessionMetadataStore(db).set_selected_repository_paths(['/repos/a'])
        assert SessionMetadataStore(db).get_selected_repository_paths() == ['/repos/a']
