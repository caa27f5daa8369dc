"""SQLite persistence for session -> repository mappings and user settings.

A mapping records which monitored repository a session was first assigned
to. Once written it keeps the session with that repository even if a
worktree path is later reused by another one.

Settings are JSON values under a string key: the selected repository paths
and the approval timeout survive restarts through them.
"""

import json
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

from .config import DB_PATH
from .detection.models import SessionRepoMapping
from .logging_config import get_logger

logger = get_logger(__name__, namespace='store')

# SQLite caps bound parameters per statement
_BATCH_SIZE = 500

SELECTED_REPOSITORIES_KEY = 'selected_repositories'
APPROVAL_TIMEOUT_KEY = 'approval_timeout_seconds'


class SessionMetadataStore:
    """Keyed store for SessionRepoMapping records and settings.

    Every call opens its own connection, so the store can be used from
    worker threads. Writes are committed before returning.
    """

    def __init__(self, db_path: Path | str = DB_PATH):
        self.db_path = Path(db_path)
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        """Create the schema. Raises sqlite3.Error if the database is unusable."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS session_repo_mapping (
                    session_id TEXT PRIMARY KEY,
                    parent_repo_path TEXT NOT NULL,
                    worktree_path TEXT NOT NULL,
                    assigned_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_mapping_parent_repo
                ON session_repo_mapping(parent_repo_path)
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            ''')
        logger.debug("Store ready at %s", self.db_path)

    @staticmethod
    def _row_to_mapping(row) -> SessionRepoMapping:
        session_id, parent_repo_path, worktree_path, assigned_at = row
        try:
            assigned = datetime.fromisoformat(assigned_at)
        except ValueError:
            assigned = datetime.now(timezone.utc)
        return SessionRepoMapping(
            session_id=session_id,
            parent_repo_path=parent_repo_path,
            worktree_path=worktree_path,
            assigned_at=assigned,
        )

    def get_repo_mapping(self, session_id: str) -> SessionRepoMapping | None:
        """Get the repo mapping for a session, if one exists."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                'SELECT session_id, parent_repo_path, worktree_path, assigned_at '
                'FROM session_repo_mapping WHERE session_id = ?',
                (session_id,),
            ).fetchone()
        return self._row_to_mapping(row) if row else None

    def get_repo_mappings(self, session_ids: list[str]) -> dict[str, SessionRepoMapping]:
        """Get repo mappings for multiple sessions at once."""
        mappings: dict[str, SessionRepoMapping] = {}
        if not session_ids:
            return mappings

        with closing(self._connect()) as conn:
            for start in range(0, len(session_ids), _BATCH_SIZE):
                batch = session_ids[start:start + _BATCH_SIZE]
                placeholders = ','.join('?' * len(batch))
                rows = conn.execute(
                    'SELECT session_id, parent_repo_path, worktree_path, assigned_at '
                    f'FROM session_repo_mapping WHERE session_id IN ({placeholders})',
                    batch,
                ).fetchall()
                for row in rows:
                    mapping = self._row_to_mapping(row)
                    mappings[mapping.session_id] = mapping
        return mappings

    def set_repo_mapping(self, mapping: SessionRepoMapping) -> None:
        """Insert or replace the mapping for a session."""
        with closing(self._connect()) as conn, conn:
            conn.execute(
                'INSERT INTO session_repo_mapping '
                '(session_id, parent_repo_path, worktree_path, assigned_at) '
                'VALUES (?, ?, ?, ?) '
                'ON CONFLICT(session_id) DO UPDATE SET '
                'parent_repo_path = excluded.parent_repo_path, '
                'worktree_path = excluded.worktree_path, '
                'assigned_at = excluded.assigned_at',
                (
                    mapping.session_id,
                    mapping.parent_repo_path,
                    mapping.worktree_path,
                    mapping.assigned_at.isoformat(),
                ),
            )

    def delete_repo_mapping(self, session_id: str) -> None:
        """Delete the repo mapping for a session."""
        with closing(self._connect()) as conn, conn:
            conn.execute('DELETE FROM session_repo_mapping WHERE session_id = ?', (session_id,))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str, default=None):
        """Get a stored setting, or `default` if missing or unreadable."""
        with closing(self._connect()) as conn:
            row = conn.execute('SELECT value FROM settings WHERE key = ?', (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("Ignoring unreadable setting %s", key)
            return default

    def set_setting(self, key: str, value) -> None:
        """Store a JSON-serializable setting, replacing any previous value."""
        with closing(self._connect()) as conn, conn:
            conn.execute(
                'INSERT INTO settings (key, value) VALUES (?, ?) '
                'ON CONFLICT(key) DO UPDATE SET value = excluded.value',
                (key, json.dumps(value)),
            )

    def get_selected_repository_paths(self) -> list[str]:
        paths = self.get_setting(SELECTED_REPOSITORIES_KEY, [])
        if not isinstance(paths, list):
            return []
        return [p for p in paths if isinstance(p, str)]

    def set_selected_repository_paths(self, paths: list[str]) -> None:
        self.set_setting(SELECTED_REPOSITORIES_KEY, list(paths))

    def get_approval_timeout(self) -> int | None:
        """Saved approval timeout in seconds; None when unset or not positive."""
        seconds = self.get_setting(APPROVAL_TIMEOUT_KEY)
        if not isinstance(seconds, int) or isinstance(seconds, bool) or seconds <= 0:
            return None
        return seconds

    def set_approval_timeout(self, seconds: int) -> None:
        self.set_setting(APPROVAL_TIMEOUT_KEY, seconds)
