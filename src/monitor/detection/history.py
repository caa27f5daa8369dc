"""History index parsing and transcript head reads.

This module provides functions for:
- Parsing the global history index, filtered to monitored paths
- Locating a session's transcript from its project path
- Reading gitBranch/slug from the head of transcripts, fanned out per session
"""

import asyncio
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import SESSION_HEAD_READ_BYTES
from ..logging_config import get_logger
from ..utils import encode_project_path, parse_jsonl_line
from .models import HistoryEntry, SessionMetadata

logger = get_logger(__name__, namespace='matcher')


def is_same_or_nested(path: str, root: str) -> bool:
    """True if `path` equals `root` or lies strictly below it."""
    root = root.rstrip('/') or '/'
    if path == root:
        return True
    prefix = root if root.endswith('/') else root + '/'
    return path.startswith(prefix)


def decode_history_line(line: str | bytes) -> Optional[HistoryEntry]:
    """Decode one history record, or None if it lacks the required fields."""
    data = parse_jsonl_line(line)
    if data is None:
        return None

    display = data.get('display')
    timestamp = data.get('timestamp')
    project = data.get('project')
    session_id = data.get('sessionId')

    if not isinstance(display, str) or not isinstance(project, str) or not isinstance(session_id, str):
        return None
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        return None
    try:
        # NaN, infinities and out-of-range millisecond values have no date
        datetime.fromtimestamp(timestamp / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None

    return HistoryEntry(
        display=display,
        timestamp=int(timestamp),
        project=project,
        session_id=session_id,
    )


def parse_history(history_file: Path, paths: Iterable[str]) -> list[HistoryEntry]:
    """Parse the history index, keeping entries under any of `paths`.

    A missing or unreadable index yields an empty list.
    """
    roots = list(paths)
    if not roots:
        return []

    try:
        data = history_file.read_bytes()
    except OSError as e:
        logger.debug("History index unavailable at %s: %s", history_file, e)
        return []

    entries = []
    for line in data.split(b'\n'):
        if not line.strip():
            continue
        entry = decode_history_line(line)
        if entry is None:
            continue
        if any(is_same_or_nested(entry.project, root) for root in roots):
            entries.append(entry)
    return entries


def group_by_session(entries: Iterable[HistoryEntry]) -> dict[str, list[HistoryEntry]]:
    """Group history entries by session id, keeping file order."""
    grouped: dict[str, list[HistoryEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.session_id, []).append(entry)
    return grouped


def session_file_path(claude_path: Path, project_path: str, session_id: str) -> Path:
    """Location of a session transcript under the CLI's data directory."""
    return claude_path / "projects" / encode_project_path(project_path) / f"{session_id}.jsonl"


def read_session_metadata(file_path: Path) -> Optional[SessionMetadata]:
    """Read gitBranch and slug from the head of a transcript.

    The slug may appear several lines in, so the first 16KB are scanned.
    Returns None when the file cannot be read.
    """
    try:
        stat = file_path.stat()
        with open(file_path, 'rb') as f:
            head = f.read(SESSION_HEAD_READ_BYTES)
    except OSError as e:
        logger.debug("Cannot read session head %s: %s", file_path, e)
        return None

    branch = None
    slug = None
    for line in head.split(b'\n'):
        if not line.strip():
            continue
        data = parse_jsonl_line(line)
        if data is None:
            continue
        if branch is None and isinstance(data.get('gitBranch'), str) and data['gitBranch']:
            branch = data['gitBranch']
        if slug is None and isinstance(data.get('slug'), str) and data['slug']:
            slug = data['slug']
        if branch is not None and slug is not None:
            break

    return SessionMetadata(
        branch=branch,
        slug=slug,
        modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )


async def read_session_metadata_batch(
    claude_path: Path,
    session_entries: dict[str, list[HistoryEntry]],
) -> dict[str, SessionMetadata]:
    """Read metadata for every session concurrently, one task per session."""
    session_ids = []
    tasks = []
    for session_id, entries in session_entries.items():
        if not entries:
            continue
        path = session_file_path(claude_path, entries[0].project, session_id)
        session_ids.append(session_id)
        tasks.append(asyncio.to_thread(read_session_metadata, path))

    results = await asyncio.gather(*tasks)
    return {
        session_id: metadata
        for session_id, metadata in zip(session_ids, results)
        if metadata is not None
    }
