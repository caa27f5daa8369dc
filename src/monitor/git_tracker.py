"""Git operations for discovering repository worktrees."""

import asyncio
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Optional

from .config import GIT_COMMAND_TIMEOUT
from .detection.models import WorktreeBranch
from .logging_config import get_logger

logger = get_logger(__name__, namespace='git')

BRANCH_REF_PREFIX = 'refs/heads/'
DEFAULT_BRANCH = 'main'


def run_git(cwd: str, *args, timeout: float = GIT_COMMAND_TIMEOUT) -> tuple[str, bool]:
    """Run a git command and return (output, success).

    Args:
        cwd: Working directory for the git command
        *args: Git command arguments
        timeout: Seconds before the process is killed

    Returns:
        Tuple of (stdout output, success boolean)
    """
    try:
        result = subprocess.run(
            ['git', *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout
        )
        return result.stdout.strip(), result.returncode == 0
    except subprocess.TimeoutExpired:
        logger.warning(f"git {' '.join(args)} timed out after {timeout}s in {cwd}")
        return '', False
    except OSError as e:
        logger.debug(f"git {' '.join(args)} failed in {cwd}: {e}")
        return str(e), False


def parse_worktree_list(output: str) -> list[WorktreeBranch]:
    """Parse `git worktree list --porcelain` output.

    Records are separated by blank lines. The first record is the main
    checkout; the rest are linked worktrees. A record without a branch line
    (detached HEAD, bare) is named after its directory.

    Args:
        output: Raw porcelain output

    Returns:
        List of WorktreeBranch objects in git's order
    """
    worktrees = []
    path = None
    branch = None

    def flush():
        if path is None:
            return
        worktrees.append(WorktreeBranch(
            name=branch or Path(path).name,
            path=path,
            is_worktree=bool(worktrees),
        ))

    for line in output.split('\n'):
        line = line.strip()
        if not line:
            flush()
            path, branch = None, None
        elif line.startswith('worktree '):
            flush()
            path, branch = line[len('worktree '):], None
        elif line.startswith('branch '):
            ref = line[len('branch '):]
            branch = ref[len(BRANCH_REF_PREFIX):] if ref.startswith(BRANCH_REF_PREFIX) else ref
    flush()

    return worktrees


def list_worktrees(repo_path: str) -> list[WorktreeBranch]:
    """List the worktrees git knows for a repository (empty on failure)."""
    output, success = run_git(repo_path, 'worktree', 'list', '--porcelain')
    if not success:
        return []
    return parse_worktree_list(output)


def get_current_branch(path: str) -> Optional[str]:
    """Current branch of a checkout, or None when detached or not a repo."""
    branch, success = run_git(path, 'branch', '--show-current')
    if not success or not branch:
        return None
    return branch


def detect_worktrees(repo_path: str) -> list[WorktreeBranch]:
    """Worktrees of a repository, never empty.

    If git lists nothing the repository itself is returned as the only
    entry, named after its current branch (or "main").
    """
    worktrees = list_worktrees(repo_path)
    if worktrees:
        return worktrees

    branch = get_current_branch(repo_path) or DEFAULT_BRANCH
    logger.debug(f"No worktrees listed for {repo_path}, using {branch}")
    return [WorktreeBranch(name=branch, path=repo_path, is_worktree=False)]


async def detect_worktrees_batch(
    repo_paths: list[str],
    detector: Callable[[str], list[WorktreeBranch]] = detect_worktrees,
) -> dict[str, list[WorktreeBranch]]:
    """Detect worktrees for several repositories in parallel, keyed by path."""
    results = await asyncio.gather(
        *(asyncio.to_thread(detector, path) for path in repo_paths)
    )
    return dict(zip(repo_paths, results))
