"""Repository selection routes."""

from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ..logging_config import get_logger

logger = get_logger(__name__, namespace='api')

router = APIRouter(prefix="/api", tags=["repositories"])


class AddRepositoryRequest(BaseModel):
    path: str


@router.get("/repositories")
def list_repositories(request: Request):
    """List selected repositories with their worktrees and sessions."""
    repositories = request.app.state.monitor.get_selected_repositories()
    return {
        "repositories": [r.to_dict() for r in repositories],
        "count": len(repositories),
    }


@router.post("/repositories")
async def add_repository(body: AddRepositoryRequest, request: Request):
    """Start monitoring a repository."""
    path = Path(body.path).expanduser()
    if not path.is_dir():
        raise HTTPException(status_code=400, detail=f"Not a directory: {body.path}")

    repository = await request.app.state.monitor.add_repository(str(path.resolve()))
    if repository is None:
        raise HTTPException(status_code=404, detail="Repository was removed while adding")
    logger.info(f"Repository added via API: {repository.path}")
    return repository.to_dict()


@router.delete("/repositories")
async def remove_repository(path: str, request: Request):
    """Stop monitoring a repository, given the path in any form it was added with."""
    resolved = str(Path(path).expanduser().resolve())
    removed = await request.app.state.monitor.remove_repository(resolved)
    if not removed:
        raise HTTPException(status_code=404, detail="Repository not found")
    return {"success": True}


@router.post("/repositories/refresh")
async def refresh_repositories(request: Request):
    """Re-detect worktrees and rescan sessions for all repositories."""
    repositories = await request.app.state.monitor.refresh_sessions()
    return {
        "repositories": [r.to_dict() for r in repositories],
        "count": len(repositories),
    }
