"""Per-bean git worktrees for parallel execution."""

import logging
from pathlib import Path

from talos.integrations.git import (
    GitError,
    branch_exists,
    branch_name_for,
    ignore_directory,
    worktree_add,
    worktree_remove,
)

logger = logging.getLogger(__name__)


def worktree_path_for(repo_path: str | Path, bean_id: str, worktree_dir: str = ".worktrees") -> Path:
    return Path(repo_path) / worktree_dir / bean_id


def create_bean_worktree(
    repo_path: str | Path,
    bean_id: str,
    worktree_dir: str = ".worktrees",
    base_branch: str | None = None,
) -> Path:
    """Create (or reuse) the worktree for a bean on `bean/<id>`.

    An existing branch is checked out as-is. A new branch starts from
    `base_branch`, or from HEAD when no base is given.
    """
    repo = Path(repo_path)
    branch = branch_name_for(bean_id)
    wt_path = worktree_path_for(repo, bean_id, worktree_dir)

    if wt_path.exists():
        return wt_path

    ignore_directory(wt_path.parent)
    if branch_exists(repo, branch):
        worktree_add(repo, wt_path, branch, create_branch=False)
    else:
        worktree_add(repo, wt_path, branch, base_branch, create_branch=True)
    logger.info("Created worktree %s on %s", wt_path, branch)
    return wt_path


def remove_bean_worktree(repo_path: str | Path, worktree_path: str | Path, force: bool = True) -> bool:
    """Remove a bean's worktree. Failure is logged, not raised."""
    wt_path = Path(worktree_path)
    if not wt_path.exists():
        return False
    try:
        worktree_remove(repo_path, wt_path, force=force)
    except GitError as e:
        logger.warning("Failed to remove worktree %s: %s", wt_path, e)
        return False
    return True
