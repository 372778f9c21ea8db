"""Git subprocess wrappers for branch, merge, commit and worktree operations.

Arguments are passed as an argv list, never through a shell, so bean titles
and commit messages need no escaping.
"""

import re
import subprocess
from pathlib import Path

BRANCH_PREFIX = "bean/"

_BEAN_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class GitError(Exception):
    """Raised when a git command fails."""


class DirtyWorkingTreeError(GitError):
    """Raised when a branch operation needs a clean working tree."""


def validate_bean_id(bean_id: str) -> bool:
    return bool(bean_id) and bool(_BEAN_ID_RE.match(bean_id))


def branch_name_for(bean_id: str) -> str:
    if not validate_bean_id(bean_id):
        raise ValueError(f"Invalid bean ID for branch name: {bean_id!r}")
    return f"{BRANCH_PREFIX}{bean_id}"


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    for arg in args:
        if arg.startswith(BRANCH_PREFIX) and not validate_bean_id(arg[len(BRANCH_PREFIX):]):
            raise ValueError(f"Invalid bean ID in branch name: {arg!r}")
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e


# ── Branches ─────────────────────────────────────────────────────────────────


def get_current_branch(cwd: str | Path | None = None) -> str:
    return run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def branch_exists(repo_path: str | Path | None, branch: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path | None, branch: str, base: str | None = None) -> str:
    args = ["branch", branch]
    if base:
        args.append(base)
    return run_git(args, cwd=repo_path)


def checkout_branch(repo_path: str | Path | None, branch: str) -> str:
    return run_git(["checkout", branch], cwd=repo_path)


def delete_branch(repo_path: str | Path | None, branch: str, force: bool = False) -> str:
    """Delete a branch, falling back to -D when -d refuses an unmerged branch."""
    if force:
        return run_git(["branch", "-D", branch], cwd=repo_path)
    try:
        return run_git(["branch", "-d", branch], cwd=repo_path)
    except GitError:
        return run_git(["branch", "-D", branch], cwd=repo_path)


# ── Working tree state ───────────────────────────────────────────────────────


def get_status(cwd: str | Path | None = None, pathspec: str | None = None) -> str:
    args = ["status", "--porcelain"]
    if pathspec:
        args += ["--", pathspec]
    return run_git(args, cwd=cwd)


def is_working_tree_dirty(cwd: str | Path | None = None) -> bool:
    return bool(get_status(cwd))


def has_staged_changes(cwd: str | Path | None = None) -> bool:
    return bool(run_git(["diff", "--cached", "--name-only"], cwd=cwd))


def has_unmerged_paths(cwd: str | Path | None = None) -> bool:
    return bool(run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd))


def get_git_dir(cwd: str | Path | None = None) -> Path | None:
    try:
        return Path(run_git(["rev-parse", "--absolute-git-dir"], cwd=cwd))
    except GitError:
        return None


def has_merge_head(cwd: str | Path | None = None) -> bool:
    git_dir = get_git_dir(cwd)
    return bool(git_dir) and (git_dir / "MERGE_HEAD").exists()


def has_rebase_head(cwd: str | Path | None = None) -> bool:
    git_dir = get_git_dir(cwd)
    if not git_dir:
        return False
    return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()


def head_sha(cwd: str | Path | None = None) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


# ── Commits and merges ───────────────────────────────────────────────────────


def stage_paths(cwd: str | Path | None, *paths: str) -> str:
    return run_git(["add", "--", *paths], cwd=cwd)


def commit(cwd: str | Path | None, message: str, no_verify: bool = False) -> str:
    """Commit staged changes and return the new HEAD sha."""
    args = ["commit", "-m", message]
    if no_verify:
        args.append("--no-verify")
    run_git(args, cwd=cwd)
    return head_sha(cwd)


def merge_no_ff(cwd: str | Path | None, branch: str, message: str) -> str:
    return run_git(["merge", "--no-ff", "-m", message, branch], cwd=cwd)


def merge_squash(cwd: str | Path | None, branch: str) -> str:
    """Stage the squashed changes of a branch. The caller commits."""
    return run_git(["merge", "--squash", branch], cwd=cwd)


def merge_ff_or_commit(cwd: str | Path | None, branch: str) -> str:
    try:
        return run_git(["merge", "--ff-only", branch], cwd=cwd)
    except GitError:
        return run_git(["merge", "--no-edit", branch], cwd=cwd)


def abort_merge(cwd: str | Path | None = None) -> str:
    return run_git(["merge", "--abort"], cwd=cwd)


def abort_rebase(cwd: str | Path | None = None) -> str:
    return run_git(["rebase", "--abort"], cwd=cwd)


def reset_hard(cwd: str | Path | None = None, ref: str = "HEAD") -> str:
    return run_git(["reset", "--hard", ref], cwd=cwd)


def push(cwd: str | Path | None, remote: str = "origin", branch: str | None = None) -> str:
    branch = branch or get_current_branch(cwd)
    return run_git(["push", remote, branch], cwd=cwd)


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str | None = None,
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path)]
        if base_branch:
            args.append(base_branch)
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def ignore_directory(path: str | Path) -> Path:
    """Create a directory that git ignores entirely, like .pytest_cache does."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    gitignore = directory / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*\n")
    return directory
