"""Branch-per-bean lifecycle: hierarchical branch creation and type-aware merges.

Every bean works on `bean/<id>`. A bean's branch is created from its parent's
branch, so the ancestor chain has to exist first. Finished work merges back
into the parent's branch (or the default branch for a root bean), squashed
for tasks and bugs, as a merge commit for everything larger.
"""

import logging
from collections.abc import Callable
from pathlib import Path

from talos.config import BranchConfig
from talos.context import RunContext
from talos.integrations.git import (
    DirtyWorkingTreeError,
    GitError,
    abort_merge,
    abort_rebase,
    branch_exists,
    branch_name_for,
    checkout_branch,
    commit,
    create_branch,
    delete_branch,
    get_status,
    has_merge_head,
    has_rebase_head,
    has_staged_changes,
    has_unmerged_paths,
    head_sha,
    is_working_tree_dirty,
    merge_no_ff,
    merge_squash,
    reset_hard,
    stage_paths,
)
from talos.models import Bean, MergeResult

logger = logging.getLogger(__name__)

BeanFetcher = Callable[[str], Bean | None]

BEAN_FILES_COMMIT_MESSAGE = "chore: commit bean files before branch switch"


class BranchManager:
    def __init__(self, config: BranchConfig, cwd: str | Path, beans_dir: str = ".beans"):
        self.config = config
        self.cwd = Path(cwd)
        self.beans_dir = beans_dir

    def _log(self, ctx: RunContext | None):
        return ctx.bind(logger) if ctx else logger

    # ── Naming ───────────────────────────────────────────────────────────────

    def get_branch_name(self, bean_id: str) -> str:
        return branch_name_for(bean_id)

    def get_merge_target(self, bean: Bean) -> str:
        """The parent's branch, or the default branch for a root bean."""
        if bean.parent_id:
            return self.get_branch_name(bean.parent_id)
        return self.config.default_branch

    def get_merge_strategy(self, bean_type: str) -> str:
        return self.config.merge_strategy.get(bean_type, "merge")

    # ── Branch creation ──────────────────────────────────────────────────────

    def build_ancestor_chain(self, bean: Bean, fetch_bean: BeanFetcher) -> list[Bean]:
        """Ancestors from the root down to the immediate parent.

        The walk stops at the first parent the store cannot find; cycles are
        cut at the first repeated id.
        """
        ancestors: list[Bean] = []
        seen = {bean.id}
        parent_id = bean.parent_id
        while parent_id and parent_id not in seen:
            parent = fetch_bean(parent_id)
            if parent is None:
                break
            ancestors.insert(0, parent)
            seen.add(parent.id)
            parent_id = parent.parent_id
        return ancestors

    def _ensure(self, branch: str, base: str, log) -> bool:
        if branch_exists(self.cwd, branch):
            return False
        log.debug("Creating branch %s from %s", branch, base)
        create_branch(self.cwd, branch, base)
        return True

    def ensure_ancestor_branches(
        self, bean: Bean, fetch_bean: BeanFetcher, ctx: RunContext | None = None
    ) -> str:
        """Create any missing ancestor branches and return the bean's merge target.

        Touches refs only, never the working tree, so it is safe to call while
        the main tree is dirty (parallel mode).
        """
        log = self._log(ctx)
        for ancestor in self.build_ancestor_chain(bean, fetch_bean):
            base = (
                self.get_branch_name(ancestor.parent_id)
                if ancestor.parent_id
                else self.config.default_branch
            )
            self._ensure(self.get_branch_name(ancestor.id), base, log)
        return self.get_merge_target(bean)

    def ensure_branch(
        self, bean: Bean, fetch_bean: BeanFetcher, ctx: RunContext | None = None
    ) -> str:
        """Create the bean's branch (and its ancestors) and check it out.

        Raises DirtyWorkingTreeError if anything outside the record files is
        uncommitted. Re-running on an existing branch just checks it out.
        """
        log = self._log(ctx)
        self.commit_bean_files(ctx)
        if is_working_tree_dirty(self.cwd):
            raise DirtyWorkingTreeError(
                f"Cannot create branch for {bean.id}: working tree is dirty. "
                "Commit or stash changes first."
            )

        base = self.ensure_ancestor_branches(bean, fetch_bean, ctx)
        branch = self.get_branch_name(bean.id)
        if self._ensure(branch, base, log):
            log.info("Created branch %s from %s", branch, base)
        checkout_branch(self.cwd, branch)
        return branch

    def commit_bean_files(self, ctx: RunContext | None = None) -> bool:
        """Commit pending record files so they stay visible on every branch."""
        log = self._log(ctx)
        if not get_status(self.cwd, self.beans_dir):
            return False
        log.info("Committing bean files to current branch before switching")
        stage_paths(self.cwd, self.beans_dir)
        commit(self.cwd, BEAN_FILES_COMMIT_MESSAGE, no_verify=True)
        return True

    # ── Merging ──────────────────────────────────────────────────────────────

    def merge_branch(
        self, bean: Bean, message: str, ctx: RunContext | None = None
    ) -> MergeResult:
        """Merge the bean's branch into its target with the type's strategy.

        Conflicts are aborted and reported as `conflict=True`; the tree is
        left clean on the target branch.
        """
        log = self._log(ctx)
        source = self.get_branch_name(bean.id)
        target = self.get_merge_target(bean)
        strategy = self.get_merge_strategy(bean.type)

        try:
            checkout_branch(self.cwd, target)
            if strategy == "squash":
                result = self._squash_merge(source, message)
            else:
                result = self._merge_commit(source, message)
        except GitError as e:
            if self._contain_conflict():
                result = MergeResult(
                    success=False,
                    conflict=True,
                    error=f"Merge conflict merging {source} into {target}",
                )
            else:
                return MergeResult(success=False, error=str(e))

        if result.conflict:
            log.warning("%s", result.error)
            return result

        log.info("Merged %s into %s (%s)", source, target, strategy)
        self._maybe_delete_branch(source, log)
        return result

    def _squash_merge(self, source: str, message: str) -> MergeResult:
        try:
            merge_squash(self.cwd, source)
        except GitError:
            # Squash conflicts leave unmerged paths but no MERGE_HEAD.
            if has_unmerged_paths(self.cwd):
                reset_hard(self.cwd)
                return MergeResult(
                    success=False,
                    conflict=True,
                    error=f"Merge conflict during squash of {source}",
                )
            raise

        if has_staged_changes(self.cwd):
            return MergeResult(success=True, commit_sha=commit(self.cwd, message))
        # Branches were identical
        return MergeResult(success=True)

    def _merge_commit(self, source: str, message: str) -> MergeResult:
        try:
            merge_no_ff(self.cwd, source, message)
        except GitError:
            if has_merge_head(self.cwd):
                abort_merge(self.cwd)
                return MergeResult(
                    success=False,
                    conflict=True,
                    error=f"Merge conflict during merge of {source}",
                )
            raise
        return MergeResult(success=True, commit_sha=head_sha(self.cwd))

    def _contain_conflict(self) -> bool:
        if has_merge_head(self.cwd):
            abort_merge(self.cwd)
            return True
        if has_unmerged_paths(self.cwd):
            reset_hard(self.cwd)
            return True
        return False

    def _maybe_delete_branch(self, branch: str, log) -> None:
        if not self.config.delete_after_merge:
            return
        try:
            delete_branch(self.cwd, branch)
        except GitError as e:
            log.warning("Failed to delete branch %s: %s", branch, e)

    # ── Recovery ─────────────────────────────────────────────────────────────

    def recover_git_state(self) -> bool:
        """Abort a merge or rebase left behind by a crashed run."""
        recovered = False
        if has_merge_head(self.cwd):
            try:
                abort_merge(self.cwd)
                recovered = True
                logger.warning("Aborted interrupted merge")
            except GitError as e:
                logger.error("Failed to abort interrupted merge: %s", e)
        if has_rebase_head(self.cwd):
            try:
                abort_rebase(self.cwd)
                recovered = True
                logger.warning("Aborted interrupted rebase")
            except GitError as e:
                logger.error("Failed to abort interrupted rebase: %s", e)
        return recovered
