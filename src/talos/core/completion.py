"""Classifies an agent run's outcome and applies the record and git side effects.

    exit != 0                → failed:    tag `failed`, crash bean blocks the bean
    exit == 0, `blocked` tag → blocked:   reuse or create a blocker bean
    exit == 0                → completed: status completed, commit, merge, push

The bean is always re-fetched first: the agent edits its own tags while it
runs, so the spawn-time copy is stale by definition.
"""

import logging
from collections import deque
from pathlib import Path

from talos.config import Config
from talos.context import RunContext
from talos.core.branches import BranchManager
from talos.core.commits import extract_scope, format_commit_message
from talos.core.worktrees import remove_bean_worktree
from talos.events import BeanBlocked, BeanCompleted, BeanFailed, CompletionEvent, EventStream
from talos.integrations.beans import BeansCliError
from talos.integrations.git import (
    GitError,
    branch_name_for,
    commit,
    delete_branch,
    get_current_branch,
    has_staged_changes,
    has_unmerged_paths,
    merge_ff_or_commit,
    push,
    reset_hard,
)
from talos.models import Bean, CompletionResult

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 50


def tail_lines(path: str | Path, lines: int = OUTPUT_TAIL_LINES) -> str:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=lines)).rstrip("\n")
    except OSError:
        return "(Unable to read output file)"


def crash_report(bean: Bean, exit_code: int, last_output: str) -> str:
    return (
        f"Agent crashed while working on {bean.id}.\n\n"
        f"## Exit Code\n{exit_code}\n\n"
        f"## Last Output\n```\n{last_output}\n```\n\n"
        f"## Context\n"
        f"- Bean: {bean.id}\n"
        f"- Title: {bean.title}\n"
        f"- Type: {bean.type}"
    )


class CompletionHandler:
    def __init__(self, config: Config, store, branches: BranchManager):
        self.config = config
        self.store = store
        self.branches = branches
        self.errors_epic_id: str | None = None
        self.events: EventStream[CompletionEvent] = EventStream("completion")

    def handle_completion(
        self,
        bean: Bean,
        exit_code: int,
        output_path: str | Path,
        worktree_path: str | Path | None = None,
        ctx: RunContext | None = None,
    ) -> CompletionResult:
        log = ctx.bind(logger) if ctx else logger
        current = self.store.get_bean(bean.id)
        if current is None:
            error = f"Bean not found: {bean.id}"
            log.error("%s", error)
            return CompletionResult(outcome="failed", error=error)

        if exit_code != 0:
            return self.handle_failure(current, exit_code, output_path, log)
        if "blocked" in current.tags:
            return self.handle_blocked(current, log)
        return self.handle_success(current, worktree_path, ctx, log)

    # ── Failure ──────────────────────────────────────────────────────────────

    def handle_failure(self, bean: Bean, exit_code: int, output_path, log=logger) -> CompletionResult:
        """Tag the bean and file a crash report. Status and worktree are left alone."""
        result = CompletionResult(outcome="failed", error=f"Agent exited with code {exit_code}")
        try:
            self.store.update_tags(bean.id, add=["failed"])
            crash = self.store.create_bean(
                f"Crash: {bean.title}",
                type="bug",
                status="todo",
                priority="high",
                parent=self.errors_epic_id,
                blocking=[bean.id],
                body=crash_report(bean, exit_code, tail_lines(output_path)),
            )
            result.blocker_bean_id = crash.id
        except BeansCliError as e:
            log.error("Failed to record crash of %s: %s", bean.id, e)
            result.error = f"{result.error}; additionally failed to handle: {e}"

        log.warning("Bean %s failed (exit code %s)", bean.id, exit_code)
        self.events.publish(BeanFailed(bean_id=bean.id, exit_code=exit_code, error=result.error))
        return result

    # ── Blocked ──────────────────────────────────────────────────────────────

    def handle_blocked(self, bean: Bean, log=logger) -> CompletionResult:
        result = CompletionResult(outcome="blocked")
        try:
            blockers = self.store.get_blocked_by(bean.id)
            if blockers:
                result.blocker_bean_id = blockers[0].id
            elif self.config.on_blocked.create_blocker_bean:
                blocker = self.store.create_bean(
                    f"Blocker: {bean.title}",
                    type="bug",
                    status="todo",
                    parent=self.errors_epic_id,
                    blocking=[bean.id],
                    body=(
                        f"Agent reported being blocked while working on {bean.id}.\n\n"
                        "Check agent output for details about what caused the block."
                    ),
                )
                result.blocker_bean_id = blocker.id
        except BeansCliError as e:
            log.error("Failed to resolve blocker for %s: %s", bean.id, e)
            result.error = str(e)

        log.info("Bean %s blocked (blocker=%s)", bean.id, result.blocker_bean_id)
        self.events.publish(BeanBlocked(bean_id=bean.id, blocker_bean_id=result.blocker_bean_id))
        return result

    # ── Success ──────────────────────────────────────────────────────────────

    def handle_success(
        self,
        bean: Bean,
        worktree_path: str | Path | None = None,
        ctx: RunContext | None = None,
        log=logger,
    ) -> CompletionResult:
        result = CompletionResult(outcome="completed")
        try:
            self.store.update_status(bean.id, "completed")
        except BeansCliError as e:
            # The bean stays in-progress; startup orphan detection files it.
            log.error("Failed to mark %s completed: %s", bean.id, e)
            result.error = f"Failed to mark completed: {e}"

        if self.config.on_complete.auto_commit:
            try:
                scope = extract_scope(bean, self.store.get_bean)
                message = format_commit_message(
                    bean, scope, self.config.on_complete.include_bean_id
                )
                if worktree_path:
                    self._finish_parallel(bean, message, Path(worktree_path), result, ctx, log)
                else:
                    self._finish_sequential(bean, message, result, ctx, log)

                if self.config.on_complete.push and not result.merge_conflict:
                    push(self.config.project_root)
            except (GitError, BeansCliError) as e:
                log.exception("Post-completion git work failed for %s", bean.id)
                result.error = "; ".join(filter(None, [result.error, str(e)]))

        log.info("Bean %s completed (commit=%s)", bean.id, result.commit_sha)
        self.events.publish(BeanCompleted(bean_id=bean.id, commit_sha=result.commit_sha))
        return result

    def _finish_sequential(self, bean, message, result, ctx, log):
        root = self.config.project_root
        if has_staged_changes(root):
            result.commit_sha = commit(root, message)
        if self.config.branch.enabled:
            self._merge(bean, message, result, ctx)

    def _finish_parallel(self, bean, message, worktree: Path, result, ctx, log):
        if has_staged_changes(worktree):
            result.commit_sha = commit(worktree, message)
        remove_bean_worktree(self.config.project_root, worktree)

        if self.config.branch.enabled:
            self._merge(bean, message, result, ctx)
            return

        # No branch hierarchy: fold the worktree branch into whatever the
        # main tree has checked out.
        root = self.config.project_root
        branch = branch_name_for(bean.id)
        try:
            merge_ff_or_commit(root, branch)
        except GitError:
            if has_unmerged_paths(root):
                reset_hard(root)
            result.merge_conflict = True
            log.warning(
                "Failed to merge %s into %s, branch kept for manual resolution",
                branch, get_current_branch(root),
            )
            return
        try:
            delete_branch(root, branch)
        except GitError as e:
            log.warning("Failed to delete branch %s: %s", branch, e)

    def _merge(self, bean, message, result, ctx):
        merge = self.branches.merge_branch(bean, message, ctx)
        if merge.conflict:
            result.merge_conflict = True
        elif not merge.success:
            raise GitError(merge.error or f"Failed to merge branch for {bean.id}")
        elif merge.commit_sha:
            result.commit_sha = merge.commit_sha
