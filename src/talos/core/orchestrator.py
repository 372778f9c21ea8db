"""The daemon: wires watcher, scheduler, runners and completion together.

Component events land in one inbox and are handled by a single dispatcher
thread, so record decisions and every git operation happen one at a time.
Agent output is the exception: it is appended to the bean's log straight
from the reader threads.
"""

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path

from talos.config import Config
from talos.context import RunContext, new_context
from talos.core.agents import AgentRunner
from talos.core.branches import BranchManager
from talos.core.completion import CompletionHandler
from talos.core.scheduler import Scheduler
from talos.core.watcher import Watcher
from talos.core.worktrees import create_bean_worktree
from talos.events import (
    AgentExited,
    AgentOutput,
    AgentSpawnFailed,
    AgentStarted,
    BeanCreated,
    BeanDeleted,
    BeanReady,
    BeanRunStarted,
    BeanStuck,
    BeanUpdated,
    DaemonError,
    EventStream,
    QueueChanged,
    StatusChanged,
    TagsChanged,
)
from talos.integrations.beans import BeanFilter, BeansClient, BeansCliError
from talos.integrations.git import GitError, branch_name_for, ignore_directory
from talos.models import (
    STUCK_TAGS,
    TERMINAL_STATUSES,
    WORKABLE_STATUSES,
    Bean,
    CompletionResult,
    ExecutionContext,
    RunningAgent,
)

logger = logging.getLogger(__name__)

ERRORS_EPIC_TITLE = "Errors"
RECENTLY_COMPLETED_LIMIT = 5

_STOP = object()


class Orchestrator:
    def __init__(
        self,
        config: Config,
        store=None,
        runner_factory: Callable[[], AgentRunner] | None = None,
    ):
        self.config = config
        self.store = store or BeansClient(config.project_root)
        self.runner_factory = runner_factory or (
            lambda: AgentRunner(config.agent, self.store.get_bean_with_children)
        )

        self.branches = BranchManager(config.branch, config.project_root)
        self.watcher = Watcher(config.beans_path, self.store)
        self.scheduler = Scheduler(
            max_parallel=config.scheduler.max_parallel,
            poll_interval=config.scheduler.poll_interval / 1000,
            blockers_fn=self.store.get_blocked_by,
        )
        self.completion = CompletionHandler(config, self.store, self.branches)
        self.events: EventStream = EventStream("orchestrator")

        self._inbox: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._output_lock = threading.Lock()
        self._running: dict[str, RunningAgent] = {}
        self._cancelled: set[str] = set()
        self._recently_completed: deque[Bean] = deque(maxlen=RECENTLY_COMPLETED_LIMIT)
        self._paused = False
        self._started = False
        self._dispatcher: threading.Thread | None = None

        self.watcher.events.subscribe(self._post)
        self.scheduler.events.subscribe(self._post)
        self.completion.events.subscribe(self.events.publish)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self):
        if self._started:
            return
        ignore_directory(self.config.output_path)
        if self.branches.recover_git_state():
            logger.warning("Recovered from an interrupted git operation")
        self.ensure_errors_epic()
        self.watcher.start()
        self.detect_orphaned_beans()
        if self.config.scheduler.auto_enqueue_on_startup:
            self.enqueue_actionable_beans()

        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="dispatcher", daemon=True)
        self._dispatcher.start()
        if not self._paused:
            self.scheduler.start()
        self._started = True
        logger.info("Talos started in %s", self.config.project_root)

    def stop(self):
        """Stop scheduling and watching, cancel agents and revert their beans to todo."""
        if not self._started:
            return
        self.scheduler.stop()
        self.watcher.stop()

        with self._lock:
            running = list(self._running.values())
            self._running.clear()
        for agent in running:
            agent.runner.cancel()
            self._revert_to_todo(agent.bean.id)

        self._inbox.put(_STOP)
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=10)
            self._dispatcher = None
        self._started = False
        logger.info("Talos stopped")

    def _revert_to_todo(self, bean_id: str):
        try:
            self.store.update_status(bean_id, "todo")
        except BeansCliError as e:
            logger.error("Failed to revert %s to todo: %s", bean_id, e)

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def _post(self, event):
        self._inbox.put(event)

    def _dispatch_loop(self):
        while True:
            event = self._inbox.get()
            if event is _STOP:
                return
            self._dispatch_safely(event)

    def _dispatch_safely(self, event):
        try:
            self.dispatch(event)
        except Exception as e:
            logger.exception("Error handling %s", type(event).__name__)
            self.events.publish(DaemonError(message=str(e), bean_id=getattr(event, "bean_id", None)))

    def drain(self) -> int:
        """Handle everything currently in the inbox on the calling thread."""
        handled = 0
        while True:
            try:
                event = self._inbox.get_nowait()
            except queue.Empty:
                return handled
            if event is _STOP:
                continue
            self._dispatch_safely(event)
            handled += 1

    def dispatch(self, event):
        if isinstance(event, BeanCreated):
            self.consider(event.bean)
        elif isinstance(event, BeanUpdated):
            self.consider(event.bean)
        elif isinstance(event, BeanDeleted):
            self.scheduler.dequeue(event.bean_id)
        elif isinstance(event, StatusChanged):
            if event.new_status in TERMINAL_STATUSES:
                self.scheduler.dequeue(event.bean.id)
        elif isinstance(event, TagsChanged):
            self._on_tags_changed(event)
        elif isinstance(event, BeanReady):
            self._start_bean(event.bean)
        elif isinstance(event, AgentExited):
            self._finish_bean(event.bean_id, event.result.code)
        elif isinstance(event, AgentSpawnFailed):
            self._append_output(event.bean_id, f"Spawn error: {event.error}\n")
            self._finish_bean(event.bean_id, -1)
        elif isinstance(event, (QueueChanged, BeanStuck)):
            self.events.publish(event)

    def _on_tags_changed(self, event: TagsChanged):
        bean_id = event.bean.id
        if self.is_running(bean_id):
            return  # the completion handler reads the tags when the run ends
        added = [t for t in STUCK_TAGS if t in event.added]
        if added:
            self.scheduler.mark_stuck(bean_id, added[0])
        elif any(t in event.removed for t in STUCK_TAGS) and not event.bean.is_stuck:
            self.scheduler.clear_stuck(bean_id)
            self.consider(event.bean)

    # ── Enqueueing ───────────────────────────────────────────────────────────

    def should_enqueue(self, bean: Bean) -> bool:
        if bean.status not in WORKABLE_STATUSES:
            return False
        if bean.is_stuck or self.scheduler.is_stuck(bean.id):
            return False
        if bean.id in self._cancelled:
            return False
        if self.is_running(bean.id) or self.scheduler.is_in_progress(bean.id):
            return False
        return True

    def consider(self, bean: Bean, front: bool = False) -> bool:
        """Enqueue a bean if its stored record is workable, wiring epic blockers first.

        Event payloads can lag behind the store (an agent's last edit lands
        after its exit), so the decision uses a fresh read.
        """
        try:
            current = self.store.get_bean(bean.id)
        except BeansCliError as e:
            logger.error("Failed to refresh %s: %s", bean.id, e)
            return False
        if current is None:
            self.scheduler.dequeue(bean.id)
            return False
        bean = current
        if not self.should_enqueue(bean):
            if self.scheduler.is_queued(bean.id) and bean.status not in WORKABLE_STATUSES:
                self.scheduler.dequeue(bean.id)
            return False
        self.setup_epic_blocking(bean)
        return self.scheduler.enqueue(bean, front=front)

    def setup_epic_blocking(self, bean: Bean):
        """Make each unfinished child block its epic or milestone."""
        if not bean.is_review_mode:
            return
        try:
            for child in self.store.get_incomplete_children(bean.id):
                if bean.id not in child.blocking_ids:
                    self.store.add_blocking(child.id, bean.id)
                    logger.debug("Child %s now blocks %s", child.id, bean.id)
        except BeansCliError as e:
            logger.error("Failed to set up blockers for %s: %s", bean.id, e)

    def enqueue_actionable_beans(self) -> int:
        beans = self.store.list_beans(BeanFilter(status=["todo"], exclude_tags=list(STUCK_TAGS)))
        return sum(1 for bean in beans if self.consider(bean))

    # ── Startup recovery ─────────────────────────────────────────────────────

    def ensure_errors_epic(self) -> str | None:
        """Find or create the draft epic that collects crash and blocker beans."""
        try:
            existing = self.store.list_beans(BeanFilter(type=["epic"], search=ERRORS_EPIC_TITLE))
            epic = next((b for b in existing if b.title == ERRORS_EPIC_TITLE), None)
            if epic is None:
                epic = self.store.create_bean(
                    ERRORS_EPIC_TITLE,
                    type="epic",
                    status="draft",
                    body="Container for crash and blocker beans created by Talos.",
                )
        except BeansCliError as e:
            logger.error("Failed to set up the Errors epic: %s", e)
            return None
        self.completion.errors_epic_id = epic.id
        return epic.id

    def detect_orphaned_beans(self) -> list[str]:
        """Fail beans left in-progress by a previous run that died.

        Each orphan gets the `failed` tag and one crash bean. The tag makes a
        second pass skip it.
        """
        orphans = []
        for bean in self.store.list_beans(BeanFilter(status=["in-progress"])):
            if bean.is_stuck or self.is_running(bean.id):
                continue
            logger.warning("Bean %s was in progress with no agent running", bean.id)
            self.store.update_tags(bean.id, add=["failed"])
            self.store.create_bean(
                f"Crash: {bean.title}",
                type="bug",
                status="todo",
                priority="high",
                parent=self.completion.errors_epic_id,
                blocking=[bean.id],
                body=(
                    "Bean was found in 'in-progress' status on startup but no agent was running.\n"
                    "This likely indicates a crash or unexpected termination.\n\n"
                    "Manual review required before retrying.\n\n"
                    f"Bean: {bean.id}\n"
                    f"Title: {bean.title}"
                ),
            )
            self.scheduler.mark_stuck(bean.id, "failed")
            orphans.append(bean.id)
        return orphans

    # ── Runs ─────────────────────────────────────────────────────────────────

    def prepare_execution(self, bean: Bean, ctx: RunContext | None = None) -> ExecutionContext:
        """Put the bean on its branch, or in its own worktree when running in parallel."""
        root = self.config.project_root
        parallel = self.scheduler.max_parallel > 1
        if self.config.branch.enabled:
            branch = self.branches.get_branch_name(bean.id)
            if parallel:
                base = self.branches.ensure_ancestor_branches(bean, self.store.get_bean, ctx)
                wt = create_bean_worktree(root, bean.id, self.config.worktree_dir, base)
                return ExecutionContext(branch_name=branch, base_branch=base, worktree_path=str(wt))
            self.branches.ensure_branch(bean, self.store.get_bean, ctx)
            return ExecutionContext(branch_name=branch, base_branch=self.branches.get_merge_target(bean))
        if parallel:
            wt = create_bean_worktree(root, bean.id, self.config.worktree_dir)
            return ExecutionContext(branch_name=branch_name_for(bean.id), worktree_path=str(wt))
        return ExecutionContext()

    def _start_bean(self, bean: Bean):
        if self._paused:
            self.scheduler.mark_complete(bean.id)
            self.scheduler.enqueue(bean, front=True)
            return
        if self.is_running(bean.id):
            return

        ctx = new_context(bean.id, "orchestrator")
        log = ctx.bind(logger)
        try:
            current = self.store.get_bean(bean.id)
            if current is None or current.status not in WORKABLE_STATUSES or current.is_stuck:
                log.info(
                    "Bean %s is no longer workable (%s), not starting",
                    bean.id, current.status if current else "deleted",
                )
                self.scheduler.mark_complete(bean.id)
                return
            bean = current
            exec_ctx = self.prepare_execution(bean, ctx)
            if bean.status != "in-progress":
                self.store.update_status(bean.id, "in-progress")
        except (GitError, BeansCliError, ValueError) as e:
            log.error("Failed to prepare %s: %s", bean.id, e)
            self.scheduler.mark_complete(bean.id)
            self.events.publish(DaemonError(message=str(e), bean_id=bean.id))
            return

        self._clear_output(bean.id)
        runner = self.runner_factory()
        runner.events.subscribe(self._on_runner_event)
        with self._lock:
            self._running[bean.id] = RunningAgent(
                bean=bean,
                runner=runner,
                started_at=time.time(),
                correlation_id=ctx.correlation_id,
                worktree_path=exec_ctx.worktree_path,
            )
        log.info("Starting agent for %s", bean.id)
        self.events.publish(BeanRunStarted(bean=bean, context=exec_ctx))
        runner.run(bean, cwd=exec_ctx.worktree_path or self.config.project_root)

    def _on_runner_event(self, event):
        if isinstance(event, AgentOutput):
            self._append_output(event.bean_id, event.data)
            with self._lock:
                agent = self._running.get(event.bean_id)
                if agent is not None:
                    agent.output.append(event.data)
            self.events.publish(event)
        elif isinstance(event, AgentStarted):
            self.events.publish(event)
        else:
            self._post(event)

    def _finish_bean(self, bean_id: str, exit_code: int):
        with self._lock:
            agent = self._running.pop(bean_id, None)
        if agent is None:
            return  # cancelled or stopped

        ctx = RunContext(agent.correlation_id, bean_id, "completion")
        try:
            result = self.completion.handle_completion(
                agent.bean, exit_code, self.output_path(bean_id), agent.worktree_path, ctx
            )
        except BeansCliError as e:
            ctx.bind(logger).error("Completion handling failed for %s: %s", bean_id, e)
            self.events.publish(DaemonError(message=str(e), bean_id=bean_id))
            result = CompletionResult(outcome="failed", error=str(e))

        self.scheduler.mark_complete(bean_id)
        if result.outcome in STUCK_TAGS:
            self.scheduler.mark_stuck(bean_id, result.outcome)
        elif result.outcome == "completed":
            completed = self._fetch_quietly(bean_id) or agent.bean
            with self._lock:
                self._recently_completed.appendleft(completed)
        self._notify(agent.bean, result)

    def _fetch_quietly(self, bean_id: str) -> Bean | None:
        try:
            return self.store.get_bean(bean_id)
        except BeansCliError:
            return None

    def _notify(self, bean: Bean, result: CompletionResult):
        if not (self.config.slack_bot_token and self.config.slack_channel):
            return
        try:
            from talos.integrations.slack import notify_outcome

            notify_outcome(
                self.config.slack_bot_token, self.config.slack_channel, bean.id, bean.title, result
            )
        except Exception:
            logger.exception("Failed to send Slack notification for %s", bean.id)

    # ── Control ──────────────────────────────────────────────────────────────

    def pause(self):
        """Stop handing out new work. Queue and running agents are untouched."""
        self._paused = True
        self.scheduler.stop()
        logger.info("Scheduling paused")

    def resume(self):
        self._paused = False
        if self._started:
            self.scheduler.start()
        logger.info("Scheduling resumed")

    def cancel(self, bean_id: str) -> bool:
        """Kill a running agent and put its bean back to todo.

        A cancel is deliberate, so nothing is tagged and no crash bean is
        filed. The bean stays out of the queue until retried.
        """
        with self._lock:
            agent = self._running.pop(bean_id, None)
        if agent is None:
            return False
        self._cancelled.add(bean_id)
        agent.runner.cancel()
        self._revert_to_todo(bean_id)
        self.scheduler.mark_complete(bean_id)
        self.scheduler.dequeue(bean_id)
        logger.info("Cancelled %s", bean_id)
        return True

    def retry(self, bean_id: str) -> bool:
        """Clear stuck tags and bookkeeping, then queue at the front of its tier."""
        bean = self.store.get_bean(bean_id)
        if bean is None:
            self.events.publish(DaemonError(message=f"Bean not found: {bean_id}", bean_id=bean_id))
            return False
        remove = [t for t in STUCK_TAGS if t in bean.tags]
        if remove:
            bean = self.store.update_tags(bean_id, remove=remove)
        self.scheduler.clear_stuck(bean_id)
        self._cancelled.discard(bean_id)
        logger.info("Retrying %s", bean_id)
        return self.consider(bean, front=True)

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def is_paused(self) -> bool:
        return self._paused

    def is_running(self, bean_id: str) -> bool:
        with self._lock:
            return bean_id in self._running

    def get_queue(self) -> list[Bean]:
        return self.scheduler.get_queue()

    def get_in_progress(self) -> dict[str, RunningAgent]:
        with self._lock:
            return dict(self._running)

    def get_stuck(self) -> list[Bean]:
        return [bean for bean in self.watcher.get_all() if bean.is_stuck]

    def get_recently_completed(self) -> list[Bean]:
        with self._lock:
            return list(self._recently_completed)

    def get_state(self) -> dict:
        return {
            "paused": self._paused,
            "scheduler": self.scheduler.get_state(),
            "queue": [_bean_summary(b) for b in self.get_queue()],
            "in_progress": [
                {**_bean_summary(a.bean), "started_at": a.started_at, "worktree_path": a.worktree_path}
                for a in self.get_in_progress().values()
            ],
            "stuck": [_bean_summary(b) for b in self.get_stuck()],
            "recently_completed": [_bean_summary(b) for b in self.get_recently_completed()],
        }

    # ── Output persistence ───────────────────────────────────────────────────

    def output_path(self, bean_id: str) -> Path:
        return self.config.output_path / f"{bean_id}.log"

    def get_output(self, bean_id: str) -> str | None:
        path = self.output_path(bean_id)
        if not path.exists():
            return None
        return path.read_text(errors="replace")

    def _clear_output(self, bean_id: str):
        path = self.output_path(bean_id)
        ignore_directory(path.parent)
        with self._output_lock:
            path.write_text("")

    def _append_output(self, bean_id: str, data: str):
        path = self.output_path(bean_id)
        try:
            with self._output_lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(data)
        except OSError as e:
            logger.warning("Failed to write output for %s: %s", bean_id, e)


def _bean_summary(bean: Bean) -> dict:
    return {
        "id": bean.id,
        "title": bean.title,
        "status": bean.status,
        "type": bean.type,
        "priority": bean.priority,
        "tags": list(bean.tags),
    }
