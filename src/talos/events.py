"""Typed events and the outbound stream each component publishes them on."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from talos.models import Bean, ExecutionContext, ExitResult

logger = logging.getLogger(__name__)

E = TypeVar("E")


class EventStream(Generic[E]):
    """One component's outbound events.

    Subscribers are called synchronously on the publishing thread, in
    subscription order. A failing subscriber is logged and does not stop
    delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[E], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[E], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def publish(self, event: E) -> None:
        with self._lock:
            handlers = list(self._subscribers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber of %s failed on %s", self.name, type(event).__name__)


# ── Watcher ──────────────────────────────────────────────────────────────────


@dataclass
class BeanCreated:
    bean: Bean


@dataclass
class BeanUpdated:
    bean: Bean
    previous: Bean


@dataclass
class BeanDeleted:
    bean_id: str
    previous: Bean


@dataclass
class StatusChanged:
    bean: Bean
    old_status: str
    new_status: str


@dataclass
class TagsChanged:
    bean: Bean
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


WatcherEvent = BeanCreated | BeanUpdated | BeanDeleted | StatusChanged | TagsChanged


# ── Scheduler ────────────────────────────────────────────────────────────────


@dataclass
class BeanReady:
    bean: Bean


@dataclass
class QueueChanged:
    queue_length: int


@dataclass
class BeanStuck:
    bean_id: str
    reason: str


SchedulerEvent = BeanReady | QueueChanged | BeanStuck


# ── Agent runner ─────────────────────────────────────────────────────────────


@dataclass
class AgentStarted:
    bean: Bean
    pid: int
    cwd: str


@dataclass
class AgentOutput:
    bean_id: str
    stream: str
    data: str
    timestamp: float


@dataclass
class AgentExited:
    bean_id: str
    result: ExitResult


@dataclass
class AgentSpawnFailed:
    bean_id: str
    error: str


RunnerEvent = AgentStarted | AgentOutput | AgentExited | AgentSpawnFailed


# ── Completion / orchestrator ────────────────────────────────────────────────


@dataclass
class BeanCompleted:
    bean_id: str
    commit_sha: str | None = None


@dataclass
class BeanBlocked:
    bean_id: str
    blocker_bean_id: str | None = None


@dataclass
class BeanFailed:
    bean_id: str
    exit_code: int
    error: str


@dataclass
class BeanRunStarted:
    bean: Bean
    context: ExecutionContext


@dataclass
class DaemonError:
    message: str
    bean_id: str | None = None


CompletionEvent = BeanCompleted | BeanBlocked | BeanFailed
