"""Priority queue with readiness gating and bounded concurrency.

Order is (priority rank, arrival) with five fixed tiers and strict FIFO
inside a tier. Retried beans jump to the front of their tier. A bean leaves
the queue only when it has no unfinished blockers and capacity is free; the
blocker check runs again on every scan since blockers finish on their own
schedule.
"""

import bisect
import itertools
import logging
import threading
import time
from collections.abc import Callable

from talos.events import BeanReady, BeanStuck, EventStream, QueueChanged, SchedulerEvent
from talos.models import Bean, QueueEntry

logger = logging.getLogger(__name__)

BlockersFn = Callable[[str], list]


class Scheduler:
    def __init__(
        self,
        max_parallel: int = 1,
        poll_interval: float = 1.0,
        blockers_fn: BlockersFn | None = None,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.max_parallel = max_parallel
        self.poll_interval = poll_interval
        self.blockers_fn = blockers_fn or (lambda _id: [])
        self.events: EventStream[SchedulerEvent] = EventStream("scheduler")

        self._queue: list[QueueEntry] = []
        self._in_progress: dict[str, Bean] = {}
        self._stuck: dict[str, str] = {}
        self._back = itertools.count(1)
        self._front = itertools.count(-1, -1)
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Queue ────────────────────────────────────────────────────────────────

    def _index(self, bean_id: str) -> int | None:
        for i, entry in enumerate(self._queue):
            if entry.bean.id == bean_id:
                return i
        return None

    def enqueue(self, bean: Bean, front: bool = False) -> bool:
        """Add a bean. Returns False when it is queued, running or stuck.

        A bean already queued has its data and priority refreshed in place
        and keeps its arrival position within the tier, unless `front` asks
        to move it ahead.
        """
        with self._lock:
            if bean.id in self._in_progress:
                logger.debug("Bean %s already in progress, skipping", bean.id)
                return False
            if bean.id in self._stuck or bean.is_stuck:
                logger.debug("Bean %s is stuck, skipping", bean.id)
                return False

            index = self._index(bean.id)
            if index is not None:
                old = self._queue.pop(index)
                sequence = next(self._front) if front else old.sequence
                entry = QueueEntry(bean.priority_rank, sequence, old.enqueued_at, bean)
                bisect.insort(self._queue, entry)
                logger.debug("Bean %s already in queue, refreshed", bean.id)
                return False

            sequence = next(self._front) if front else next(self._back)
            bisect.insort(self._queue, QueueEntry(bean.priority_rank, sequence, time.time(), bean))
            length = len(self._queue)

        logger.info("Bean %s enqueued (priority=%s, queue=%d)", bean.id, bean.priority, length)
        self.events.publish(QueueChanged(queue_length=length))
        return True

    def dequeue(self, bean_id: str) -> bool:
        with self._lock:
            index = self._index(bean_id)
            if index is None:
                return False
            self._queue.pop(index)
            length = len(self._queue)
        logger.debug("Bean %s dequeued (queue=%d)", bean_id, length)
        self.events.publish(QueueChanged(queue_length=length))
        return True

    def get_queue(self) -> list[Bean]:
        with self._lock:
            return [entry.bean for entry in self._queue]

    def is_queued(self, bean_id: str) -> bool:
        with self._lock:
            return self._index(bean_id) is not None

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    def mark_stuck(self, bean_id: str, reason: str = "blocked") -> None:
        with self._lock:
            index = self._index(bean_id)
            if index is not None:
                self._queue.pop(index)
            self._in_progress.pop(bean_id, None)
            self._stuck[bean_id] = reason
            length = len(self._queue)
        logger.warning("Bean %s marked as stuck (%s)", bean_id, reason)
        self.events.publish(BeanStuck(bean_id=bean_id, reason=reason))
        if index is not None:
            self.events.publish(QueueChanged(queue_length=length))

    def clear_stuck(self, bean_id: str) -> None:
        with self._lock:
            removed = self._stuck.pop(bean_id, None)
        if removed:
            logger.info("Bean %s unstuck, eligible for retry", bean_id)

    def is_stuck(self, bean_id: str) -> bool:
        with self._lock:
            return bean_id in self._stuck

    def get_stuck(self) -> dict[str, str]:
        with self._lock:
            return dict(self._stuck)

    def mark_complete(self, bean_id: str) -> None:
        """Release the bean's capacity slot."""
        with self._lock:
            released = self._in_progress.pop(bean_id, None)
            active = len(self._in_progress)
        if released is not None:
            logger.info("Bean %s released (in progress=%d)", bean_id, active)

    def is_in_progress(self, bean_id: str) -> bool:
        with self._lock:
            return bean_id in self._in_progress

    def get_in_progress(self) -> dict[str, Bean]:
        with self._lock:
            return dict(self._in_progress)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._in_progress)

    def set_max_parallel(self, n: int) -> None:
        if n < 1:
            raise ValueError("max_parallel must be at least 1")
        with self._lock:
            self.max_parallel = n

    def get_state(self) -> dict:
        with self._lock:
            return {
                "queued": len(self._queue),
                "in_progress": len(self._in_progress),
                "stuck": len(self._stuck),
                "max_parallel": self.max_parallel,
                "running": self.is_running,
            }

    def clear(self) -> None:
        with self._lock:
            self._queue.clear()
            self._in_progress.clear()
            self._stuck.clear()
        self.events.publish(QueueChanged(queue_length=0))

    # ── Readiness ────────────────────────────────────────────────────────────

    def _has_blockers(self, bean_id: str) -> bool:
        try:
            blockers = self.blockers_fn(bean_id)
        except Exception:
            # Unknown dependency state counts as blocked
            logger.exception("Error checking dependencies for %s", bean_id)
            return True
        if blockers:
            logger.debug(
                "Bean %s blocked by %s",
                bean_id, [getattr(b, "id", b) for b in blockers],
            )
        return bool(blockers)

    def tick(self) -> list[Bean]:
        """Move eligible beans into progress while capacity remains.

        Returns the beans made ready, in emission order.
        """
        ready: list[Bean] = []
        newly_stuck: list[tuple[str, str]] = []
        with self._lock:
            candidates = [entry.bean.id for entry in self._queue]

        # Blocker lookups run unlocked; each candidate is re-checked before
        # it is taken.
        for bean_id in candidates:
            with self._lock:
                if len(self._in_progress) >= self.max_parallel:
                    break
                index = self._index(bean_id)
                if index is None:
                    continue
                bean = self._queue[index].bean
                if bean.is_stuck:
                    self._queue.pop(index)
                    self._stuck[bean.id] = bean.stuck_reason
                    newly_stuck.append((bean.id, bean.stuck_reason))
                    continue
            if self._has_blockers(bean_id):
                continue
            with self._lock:
                if len(self._in_progress) >= self.max_parallel:
                    break
                index = self._index(bean_id)
                if index is None:
                    continue
                bean = self._queue.pop(index).bean
                self._in_progress[bean.id] = bean
                ready.append(bean)

        with self._lock:
            length = len(self._queue)

        for bean_id, reason in newly_stuck:
            logger.warning("Bean %s marked as stuck (%s)", bean_id, reason)
            self.events.publish(BeanStuck(bean_id=bean_id, reason=reason))
        for bean in ready:
            logger.info("Bean %s ready for execution (priority=%s)", bean.id, bean.priority)
            self.events.publish(BeanReady(bean=bean))
        if ready or newly_stuck:
            self.events.publish(QueueChanged(queue_length=length))
        return ready

    # ── Poll loop ────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the poll thread. Queue state is kept across stop/start."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started (max_parallel=%d)", self.max_parallel)

    def stop(self):
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=10)
        self._thread = None
        logger.info("Scheduler stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in scheduler loop")
            self._stop_event.wait(self.poll_interval)
