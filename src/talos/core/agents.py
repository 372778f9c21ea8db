"""Coding-agent subprocess lifecycle: spawn, stream output, cancel."""

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path

from talos.config import AgentConfig
from talos.core.prompts import prompt_for_bean
from talos.events import (
    AgentExited,
    AgentOutput,
    AgentSpawnFailed,
    AgentStarted,
    EventStream,
    RunnerEvent,
)
from talos.models import Bean, ExitResult

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL
KILL_GRACE_PERIOD = 5.0


class AgentAlreadyRunningError(Exception):
    """Raised when run() is called while this runner's process is alive."""


def build_command(config: AgentConfig, prompt: str) -> list[str]:
    """Argument vector for the configured backend."""
    model = config.model
    if config.backend == "opencode":
        cmd = ["opencode", "run", prompt]
    elif config.backend == "claude":
        cmd = ["claude", "-p", prompt]
        if config.dangerously_skip_permissions:
            cmd.append("--dangerously-skip-permissions")
    elif config.backend == "codex":
        cmd = ["codex", prompt]
    else:
        raise ValueError(f"Unknown backend: {config.backend}")
    if model:
        cmd += ["--model", model]
    return cmd


def signal_name(signum: int) -> str:
    """Name of a terminating signal. Real-time signals have no enum member."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class AgentRunner:
    """Runs one agent process at a time and publishes its lifecycle events.

    Output is read line by line on one thread per stream. A waiter thread
    reaps the process, joins the readers so every output event precedes the
    exit event, and publishes AgentExited.
    """

    def __init__(
        self,
        config: AgentConfig,
        fetch_with_children: Callable[[str], Bean | None] | None = None,
        kill_grace: float = KILL_GRACE_PERIOD,
    ):
        self.config = config
        self.fetch_with_children = fetch_with_children or (lambda _id: None)
        self.kill_grace = kill_grace
        self.events: EventStream[RunnerEvent] = EventStream("agent-runner")
        self._lock = threading.Lock()
        self._process: subprocess.Popen | None = None
        self._bean: Bean | None = None
        self._started_at: float | None = None
        self._waiter: threading.Thread | None = None

    # ── State ────────────────────────────────────────────────────────────────

    def is_running(self) -> bool:
        return self._process is not None

    @property
    def running_bean(self) -> Bean | None:
        return self._bean

    @property
    def started_at(self) -> float | None:
        return self._started_at

    @property
    def pid(self) -> int | None:
        proc = self._process
        return proc.pid if proc else None

    # ── Execution ────────────────────────────────────────────────────────────

    def run(
        self,
        bean: Bean,
        cwd: str | Path | None = None,
        command: list[str] | None = None,
    ) -> bool:
        """Spawn the agent for a bean. Returns False if the spawn failed.

        `command` replaces the backend command line when given.
        """
        with self._lock:
            if self._process is not None:
                running = self._bean.id if self._bean else "?"
                raise AgentAlreadyRunningError(f"Agent already running for bean {running}")

            if command is None:
                command = build_command(self.config, prompt_for_bean(bean, self.fetch_with_children))
            workdir = str(cwd) if cwd else os.getcwd()
            env = {**os.environ, "FORCE_COLOR": "1"}

            try:
                proc = subprocess.Popen(
                    command,
                    cwd=workdir,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=env,
                    text=True,
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except OSError as e:
                logger.error("Failed to spawn agent for %s: %s", bean.id, e)
                spawn_error = str(e)
                proc = None
            else:
                self._process = proc
                self._bean = bean
                self._started_at = time.monotonic()

        if proc is None:
            self.events.publish(AgentSpawnFailed(bean_id=bean.id, error=spawn_error))
            return False

        logger.info("Agent started for %s (pid %s) in %s", bean.id, proc.pid, workdir)
        self.events.publish(AgentStarted(bean=bean, pid=proc.pid, cwd=workdir))

        readers = [
            threading.Thread(
                target=self._read_stream, args=(bean.id, proc.stdout, "stdout"),
                name=f"agent-{bean.id}-stdout", daemon=True,
            ),
            threading.Thread(
                target=self._read_stream, args=(bean.id, proc.stderr, "stderr"),
                name=f"agent-{bean.id}-stderr", daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        self._waiter = threading.Thread(
            target=self._wait, args=(bean.id, proc, readers),
            name=f"agent-{bean.id}-waiter", daemon=True,
        )
        self._waiter.start()
        return True

    def _read_stream(self, bean_id: str, stream, name: str):
        try:
            for line in iter(stream.readline, ""):
                self.events.publish(
                    AgentOutput(bean_id=bean_id, stream=name, data=line, timestamp=time.time())
                )
        finally:
            stream.close()

    def _wait(self, bean_id: str, proc: subprocess.Popen, readers: list[threading.Thread]):
        returncode = proc.wait()
        for reader in readers:
            reader.join()

        duration = time.monotonic() - (self._started_at or time.monotonic())
        if returncode < 0:
            result = ExitResult(code=-1, duration=duration, signal=signal_name(-returncode))
        else:
            result = ExitResult(code=returncode, duration=duration)

        with self._lock:
            self._process = None
            self._bean = None
            self._started_at = None

        logger.info(
            "Agent for %s exited (code=%s signal=%s, %.1fs)",
            bean_id, result.code, result.signal, result.duration,
        )
        self.events.publish(AgentExited(bean_id=bean_id, result=result))

    # ── Cancellation ─────────────────────────────────────────────────────────

    def cancel(self) -> bool:
        """Terminate the agent, killing it after the grace period.

        Returns once the process has exited and its exit event has been
        published. Returns False if nothing was running.
        """
        proc = self._process
        if proc is None:
            return False

        logger.info("Cancelling agent (pid %s)", proc.pid)
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Agent pid %s ignored SIGTERM, sending SIGKILL", proc.pid)
            self._signal(proc, signal.SIGKILL)
            proc.wait()

        waiter = self._waiter
        if waiter is not None and waiter is not threading.current_thread():
            waiter.join()
        return True

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int):
        # The agent leads its own session; signal the whole group so tools it
        # spawned do not keep the output pipes open.
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass  # Already exited
