"""Shared fixtures: temporary git repositories and an in-memory bean store."""

import copy
import itertools
import subprocess
import threading
import time
from pathlib import Path

import pytest

from talos.config import AgentConfig
from talos.core.agents import AgentRunner
from talos.integrations.beans import BeanFilter
from talos.models import TERMINAL_STATUSES, Bean


def git(repo, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo, name: str, content: str, message: str) -> str:
    path = Path(repo) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path):
    """A git repo on `main` with one commit and a local identity."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "checkout", "-b", "main")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "user.email", "test@test.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Test\n")
    git(repo, "add", ".")
    git(repo, "commit", "-m", "init")
    return repo


class FakeStore:
    """In-memory stand-in for BeansClient with the same method surface."""

    def __init__(self, beans: list[Bean] | None = None):
        self.beans: dict[str, Bean] = {}
        self.created: list[Bean] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        for bean in beans or []:
            self.add(bean)

    def add(self, bean: Bean) -> Bean:
        with self._lock:
            self.beans[bean.id] = copy.deepcopy(bean)
        return bean

    def _copy(self, bean: Bean | None) -> Bean | None:
        return copy.deepcopy(bean) if bean is not None else None

    # Reads

    def list_beans(self, bean_filter: BeanFilter | None = None) -> list[Bean]:
        f = bean_filter or BeanFilter()
        with self._lock:
            result = []
            for bean in self.beans.values():
                if f.status and bean.status not in f.status:
                    continue
                if f.exclude_status and bean.status in f.exclude_status:
                    continue
                if f.type and bean.type not in f.type:
                    continue
                if f.tags and not any(t in bean.tags for t in f.tags):
                    continue
                if f.exclude_tags and any(t in bean.tags for t in f.exclude_tags):
                    continue
                if f.parent_id and bean.parent_id != f.parent_id:
                    continue
                if f.search and f.search.lower() not in bean.title.lower():
                    continue
                result.append(copy.deepcopy(bean))
            return result

    def get_bean(self, bean_id: str) -> Bean | None:
        with self._lock:
            return self._copy(self.beans.get(bean_id))

    def get_bean_with_children(self, bean_id: str) -> Bean | None:
        with self._lock:
            bean = self._copy(self.beans.get(bean_id))
            if bean is not None:
                bean.children = [
                    copy.deepcopy(b) for b in self.beans.values() if b.parent_id == bean_id
                ]
            return bean

    def get_blocked_by(self, bean_id: str) -> list[Bean]:
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in self.beans.values()
                if bean_id in b.blocking_ids and b.status not in TERMINAL_STATUSES
            ]

    def get_incomplete_children(self, bean_id: str) -> list[Bean]:
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in self.beans.values()
                if b.parent_id == bean_id and b.status not in TERMINAL_STATUSES
            ]

    # Writes

    def create_bean(
        self, title, type=None, status=None, priority=None, tags=None,
        body=None, parent=None, blocking=None,
    ) -> Bean:
        with self._lock:
            bean = Bean(
                id=f"gen-{next(self._ids):04d}",
                slug=title.lower().replace(" ", "-").replace(":", ""),
                title=title,
                status=status or "todo",
                type=type or "task",
                priority=priority or "normal",
                tags=list(tags or []),
                body=body or "",
                parent_id=parent,
                blocking_ids=list(blocking or []),
            )
            self.beans[bean.id] = bean
            self.created.append(copy.deepcopy(bean))
            return copy.deepcopy(bean)

    def _update(self, bean_id: str, fn) -> Bean:
        with self._lock:
            bean = self.beans[bean_id]
            fn(bean)
            return copy.deepcopy(bean)

    def update_status(self, bean_id: str, status: str) -> Bean:
        return self._update(bean_id, lambda b: setattr(b, "status", status))

    def update_tags(self, bean_id: str, add=None, remove=None) -> Bean:
        def apply(bean):
            for tag in add or []:
                if tag not in bean.tags:
                    bean.tags.append(tag)
            bean.tags = [t for t in bean.tags if t not in (remove or [])]
        return self._update(bean_id, apply)

    def update_body(self, bean_id: str, body: str) -> Bean:
        return self._update(bean_id, lambda b: setattr(b, "body", body))

    def set_parent(self, bean_id: str, parent_id: str | None) -> Bean:
        return self._update(bean_id, lambda b: setattr(b, "parent_id", parent_id))

    def add_blocking(self, bean_id: str, target_id: str) -> Bean:
        def apply(bean):
            if target_id not in bean.blocking_ids:
                bean.blocking_ids.append(target_id)
        return self._update(bean_id, apply)

    def remove_blocking(self, bean_id: str, target_id: str) -> Bean:
        def apply(bean):
            bean.blocking_ids = [i for i in bean.blocking_ids if i != target_id]
        return self._update(bean_id, apply)


@pytest.fixture
def store():
    return FakeStore()


class ScriptedRunner(AgentRunner):
    """AgentRunner that runs a shell script instead of a real agent backend."""

    def __init__(self, script: str, kill_grace: float = 1.0):
        super().__init__(AgentConfig(), kill_grace=kill_grace)
        self.script = script

    def run(self, bean, cwd=None, command=None):
        return super().run(bean, cwd, command or ["sh", "-c", self.script])


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
