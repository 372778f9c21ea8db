"""Client for the `beans` record store CLI.

Reads go through `beans query --json` with a GraphQL document on stdin.
Writes that carry free text (bodies, descriptions) also go through stdin so
nothing needs shell escaping. A missing bean is a normal `None` result; a
failing command raises BeansCliError.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from talos.models import Bean

logger = logging.getLogger(__name__)

BEAN_FIELDS = """
  id
  slug
  title
  status
  type
  priority
  tags
  body
  parentId
  blockingIds
  createdAt
  updatedAt
"""


class BeansCliError(Exception):
    """Raised when a beans command fails or returns unparseable output."""

    def __init__(self, message: str, command: str):
        super().__init__(message)
        self.command = command


@dataclass
class BeanFilter:
    status: list[str] = field(default_factory=list)
    exclude_status: list[str] = field(default_factory=list)
    type: list[str] = field(default_factory=list)
    exclude_type: list[str] = field(default_factory=list)
    priority: list[str] = field(default_factory=list)
    exclude_priority: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    exclude_tags: list[str] = field(default_factory=list)
    parent_id: str | None = None
    is_blocked: bool | None = None
    no_parent: bool | None = None
    search: str | None = None

    def to_graphql(self) -> str:
        parts = []
        for key, values in (
            ("status", self.status),
            ("excludeStatus", self.exclude_status),
            ("type", self.type),
            ("excludeType", self.exclude_type),
            ("priority", self.priority),
            ("excludePriority", self.exclude_priority),
            ("tags", self.tags),
            ("excludeTags", self.exclude_tags),
        ):
            if values:
                parts.append(f"{key}: [{', '.join(_quote(v) for v in values)}]")
        if self.parent_id:
            parts.append(f"parentId: {_quote(self.parent_id)}")
        if self.is_blocked is not None:
            parts.append(f"isBlocked: {str(self.is_blocked).lower()}")
        if self.no_parent is not None:
            parts.append(f"noParent: {str(self.no_parent).lower()}")
        if self.search:
            parts.append(f"search: {_quote(self.search)}")
        if not parts:
            return ""
        return f"(filter: {{ {', '.join(parts)} }})"


def _quote(value: str) -> str:
    return json.dumps(str(value))


def _parse_dt(val: str | None) -> datetime | None:
    if not val:
        return None
    return datetime.fromisoformat(val.replace("Z", "+00:00"))


def bean_from_dict(data: dict) -> Bean:
    return Bean(
        id=data["id"],
        slug=data.get("slug") or "",
        title=data.get("title") or "",
        status=data.get("status") or "todo",
        type=data.get("type") or "task",
        priority=data.get("priority") or "normal",
        tags=list(data.get("tags") or []),
        body=data.get("body") or "",
        parent_id=data.get("parentId") or None,
        blocking_ids=list(data.get("blockingIds") or []),
        created_at=_parse_dt(data.get("createdAt")),
        updated_at=_parse_dt(data.get("updatedAt")),
        children=[bean_from_dict(c) for c in data.get("children") or []],
    )


class BeansClient:
    """Record store bound to one project directory."""

    def __init__(self, cwd: str | Path, executable: str = "beans"):
        self.cwd = Path(cwd)
        self.executable = executable

    # ── Transport ────────────────────────────────────────────────────────────

    def _run(self, args: list[str], stdin: str | None = None) -> str:
        cmd = [self.executable] + args
        command = " ".join(cmd)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                input=stdin,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise BeansCliError(f"Failed to spawn beans CLI: {e}", command) from e
        if result.returncode != 0:
            raise BeansCliError(
                f"beans command failed (exit code {result.returncode}): {result.stderr.strip()}",
                command,
            )
        return result.stdout

    def _json(self, args: list[str], stdin: str | None = None):
        output = self._run(args, stdin)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise BeansCliError(
                f"Failed to parse beans output: {e}", " ".join([self.executable] + args)
            ) from e

    def query(self, document: str) -> dict:
        data = self._json(["query", "--json"], stdin=document)
        if not isinstance(data, dict):
            raise BeansCliError("Unexpected beans query response", "beans query --json")
        return data.get("data", data)

    # ── Reads ────────────────────────────────────────────────────────────────

    def list_beans(self, bean_filter: BeanFilter | None = None) -> list[Bean]:
        filter_arg = bean_filter.to_graphql() if bean_filter else ""
        data = self.query(f"{{ beans{filter_arg} {{ {BEAN_FIELDS} }} }}")
        return [bean_from_dict(b) for b in data.get("beans") or []]

    def get_bean(self, bean_id: str) -> Bean | None:
        data = self.query(f"{{ bean(id: {_quote(bean_id)}) {{ {BEAN_FIELDS} }} }}")
        raw = data.get("bean")
        return bean_from_dict(raw) if raw else None

    def get_bean_with_children(self, bean_id: str) -> Bean | None:
        data = self.query(
            f"{{ bean(id: {_quote(bean_id)}) {{ {BEAN_FIELDS} children {{ {BEAN_FIELDS} }} }} }}"
        )
        raw = data.get("bean")
        return bean_from_dict(raw) if raw else None

    def get_blocked_by(self, bean_id: str) -> list[Bean]:
        """Beans blocking this one that have not reached a terminal status."""
        data = self.query(
            f"{{ bean(id: {_quote(bean_id)}) {{ "
            f'blockedBy(filter: {{ excludeStatus: ["completed", "scrapped"] }}) {{ {BEAN_FIELDS} }} '
            f"}} }}"
        )
        raw = data.get("bean") or {}
        return [bean_from_dict(b) for b in raw.get("blockedBy") or []]

    def get_incomplete_children(self, bean_id: str) -> list[Bean]:
        data = self.query(
            f"{{ bean(id: {_quote(bean_id)}) {{ "
            f'children(filter: {{ excludeStatus: ["completed", "scrapped"] }}) {{ {BEAN_FIELDS} }} '
            f"}} }}"
        )
        raw = data.get("bean") or {}
        return [bean_from_dict(b) for b in raw.get("children") or []]

    # ── Writes ───────────────────────────────────────────────────────────────

    def create_bean(
        self,
        title: str,
        type: str | None = None,
        status: str | None = None,
        priority: str | None = None,
        tags: list[str] | None = None,
        body: str | None = None,
        parent: str | None = None,
        blocking: list[str] | None = None,
    ) -> Bean:
        args = ["create", title]
        if type:
            args += ["-t", type]
        if status:
            args += ["-s", status]
        if priority:
            args += ["-p", priority]
        for tag in tags or []:
            args += ["--tag", tag]
        if parent:
            args += ["--parent", parent]
        for blocked_id in blocking or []:
            args += ["--blocking", blocked_id]
        if body:
            args += ["-d", "-"]
        args.append("--json")
        data = self._json(args, stdin=body or None)
        bean = bean_from_dict(data)
        logger.info("Created bean %s (%s)", bean.id, title)
        return bean

    def update_status(self, bean_id: str, status: str) -> Bean:
        data = self.query(
            f"mutation {{ updateBean(id: {_quote(bean_id)}, input: {{ status: {_quote(status)} }}) "
            f"{{ {BEAN_FIELDS} }} }}"
        )
        return bean_from_dict(data["updateBean"])

    def update_tags(
        self,
        bean_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> Bean:
        args = ["update", bean_id]
        for tag in add or []:
            args += ["--tag", tag]
        for tag in remove or []:
            args += ["--remove-tag", tag]
        self._run(args)
        bean = self.get_bean(bean_id)
        if bean is None:
            raise BeansCliError(f"Bean not found after tag update: {bean_id}", " ".join(args))
        return bean

    def update_body(self, bean_id: str, body: str) -> Bean:
        args = ["update", bean_id, "--body", "-", "--json"]
        output = self._run(args, stdin=body)
        try:
            return bean_from_dict(json.loads(output))
        except (json.JSONDecodeError, KeyError):
            bean = self.get_bean(bean_id)
            if bean is None:
                raise BeansCliError(f"Bean not found after update: {bean_id}", " ".join(args)) from None
            return bean

    def set_parent(self, bean_id: str, parent_id: str | None) -> Bean:
        parent = _quote(parent_id) if parent_id else "null"
        data = self.query(
            f"mutation {{ setParent(id: {_quote(bean_id)}, parentId: {parent}) {{ {BEAN_FIELDS} }} }}"
        )
        return bean_from_dict(data["setParent"])

    def add_blocking(self, bean_id: str, target_id: str) -> Bean:
        """Make `bean_id` block `target_id`."""
        data = self.query(
            f"mutation {{ addBlocking(id: {_quote(bean_id)}, targetId: {_quote(target_id)}) "
            f"{{ {BEAN_FIELDS} }} }}"
        )
        return bean_from_dict(data["addBlocking"])

    def remove_blocking(self, bean_id: str, target_id: str) -> Bean:
        data = self.query(
            f"mutation {{ removeBlocking(id: {_quote(bean_id)}, targetId: {_quote(target_id)}) "
            f"{{ {BEAN_FIELDS} }} }}"
        )
        return bean_from_dict(data["removeBlocking"])
