"""Conventional-commit messages for finished beans."""

import re
from collections.abc import Callable

from talos.models import Bean

COMMIT_TYPES = {
    "feature": "feat",
    "bug": "fix",
}

_CHANGELOG_HEADING = re.compile(r"^## changelog\s*$", re.IGNORECASE)
_H2 = re.compile(r"^## ")


def commit_type_for(bean_type: str) -> str:
    return COMMIT_TYPES.get(bean_type, "chore")


def extract_scope(bean: Bean, fetch_bean: Callable[[str], Bean | None]) -> str | None:
    """Slug of the nearest epic, the bean itself included."""
    if bean.type == "epic":
        return bean.slug or None
    seen = {bean.id}
    parent_id = bean.parent_id
    while parent_id and parent_id not in seen:
        parent = fetch_bean(parent_id)
        if parent is None:
            return None
        if parent.type == "epic":
            return parent.slug or None
        seen.add(parent.id)
        parent_id = parent.parent_id
    return None


def extract_changelog(body: str) -> str | None:
    """Content of the `## Changelog` section, up to the next h2 heading."""
    lines: list[str] = []
    found = False
    for line in body.splitlines():
        if found:
            if _H2.match(line) and not _CHANGELOG_HEADING.match(line):
                break
            lines.append(line)
        elif _CHANGELOG_HEADING.match(line):
            found = True
    if not found:
        return None
    content = "\n".join(lines).strip()
    return content or None


def first_paragraph(body: str) -> str:
    paragraphs = re.split(r"\n\s*\n", body.strip())
    return paragraphs[0].strip() if paragraphs else ""


def format_commit_message(bean: Bean, scope: str | None, include_bean_id: bool = True) -> str:
    """Header `type(scope): title`, then the changelog or first paragraph, then `Bean: <id>`."""
    kind = commit_type_for(bean.type)
    header = f"{kind}({scope}): {bean.title}" if scope else f"{kind}: {bean.title}"

    parts = [header]
    description = extract_changelog(bean.body) or first_paragraph(bean.body)
    if description:
        parts += ["", description]
    if include_bean_id:
        parts += ["", f"Bean: {bean.id}"]
    return "\n".join(parts)
