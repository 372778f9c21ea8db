"""Prompts handed to the coding agent.

Implementation beans get the bean body plus working instructions. Epics and
milestones get a review prompt listing their children instead: the agent
audits finished work rather than writing new code.
"""

import re
from collections.abc import Callable

from talos.models import Bean

_EXTENSIONS = r"(?:py|pyi|ts|tsx|js|jsx|json|md|yml|yaml|toml|cfg|ini|sh)"
_BACKTICK_PATH = re.compile(rf"`([^`\s]+\.{_EXTENSIONS})`")
_BARE_PATH = re.compile(
    rf"(?:^|\s)((?:src|lib|test|tests|scripts|docs)/[^\s,)`]+\.{_EXTENSIONS})", re.MULTILINE
)


def extract_file_paths(body: str) -> list[str]:
    """Best-effort scan for file paths mentioned in free text.

    Advisory only: a body can mention files that were never touched and
    omit files that were.
    """
    found: list[str] = []
    for pattern in (_BACKTICK_PATH, _BARE_PATH):
        for match in pattern.finditer(body or ""):
            path = match.group(1)
            if path not in found:
                found.append(path)
    return found


def generate_prompt(bean: Bean) -> str:
    return f"""Implement the following task:

## {bean.id}: {bean.title}

{bean.body}

---

Instructions:
1. Read and understand the task above
2. Implement each checklist item in order
3. Update the bean's checklist as you complete items:
   `beans update {bean.id} --body "..."`
4. If you encounter a blocker you cannot resolve:
   - Add the blocked tag: `beans update {bean.id} --tag blocked`
   - Create a blocker bean: `beans create "Blocker: ..." -t bug --blocking {bean.id} -d "Description of why blocked"`
   - Exit cleanly with code 0
5. When complete, exit with code 0"""


def _format_child(child: Bean) -> str:
    paths = extract_file_paths(child.body)
    files = f"\nFiles mentioned: {', '.join(paths)}" if paths else ""
    return (
        f"### {child.id}: {child.title}\n"
        f"Type: {child.type} | Status: {child.status}\n"
        f"{files}\n\n"
        f"{child.body}\n\n"
        "---"
    )


def generate_review_prompt(bean: Bean) -> str:
    """Review prompt for an epic or milestone, built from `bean.children`."""
    kind = bean.type.lower()
    title_kind = kind.capitalize()

    children = "\n\n".join(_format_child(c) for c in bean.children)

    all_paths: list[str] = []
    for child in bean.children:
        for path in extract_file_paths(child.body):
            if path not in all_paths:
                all_paths.append(path)
    files_ref = ""
    if all_paths:
        listing = "\n".join(f"- `{p}`" for p in all_paths)
        files_ref = f"\n## Files to Review\n\nBased on child beans:\n{listing}\n"

    return f"""You are a senior engineer reviewing completed work before marking a {kind} as done.

## {title_kind}: {bean.id}
### {bean.title}

{bean.body}
{files_ref}
---

## Completed Children to Review

{children or 'No child beans found.'}

---

## Your Review Process

1. **Read each child bean** to understand what should have been implemented
2. **Read the actual code** - find the files mentioned in each child bean
3. **Sanity check** the implementations:
   - Does the code make sense?
   - Any obvious bugs or issues?
   - Does it follow project patterns and conventions?
   - Is error handling appropriate?
4. **Run the project's test suite**
5. **Verify integration** between components works correctly

## Outcome

**If everything looks good:**
- `beans update {bean.id} --status completed`

**If you find issues:**
- Create bug beans as children describing each issue:
  `beans create "Issue: {{description}}" -t bug --parent {bean.id} -d "..."`
- Exit cleanly - the {kind} will wait for bugs to be fixed, then re-review

## Remember

- You are reviewing, not implementing
- Be thorough but practical
- Focus on correctness and integration, not style nitpicks
- Exit with code 0 when done"""


def prompt_for_bean(bean: Bean, fetch_with_children: Callable[[str], Bean | None]) -> str:
    """Pick review mode for epics and milestones, implementation otherwise."""
    if bean.is_review_mode:
        full = fetch_with_children(bean.id)
        if full is not None:
            return generate_review_prompt(full)
    return generate_prompt(bean)
