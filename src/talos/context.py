"""Explicit run context carried through every call that logs for a bean run."""

import logging
import uuid
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class RunContext:
    correlation_id: str
    bean_id: str | None = None
    component: str | None = None

    def child(self, component: str) -> "RunContext":
        """Same correlation, different component."""
        return replace(self, component=component)

    def bind(self, logger: logging.Logger) -> logging.LoggerAdapter:
        return _ContextAdapter(logger, {"ctx": self})


def new_context(bean_id: str | None = None, component: str | None = None) -> RunContext:
    return RunContext(uuid.uuid4().hex[:12], bean_id, component)


class _ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        ctx: RunContext = self.extra["ctx"]
        prefix = f"[corr={ctx.correlation_id}"
        if ctx.bean_id:
            prefix += f" bean={ctx.bean_id}"
        if ctx.component:
            prefix += f" component={ctx.component}"
        kwargs.setdefault("extra", {}).update(
            {"correlation_id": ctx.correlation_id, "bean_id": ctx.bean_id}
        )
        return f"{prefix}] {msg}", kwargs
