"""Configuration loading from talos.yml and environment variables."""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from talos.models import BEAN_TYPES

CONFIG_FILENAME = "talos.yml"
BEANS_DIRNAME = ".beans"

BACKENDS = ("opencode", "claude", "codex")
MERGE_STRATEGIES = ("merge", "squash")

DEFAULT_MODELS = {
    "opencode": "anthropic/claude-sonnet-4-20250514",
    "claude": "claude-sonnet-4-20250514",
    "codex": "codex-mini-latest",
}

DEFAULT_MERGE_STRATEGY = {
    "milestone": "merge",
    "epic": "merge",
    "feature": "merge",
    "bug": "squash",
    "task": "squash",
}


class ConfigError(Exception):
    """Raised when talos.yml or the environment holds an invalid value."""


@dataclass(frozen=True)
class AgentConfig:
    backend: str = "claude"
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    dangerously_skip_permissions: bool = True

    @property
    def model(self) -> str | None:
        return self.models.get(self.backend)


@dataclass(frozen=True)
class SchedulerConfig:
    max_parallel: int = 1
    poll_interval: int = 1000  # ms
    auto_enqueue_on_startup: bool = True


@dataclass(frozen=True)
class BranchConfig:
    enabled: bool = False
    delete_after_merge: bool = True
    default_branch: str = "main"
    merge_strategy: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MERGE_STRATEGY))


@dataclass(frozen=True)
class OnCompleteConfig:
    auto_commit: bool = True
    push: bool = False
    include_bean_id: bool = True


@dataclass(frozen=True)
class OnBlockedConfig:
    create_blocker_bean: bool = True


@dataclass(frozen=True)
class Config:
    project_root: Path = field(default_factory=Path.cwd)
    config_path: Path | None = None
    agent: AgentConfig = field(default_factory=AgentConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    branch: BranchConfig = field(default_factory=BranchConfig)
    on_complete: OnCompleteConfig = field(default_factory=OnCompleteConfig)
    on_blocked: OnBlockedConfig = field(default_factory=OnBlockedConfig)
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"
    worktree_dir: str = ".worktrees"
    output_dir: str = ".talos/output"

    @property
    def beans_path(self) -> Path:
        return self.project_root / BEANS_DIRNAME

    @property
    def output_path(self) -> Path:
        return self.project_root / self.output_dir

    @property
    def worktree_path(self) -> Path:
        return self.project_root / self.worktree_dir

    @classmethod
    def from_dict(cls, raw: dict, project_root: Path, config_path: Path | None = None) -> "Config":
        if not isinstance(raw, dict):
            raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the top level")

        agent_raw = _section(raw, "agent")
        backend = agent_raw.get("backend", "claude")
        if backend not in BACKENDS:
            raise ConfigError(f"agent.backend: unknown backend '{backend}'")
        models = dict(DEFAULT_MODELS)
        for name in BACKENDS:
            backend_raw = _section(agent_raw, name, prefix="agent")
            if "model" in backend_raw:
                models[name] = str(backend_raw["model"])
        claude_raw = _section(agent_raw, "claude", prefix="agent")
        agent = AgentConfig(
            backend=backend,
            models=models,
            dangerously_skip_permissions=bool(claude_raw.get("dangerously_skip_permissions", True)),
        )

        sched_raw = _section(raw, "scheduler")
        scheduler = SchedulerConfig(
            max_parallel=_int(sched_raw, "scheduler.max_parallel", "max_parallel", 1, minimum=1),
            poll_interval=_int(sched_raw, "scheduler.poll_interval", "poll_interval", 1000, minimum=100),
            auto_enqueue_on_startup=bool(sched_raw.get("auto_enqueue_on_startup", True)),
        )

        branch_raw = _section(raw, "branch")
        strategy = dict(DEFAULT_MERGE_STRATEGY)
        strategy_raw = branch_raw.get("merge_strategy") or {}
        if not isinstance(strategy_raw, dict):
            raise ConfigError("branch.merge_strategy must be a mapping of bean type to strategy")
        for bean_type, value in strategy_raw.items():
            if bean_type not in BEAN_TYPES:
                raise ConfigError(f"branch.merge_strategy: unknown bean type '{bean_type}'")
            if value not in MERGE_STRATEGIES:
                raise ConfigError(f"branch.merge_strategy.{bean_type}: must be 'merge' or 'squash'")
            strategy[bean_type] = value
        branch = BranchConfig(
            enabled=bool(branch_raw.get("enabled", False)),
            delete_after_merge=bool(branch_raw.get("delete_after_merge", True)),
            default_branch=str(branch_raw.get("default_branch", "main")),
            merge_strategy=strategy,
        )

        complete_raw = _section(raw, "on_complete")
        style_raw = _section(complete_raw, "commit_style", prefix="on_complete")
        on_complete = OnCompleteConfig(
            auto_commit=bool(complete_raw.get("auto_commit", True)),
            push=bool(complete_raw.get("push", False)),
            include_bean_id=bool(style_raw.get("include_bean_id", True)),
        )

        blocked_raw = _section(raw, "on_blocked")
        on_blocked = OnBlockedConfig(
            create_blocker_bean=bool(blocked_raw.get("create_blocker_bean", True)),
        )

        notify_raw = _section(raw, "notifications")

        return cls(
            project_root=project_root,
            config_path=config_path,
            agent=agent,
            scheduler=scheduler,
            branch=branch,
            on_complete=on_complete,
            on_blocked=on_blocked,
            slack_channel=notify_raw.get("slack_channel"),
        )

    def with_env(self, environ=None) -> "Config":
        """Apply environment overrides on top of the file configuration."""
        env = os.environ if environ is None else environ
        config = self

        if value := env.get("TALOS_MAX_PARALLEL"):
            scheduler = replace(
                config.scheduler,
                max_parallel=_int({"v": value}, "TALOS_MAX_PARALLEL", "v", 1, minimum=1),
            )
            config = replace(config, scheduler=scheduler)

        if value := env.get("TALOS_POLL_INTERVAL"):
            scheduler = replace(
                config.scheduler,
                poll_interval=_int({"v": value}, "TALOS_POLL_INTERVAL", "v", 1000, minimum=100),
            )
            config = replace(config, scheduler=scheduler)

        if backend := env.get("TALOS_AGENT_BACKEND"):
            if backend not in BACKENDS:
                raise ConfigError(f"TALOS_AGENT_BACKEND: unknown backend '{backend}'")
            config = replace(config, agent=replace(config.agent, backend=backend))

        if level := env.get("TALOS_LOG_LEVEL"):
            config = replace(config, log_level=level.upper())

        if token := env.get("SLACK_BOT_TOKEN"):
            config = replace(config, slack_bot_token=token)

        return config


def _section(raw: dict, key: str, prefix: str | None = None) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        name = f"{prefix}.{key}" if prefix else key
        raise ConfigError(f"{name} must be a mapping")
    return value


def _int(raw: dict, name: str, key: str, default: int, minimum: int) -> int:
    value = raw.get(key, default)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name}: expected an integer, got {value!r}") from None
    if number < minimum:
        raise ConfigError(f"{name}: must be at least {minimum}")
    return number


def _search_upward(start: Path, name: str) -> Path | None:
    current = start.resolve()
    for directory in (current, *current.parents):
        candidate = directory / name
        if candidate.exists():
            return candidate
    return None


def discover_paths(start_dir: Path | None = None) -> tuple[Path, Path | None]:
    """Return (project_root, config_path) for a start directory."""
    start = Path(start_dir or Path.cwd())
    config_path = _search_upward(start, CONFIG_FILENAME)
    if config_path:
        return config_path.parent, config_path
    beans_dir = _search_upward(start, BEANS_DIRNAME)
    if beans_dir and beans_dir.is_dir():
        return beans_dir.parent, None
    return start.resolve(), None


def load_config(start_dir: Path | None = None, environ=None) -> Config:
    project_root, config_path = discover_paths(start_dir)
    raw: dict = {}
    if config_path:
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
    return Config.from_dict(raw, project_root, config_path).with_env(environ)


def get_config() -> Config:
    return load_config()
