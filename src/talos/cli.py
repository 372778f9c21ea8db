"""CLI entry point for the talos daemon."""

import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from pathlib import Path

import click

from talos.config import ConfigError, load_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load(ctx: click.Context):
    try:
        return load_config(ctx.obj.get("project_dir"))
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option(
    "--project-dir", "-C",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory to start config discovery from",
)
@click.option("--log-level", default=None, help="Log level (overrides TALOS_LOG_LEVEL)")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Also log to this file")
@click.pass_context
def main(ctx, project_dir, log_level, log_file):
    """talos - autonomous bean orchestration daemon"""
    ctx.ensure_object(dict)
    ctx.obj["project_dir"] = project_dir

    if log_level is None:
        try:
            log_level = load_config(project_dir).log_level
        except ConfigError:
            log_level = "INFO"
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)


# ── Daemon ────────────────────────────────────────────────────────────────────


@main.command("run")
@click.option("--serve/--no-serve", default=False, help="Expose the HTTP control API")
@click.option("--host", default="127.0.0.1", help="Host to bind the control API to")
@click.option("--port", default=8787, type=int, help="Port for the control API")
@click.pass_context
def run_command(ctx, serve, host, port):
    """Run the daemon in the foreground until interrupted."""
    from talos.core.orchestrator import Orchestrator

    config = _load(ctx)
    orch = Orchestrator(config)
    orch.start()
    click.echo(f"Talos running in {config.project_root}")

    try:
        if serve:
            from talos.web.app import run_server

            click.echo(f"Control API at http://{host}:{port}")
            run_server(orch, host=host, port=port)
        else:
            stop = threading.Event()
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            signal.signal(signal.SIGINT, lambda *_: stop.set())
            stop.wait()
    finally:
        click.echo("Shutting down...")
        orch.stop()


@main.command("recover")
@click.pass_context
def recover_command(ctx):
    """Abort a merge or rebase left behind by a crashed run."""
    from talos.core.branches import BranchManager

    config = _load(ctx)
    if BranchManager(config.branch, config.project_root).recover_git_state():
        click.echo("Recovered interrupted git operation.")
    else:
        click.echo("Nothing to recover.")


@main.command("prompt")
@click.argument("bean_id")
@click.pass_context
def prompt_command(ctx, bean_id):
    """Print the prompt an agent would receive for a bean."""
    from talos.core.prompts import prompt_for_bean
    from talos.integrations.beans import BeansClient, BeansCliError

    config = _load(ctx)
    client = BeansClient(config.project_root)
    try:
        bean = client.get_bean(bean_id)
        if bean is None:
            raise click.ClickException(f"Bean not found: {bean_id}")
        click.echo(prompt_for_bean(bean, client.get_bean_with_children))
    except BeansCliError as e:
        raise click.ClickException(str(e)) from e


@main.command("config")
@click.pass_context
def config_command(ctx):
    """Print the effective configuration."""
    config = _load(ctx)
    data = asdict(config)
    if data.get("slack_bot_token"):
        data["slack_bot_token"] = "***"
    click.echo(json.dumps(data, indent=2, default=str))


if __name__ == "__main__":
    main()
