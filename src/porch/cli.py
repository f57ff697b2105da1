from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import click
import structlog

from porch.config import PorchConfig, load_config, save_config
from porch.errors import PorchError, ProjectNotFound
from porch.log import configure_logging
from porch.orchestrator import Orchestrator, OrchestratorResult, ResultCode

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG = "porch.toml"


class PorchCommandError(click.ClickException):
    def __init__(self, message: str, exit_code: int = ResultCode.ERROR) -> None:
        super().__init__(message)
        self.exit_code = int(exit_code)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PorchConfig
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(config.logging.level, config.logging.format)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        orchestrator=Orchestrator(repo_root, config),
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except (TypeError, ValueError) as exc:
        raise PorchCommandError(f"Invalid configuration: {exc}") from exc


def _emit(result: OrchestratorResult, *, as_json: bool = False) -> None:
    if as_json:
        click.echo(json.dumps(result.payload, ensure_ascii=False, indent=2))
    else:
        for line in result.lines:
            click.echo(line)
    if result.code != ResultCode.SUCCESS:
        click.get_current_context().exit(int(result.code))


def _invoke(action: Callable[[], OrchestratorResult], *, as_json: bool = False) -> None:
    try:
        result = action()
    except ProjectNotFound as exc:
        raise PorchCommandError(
            f"{exc}\nRun 'porch init <protocol> <id> <title>' to create it.",
            ResultCode.NOT_FOUND,
        ) from exc
    except PorchError as exc:
        logger.debug("command_failed", category=exc.category, error=str(exc))
        raise PorchCommandError(str(exc)) from exc
    _emit(result, as_json=as_json)


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG, show_default=True
)


@click.group()
def cli() -> None:
    """Protocol orchestrator."""


@cli.command("init")
@click.argument("protocol")
@click.argument("project_id")
@click.argument("title")
@config_option
def init_command(protocol: str, project_id: str, title: str, config_value: str) -> None:
    """Create a project and place it in the protocol's first phase."""
    runtime = _runtime(config_value)
    if not runtime.config_path.exists():
        save_config(runtime.config_path, runtime.config)
        click.echo(f"Config: {runtime.config_path}")
    _invoke(lambda: runtime.orchestrator.init(protocol, project_id, title))


@cli.command("status")
@click.argument("project_id")
@click.option(
    "--protocol",
    default=None,
    help="Protocol for a project created by --title (defaults to workflow.default_protocol).",
)
@click.option(
    "--title", default=None, help="Create the project with this title if it does not exist."
)
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def status_command(
    project_id: str,
    protocol: str | None,
    title: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    _invoke(
        lambda: runtime.orchestrator.status(project_id, protocol=protocol, title=title),
        as_json=as_json,
    )


@cli.command("check")
@click.argument("project_id")
@config_option
def check_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _invoke(lambda: runtime.orchestrator.check(project_id))


@cli.command("done")
@click.argument("project_id")
@config_option
def done_command(project_id: str, config_value: str) -> None:
    """Run checks and reviews for the current stage, then advance."""
    runtime = _runtime(config_value)
    _invoke(lambda: runtime.orchestrator.done(project_id))


@cli.command("gate")
@click.argument("project_id")
@config_option
def gate_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _invoke(lambda: runtime.orchestrator.gate(project_id))


@cli.command("approve")
@click.argument("project_id")
@click.argument("gate_name")
@click.option("--by", "approver", default=None, help="Approver identity (defaults to $USER).")
@config_option
def approve_command(
    project_id: str, gate_name: str, approver: str | None, config_value: str
) -> None:
    runtime = _runtime(config_value)
    identity = approver or os.getenv("USER") or os.getenv("USERNAME") or "human"
    _invoke(lambda: runtime.orchestrator.approve(project_id, gate_name, identity))


@cli.command("pending")
@config_option
def pending_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    _invoke(runtime.orchestrator.pending)


@cli.command("unblock")
@click.argument("project_id")
@config_option
def unblock_command(project_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _invoke(lambda: runtime.orchestrator.unblock(project_id))
