from __future__ import annotations

import asyncio
import json
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from cadence import __version__
from cadence.config import MODES, CadenceConfig, load_config, save_config
from cadence.gitops import GitError, GitRepo, ensure_gitignore_entries
from cadence.harness import (
    ArgsError,
    CommandHarness,
    Harness,
    HarnessError,
    RetryingHarness,
    RetryPolicy,
)
from cadence.loop import IterationController, IterationError, IterationResult
from cadence.state import CadenceStateError, StateStore
from cadence.strategy import StrategySequencer

INTERRUPTED_EXIT_CODE = 130


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: CadenceConfig
    state_store: StateStore
    controller: IterationController


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _warn(message: str) -> None:
    click.echo(f"Warning: {message}", err=True)


def _read_config(config_path: Path) -> CadenceConfig:
    try:
        return load_config(config_path, warn=_warn)
    except tomllib.TOMLDecodeError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _record_event(event: dict[str, Any]) -> None:
    message = event.get("message")
    if not message:
        return
    level = event.get("level", "info")
    if level == "error":
        click.echo(f"Error: {message}", err=True)
    elif level == "warning":
        click.echo(f"Warning: {message}", err=True)
    else:
        click.echo(message)


def _echo_output(line: str) -> None:
    click.echo(line)


def _ask_question(question: str) -> str:
    return click.prompt(f"Architect question: {question}", default="", show_default=False)


def _apply_overrides(
    config: CadenceConfig,
    *,
    harness: str | None,
    harness_args: str | None,
    yolo: bool | None,
    no_push: bool | None,
    log_dir: str | None,
    retry: bool | None,
) -> None:
    if harness:
        config.harness.command = harness
    if harness_args is not None:
        config.harness.args = harness_args
    if yolo is not None:
        config.harness.yolo = yolo
    if no_push:
        config.loop.no_push = True
    if log_dir:
        config.loop.log_dir = log_dir
    if retry is not None:
        config.retry.enabled = retry


def _build_harness(config: CadenceConfig, repo_root: Path, *, mode: str) -> Harness:
    command_harness = CommandHarness(
        config.harness.command,
        working_directory=repo_root,
        yolo=config.harness.yolo and mode == "build",
        output_hook=_echo_output,
    )
    return RetryingHarness(
        command_harness,
        RetryPolicy.from_config(config.retry),
        event_hook=_record_event,
    )


def _load_runtime(
    repo_root: Path, config_path: Path, *, mode: str = "build", **overrides: Any
) -> Runtime:
    config = _read_config(config_path)
    _apply_overrides(config, **overrides)
    state_store = StateStore(repo_root / config.loop.state_dir, warn=_warn)
    controller = IterationController(
        config,
        repo_root,
        _build_harness(config, repo_root, mode=mode),
        state_store,
        git=GitRepo(repo_root),
        event_hook=_record_event,
        output_hook=_echo_output,
        ask=_ask_question if sys.stdin.isatty() else None,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state_store=state_store,
        controller=controller,
    )


def _run_async(coroutine: Any) -> IterationResult:
    try:
        return asyncio.run(coroutine)
    except (KeyboardInterrupt, asyncio.CancelledError):
        click.echo("Interrupted. Exiting.", err=True)
        raise click.exceptions.Exit(INTERRUPTED_EXIT_CODE) from None
    except HarnessError as exc:
        detail = str(exc)
        if exc.retry_count:
            detail += f" (after {exc.retry_count} retries, matched {exc.retry_reason!r})"
        raise click.ClickException(f"Harness run failed: {detail}") from exc
    except (IterationError, CadenceStateError, ArgsError, GitError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(__version__, prog_name="cadence")
def cli() -> None:
    """Drive a coding agent through guarded, verified iterations."""


@cli.command("init")
@click.option("--config", "config_value", default="cadence.toml", show_default=True)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
def init_command(config_value: str, force: bool) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    if config_path.exists() and not force:
        config = _read_config(config_path)
        click.echo(f"Config already exists: {config_path}")
    else:
        config = CadenceConfig.default()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        save_config(config_path, config)
        click.echo(f"Wrote config: {config_path}")

    state_dir = repo_root / config.loop.state_dir
    state_dir.mkdir(parents=True, exist_ok=True)
    ignored = [f"{config.loop.log_dir.strip('/')}/", f"{config.loop.state_dir.strip('/')}/"]
    added = ensure_gitignore_entries(repo_root, ignored)
    if added:
        click.echo(f"Updated .gitignore: {', '.join(added)}")
    click.echo(f"Initialized cadence in {repo_root}")
    click.echo(f"State: {state_dir}")
    click.echo(f"Harness: {config.harness.command}")


@cli.command("run")
@click.argument("mode", required=False, type=click.Choice(MODES))
@click.option(
    "-n",
    "--iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Maximum iterations (0 = unlimited).",
)
@click.option("--config", "config_value", default="cadence.toml", show_default=True)
@click.option("--model", "model_override", default="", envvar="CADENCE_MODEL_OVERRIDE")
@click.option("--harness", default=None, envvar="CADENCE_HARNESS")
@click.option("--harness-args", default=None, envvar="CADENCE_HARNESS_ARGS")
@click.option("--no-push", is_flag=True, default=False, envvar="CADENCE_NO_PUSH")
@click.option("--yolo/--no-yolo", default=None, envvar="CADENCE_YOLO")
@click.option("--log-dir", default=None, envvar="CADENCE_LOG_DIR")
@click.option("--retry/--no-retry", default=None, envvar="CADENCE_RETRY")
def run_command(
    mode: str | None,
    iterations: int | None,
    config_value: str,
    model_override: str,
    harness: str | None,
    harness_args: str | None,
    no_push: bool,
    yolo: bool | None,
    log_dir: str | None,
    retry: bool | None,
) -> None:
    """Run MODE (architect, plan, build); without MODE a configured strategy runs."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(
        repo_root,
        _resolve_config_path(repo_root, config_value),
        mode=mode or "build",
        harness=harness,
        harness_args=harness_args,
        yolo=yolo,
        no_push=no_push,
        log_dir=log_dir,
        retry=retry,
    )
    controller = runtime.controller
    model_override = model_override.strip()

    if mode is None and runtime.config.strategy:
        click.echo(f"Running strategy with {len(runtime.config.strategy)} steps.")
        sequencer = StrategySequencer(controller, model_override=model_override, warn=_warn)
        result = _run_async(sequencer.run(runtime.config.strategy))
    else:
        mode = mode or "build"
        if not controller.git_available:
            _warn("git not detected; history guardrails and push are disabled.")
        click.echo(f"Mode:   {mode}")
        click.echo(f"Plan:   {runtime.config.loop.plan_path}")
        if controller.branch:
            click.echo(f"Branch: {controller.branch}")
        result = _run_async(
            controller.run_mode(mode, max_iterations=iterations, model_override=model_override)
        )

    if result.exit_reason:
        click.echo(f"Exit reason: {result.exit_reason}")


@cli.command("status")
@click.option("--config", "config_value", default="cadence.toml", show_default=True)
def status_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_config_path(repo_root, config_value))
    state = StateStore(repo_root / config.loop.state_dir, warn=_warn).load()
    click.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))


@cli.command("harness")
@click.argument("command")
@click.option("--config", "config_value", default="cadence.toml", show_default=True)
def harness_command(command: str, config_value: str) -> None:
    """Set the harness binary stored in the config file."""
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _read_config(config_path)
    config.harness.command = command
    save_config(config_path, config)
    click.echo(f"Harness set to {command}")
