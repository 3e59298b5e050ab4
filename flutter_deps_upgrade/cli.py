"""CLI entry point for flutter-deps-upgrade."""

from __future__ import annotations

import functools
from collections.abc import Callable
from importlib.metadata import version as pkg_version
from pathlib import Path
from typing import Any, NoReturn

import click

from .config import UpgradeConfig, load_config
from .console import success
from .errors import FlutterDepsError, UpgradeInterrupted, ValidationError
from .models import PlanState
from .pipeline import execute_plan, prepare_plan, run_analyze
from .report import render_json, render_plan, render_validation, write_report
from .toolchain import FlutterToolchain

__version__ = pkg_version("flutter-deps-upgrade")


def _fail(exc: FlutterDepsError) -> NoReturn:
    """Turn a domain error into a click error with the matching exit code."""
    error = click.ClickException(str(exc))
    error.exit_code = exc.exit_code
    raise error from exc


def _plan_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by analyze and upgrade. Names match UpgradeConfig fields."""
    options = [
        click.argument(
            "path",
            required=False,
            default=".",
            type=click.Path(exists=True, file_okay=False, path_type=Path),
        ),
        click.option(
            "--all",
            "allow_breaking",
            is_flag=True,
            help="Upgrade to the latest versions, including breaking releases.",
        ),
        click.option(
            "--strict", is_flag=True, help="Fail on malformed manifests or toolchain errors."
        ),
        click.option(
            "--depth",
            "max_depth",
            type=click.IntRange(min=0),
            default=None,
            help="Directory levels to search for pubspec.yaml files. [default: 5]",
        ),
        click.option(
            "-j",
            "--jobs",
            "workers",
            type=click.IntRange(min=1),
            default=None,
            help="Parallel workers. [default: CPU count]",
        ),
        click.option(
            "-d",
            "--dependency",
            "only",
            multiple=True,
            help="Only upgrade this dependency (repeatable).",
        ),
        click.option("--ignore", multiple=True, help="Never upgrade this dependency (repeatable)."),
        click.option(
            "--exclude", multiple=True, help="Skip packages matching this name glob (repeatable)."
        ),
        click.option(
            "--prerelease",
            "allow_prerelease",
            is_flag=True,
            help="Allow pre-release versions as targets.",
        ),
        click.option(
            "--bump-local",
            type=click.Choice(["none", "patch", "minor", "major"]),
            default=None,
            help="Bump versions of changed local packages, keeping any +build "
            "number. [default: none]",
        ),
        click.option(
            "--flutter",
            "flutter_bin",
            envvar="FLUTTER_BIN",
            default=None,
            help="Flutter executable. [default: flutter]",
        ),
        click.option(
            "--dart",
            "dart_bin",
            envvar="DART_BIN",
            default=None,
            help="Dart executable. [default: dart]",
        ),
        click.option(
            "--timeout",
            "command_timeout",
            type=click.FloatRange(min=0, min_open=True),
            default=None,
            help="Seconds before a toolchain command is killed. [default: 600]",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _load(path: Path, options: dict[str, Any]) -> UpgradeConfig:
    # Unset flags are None so they don't override the config file
    overrides = {k: (v or None) if isinstance(v, bool) else v for k, v in options.items()}
    try:
        return load_config(path, **overrides)
    except FlutterDepsError as exc:
        _fail(exc)


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (ValidationError, UpgradeInterrupted) as exc:
            if exc.results:
                click.echo(render_validation(exc.results))
            _fail(exc)
        except FlutterDepsError as exc:
            _fail(exc)

    return wrapper


@click.group()
@click.version_option(__version__, prog_name="flutter-deps-upgrade")
def cli() -> None:
    """Flutter Dependencies Upgrade CLI.

    Intelligent Flutter dependency upgrader with automatic monorepo
    detection.
    """


@cli.command()
@_plan_options
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
    help="How to print the plan.",
)
@click.option(
    "--report",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the plan as JSON to this file.",
)
@_handle_errors
def analyze(path: Path, output_format: str, report: Path | None, **options: Any) -> None:
    """Preview upgrades without changing any file."""
    config = _load(path, options)
    workspace, plan = run_analyze(path, FlutterToolchain(config), config)

    if output_format == "json":
        click.echo(render_json(workspace, plan))
    else:
        click.echo(render_plan(plan))

    if report is not None:
        try:
            write_report(report, workspace, plan)
        except OSError as exc:
            raise click.ClickException(f"Cannot write report {report}: {exc}") from exc
        success(f"Wrote report to {report}")


@cli.command()
@_plan_options
@click.option(
    "--validate", is_flag=True, help="Run pub get and analyze on upgraded packages."
)
@click.option(
    "--run-tests", is_flag=True, help="Also run package tests during validation."
)
@click.option(
    "--on-failure",
    type=click.Choice(["rollback", "keep", "ask"]),
    default=None,
    help="What to do when validation fails. [default: rollback]",
)
@click.option("-y", "--yes", is_flag=True, help="Apply high-risk plans without asking.")
@_handle_errors
def upgrade(path: Path, validate: bool, yes: bool, **options: Any) -> None:
    """Upgrade dependencies across the workspace."""
    config = _load(path, options)
    toolchain = FlutterToolchain(config)

    def confirm(message: str) -> bool:
        return yes or click.confirm(message, default=False)

    workspace, plan = prepare_plan(path, toolchain, config)
    click.echo(render_plan(plan))

    run = execute_plan(
        workspace,
        plan,
        toolchain,
        config,
        validate=validate or config.run_tests,
        confirm=confirm,
    )

    if run.results:
        click.echo(render_validation(run.results))
    if run.state == PlanState.ABANDONED:
        return
    success(f"Upgraded {len(run.applied)} package(s)")
