"""Upgrade pipeline: scan → query versions → plan → apply → validate.

This module orchestrates a flutter-deps-upgrade run:
1. Scan the workspace and detect its layout
2. Ask the toolchain for available versions of every dependency
3. Compute the upgrade plan (analyze stops here)
4. Apply the plan to the manifests
5. Optionally validate the upgraded packages, rolling back on failure
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from .config import UpgradeConfig
from .console import step, warn
from .errors import ToolchainError
from .executor import UpgradeRun
from .models import Risk, UpgradePlan, Workspace
from .planner import plan_upgrades
from .scanner import scan_workspace
from .toolchain import Toolchain
from .versions import is_valid_version, parse_version


def collect_candidates(
    workspace: Workspace, toolchain: Toolchain, config: UpgradeConfig
) -> dict[str, list[str]]:
    """Query version candidates for every package and merge them.

    Packages are queried concurrently. A failing query is a warning (the
    package's dependencies just get no candidates from it) unless strict.

    Returns:
        Map of dependency name → valid versions, lowest first.

    Raises:
        ToolchainError: In strict mode, if any query fails.
    """
    step("Querying available versions")

    names = sorted(workspace.packages)
    with ThreadPoolExecutor(max_workers=config.workers) as pool:
        futures = {
            name: pool.submit(toolchain.version_candidates, workspace.packages[name])
            for name in names
        }

    merged: dict[str, set[str]] = {}
    for name in names:
        try:
            found = futures[name].result()
        except ToolchainError as exc:
            if config.strict:
                raise
            warn(f"{name}: {exc}")
            continue
        for dep, versions in found.items():
            merged.setdefault(dep, set()).update(v for v in versions if is_valid_version(v))

    return {dep: sorted(versions, key=parse_version) for dep, versions in sorted(merged.items())}


def prepare_plan(
    root: Path, toolchain: Toolchain, config: UpgradeConfig
) -> tuple[Workspace, UpgradePlan]:
    """Scan ``root`` and compute its upgrade plan without writing anything."""
    workspace = scan_workspace(root, config)
    candidates = collect_candidates(workspace, toolchain, config)
    plan = plan_upgrades(workspace, candidates, config)
    return workspace, plan


def run_analyze(
    root: Path, toolchain: Toolchain, config: UpgradeConfig
) -> tuple[Workspace, UpgradePlan]:
    """Dry run: compute the plan, then abandon it."""
    workspace, plan = prepare_plan(root, toolchain, config)
    UpgradeRun(workspace, plan, toolchain, config).abandon()
    return workspace, plan


def execute_plan(
    workspace: Workspace,
    plan: UpgradePlan,
    toolchain: Toolchain,
    config: UpgradeConfig,
    *,
    validate: bool,
    confirm: Callable[[str], bool],
) -> UpgradeRun:
    """Apply a plan and optionally validate it.

    High-risk plans are only applied when ``confirm`` agrees.

    Raises:
        ApplyError: If a manifest could not be written.
        ValidationError: If validation failed.
        UpgradeInterrupted: On KeyboardInterrupt.
    """
    run = UpgradeRun(workspace, plan, toolchain, config, confirm=confirm)
    if plan.is_empty:
        run.abandon()
        return run

    if plan.risk == Risk.HIGH and not confirm(
        "The plan contains high-risk (breaking) upgrades. Apply it?"
    ):
        warn("upgrade not applied")
        run.abandon()
        return run

    run.apply()
    if validate:
        run.validate()
    return run
