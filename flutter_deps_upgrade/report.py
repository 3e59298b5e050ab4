"""Plan and validation rendering.

Text output is meant for terminals (click strips the colors when piped);
the JSON document is stable for identical input, so two reports for an
unchanged workspace compare equal.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from .executor import write_bytes_atomic
from .models import Risk, UpgradePlan, ValidationResult, ValidationStatus, Workspace
from .planner import annotate_workspace

RISK_COLORS = {Risk.LOW: "green", Risk.MEDIUM: "yellow", Risk.HIGH: "red"}
STATUS_MARKS = {
    ValidationStatus.PASSED: ("✓", "green"),
    ValidationStatus.FAILED: ("✗", "red"),
    ValidationStatus.UNKNOWN: ("?", "yellow"),
}

# Lines of tool output shown per failed package
OUTPUT_TAIL = 20


def render_plan(plan: UpgradePlan) -> str:
    """Render a plan as an aligned, colored table."""
    risk = click.style(plan.risk.value, fg=RISK_COLORS[plan.risk])
    lines = [f"Upgrade plan for {plan.root} (risk: {risk})"]

    if plan.is_empty:
        lines.append("")
        lines.append("  Nothing to upgrade.")

    for diff in plan.diffs:
        lines.append("")
        header = f"  {click.style(diff.package, bold=True)}"
        if diff.version is not None:
            header += f"  {diff.version.old} → {diff.version.new}"
        lines.append(header)
        width = max((len(c.name) for c in diff.changes), default=0)
        for change in diff.changes:
            resolved = (
                f" ({change.current_version} → {change.new_version})"
                if change.current_version and change.current_version != change.new_version
                else ""
            )
            tag = click.style(change.compatibility.value, fg=RISK_COLORS[change.risk])
            lockstep = " [lockstep]" if change.reason == "lockstep" else ""
            lines.append(
                f"    {change.name.ljust(width)}  {change.old_constraint} → "
                f"{change.new_constraint}{resolved}  {tag}{lockstep}"
            )

    if plan.held_back:
        lines.append("")
        lines.append("  Held back (breaking, use --all):")
        for held in plan.held_back:
            planned = f" (planned {held.target})" if held.target else ""
            lines.append(f"    {held.name} {held.latest}{planned}")

    return "\n".join(lines)


def render_validation(results: list[ValidationResult]) -> str:
    """Render per-package validation outcomes, with output for failures."""
    lines: list[str] = []
    for result in results:
        mark, color = STATUS_MARKS[result.status]
        lines.append(f"  {click.style(mark, fg=color)} {result.package}: {result.status.value}")
        if result.status == ValidationStatus.FAILED and result.output:
            for line in result.output.splitlines()[-OUTPUT_TAIL:]:
                lines.append(f"      {line}")
    return "\n".join(lines)


def plan_document(workspace: Workspace, plan: UpgradePlan) -> dict[str, Any]:
    """Build the JSON-serializable description of a scan and its plan."""
    annotated = annotate_workspace(workspace, plan)
    return {
        "root": str(workspace.root),
        "layout": workspace.layout,
        "is_monorepo": workspace.is_monorepo,
        "risk": plan.risk.value,
        "packages": [
            annotated.packages[name].model_dump(mode="json")
            for name in sorted(annotated.packages)
        ],
        "skipped": [s.model_dump(mode="json") for s in workspace.skipped],
        "plan": plan.model_dump(mode="json"),
    }


def render_json(workspace: Workspace, plan: UpgradePlan) -> str:
    return json.dumps(plan_document(workspace, plan), indent=2)


def write_report(path: Path, workspace: Workspace, plan: UpgradePlan) -> None:
    """Write the JSON plan report, replacing any previous report atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    write_bytes_atomic(path, (render_json(workspace, plan) + "\n").encode("utf-8"))
