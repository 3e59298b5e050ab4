"""Upgrade planner: choose target versions and compute manifest changes.

Planning is a pure function of the scanned workspace and the version
candidates reported by the toolchain. Nothing here touches the filesystem.

For every external dependency, the constraints of all packages that declare
it are intersected, and one target version is chosen for the whole
workspace:

- default policy: the highest candidate inside the intersection that is not
  a breaking release relative to the highest resolved version
- ``allow_breaking``: upper bounds are lifted, so the highest candidate at or
  above every package's lower bound wins

Local packages are then kept in lockstep: every versioned reference to a
workspace package is moved to that package's (possibly bumped) version.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import semver

from .config import UpgradeConfig
from .console import info, step, warn
from .constraints import (
    AnyConstraint,
    VersionRange,
    floor_of,
    intersect_all,
    is_versioned,
    parse_constraint,
    render_constraint,
    rewrite_constraint,
    to_range,
)
from .errors import ConflictError, MultipleConflictsError
from .graph import dependents_closure, topo_sort
from .models import (
    DependencyChange,
    DependencyConstraint,
    DependencySection,
    HeldBack,
    Package,
    PackageDiff,
    Risk,
    UpgradePlan,
    VersionBump,
    Workspace,
)
from .versions import bump, classify_change, is_valid_version, next_breaking, parse_version, release_of

_SECTION_ORDER = list(DependencySection)

Entry = tuple[Package, DependencyConstraint]


def plan_upgrades(
    workspace: Workspace,
    candidates: Mapping[str, Sequence[str]],
    config: UpgradeConfig,
) -> UpgradePlan:
    """Compute the upgrade plan for a workspace.

    Args:
        workspace: Scanned workspace.
        candidates: Map of dependency name → available version strings.
        config: Run configuration (policy, filters, local bump level).

    Returns:
        The plan, with diffs in dependency order.

    Raises:
        ConflictError: If packages declare constraints on the same
            dependency that no version satisfies, or a local reference
            would end up excluding the local package's version.
    """
    step("Planning upgrades")

    order = topo_sort(workspace.packages)
    changes: dict[str, list[DependencyChange]] = {name: [] for name in order}
    held_back: list[HeldBack] = []
    conflicts: list[ConflictError] = []

    groups = _external_groups(workspace, config)
    for dep_name in sorted(groups):
        entries = groups[dep_name]
        try:
            target, latest = _choose_target(dep_name, entries, candidates.get(dep_name, ()), config)
        except ConflictError as exc:
            conflicts.append(exc)
            continue
        if latest is not None:
            held_back.append(HeldBack(name=dep_name, target=target, latest=latest))
        if target is None:
            continue
        for pkg, dep in entries:
            change = _change_for(pkg.name, dep, target, "upgrade", dep.current_version)
            if change is not None:
                changes[pkg.name].append(change)

    if conflicts:
        raise conflicts[0] if len(conflicts) == 1 else MultipleConflictsError(conflicts)

    bumps = _local_bumps(workspace, order, changes, config)
    versions = {
        name: bumps[name].new if name in bumps else pkg.version
        for name, pkg in workspace.packages.items()
    }
    for name in order:
        changes[name].extend(_lockstep(workspace.packages[name], versions, set(bumps)))

    _check_local_edges(workspace, changes, versions)

    diffs = [
        PackageDiff(
            package=name,
            manifest_path=workspace.packages[name].manifest_path,
            version=bumps.get(name),
            changes=sorted(
                changes[name], key=lambda c: (_SECTION_ORDER.index(c.section), c.name)
            ),
        )
        for name in order
        if changes[name] or name in bumps
    ]
    plan = UpgradePlan(root=workspace.root, diffs=diffs, held_back=held_back)

    if plan.is_empty:
        info("Everything is up to date")
    else:
        info(
            f"{len(plan.changes)} change(s) across {len(plan.diffs)} package(s), "
            f"risk: {plan.risk.value}"
        )
    if held_back:
        info(f"{len(held_back)} breaking upgrade(s) held back (use --all to include)")
    return plan


def annotate_workspace(workspace: Workspace, plan: UpgradePlan) -> Workspace:
    """Return a copy of ``workspace`` with planned versions filled in."""
    annotated = workspace.model_copy(deep=True)
    for change in plan.changes:
        dep = annotated.packages[change.package].get(change.name, change.section)
        if dep is not None:
            dep.candidate_version = change.new_version
            dep.compatibility = change.compatibility
    return annotated


def _external_groups(workspace: Workspace, config: UpgradeConfig) -> dict[str, list[Entry]]:
    """Group versioned external dependency entries by dependency name.

    Overrides are left alone: they exist to pin or redirect a dependency and
    are not part of the declared requirements.
    """
    local_names = set(workspace.packages)
    groups: dict[str, list[Entry]] = {}
    for name in sorted(workspace.packages):
        pkg = workspace.packages[name]
        for dep in pkg.dependencies:
            if dep.section == DependencySection.DEPENDENCY_OVERRIDES:
                continue
            if dep.name in local_names or not is_versioned(dep.constraint):
                continue
            if dep.name in config.ignore or (config.only and dep.name not in config.only):
                continue
            groups.setdefault(dep.name, []).append((pkg, dep))
    return groups


def _choose_target(
    dep_name: str,
    entries: list[Entry],
    versions: Sequence[str],
    config: UpgradeConfig,
) -> tuple[str | None, str | None]:
    """Pick the workspace-wide target version for one dependency.

    Returns:
        Tuple of (target version or None, newest held-back version or None).

    Raises:
        ConflictError: If the declared constraints do not intersect.
    """
    ranges = [to_range(dep.constraint) for _, dep in entries]
    declared = intersect_all(ranges)
    if declared.is_empty and not config.allow_breaking:
        raise ConflictError(dep_name, _offenders(entries, ranges))

    if all(isinstance(dep.constraint, AnyConstraint) for _, dep in entries):
        return None, None

    current = _highest(dep.current_version for _, dep in entries)
    baseline = current or declared.min

    if config.allow_breaking:
        allowed = intersect_all([r.floor_only() for r in ranges])
    else:
        allowed = declared
        if baseline is not None:
            allowed = allowed.intersect(VersionRange(max=next_breaking(release_of(baseline))))

    include_pre = config.allow_prerelease or bool(current and current.prerelease)
    parsed: dict[semver.Version, str] = {}
    for text in versions:
        if not is_valid_version(text):
            continue
        v = parse_version(text)
        if v.prerelease and not include_pre:
            continue
        parsed.setdefault(v, text)
    if not parsed:
        return None, None

    eligible = [v for v in parsed if allowed.allows(v)]
    target = max(eligible) if eligible else None
    newest = max(parsed)

    held: str | None = None
    reference = target or baseline
    if not config.allow_breaking and not allowed.allows(newest):
        if reference is None or newest > reference:
            held = parsed[newest]
    return (parsed[target] if target is not None else None), held


def _offenders(entries: list[Entry], ranges: list[VersionRange | None]) -> list[tuple[str, str]]:
    """Return the (package, constraint) pairs that exclude one another."""
    involved: set[int] = set()
    for i, a in enumerate(ranges):
        for j in range(i + 1, len(ranges)):
            b = ranges[j]
            if a is not None and b is not None and a.intersect(b).is_empty:
                involved.update((i, j))
    if not involved:
        involved = set(range(len(entries)))
    return [
        (entries[i][0].name, _constraint_text(entries[i][1])) for i in sorted(involved)
    ]


def _change_for(
    package: str,
    dep: DependencyConstraint,
    target: str,
    reason: str,
    current_version: str | None,
) -> DependencyChange | None:
    new = rewrite_constraint(dep.constraint, target)
    if new is None:
        return None
    old_text = render_constraint(dep.constraint)
    new_text = render_constraint(new)
    if old_text == new_text:
        return None
    compatibility = classify_change(current_version or floor_of(dep.constraint), target)
    return DependencyChange(
        package=package,
        name=dep.name,
        section=dep.section,
        old_constraint=_constraint_text(dep),
        new_constraint=new_text,
        current_version=current_version,
        new_version=target,
        compatibility=compatibility,
        risk=Risk.for_compatibility(compatibility),
        reason=reason,
    )


def _local_bumps(
    workspace: Workspace,
    order: list[str],
    changes: Mapping[str, list[DependencyChange]],
    config: UpgradeConfig,
) -> dict[str, VersionBump]:
    """Bump every package whose manifest changes, and their dependents.

    A package changes when one of its external dependencies is upgraded or
    one of its local references is stale. Bumping it changes the reference
    in every dependent, so dirtiness propagates through reverse edges.
    """
    if config.bump_local == "none":
        return {}

    current = {name: pkg.version for name, pkg in workspace.packages.items()}
    seeds = {
        name
        for name in order
        if changes[name] or _lockstep(workspace.packages[name], current, set())
    }

    bumps: dict[str, VersionBump] = {}
    for name in sorted(dependents_closure(workspace.packages, seeds)):
        version = workspace.packages[name].version
        if not version or not is_valid_version(version):
            warn(f"{name}: no valid version to bump")
            continue
        bumps[name] = VersionBump(old=version, new=bump(version, config.bump_local))
    return bumps


def _lockstep(
    pkg: Package, versions: Mapping[str, str | None], bumped: set[str]
) -> list[DependencyChange]:
    """Move stale references to local packages onto their current version.

    A reference is stale when it does not admit the local version, names a
    lower version, or points at a package being bumped.
    """
    result: list[DependencyChange] = []
    for dep in pkg.dependencies:
        if dep.name not in pkg.local_deps:
            continue
        if dep.section == DependencySection.DEPENDENCY_OVERRIDES:
            continue
        if not is_versioned(dep.constraint) or isinstance(dep.constraint, AnyConstraint):
            continue
        local_version = versions.get(dep.name)
        if not local_version or not is_valid_version(local_version):
            continue

        v = parse_version(local_version)
        floor = floor_of(dep.constraint)
        stale = (
            dep.name in bumped
            or not to_range(dep.constraint).allows(v)
            or (floor is not None and parse_version(floor) < v)
        )
        if not stale:
            continue
        # References name the release; a build number is not a constraint
        target = str(v.replace(build=None))
        change = _change_for(pkg.name, dep, target, "lockstep", None)
        if change is not None:
            result.append(change)
    return result


def _check_local_edges(
    workspace: Workspace,
    changes: Mapping[str, list[DependencyChange]],
    versions: Mapping[str, str | None],
) -> None:
    """Every local reference must admit the local version once applied."""
    for name, pkg in workspace.packages.items():
        planned = {(c.section, c.name): c.new_constraint for c in changes[name]}
        for dep in pkg.dependencies:
            if dep.name not in pkg.local_deps or not is_versioned(dep.constraint):
                continue
            if dep.section == DependencySection.DEPENDENCY_OVERRIDES:
                continue
            local_version = versions.get(dep.name)
            if not local_version or not is_valid_version(local_version):
                continue
            text = planned.get((dep.section, dep.name))
            constraint = parse_constraint(text) if text else dep.constraint
            if not to_range(constraint).allows(parse_version(local_version)):
                raise ConflictError(
                    dep.name,
                    [
                        (name, render_constraint(constraint)),
                        (dep.name, f"version {local_version}"),
                    ],
                )


def _highest(versions) -> semver.Version | None:
    parsed = [parse_version(v) for v in versions if v and is_valid_version(v)]
    return max(parsed) if parsed else None


def _constraint_text(dep: DependencyConstraint) -> str:
    return dep.raw if dep.raw is not None else render_constraint(dep.constraint)
