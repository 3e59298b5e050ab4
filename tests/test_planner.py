"""Tests for flutter_deps_upgrade.planner."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import CANDIDATES, make_package, make_workspace

from flutter_deps_upgrade.config import UpgradeConfig
from flutter_deps_upgrade.constraints import parse_constraint, to_range
from flutter_deps_upgrade.errors import ConflictError, MultipleConflictsError
from flutter_deps_upgrade.models import (
    DependencyConstraint,
    DependencySection,
    Risk,
    UpgradePlan,
    Workspace,
)
from flutter_deps_upgrade.planner import annotate_workspace, plan_upgrades
from flutter_deps_upgrade.scanner import scan_workspace
from flutter_deps_upgrade.versions import Compatibility, parse_version


def _constraints(plan: UpgradePlan) -> dict[tuple[str, str], str]:
    return {(c.package, c.name): c.new_constraint for c in plan.changes}


def _upgrades(plan: UpgradePlan) -> set[tuple[str, str, str]]:
    return {(c.package, c.name, c.new_constraint) for c in plan.changes if c.reason == "upgrade"}


@pytest.fixture
def scanned(monorepo: Path, config: UpgradeConfig) -> Workspace:
    return scan_workspace(monorepo, config)


class TestMonorepoPlan:
    def test_default_policy(self, scanned: Workspace, config: UpgradeConfig) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)

        assert _constraints(plan) == {
            ("alpha", "collection"): "^1.18.0",
            ("alpha", "http"): "^0.13.6",
            ("beta", "alpha"): "^0.1.1",
            ("beta", "http"): "^0.13.6",
            ("delta", "path"): ">=1.9.0 <2.0.0",
            ("delta", "test"): "^1.25.8",
            ("gamma", "provider"): "^6.1.2",
        }

    def test_diffs_in_dependency_order(self, scanned: Workspace, config: UpgradeConfig) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)
        assert [d.package for d in plan.diffs] == ["alpha", "beta", "delta", "gamma"]

    def test_changes_sorted_by_section_then_name(
        self, scanned: Workspace, config: UpgradeConfig
    ) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)
        delta = plan.diff_for("delta")
        assert [(c.section, c.name) for c in delta.changes] == [
            (DependencySection.DEPENDENCIES, "path"),
            (DependencySection.DEV_DEPENDENCIES, "test"),
        ]

    def test_one_target_per_dependency(self, scanned: Workspace, config: UpgradeConfig) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)
        http = {c.new_version for c in plan.changes if c.name == "http"}
        assert http == {"0.13.6"}

    def test_targets_satisfy_declared_constraints(
        self, scanned: Workspace, config: UpgradeConfig
    ) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)
        for change in plan.changes:
            if change.reason != "upgrade":
                continue
            declared = parse_constraint(change.old_constraint)
            assert to_range(declared).allows(parse_version(change.new_version)), change

    def test_breaking_release_is_held_back(self, scanned: Workspace, config: UpgradeConfig) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)
        assert [(h.name, h.target, h.latest) for h in plan.held_back] == [
            ("http", "0.13.6", "1.2.0")
        ]

    def test_risk_and_compatibility(self, scanned: Workspace, config: UpgradeConfig) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, config)
        by_key = {(c.package, c.name): c for c in plan.changes}
        assert by_key[("alpha", "http")].compatibility == Compatibility.PATCH
        assert by_key[("alpha", "collection")].compatibility == Compatibility.MINOR
        assert by_key[("beta", "alpha")].reason == "lockstep"
        assert plan.risk == Risk.MEDIUM

    def test_allow_breaking(self, scanned: Workspace) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, UpgradeConfig(workers=2, allow_breaking=True))
        constraints = _constraints(plan)
        assert constraints[("alpha", "http")] == "^1.2.0"
        assert constraints[("beta", "http")] == "^1.2.0"
        assert plan.held_back == []
        assert plan.risk == Risk.HIGH

    def test_only_filters_external_dependencies(self, scanned: Workspace) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, UpgradeConfig(workers=2, only=["provider"]))
        assert {c.name for c in plan.changes if c.reason == "upgrade"} == {"provider"}

    def test_ignore(self, scanned: Workspace) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, UpgradeConfig(workers=2, ignore=["http"]))
        assert all(c.name != "http" for c in plan.changes)
        assert plan.held_back == []

    def test_independent_upgrades_compose(self, scanned: Workspace, config: UpgradeConfig) -> None:
        """Planning every dependency at once equals the union of planning each alone."""
        together = _upgrades(plan_upgrades(scanned, CANDIDATES, config))
        separately: set[tuple[str, str, str]] = set()
        for name in CANDIDATES:
            separately |= _upgrades(
                plan_upgrades(scanned, CANDIDATES, UpgradeConfig(workers=2, only=[name]))
            )
        assert together == separately

    def test_bump_local_keeps_references_in_lockstep(self, scanned: Workspace) -> None:
        plan = plan_upgrades(scanned, CANDIDATES, UpgradeConfig(workers=2, bump_local="patch"))

        bumps = {d.package: (d.version.old, d.version.new) for d in plan.diffs if d.version}
        assert bumps == {
            "alpha": ("0.1.1", "0.1.2"),
            "beta": ("0.1.0", "0.1.1"),
            "delta": ("0.1.0", "0.1.1"),
            "gamma": ("0.1.3", "0.1.4"),
        }
        constraints = _constraints(plan)
        assert constraints[("beta", "alpha")] == "^0.1.2"
        assert constraints[("delta", "alpha")] == "^0.1.2"
        assert constraints[("gamma", "beta")] == "^0.1.1"

    def test_no_candidates_means_no_plan(self, scanned: Workspace, config: UpgradeConfig) -> None:
        plan = plan_upgrades(scanned, {}, config)
        # Only the stale local reference is left
        assert _constraints(plan) == {("beta", "alpha"): "^0.1.1"}


class TestConflicts:
    def test_disjoint_constraints_name_both_packages(self, config: UpgradeConfig) -> None:
        ws = make_workspace(
            make_package("a", dependencies={"x": "^1.0.0"}),
            make_package("b", dependencies={"x": "^2.0.0"}),
            make_package("c", dependencies={"x": "any"}),
        )
        with pytest.raises(ConflictError) as exc_info:
            plan_upgrades(ws, {"x": ["1.0.0", "2.0.0"]}, config)

        error = exc_info.value
        assert error.dependency == "x"
        assert error.requirements == [("a", "^1.0.0"), ("b", "^2.0.0")]
        assert "a requires '^1.0.0'" in str(error)
        assert "b requires '^2.0.0'" in str(error)
        assert error.exit_code == 4

    def test_multiple_conflicts(self, config: UpgradeConfig) -> None:
        ws = make_workspace(
            make_package("a", dependencies={"x": "^1.0.0", "y": "1.0.0"}),
            make_package("b", dependencies={"x": "^2.0.0", "y": "1.1.0"}),
        )
        with pytest.raises(MultipleConflictsError) as exc_info:
            plan_upgrades(ws, {}, config)
        assert [c.dependency for c in exc_info.value.conflicts] == ["x", "y"]
        assert "'y'" in str(exc_info.value)

    def test_allow_breaking_reconciles(self) -> None:
        ws = make_workspace(
            make_package("a", dependencies={"x": "^1.0.0"}, current={"x": "1.0.0"}),
            make_package("b", dependencies={"x": "^2.0.0"}, current={"x": "1.0.0"}),
        )
        plan = plan_upgrades(
            ws, {"x": ["1.5.0", "2.3.0"]}, UpgradeConfig(workers=2, allow_breaking=True)
        )
        assert _constraints(plan) == {("a", "x"): "^2.3.0", ("b", "x"): "^2.3.0"}


class TestPolicies:
    def test_local_bump_propagates_to_dependents(self) -> None:
        ws = make_workspace(
            make_package("a", "1.0.0", dependencies={"x": "^1.0.0"}, current={"x": "1.0.0"}),
            make_package("b", "2.0.0", dependencies={"a": "^1.0.0"}),
            make_package("c", "3.0.0", dependencies={"b": "^2.0.0"}),
            make_package("d", "1.0.0"),
        )
        plan = plan_upgrades(
            ws, {"x": ["1.0.0", "1.1.0"]}, UpgradeConfig(workers=2, bump_local="minor")
        )

        assert {d.package: d.version.new for d in plan.diffs} == {
            "a": "1.1.0",
            "b": "2.1.0",
            "c": "3.1.0",
        }
        assert _constraints(plan) == {
            ("a", "x"): "^1.1.0",
            ("b", "a"): "^1.1.0",
            ("c", "b"): "^2.1.0",
        }

    def test_local_bump_keeps_build_number(self) -> None:
        ws = make_workspace(
            make_package("core", "1.0.0+5", dependencies={"x": "^1.0.0"}, current={"x": "1.0.0"}),
            make_package("app", "2.3.0+41", dependencies={"core": "^1.0.0"}),
        )
        plan = plan_upgrades(
            ws, {"x": ["1.0.0", "1.0.4"]}, UpgradeConfig(workers=2, bump_local="patch")
        )

        assert {d.package: d.version.new for d in plan.diffs} == {
            "core": "1.0.1+5",
            "app": "2.3.1+41",
        }
        assert _constraints(plan)[("app", "core")] == "^1.0.1"

    def test_package_without_version_is_not_bumped(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        ws = make_workspace(
            make_package("app", None, dependencies={"x": "^1.0.0"}, current={"x": "1.0.0"})
        )
        plan = plan_upgrades(ws, {"x": ["1.2.0"]}, UpgradeConfig(workers=2, bump_local="patch"))
        assert plan.diffs[0].version is None
        assert "no valid version to bump" in capsys.readouterr().err

    def test_prereleases_need_opt_in(self, config: UpgradeConfig) -> None:
        ws = make_workspace(
            make_package("a", dependencies={"x": "^1.0.0"}, current={"x": "1.0.0"})
        )
        candidates = {"x": ["1.0.0", "1.1.0-dev.1"]}

        assert plan_upgrades(ws, candidates, config).is_empty
        plan = plan_upgrades(ws, candidates, UpgradeConfig(workers=2, allow_prerelease=True))
        assert _constraints(plan) == {("a", "x"): "^1.1.0-dev.1"}

    def test_exact_pin_holds_back_newer_releases(self, config: UpgradeConfig) -> None:
        ws = make_workspace(
            make_package("a", dependencies={"x": "1.0.0"}, current={"x": "1.0.0"})
        )
        plan = plan_upgrades(ws, {"x": ["1.0.0", "1.0.3", "2.0.0"]}, config)
        # An exact pin only admits itself, so nothing newer is eligible
        assert plan.is_empty
        assert [h.latest for h in plan.held_back] == ["2.0.0"]

    def test_any_constraint_is_left_alone(self, config: UpgradeConfig) -> None:
        ws = make_workspace(make_package("a", dependencies={"x": "any"}))
        assert plan_upgrades(ws, {"x": ["1.0.0", "9.0.0"]}, config).is_empty

    def test_overrides_are_not_planned(self, config: UpgradeConfig) -> None:
        pkg = make_package("a")
        pkg.dependencies.append(
            DependencyConstraint(
                name="x",
                section=DependencySection.DEPENDENCY_OVERRIDES,
                constraint=parse_constraint("1.0.0"),
                raw="1.0.0",
                current_version="1.0.0",
            )
        )
        plan = plan_upgrades(make_workspace(pkg), {"x": ["1.0.0", "1.5.0"]}, config)
        assert plan.is_empty

    def test_planning_is_deterministic(self, scanned: Workspace, config: UpgradeConfig) -> None:
        first = plan_upgrades(scanned, CANDIDATES, config)
        second = plan_upgrades(scanned, CANDIDATES, config)
        assert first.model_dump() == second.model_dump()


def test_annotate_workspace(scanned: Workspace, config: UpgradeConfig) -> None:
    plan = plan_upgrades(scanned, CANDIDATES, config)
    annotated = annotate_workspace(scanned, plan)

    http = annotated.packages["alpha"].get("http")
    assert http.candidate_version == "0.13.6"
    assert http.compatibility == Compatibility.PATCH
    # The scanned workspace itself is untouched
    assert scanned.packages["alpha"].get("http").candidate_version is None
