"""Shared test fixtures."""

from __future__ import annotations

import shutil
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pytest

from flutter_deps_upgrade.config import UpgradeConfig
from flutter_deps_upgrade.constraints import parse_dependency_spec
from flutter_deps_upgrade.errors import ToolchainError
from flutter_deps_upgrade.models import (
    DependencyConstraint,
    DependencySection,
    Package,
    ValidationResult,
    ValidationStatus,
    Workspace,
)

FIXTURES = Path(__file__).parent / "fixtures"

# Versions published for the dependencies of the sample monorepo
CANDIDATES: dict[str, list[str]] = {
    "http": ["0.13.5", "0.13.6", "1.2.0"],
    "collection": ["1.17.1", "1.18.0"],
    "provider": ["6.0.5", "6.1.2"],
    "path": ["1.8.3", "1.9.0"],
    "test": ["1.24.1", "1.25.8"],
}

# What `pub get` writes after the sample monorepo has been upgraded
RESOLVED_LOCK = """\
packages:
  http:
    source: hosted
    version: "0.13.6"
"""


class FakeToolchain:
    """In-memory Toolchain that never starts a process.

    Args:
        candidates: Versions returned for each dependency name.
        failures: Packages whose validation fails.
        errors: Packages whose version query raises ToolchainError.
        interrupt: Packages whose validation raises KeyboardInterrupt.
        lock_files: Lock files rewritten on every validation, the way
            ``pub get`` records a new resolution.
    """

    def __init__(
        self,
        candidates: dict[str, list[str]] | None = None,
        failures: Iterable[str] = (),
        errors: Iterable[str] = (),
        interrupt: Iterable[str] = (),
        lock_files: Iterable[Path] = (),
    ) -> None:
        self.candidates = dict(CANDIDATES if candidates is None else candidates)
        self.failures = set(failures)
        self.errors = set(errors)
        self.interrupt = set(interrupt)
        self.lock_files = list(lock_files)
        self.queried: list[str] = []
        self.validated: list[str] = []
        self.cancelled = False
        self._lock = threading.Lock()

    def version_candidates(self, package: Package) -> dict[str, list[str]]:
        with self._lock:
            self.queried.append(package.name)
        if package.name in self.errors:
            raise ToolchainError(f"pub outdated failed in {package.name}")
        return {
            dep.name: list(self.candidates[dep.name])
            for dep in package.dependencies
            if dep.name in self.candidates
        }

    def validate(self, package: Package, *, run_tests: bool = False) -> ValidationResult:
        if package.name in self.interrupt:
            raise KeyboardInterrupt
        with self._lock:
            self.validated.append(package.name)
            for path in self.lock_files:
                path.write_text(RESOLVED_LOCK)
        failed = package.name in self.failures
        return ValidationResult(
            package=package.name,
            status=ValidationStatus.FAILED if failed else ValidationStatus.PASSED,
            commands=["dart pub get", "dart analyze"],
            output="error: The method 'get' isn't defined" if failed else "",
        )

    def cancel(self) -> None:
        self.cancelled = True


def make_package(
    name: str,
    version: str | None = "1.0.0",
    dependencies: dict[str, Any] | None = None,
    dev_dependencies: dict[str, Any] | None = None,
    current: dict[str, str] | None = None,
    root: Path = Path("/ws"),
) -> Package:
    """Build a Package without touching the filesystem.

    ``current`` maps dependency names to their resolved (locked) versions.
    """
    current = current or {}
    deps: list[DependencyConstraint] = []
    for section, entries in (
        (DependencySection.DEPENDENCIES, dependencies),
        (DependencySection.DEV_DEPENDENCIES, dev_dependencies),
    ):
        for dep_name, spec in (entries or {}).items():
            constraint, raw, hosted = parse_dependency_spec(spec)
            deps.append(
                DependencyConstraint(
                    name=dep_name,
                    section=section,
                    constraint=constraint,
                    raw=raw,
                    hosted=hosted,
                    current_version=current.get(dep_name),
                )
            )
    path = root / name
    return Package(
        name=name,
        path=path,
        manifest_path=path / "pubspec.yaml",
        version=version,
        dependencies=deps,
    )


def make_workspace(*packages: Package, root: Path = Path("/ws")) -> Workspace:
    """Assemble packages into a Workspace, wiring local edges."""
    names = {p.name for p in packages}
    for pkg in packages:
        pkg.local_deps = sorted(
            {d.name for d in pkg.dependencies if d.name in names and d.name != pkg.name}
        )
    return Workspace(
        root=root,
        packages={p.name: p for p in packages},
        is_monorepo=len(packages) > 1,
        layout="scan" if len(packages) > 1 else "single",
    )


def snapshot(root: Path) -> dict[str, bytes]:
    """Bytes of every pubspec.yaml and pubspec.lock under root, keyed by relative path."""
    files = sorted([*root.rglob("pubspec.yaml"), *root.rglob("pubspec.lock")])
    return {str(p.relative_to(root)): p.read_bytes() for p in files}


@pytest.fixture
def config() -> UpgradeConfig:
    return UpgradeConfig(workers=2)


@pytest.fixture
def toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def monorepo(tmp_path: Path) -> Path:
    """Copy the sample pub workspace into a temporary directory."""
    root = tmp_path / "monorepo"
    shutil.copytree(FIXTURES / "monorepo", root)
    return root


@pytest.fixture
def sample_pubspec() -> str:
    """A pubspec exercising comments, quoting and hosted dependencies."""
    return """\
# Sample package
name: sample
version: 1.2.3

dependencies:
  # HTTP client
  http: ^0.13.0  # pinned for now
  collection: '^1.17.0'
  meta: "1.9.1"
  path: ">=1.8.0 <2.0.0"
  internal:
    hosted: https://pub.example.com
    version: ^2.0.0
  local_thing:
    path: ../local_thing

dev_dependencies:
  test: any
"""
