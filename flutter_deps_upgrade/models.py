"""Data models for flutter-deps-upgrade.

These Pydantic models represent the core data structures used throughout
the scan → plan → apply → validate pipeline.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from .constraints import Constraint
from .versions import Compatibility


class PackageKind(str, Enum):
    APP = "app"
    LIBRARY = "library"


class DependencySection(str, Enum):
    DEPENDENCIES = "dependencies"
    DEV_DEPENDENCIES = "dev_dependencies"
    DEPENDENCY_OVERRIDES = "dependency_overrides"


class Risk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high"].index(self.value)

    @classmethod
    def for_compatibility(cls, compatibility: Compatibility) -> Risk:
        if compatibility in (Compatibility.MAJOR, Compatibility.BREAKING_UNKNOWN):
            return cls.HIGH
        if compatibility == Compatibility.MINOR:
            return cls.MEDIUM
        return cls.LOW


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class PlanState(str, Enum):
    """Lifecycle of an upgrade plan.

    planned → applied → (validated | rolled-back), or planned → abandoned
    for analyze-only runs.
    """

    PLANNED = "planned"
    APPLIED = "applied"
    VALIDATED = "validated"
    ROLLED_BACK = "rolled-back"
    ABANDONED = "abandoned"


class DependencyConstraint(BaseModel):
    """One dependency entry declared in a pubspec.

    Attributes:
        name: Dependency package name.
        section: Which pubspec section declares it.
        constraint: Parsed constraint (tagged by ``kind``).
        raw: Constraint text as written, None for path/git/sdk sources.
        hosted: Custom hosted URL, if any.
        current_version: Version resolved in pubspec.lock, if known.
        candidate_version: Version the planner selected, if any.
        compatibility: Class of the planned change, if any.
    """

    name: str
    section: DependencySection
    constraint: Constraint
    raw: str | None = None
    hosted: str | None = None
    current_version: str | None = None
    candidate_version: str | None = None
    compatibility: Compatibility | None = None


class Package(BaseModel):
    """A single pubspec package found in the workspace.

    Attributes:
        name: Package name from the pubspec.
        path: Package directory.
        manifest_path: Path to its pubspec.yaml.
        version: Declared version, None when the pubspec has none.
        kind: Whether this is an application or a library.
        is_flutter: Whether the package depends on the Flutter SDK.
        dependencies: Every declared dependency, in file order.
        local_deps: Names of workspace packages this package depends on.
    """

    name: str
    path: Path
    manifest_path: Path
    version: str | None = None
    kind: PackageKind = PackageKind.LIBRARY
    is_flutter: bool = False
    dependencies: list[DependencyConstraint] = Field(default_factory=list)
    local_deps: list[str] = Field(default_factory=list)

    def get(
        self, name: str, section: DependencySection | None = None
    ) -> DependencyConstraint | None:
        for dep in self.dependencies:
            if dep.name == name and (section is None or dep.section == section):
                return dep
        return None


class SkippedManifest(BaseModel):
    path: Path
    reason: str


class Workspace(BaseModel):
    """All packages under a scanned root.

    Attributes:
        root: Directory the scan started from.
        packages: Map of package name → Package.
        is_monorepo: Whether the root holds more than one package, or is a
            declared pub/melos workspace.
        layout: How the packages were found: "pub-workspace", "melos",
            "scan" or "single".
        skipped: Manifests skipped because they could not be parsed.
    """

    root: Path
    packages: dict[str, Package] = Field(default_factory=dict)
    is_monorepo: bool = False
    layout: str = "single"
    skipped: list[SkippedManifest] = Field(default_factory=list)

    def edges(self) -> list[tuple[str, str]]:
        """Local dependency edges as (dependent, dependency) pairs."""
        return sorted(
            (name, dep) for name, pkg in self.packages.items() for dep in pkg.local_deps
        )


class VersionBump(BaseModel):
    """Records a version change for a local package.

    Attributes:
        old: The version before bumping.
        new: The version after bumping.
    """

    old: str
    new: str


class DependencyChange(BaseModel):
    """A single constraint rewrite within one package's manifest."""

    package: str
    name: str
    section: DependencySection
    old_constraint: str
    new_constraint: str
    current_version: str | None = None
    new_version: str
    compatibility: Compatibility
    risk: Risk
    reason: str = "upgrade"


class PackageDiff(BaseModel):
    package: str
    manifest_path: Path
    version: VersionBump | None = None
    changes: list[DependencyChange] = Field(default_factory=list)


class HeldBack(BaseModel):
    """A newer, breaking release that the default policy did not take."""

    name: str
    target: str | None = None
    latest: str


class UpgradePlan(BaseModel):
    """The ordered set of manifest changes for one run.

    Diffs are ordered so local dependencies come before their dependents.
    """

    root: Path
    diffs: list[PackageDiff] = Field(default_factory=list)
    held_back: list[HeldBack] = Field(default_factory=list)

    @property
    def changes(self) -> list[DependencyChange]:
        return [c for d in self.diffs for c in d.changes]

    @property
    def risk(self) -> Risk:
        return max((c.risk for c in self.changes), key=lambda r: r.rank, default=Risk.LOW)

    @property
    def is_empty(self) -> bool:
        return not self.diffs

    def diff_for(self, package: str) -> PackageDiff | None:
        for diff in self.diffs:
            if diff.package == package:
                return diff
        return None


class ValidationResult(BaseModel):
    package: str
    status: ValidationStatus
    commands: list[str] = Field(default_factory=list)
    output: str = ""
