"""Error taxonomy for flutter-deps-upgrade.

Every error carries the process exit code the CLI uses for it, so scripts
can tell a conflict from a failed validation without parsing output.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ValidationResult


class FlutterDepsError(Exception):
    """Base class for all errors raised by flutter-deps-upgrade."""

    exit_code = 1


class ConfigError(FlutterDepsError):
    """Invalid configuration file or option values."""

    exit_code = 2


class ScanError(FlutterDepsError):
    """No manifest found, or a manifest could not be parsed.

    Attributes:
        path: The offending manifest or directory, when known.
    """

    exit_code = 3

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class ConflictError(FlutterDepsError):
    """Constraints declared by local packages cannot be reconciled.

    Attributes:
        dependency: Name of the dependency the packages disagree on.
        requirements: (package name, constraint text) pairs involved.
    """

    exit_code = 4

    def __init__(self, dependency: str, requirements: Sequence[tuple[str, str]]) -> None:
        self.dependency = dependency
        self.requirements = list(requirements)
        detail = ", ".join(f"{pkg} requires '{c}'" for pkg, c in self.requirements)
        super().__init__(f"Conflicting constraints for '{dependency}': {detail}")


class MultipleConflictsError(ConflictError):
    """Several dependencies have irreconcilable constraints."""

    def __init__(self, conflicts: Sequence[ConflictError]) -> None:
        self.conflicts = list(conflicts)
        first = self.conflicts[0]
        super().__init__(first.dependency, first.requirements)
        self.args = ("\n".join(str(c) for c in self.conflicts),)


class ApplyError(FlutterDepsError):
    """A manifest could not be written."""

    exit_code = 5

    def __init__(self, package: str, cause: BaseException | str) -> None:
        self.package = package
        super().__init__(f"Failed to update {package}: {cause}")


class ValidationError(FlutterDepsError):
    """One or more packages failed validation after the upgrade.

    Attributes:
        results: Outcome for every validated package, not only failures.
        rolled_back: Whether the manifests were restored afterwards.
    """

    exit_code = 6

    def __init__(self, results: Sequence[ValidationResult], rolled_back: bool) -> None:
        self.results = list(results)
        self.rolled_back = rolled_back
        failed = sorted(r.package for r in self.results if r.status == "failed")
        action = "rolled back" if rolled_back else "kept"
        super().__init__(
            f"Validation failed for {', '.join(failed)} (upgrade {action})"
        )


class ToolchainError(FlutterDepsError):
    """The Flutter/Dart toolchain is missing, failed, or produced bad output."""

    exit_code = 7


class UpgradeInterrupted(FlutterDepsError):
    """The user interrupted an upgrade.

    Attributes:
        results: Validation outcomes gathered before the interrupt, if any.
    """

    exit_code = 130

    def __init__(self, message: str, results: Sequence[ValidationResult] = ()) -> None:
        self.results = list(results)
        super().__init__(message)
