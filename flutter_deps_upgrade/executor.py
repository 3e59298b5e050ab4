"""Upgrade executor: apply a plan, validate it, roll it back.

An ``UpgradeRun`` owns one plan and moves through

    planned → applied → validated
                      ↘ rolled-back
    planned → abandoned

Every manifest write goes through ``atomic_write``, so a manifest is either
fully rewritten or untouched, even if the process dies mid-write.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

import yaml

from .config import UpgradeConfig
from .console import info, step, success, warn
from .errors import ApplyError, ToolchainError, UpgradeInterrupted, ValidationError
from .graph import dependents_closure, topo_sort
from .models import (
    PackageDiff,
    PlanState,
    UpgradePlan,
    ValidationResult,
    ValidationStatus,
    Workspace,
)
from .pubspec import LOCKFILE_NAME, render_pubspec_update
from .toolchain import Toolchain


@contextmanager
def atomic_write(path: Path) -> Iterator[BinaryIO]:
    """Open a temporary file next to ``path`` that replaces it on success.

    The temporary file lives in the same directory so ``os.replace`` is an
    atomic rename. If the block raises (or the process is interrupted) the
    temporary file is deleted and ``path`` keeps its old content.

    Example:
        with atomic_write(manifest) as fh:
            fh.write(new_bytes)
    """
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        if path.exists():
            shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def write_bytes_atomic(path: Path, data: bytes) -> None:
    with atomic_write(path) as fh:
        fh.write(data)


def manifest_edits(diff: PackageDiff) -> dict[tuple[str, ...], str]:
    """Translate a package diff into pubspec scalar edits."""
    edits: dict[tuple[str, ...], str] = {
        (change.section.value, change.name): change.new_constraint for change in diff.changes
    }
    if diff.version is not None:
        edits[("version",)] = diff.version.new
    return edits


class UpgradeRun:
    """Apply, validate and roll back one upgrade plan.

    Args:
        workspace: The workspace the plan was computed for.
        plan: The plan to execute. It is applied at most once.
        toolchain: Used for validation.
        config: Worker count, test and failure-handling settings.
        confirm: Asked whether to roll back when ``on_failure`` is "ask".
    """

    def __init__(
        self,
        workspace: Workspace,
        plan: UpgradePlan,
        toolchain: Toolchain,
        config: UpgradeConfig,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        self.workspace = workspace
        self.plan = plan
        self.toolchain = toolchain
        self.config = config
        self.confirm = confirm
        self.state = PlanState.PLANNED
        self.applied: list[str] = []
        self.results: list[ValidationResult] = []
        # package name → (manifest path, bytes before the upgrade)
        self.snapshots: dict[str, tuple[Path, bytes]] = {}
        # lock file → bytes before validation, None when it did not exist
        self.lock_snapshots: dict[Path, bytes | None] = {}
        self._lock = threading.Lock()

    def _require(self, *states: PlanState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RuntimeError(f"Upgrade is {self.state.value}; expected {allowed}")

    def abandon(self) -> None:
        """End an analyze-only run without touching any manifest."""
        self._require(PlanState.PLANNED)
        self.state = PlanState.ABANDONED

    def apply(self) -> list[str]:
        """Write every package diff to its manifest.

        Writes run concurrently, one task per manifest. If any write fails,
        or the user interrupts, manifests already written are restored.

        Returns:
            Names of the updated packages, in plan order.

        Raises:
            ApplyError: If a manifest could not be written.
            UpgradeInterrupted: On KeyboardInterrupt.
        """
        self._require(PlanState.PLANNED)
        diffs = self.plan.diffs
        paths = [d.manifest_path for d in diffs]
        if len(set(paths)) != len(paths):
            raise RuntimeError("Plan lists the same manifest more than once")

        step(f"Applying upgrades to {len(diffs)} package(s)")

        pool = ThreadPoolExecutor(max_workers=self.config.workers)
        futures = {pool.submit(self._apply_diff, diff): diff for diff in diffs}
        errors: list[ApplyError] = []
        try:
            for future in as_completed(futures):
                try:
                    future.result()
                except ApplyError as exc:
                    errors.append(exc)
        except KeyboardInterrupt:
            # Stop issuing writes; in-flight ones finish atomically
            pool.shutdown(wait=True, cancel_futures=True)
            restored = self._restore()
            self.state = PlanState.ROLLED_BACK
            raise UpgradeInterrupted(
                f"Interrupted while applying; restored {len(restored)} manifest(s)"
            ) from None
        finally:
            pool.shutdown(wait=True)

        if errors:
            restored = self._restore()
            self.state = PlanState.ROLLED_BACK
            if restored:
                warn(f"restored {len(restored)} manifest(s) after the failure")
            raise errors[0]

        order = [d.package for d in diffs]
        self.applied.sort(key=order.index)
        self.state = PlanState.APPLIED
        return list(self.applied)

    def _apply_diff(self, diff: PackageDiff) -> None:
        path = diff.manifest_path
        try:
            original = path.read_bytes()
            updated = render_pubspec_update(original.decode("utf-8"), manifest_edits(diff))
            write_bytes_atomic(path, updated.encode("utf-8"))
        except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as exc:
            raise ApplyError(diff.package, exc) from exc

        with self._lock:
            self.snapshots[diff.package] = (path, original)
            self.applied.append(diff.package)
        summary = ", ".join(f"{c.name} {c.new_constraint}" for c in diff.changes)
        if diff.version is not None:
            summary = f"version {diff.version.new}" + (f", {summary}" if summary else "")
        info(f"{diff.package}: {summary}")

    def validate(self) -> list[ValidationResult]:
        """Validate every upgraded package and its local dependents.

        Returns:
            Results in dependency order, when every package passed.

        Raises:
            ValidationError: If any package failed. Depending on
                ``config.on_failure`` the manifests were rolled back first.
            UpgradeInterrupted: On KeyboardInterrupt. Running checks are
                terminated and reported as unknown; manifests stay upgraded.
        """
        self._require(PlanState.APPLIED)
        affected = dependents_closure(self.workspace.packages, self.applied)
        names = [n for n in topo_sort(self.workspace.packages) if n in affected]
        self._snapshot_locks(names)

        step(f"Validating {len(names)} package(s)")

        results: dict[str, ValidationResult] = {}
        pool = ThreadPoolExecutor(max_workers=self.config.workers)
        futures: dict[Future[ValidationResult], str] = {
            pool.submit(
                self.toolchain.validate,
                self.workspace.packages[name],
                run_tests=self.config.run_tests,
            ): name
            for name in names
        }
        try:
            for future in as_completed(futures):
                name = futures[future]
                results[name] = self._result_of(future, name)
                _report(results[name])
        except KeyboardInterrupt:
            self.toolchain.cancel()
            pool.shutdown(wait=True, cancel_futures=True)
            for future, name in futures.items():
                if name not in results:
                    results[name] = self._interrupted_result(future, name)
            self.results = [results[n] for n in names]
            raise UpgradeInterrupted(
                "Interrupted during validation; manifests were left upgraded",
                self.results,
            ) from None
        finally:
            pool.shutdown(wait=True)

        self.results = [results[n] for n in names]
        if all(r.status == ValidationStatus.PASSED for r in self.results):
            self.state = PlanState.VALIDATED
            success(f"{len(self.results)} package(s) validated")
            return self.results

        if self.config.on_failure == "ask":
            rollback = self.confirm is None or self.confirm(
                "Validation failed. Roll back the upgraded manifests?"
            )
        else:
            rollback = self.config.on_failure == "rollback"
        if rollback:
            self.rollback()
        raise ValidationError(self.results, rolled_back=rollback)

    def _snapshot_locks(self, names: list[str]) -> None:
        """Remember every lock file ``pub get`` may rewrite for ``names``."""
        paths = {self.workspace.packages[name].path / LOCKFILE_NAME for name in names}
        if self.workspace.layout == "pub-workspace":
            # Members resolve into the workspace root's lock file
            paths.add(self.workspace.root / LOCKFILE_NAME)
        for path in sorted(paths):
            try:
                self.lock_snapshots[path] = path.read_bytes() if path.is_file() else None
            except OSError as exc:
                raise ApplyError(str(path), exc) from exc

    @staticmethod
    def _result_of(future: Future[ValidationResult], name: str) -> ValidationResult:
        try:
            return future.result()
        except ToolchainError as exc:
            return ValidationResult(package=name, status=ValidationStatus.FAILED, output=str(exc))

    def _interrupted_result(self, future: Future[ValidationResult], name: str) -> ValidationResult:
        if future.done() and not future.cancelled():
            exc = future.exception()
            if exc is None or isinstance(exc, ToolchainError):
                return self._result_of(future, name)
        return ValidationResult(package=name, status=ValidationStatus.UNKNOWN, output="not run")

    def rollback(self) -> list[str]:
        """Restore every upgraded manifest to its pre-upgrade bytes.

        Lock files rewritten by ``pub get`` during validation are restored
        too, and lock files it created are removed.

        Returns:
            Names of the restored packages.
        """
        self._require(PlanState.APPLIED)
        step("Rolling back")
        restored = self._restore()
        self.state = PlanState.ROLLED_BACK
        for name in restored:
            info(f"{name}: restored")
        return restored

    def _restore(self) -> list[str]:
        restored: list[str] = []
        failures: list[str] = []
        for name in sorted(self.snapshots):
            path, data = self.snapshots[name]
            try:
                write_bytes_atomic(path, data)
            except OSError as exc:
                failures.append(f"{name} ({exc})")
                continue
            restored.append(name)
        for lock_path, lock_data in sorted(self.lock_snapshots.items()):
            try:
                if lock_data is None:
                    lock_path.unlink(missing_ok=True)
                else:
                    write_bytes_atomic(lock_path, lock_data)
            except OSError as exc:
                failures.append(f"{lock_path} ({exc})")
        if failures:
            raise ApplyError(", ".join(failures), "could not restore the original manifest")
        return restored


def _report(result: ValidationResult) -> None:
    if result.status == ValidationStatus.PASSED:
        info(f"{result.package}: passed")
    else:
        warn(f"{result.package}: {result.status.value}")
