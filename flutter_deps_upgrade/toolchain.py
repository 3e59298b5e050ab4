"""Flutter/Dart toolchain boundary.

The planner and executor only talk to a ``Toolchain``: something that can
list version candidates for a package's dependencies and validate a package
after its manifest changed. ``FlutterToolchain`` implements it by running
``flutter``/``dart`` as subprocesses; tests substitute a fake.
"""

from __future__ import annotations

import json
import subprocess
import threading
from contextlib import nullcontext
from pathlib import Path
from typing import Protocol

from .config import UpgradeConfig
from .errors import ToolchainError
from .models import Package, ValidationResult, ValidationStatus

# Version fields reported per dependency by `pub outdated --json`
OUTDATED_FIELDS = ("current", "upgradable", "resolvable", "latest")


class Toolchain(Protocol):
    def version_candidates(self, package: Package) -> dict[str, list[str]]:
        """Return available versions for each dependency of ``package``."""
        ...

    def validate(self, package: Package, *, run_tests: bool = False) -> ValidationResult:
        """Check that ``package`` still resolves and builds."""
        ...

    def cancel(self) -> None:
        """Terminate running commands; later validations report unknown."""
        ...


class CommandCancelled(Exception):
    """Raised inside a toolchain command that was terminated by cancel()."""


class FlutterToolchain:
    """Toolchain backed by the ``flutter`` and ``dart`` executables."""

    def __init__(self, config: UpgradeConfig) -> None:
        self.flutter_bin = config.flutter_bin
        self.dart_bin = config.dart_bin
        self.timeout = config.command_timeout
        self._lock = threading.Lock()
        self._running: set[subprocess.Popen[str]] = set()
        self._cancelled = threading.Event()
        # Workspace members share one pubspec.lock and .dart_tool/
        self._resolve_lock = threading.Lock()

    def executable(self, package: Package) -> str:
        return self.flutter_bin if package.is_flutter else self.dart_bin

    def run(self, args: list[str], cwd: Path) -> subprocess.CompletedProcess[str]:
        """Run a command in ``cwd`` and capture its output.

        Unlike subprocess.run(), the process is tracked so cancel() can
        terminate it from another thread.

        Raises:
            ToolchainError: If the executable cannot be started or times out.
            CommandCancelled: If cancel() was called.
        """
        if self._cancelled.is_set():
            raise CommandCancelled(" ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            raise ToolchainError(f"Cannot run {args[0]}: {exc}") from exc

        with self._lock:
            self._running.add(proc)
        try:
            stdout, _ = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.communicate()
            raise ToolchainError(
                f"'{' '.join(args)}' timed out after {self.timeout:g}s"
            ) from exc
        finally:
            with self._lock:
                self._running.discard(proc)

        if self._cancelled.is_set():
            raise CommandCancelled(" ".join(args))
        return subprocess.CompletedProcess(args, proc.returncode, stdout, None)

    def version_candidates(self, package: Package) -> dict[str, list[str]]:
        """List versions reported by ``pub outdated`` for direct and dev deps.

        Raises:
            ToolchainError: If the command fails or its output is not the
                expected JSON.
        """
        args = [self.executable(package), "pub", "outdated", "--json", "--show-all"]
        try:
            result = self.run(args, package.path)
        except CommandCancelled as exc:
            raise ToolchainError(f"'{exc}' was cancelled") from exc
        if result.returncode != 0:
            raise ToolchainError(
                f"'{' '.join(args)}' failed in {package.path}:\n{result.stdout.strip()}"
            )
        return parse_outdated_json(result.stdout)

    def validate(self, package: Package, *, run_tests: bool = False) -> ValidationResult:
        """Run ``pub get``, ``analyze`` and optionally ``test`` for a package.

        Stops at the first failing command. A cancelled run reports
        ``unknown`` rather than pass or fail. ``pub get`` runs one at a time
        across threads; ``analyze`` and ``test`` run in parallel.
        """
        exe = self.executable(package)
        commands = [[exe, "pub", "get"], [exe, "analyze"]]
        if run_tests and (package.path / "test").is_dir():
            commands.append([exe, "test"])

        ran: list[str] = []
        output: list[str] = []
        for args in commands:
            ran.append(" ".join(args))
            guard = self._resolve_lock if args[1:] == ["pub", "get"] else nullcontext()
            try:
                with guard:
                    result = self.run(args, package.path)
            except CommandCancelled:
                output.append(f"$ {ran[-1]}\n<cancelled>")
                return ValidationResult(
                    package=package.name,
                    status=ValidationStatus.UNKNOWN,
                    commands=ran,
                    output="\n".join(output),
                )
            except ToolchainError as exc:
                output.append(f"$ {ran[-1]}\n{exc}")
                return ValidationResult(
                    package=package.name,
                    status=ValidationStatus.FAILED,
                    commands=ran,
                    output="\n".join(output),
                )
            output.append(f"$ {ran[-1]}\n{result.stdout.rstrip()}")
            if result.returncode != 0:
                return ValidationResult(
                    package=package.name,
                    status=ValidationStatus.FAILED,
                    commands=ran,
                    output="\n".join(output),
                )

        return ValidationResult(
            package=package.name,
            status=ValidationStatus.PASSED,
            commands=ran,
            output="\n".join(output),
        )

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            running = list(self._running)
        for proc in running:
            proc.terminate()


def parse_outdated_json(output: str) -> dict[str, list[str]]:
    """Parse ``pub outdated --json`` output into version candidates.

    Example input:
        {"packages": [{"package": "http", "kind": "direct",
                       "current": {"version": "0.13.5"},
                       "upgradable": {"version": "0.13.6"},
                       "resolvable": {"version": "1.2.0"},
                       "latest": {"version": "1.2.0"}}]}

    Returns:
        Map of dependency name → unique versions, in report order. Transitive
        dependencies are left out.

    Raises:
        ToolchainError: If the output is not the expected JSON.
    """
    # Flutter can print a banner before the JSON document
    start = output.find("{")
    try:
        data = json.loads(output[start:] if start >= 0 else output)
    except json.JSONDecodeError as exc:
        raise ToolchainError(f"Unparsable 'pub outdated' output: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("packages"), list):
        raise ToolchainError("Unexpected 'pub outdated' output: no 'packages' list")

    candidates: dict[str, list[str]] = {}
    for entry in data["packages"]:
        if not isinstance(entry, dict) or entry.get("kind") not in ("direct", "dev"):
            continue
        name = entry.get("package")
        if not name:
            continue
        versions = candidates.setdefault(str(name), [])
        for field in OUTDATED_FIELDS:
            info = entry.get(field)
            if isinstance(info, dict) and info.get("version"):
                version = str(info["version"])
                if version not in versions:
                    versions.append(version)
    return candidates
