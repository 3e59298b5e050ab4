"""Workspace scanner: find pubspec packages and detect monorepo layout.

Detection order:
1. A root pubspec.yaml with a ``workspace:`` list (pub workspaces)
2. A root melos.yaml with a ``packages:`` list
3. A bounded recursive search for pubspec.yaml files

Manifests are parsed concurrently. A malformed manifest is skipped with a
warning, or aborts the scan in strict mode.
"""

from __future__ import annotations

import fnmatch
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import yaml

from .config import UpgradeConfig
from .console import info, step, warn
from .constraints import is_versioned
from .errors import ScanError
from .graph import topo_sort
from .models import Package, PackageKind, SkippedManifest, Workspace
from .pubspec import (
    LOCKFILE_NAME,
    MANIFEST_NAME,
    MELOS_NAME,
    get_package_name,
    get_package_version,
    get_workspace_member_globs,
    is_flutter_package,
    is_unpublished,
    load_lockfile,
    load_melos_globs,
    load_pubspec,
    parse_dependencies,
)

# Directories that never contain workspace packages
SKIP_DIRS = frozenset({"build", "node_modules", "Pods"})


def scan_workspace(root: Path, config: UpgradeConfig) -> Workspace:
    """Scan ``root`` and build a Workspace.

    Raises:
        ScanError: If the root does not exist, no manifest is found, or
            (in strict mode) a manifest or lock file is malformed, or local packages
            depend on each other in a cycle.
    """
    step("Scanning workspace")

    root = root.resolve()
    if not root.is_dir():
        raise ScanError("Not a directory", path=root)

    layout, manifests = find_manifests(root, config)
    if not manifests:
        raise ScanError(f"No {MANIFEST_NAME} found", path=root)

    # First pass: parse every manifest in parallel
    with ThreadPoolExecutor(max_workers=config.workers) as pool:
        results = list(pool.map(_load_package, manifests))

    workspace = Workspace(root=root, layout=layout)
    for manifest, (package, error) in zip(manifests, results):
        if package is None:
            _skip(workspace, manifest, error or "unreadable manifest", config)
            continue
        if any(fnmatch.fnmatchcase(package.name, pat) for pat in config.exclude):
            info(f"{package.name}: excluded")
            continue
        if package.name in workspace.packages:
            other = workspace.packages[package.name].manifest_path
            _skip(workspace, manifest, f"duplicate package name '{package.name}' (also {other})", config)
            continue
        workspace.packages[package.name] = package

    if not workspace.packages:
        raise ScanError("No valid packages found", path=root)

    # Second pass: local edges and resolved versions
    root_lock = _read_lock(root / LOCKFILE_NAME, config)
    local_names = set(workspace.packages)
    for pkg in workspace.packages.values():
        own = root_lock if pkg.path == root else _read_lock(pkg.path / LOCKFILE_NAME, config)
        if own is None:
            # Unreadable lock file: nothing is known to be resolved
            lock: dict[str, str] = {}
        else:
            lock = own or root_lock or {}
        for dep in pkg.dependencies:
            if dep.name in local_names and dep.name != pkg.name:
                if dep.name not in pkg.local_deps:
                    pkg.local_deps.append(dep.name)
            elif is_versioned(dep.constraint):
                dep.current_version = lock.get(dep.name)

    try:
        topo_sort(workspace.packages)
    except RuntimeError as exc:
        raise ScanError(str(exc), path=root) from exc

    workspace.is_monorepo = len(workspace.packages) > 1 or layout in ("pub-workspace", "melos")
    if layout == "scan" and len(workspace.packages) == 1:
        workspace.layout = "single"

    kind = "monorepo" if workspace.is_monorepo else "single package"
    info(f"Detected {kind} ({workspace.layout}) at {root}")
    for name in sorted(workspace.packages):
        pkg = workspace.packages[name]
        deps = f" → [{', '.join(pkg.local_deps)}]" if pkg.local_deps else ""
        version = pkg.version or "<no version>"
        info(f"{name} {version} {pkg.kind.value} ({_relative(pkg.path, root)}){deps}")

    return workspace


def find_manifests(root: Path, config: UpgradeConfig) -> tuple[str, list[Path]]:
    """Locate manifest files and name the layout that found them.

    Returns:
        Tuple of (layout, sorted manifest paths).
    """
    root_manifest = root / MANIFEST_NAME
    if root_manifest.is_file():
        try:
            members = get_workspace_member_globs(load_pubspec(root_manifest))
        except (yaml.YAMLError, ValueError):
            # Reported when the manifest itself is parsed
            members = []
        if members:
            return "pub-workspace", [root_manifest, *_expand_members(root, members)]

    melos = root / MELOS_NAME
    if melos.is_file():
        try:
            globs = load_melos_globs(melos)
        except yaml.YAMLError as exc:
            raise ScanError(f"Invalid {MELOS_NAME}: {exc}", path=melos) from exc
        if globs:
            return "melos", _expand_members(root, globs)

    return "scan", _walk(root, config.max_depth)


def _expand_members(root: Path, patterns: list[str]) -> list[Path]:
    found: set[Path] = set()
    for pattern in patterns:
        for match in root.glob(pattern.rstrip("/")):
            manifest = match / MANIFEST_NAME
            if match.is_dir() and manifest.is_file():
                found.add(manifest)
    return sorted(found)


def _walk(root: Path, max_depth: int) -> list[Path]:
    """Find manifests at most ``max_depth`` directory levels below root."""
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        depth = len(current.relative_to(root).parts)
        if MANIFEST_NAME in filenames:
            found.append(current / MANIFEST_NAME)
        if depth >= max_depth:
            dirnames[:] = []
            continue
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in SKIP_DIRS
        )
    return sorted(found)


def _load_package(manifest: Path) -> tuple[Package | None, str | None]:
    """Parse one manifest. Errors are returned, not raised, so one bad file
    does not cancel the rest of the pool."""
    try:
        doc = load_pubspec(manifest)
        name = get_package_name(doc)
        if not name:
            return None, "missing 'name'"
        directory = manifest.parent
        unpublished = is_unpublished(doc)
        kind = (
            PackageKind.APP
            if unpublished or (directory / "lib" / "main.dart").is_file()
            else PackageKind.LIBRARY
        )
        return (
            Package(
                name=name,
                path=directory,
                manifest_path=manifest,
                version=get_package_version(doc),
                kind=kind,
                is_flutter=is_flutter_package(doc),
                dependencies=parse_dependencies(doc),
            ),
            None,
        )
    except (OSError, UnicodeDecodeError, yaml.YAMLError, ValueError) as exc:
        return None, str(exc)


def _read_lock(path: Path, config: UpgradeConfig) -> dict[str, str] | None:
    """Resolved versions from a lock file, or None when it cannot be read.

    A lock file left with merge-conflict markers is the usual culprit.
    """
    try:
        return load_lockfile(path)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        if config.strict:
            raise ScanError(f"Unreadable {LOCKFILE_NAME}: {exc}", path=path) from exc
        warn(f"ignoring {path}: {exc}")
        return None


def _skip(workspace: Workspace, manifest: Path, reason: str, config: UpgradeConfig) -> None:
    if config.strict:
        raise ScanError(reason, path=manifest)
    warn(f"skipping {manifest}: {reason}")
    workspace.skipped.append(SkippedManifest(path=manifest, reason=reason))


def _relative(path: Path, root: Path) -> str:
    rel = path.relative_to(root)
    return "." if rel == Path(".") else str(rel)
