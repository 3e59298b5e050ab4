"""pubspec.yaml reading and rewriting utilities.

Reading goes through PyYAML's safe loader. Rewriting never re-serializes the
document: the YAML node tree is composed to find the exact character span of
each scalar being changed, and only those spans are replaced. Comments,
quoting, key order and line endings are preserved, which keeps upgrade
diffs minimal and reviewable.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .constraints import parse_dependency_spec
from .models import DependencyConstraint, DependencySection

MANIFEST_NAME = "pubspec.yaml"
LOCKFILE_NAME = "pubspec.lock"
MELOS_NAME = "melos.yaml"

_PLAIN_SAFE = re.compile(r"[\w^.+\-]+")


def read_manifest_text(path: Path) -> str:
    """Read a manifest exactly as stored (no newline translation)."""
    return path.read_bytes().decode("utf-8")


def parse_pubspec(text: str) -> dict[str, Any]:
    """Parse pubspec text into a plain mapping.

    Raises:
        yaml.YAMLError: If the text is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    doc = yaml.safe_load(text)
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ValueError("pubspec.yaml must contain a mapping at the top level")
    return doc


def load_pubspec(path: Path) -> dict[str, Any]:
    return parse_pubspec(read_manifest_text(path))


def get_package_name(doc: Mapping[str, Any]) -> str | None:
    name = doc.get("name")
    return str(name) if name else None


def get_package_version(doc: Mapping[str, Any]) -> str | None:
    """Extract the declared version, or None when the pubspec has none."""
    version = doc.get("version")
    return None if version is None else str(version)


def is_flutter_package(doc: Mapping[str, Any]) -> bool:
    """Check whether the pubspec declares a Flutter SDK dependency."""
    deps = doc.get("dependencies") or {}
    flutter = deps.get("flutter") if isinstance(deps, dict) else None
    return isinstance(flutter, dict) and flutter.get("sdk") == "flutter"


def is_unpublished(doc: Mapping[str, Any]) -> bool:
    return str(doc.get("publish_to", "")).strip() == "none"


def get_workspace_member_globs(doc: Mapping[str, Any]) -> list[str]:
    """Extract member paths from a pub workspace root (``workspace:``).

    Returns an empty list when the pubspec is not a workspace root.
    """
    members = doc.get("workspace")
    if not isinstance(members, list):
        return []
    return [str(m) for m in members]


def load_melos_globs(path: Path) -> list[str]:
    """Extract package globs from a melos.yaml (``packages:``)."""
    doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    packages = doc.get("packages") if isinstance(doc, dict) else None
    if not isinstance(packages, list):
        return []
    return [str(p) for p in packages]


def load_lockfile(path: Path) -> dict[str, str]:
    """Read resolved versions from a pubspec.lock.

    Returns:
        Map of package name → resolved version. Empty when the file is
        missing or has no ``packages`` section.
    """
    if not path.is_file():
        return {}
    doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    packages = doc.get("packages") if isinstance(doc, dict) else None
    if not isinstance(packages, dict):
        return {}
    versions: dict[str, str] = {}
    for name, entry in packages.items():
        if isinstance(entry, dict) and entry.get("version") is not None:
            versions[str(name)] = str(entry["version"])
    return versions


def parse_dependencies(doc: Mapping[str, Any]) -> list[DependencyConstraint]:
    """Collect dependency entries from every dependency section.

    Gathers entries from ``dependencies``, ``dev_dependencies`` and
    ``dependency_overrides``, in that order.

    Raises:
        ValueError: If a section is not a mapping or an entry is malformed.
    """
    result: list[DependencyConstraint] = []
    for section in DependencySection:
        entries = doc.get(section.value)
        if entries is None:
            continue
        if not isinstance(entries, dict):
            raise ValueError(f"'{section.value}' must be a mapping")
        for name, spec in entries.items():
            try:
                constraint, raw, hosted = parse_dependency_spec(spec)
            except ValueError as exc:
                raise ValueError(f"{section.value}.{name}: {exc}") from exc
            result.append(
                DependencyConstraint(
                    name=str(name),
                    section=section,
                    constraint=constraint,
                    raw=raw,
                    hosted=hosted,
                )
            )
    return result


def render_pubspec_update(text: str, edits: Mapping[tuple[str, ...], str]) -> str:
    """Return ``text`` with the given scalar values replaced.

    Each edit key is a path of mapping keys, e.g. ``("version",)`` or
    ``("dependencies", "http")``. When the path ends on a mapping (a hosted
    dependency), its ``version`` entry is edited instead.

    Raises:
        ValueError: If a path does not lead to a scalar, or the result does
            not read back with the intended values.
    """
    root = yaml.compose(text, Loader=yaml.SafeLoader)
    if not isinstance(root, yaml.MappingNode):
        raise ValueError("pubspec.yaml must contain a mapping at the top level")

    spans: list[tuple[int, int, str]] = []
    for keys, value in edits.items():
        node = _find_scalar_node(root, keys)
        if node is None:
            raise ValueError(f"No scalar value at {'.'.join(keys)}")
        spans.append(
            (node.start_mark.index, node.end_mark.index, _format_scalar(value, node.style))
        )

    # Replace from the end so earlier offsets stay valid
    out = text
    for start, end, replacement in sorted(spans, reverse=True):
        out = out[:start] + replacement + out[end:]

    _verify(out, edits)
    return out


def _find_scalar_node(root: yaml.Node, keys: tuple[str, ...]) -> yaml.ScalarNode | None:
    node: yaml.Node = root
    for key in keys:
        node = _child(node, key)
        if node is None:
            return None
    if isinstance(node, yaml.MappingNode):
        node = _child(node, "version")
    return node if isinstance(node, yaml.ScalarNode) else None


def _child(node: yaml.Node, key: str) -> yaml.Node | None:
    if not isinstance(node, yaml.MappingNode):
        return None
    for key_node, value_node in node.value:
        if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
            return value_node
    return None


def _format_scalar(value: str, style: str | None) -> str:
    """Render a string scalar, keeping the original quoting when there was one."""
    if style == '"':
        return json.dumps(value)
    if style == "'":
        return "'" + value.replace("'", "''") + "'"
    # Plain is only safe when YAML would still read the value back as a string
    if _PLAIN_SAFE.fullmatch(value) and isinstance(yaml.safe_load(value), str):
        return value
    return "'" + value.replace("'", "''") + "'"


def _verify(text: str, edits: Mapping[tuple[str, ...], str]) -> None:
    doc = parse_pubspec(text)
    for keys, expected in edits.items():
        node: Any = doc
        for key in keys:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, dict):
            node = node.get("version")
        if node is None or str(node) != expected:
            raise ValueError(
                f"Rewritten {'.'.join(keys)} reads back as {node!r}, expected {expected!r}"
            )
