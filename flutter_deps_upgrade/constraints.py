"""Pub version constraints.

A dependency in a pubspec is declared either with a version constraint
(``any``, ``1.2.3``, ``^1.2.3``, ``>=1.0.0 <2.0.0``) or with a non-hosted
source (``path``, ``git``, ``sdk``). Each form is a variant of a tagged union
discriminated by ``kind``, so callers can handle every case explicitly.

``VersionRange`` is the set-of-versions view of a version constraint and
supports the intersection needed to reconcile constraints across packages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import reduce
from typing import Annotated, Any, Literal, Union

import semver
from pydantic import BaseModel, Field

from .versions import is_valid_version, next_breaking, parse_version, release_of


class AnyConstraint(BaseModel):
    kind: Literal["any"] = "any"


class ExactConstraint(BaseModel):
    kind: Literal["exact"] = "exact"
    version: str


class CaretConstraint(BaseModel):
    kind: Literal["caret"] = "caret"
    version: str


class RangeConstraint(BaseModel):
    """Explicit bounds such as ``>=1.0.0 <2.0.0``. Missing bounds are open."""

    kind: Literal["range"] = "range"
    min: str | None = None
    include_min: bool = True
    max: str | None = None
    include_max: bool = False


class PathSource(BaseModel):
    kind: Literal["path"] = "path"
    path: str


class GitSource(BaseModel):
    kind: Literal["git"] = "git"
    url: str
    ref: str | None = None
    path: str | None = None


class SdkSource(BaseModel):
    kind: Literal["sdk"] = "sdk"
    sdk: str


VersionConstraint = Annotated[
    Union[AnyConstraint, ExactConstraint, CaretConstraint, RangeConstraint],
    Field(discriminator="kind"),
]

Constraint = Annotated[
    Union[
        AnyConstraint,
        ExactConstraint,
        CaretConstraint,
        RangeConstraint,
        PathSource,
        GitSource,
        SdkSource,
    ],
    Field(discriminator="kind"),
]

VERSIONED_KINDS = frozenset({"any", "exact", "caret", "range"})

_RANGE_PART = re.compile(r"(>=|<=|>|<)\s*([^\s<>=]+)")


@dataclass(frozen=True)
class VersionRange:
    """A contiguous set of versions. ``None`` bounds are unbounded."""

    min: semver.Version | None = None
    max: semver.Version | None = None
    include_min: bool = True
    include_max: bool = False

    @property
    def is_empty(self) -> bool:
        if self.min is None or self.max is None:
            return False
        if self.min > self.max:
            return True
        return self.min == self.max and not (self.include_min and self.include_max)

    def allows(self, version: semver.Version) -> bool:
        if self.min is not None:
            if version < self.min or (version == self.min and not self.include_min):
                return False
        if self.max is not None:
            if version > self.max or (version == self.max and not self.include_max):
                return False
            # <2.0.0 excludes 2.0.0-dev.1 unless the bound is itself a pre-release
            if (
                not self.include_max
                and version.prerelease
                and not self.max.prerelease
                and release_of(version) == self.max
            ):
                return False
        return True

    def intersect(self, other: VersionRange) -> VersionRange:
        lo, include_lo = _tighter_min(
            (self.min, self.include_min), (other.min, other.include_min)
        )
        hi, include_hi = _tighter_max(
            (self.max, self.include_max), (other.max, other.include_max)
        )
        return VersionRange(min=lo, max=hi, include_min=include_lo, include_max=include_hi)

    def floor_only(self) -> VersionRange:
        """Drop the upper bound, keeping the lower one."""
        return VersionRange(min=self.min, include_min=self.include_min)

    def __str__(self) -> str:
        if self.is_empty:
            return "<empty>"
        parts: list[str] = []
        if self.min is not None:
            parts.append(f"{'>=' if self.include_min else '>'}{self.min}")
        if self.max is not None:
            parts.append(f"{'<=' if self.include_max else '<'}{self.max}")
        return " ".join(parts) or "any"


def _tighter_min(
    a: tuple[semver.Version | None, bool], b: tuple[semver.Version | None, bool]
) -> tuple[semver.Version | None, bool]:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] == b[0]:
        return a[0], a[1] and b[1]
    return a if a[0] > b[0] else b


def _tighter_max(
    a: tuple[semver.Version | None, bool], b: tuple[semver.Version | None, bool]
) -> tuple[semver.Version | None, bool]:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] == b[0]:
        return a[0], a[1] and b[1]
    return a if a[0] < b[0] else b


def intersect_all(ranges: list[VersionRange]) -> VersionRange:
    return reduce(VersionRange.intersect, ranges, VersionRange())


def parse_constraint(text: str | None) -> Constraint:
    """Parse a version constraint string.

    Examples:
        None / "" / "any" → AnyConstraint
        "1.2.3" → ExactConstraint
        "^1.2.3" → CaretConstraint
        ">=1.0.0 <2.0.0" → RangeConstraint

    Raises:
        ValueError: If the text is not a valid pub version constraint.
    """
    if text is None:
        return AnyConstraint()
    text = text.strip()
    if text in ("", "any"):
        return AnyConstraint()

    if text.startswith("^"):
        version = text[1:].strip()
        if not is_valid_version(version):
            raise ValueError(f"Invalid caret constraint: {text!r}")
        return CaretConstraint(version=version)

    if text[0] in "<>":
        parts = _RANGE_PART.findall(text)
        if not parts or _RANGE_PART.sub("", text).strip():
            raise ValueError(f"Invalid range constraint: {text!r}")
        ranges: list[VersionRange] = []
        for op, version in parts:
            if not is_valid_version(version):
                raise ValueError(f"Invalid version {version!r} in {text!r}")
            v = parse_version(version)
            if op.startswith(">"):
                ranges.append(VersionRange(min=v, include_min=op == ">="))
            else:
                ranges.append(VersionRange(max=v, include_max=op == "<="))
        merged = intersect_all(ranges)
        if merged.is_empty:
            raise ValueError(f"Constraint {text!r} allows no versions")
        return RangeConstraint(
            min=str(merged.min) if merged.min is not None else None,
            include_min=merged.include_min,
            max=str(merged.max) if merged.max is not None else None,
            include_max=merged.include_max,
        )

    if is_valid_version(text):
        return ExactConstraint(version=text)
    raise ValueError(f"Invalid version constraint: {text!r}")


def parse_dependency_spec(spec: Any) -> tuple[Constraint, str | None, str | None]:
    """Parse the value of a pubspec dependency entry.

    Returns:
        Tuple of (constraint, raw constraint text, hosted URL). The raw text
        is None for path/git/sdk sources.

    Raises:
        ValueError: If the entry is not a recognized dependency form.
    """
    if spec is None or isinstance(spec, (str, int, float)):
        raw = None if spec is None else str(spec)
        return parse_constraint(raw), raw, None

    if not isinstance(spec, dict):
        raise ValueError(f"Unsupported dependency declaration: {spec!r}")

    if "path" in spec:
        return PathSource(path=str(spec["path"])), None, None
    if "sdk" in spec:
        return SdkSource(sdk=str(spec["sdk"])), None, None
    if "git" in spec:
        git = spec["git"]
        if isinstance(git, dict):
            return (
                GitSource(url=str(git.get("url", "")), ref=git.get("ref"), path=git.get("path")),
                None,
                None,
            )
        return GitSource(url=str(git)), None, None

    hosted = spec.get("hosted")
    if isinstance(hosted, dict):
        hosted = hosted.get("url")
    version = spec.get("version")
    raw = None if version is None else str(version)
    return parse_constraint(raw), raw, None if hosted is None else str(hosted)


def is_versioned(constraint: Constraint) -> bool:
    """True for constraints that select versions rather than a source."""
    return constraint.kind in VERSIONED_KINDS


def render_constraint(constraint: Constraint) -> str:
    """Render a version constraint back to pubspec syntax."""
    if isinstance(constraint, AnyConstraint):
        return "any"
    if isinstance(constraint, ExactConstraint):
        return constraint.version
    if isinstance(constraint, CaretConstraint):
        return f"^{constraint.version}"
    if isinstance(constraint, RangeConstraint):
        return str(to_range(constraint))
    if isinstance(constraint, PathSource):
        return f"path: {constraint.path}"
    if isinstance(constraint, GitSource):
        return f"git: {constraint.url}" + (f"@{constraint.ref}" if constraint.ref else "")
    return f"sdk: {constraint.sdk}"


def to_range(constraint: Constraint) -> VersionRange | None:
    """Return the versions a constraint allows, or None for non-hosted sources."""
    if isinstance(constraint, AnyConstraint):
        return VersionRange()
    if isinstance(constraint, ExactConstraint):
        v = parse_version(constraint.version)
        return VersionRange(min=v, max=v, include_min=True, include_max=True)
    if isinstance(constraint, CaretConstraint):
        v = parse_version(constraint.version)
        return VersionRange(min=v, max=next_breaking(v))
    if isinstance(constraint, RangeConstraint):
        return VersionRange(
            min=parse_version(constraint.min) if constraint.min else None,
            max=parse_version(constraint.max) if constraint.max else None,
            include_min=constraint.include_min,
            include_max=constraint.include_max,
        )
    return None


def floor_of(constraint: Constraint) -> str | None:
    """Lowest version a constraint names, if it names one."""
    if isinstance(constraint, (ExactConstraint, CaretConstraint)):
        return constraint.version
    if isinstance(constraint, RangeConstraint):
        return constraint.min
    return None


def rewrite_constraint(constraint: Constraint, target: str) -> Constraint | None:
    """Move a constraint to ``target`` while keeping its style.

    - caret → ``^target``
    - exact → ``target``
    - range → ``>=target`` with the old upper bound when it still admits
      ``target``, otherwise ``<next_breaking(target)``

    Returns None for constraints that are never rewritten (``any`` and
    non-hosted sources).
    """
    if isinstance(constraint, CaretConstraint):
        return CaretConstraint(version=target)
    if isinstance(constraint, ExactConstraint):
        return ExactConstraint(version=target)
    if isinstance(constraint, RangeConstraint):
        t = parse_version(target)
        if constraint.max is None:
            return RangeConstraint(min=target)
        upper = VersionRange(
            max=parse_version(constraint.max), include_max=constraint.include_max
        )
        if upper.allows(t):
            return RangeConstraint(
                min=target, max=constraint.max, include_max=constraint.include_max
            )
        return RangeConstraint(min=target, max=str(next_breaking(t)))
    return None
