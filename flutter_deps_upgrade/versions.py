"""Version parsing, bumping and compatibility utilities.

Handles conversion between pub version strings and semver objects, with
special handling for incomplete version strings (e.g., "1.0" → "1.0.0"),
and implements Dart's notion of the next breaking version.
"""

from __future__ import annotations

from enum import Enum

import semver


class Compatibility(str, Enum):
    """How far an upgrade moves a dependency."""

    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"
    BREAKING_UNKNOWN = "breaking-unknown"


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Handles incomplete versions by padding with zeros:
    - "1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "1.2.3-dev.1+4" → "1.2.3-dev.1+4"

    Raises:
        ValueError: If the string is not a valid version.
    """
    return semver.Version.parse(version_str.strip(), optional_minor_and_patch=True)


def is_valid_version(version_str: str) -> bool:
    try:
        parse_version(version_str)
    except (ValueError, TypeError):
        return False
    return True


def _keep_build(old: semver.Version, new: semver.Version) -> str:
    # Flutter apps keep their build number in the build component (1.0.0+5)
    return str(new.replace(build=old.build))


def bump_patch(version_str: str) -> str:
    """Increment the patch version and return as a string.

    Build metadata is carried over; a pre-release tag is dropped.

    Examples:
        "1.2.3" → "1.2.4"
        "1.0" → "1.0.1"
        "2" → "2.0.1"
        "1.0.0+5" → "1.0.1+5"
    """
    version = parse_version(version_str)
    return _keep_build(version, version.bump_patch())


def bump_minor(version_str: str) -> str:
    version = parse_version(version_str)
    return _keep_build(version, version.bump_minor())


def bump_major(version_str: str) -> str:
    version = parse_version(version_str)
    return _keep_build(version, version.bump_major())


def bump(version_str: str, level: str) -> str:
    """Bump a version by level name ("patch", "minor" or "major")."""
    bumpers = {"patch": bump_patch, "minor": bump_minor, "major": bump_major}
    if level not in bumpers:
        raise ValueError(f"Unknown bump level: {level}")
    return bumpers[level](version_str)


def next_breaking(version: semver.Version) -> semver.Version:
    """Return the first version that is incompatible with ``version``.

    Follows pub's caret semantics: the leftmost non-zero component is the
    breaking one.

    Examples:
        1.2.3 → 2.0.0
        0.2.3 → 0.3.0
        0.0.3 → 0.0.4
    """
    if version.major > 0:
        return semver.Version(version.major + 1, 0, 0)
    if version.minor > 0:
        return semver.Version(0, version.minor + 1, 0)
    return semver.Version(0, 0, version.patch + 1)


def release_of(version: semver.Version) -> semver.Version:
    """Strip pre-release and build metadata."""
    return semver.Version(version.major, version.minor, version.patch)


def classify_change(old: str | None, new: str) -> Compatibility:
    """Classify an upgrade from ``old`` to ``new``.

    A change that reaches the next breaking version of ``old`` is major even
    when only the minor component moved (e.g. 0.2.0 → 0.3.0). Without a
    known starting version the change is "breaking-unknown".
    """
    if old is None or not is_valid_version(old):
        return Compatibility.BREAKING_UNKNOWN
    old_v = parse_version(old)
    new_v = parse_version(new)
    # A downgrade can undo anything
    if new_v < old_v:
        return Compatibility.BREAKING_UNKNOWN
    if new_v >= next_breaking(old_v):
        return Compatibility.MAJOR
    if (new_v.major, new_v.minor) != (old_v.major, old_v.minor):
        return Compatibility.MINOR
    return Compatibility.PATCH
