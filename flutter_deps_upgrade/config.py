"""Run configuration.

A single ``UpgradeConfig`` is built per invocation and passed explicitly to
the scanner, planner, executor and pipeline. Values come from an optional
``.flutter-deps-upgrade.yaml`` at the workspace root, overridden by
command-line options.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError

CONFIG_FILE_NAME = ".flutter-deps-upgrade.yaml"


def _default_workers() -> int:
    return os.cpu_count() or 1


class UpgradeConfig(BaseModel):
    """Settings for one scan/plan/upgrade run.

    Attributes:
        strict: Fail on the first malformed manifest or toolchain error
            instead of skipping it with a warning.
        max_depth: How many directory levels below the root to search for
            pubspec.yaml files when no workspace file lists the members.
        workers: Size of the worker pools for scanning, version queries,
            writes and validation.
        allow_breaking: Upgrade to the highest available versions, including
            releases outside the current constraints (``--all``).
        allow_prerelease: Consider pre-release versions as upgrade targets.
        only: If set, plan only these dependencies.
        ignore: Dependencies that are never upgraded.
        exclude: Glob patterns of package names to leave out of the scan.
        bump_local: Bump the version of local packages whose manifest
            changes ("none", "patch", "minor" or "major").
        flutter_bin: Executable used for Flutter packages.
        dart_bin: Executable used for pure Dart packages.
        command_timeout: Seconds before a toolchain command is killed.
        run_tests: Run package tests as part of validation.
        on_failure: What to do with the manifests when validation fails.
    """

    model_config = ConfigDict(extra="forbid")

    strict: bool = False
    max_depth: int = Field(default=5, ge=0)
    workers: int = Field(default_factory=_default_workers, ge=1)
    allow_breaking: bool = False
    allow_prerelease: bool = False
    only: list[str] = Field(default_factory=list)
    ignore: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    bump_local: Literal["none", "patch", "minor", "major"] = "none"
    flutter_bin: str = "flutter"
    dart_bin: str = "dart"
    command_timeout: float = Field(default=600.0, gt=0)
    run_tests: bool = False
    on_failure: Literal["rollback", "keep", "ask"] = "rollback"


def load_config(root: Path, **overrides: Any) -> UpgradeConfig:
    """Build the configuration for a workspace root.

    Reads ``.flutter-deps-upgrade.yaml`` from ``root`` when present, then
    applies every override that is not None (unset CLI options).

    Raises:
        ConfigError: If the file is unreadable or a value is invalid.
    """
    values: dict[str, Any] = {}
    config_path = root / CONFIG_FILE_NAME
    if config_path.is_file():
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path}: expected a mapping of settings")
        values.update({str(k).replace("-", "_"): v for k, v in data.items()})

    for key, value in overrides.items():
        if value is None:
            continue
        # Empty tuples come from unused multi-value click options
        if isinstance(value, (tuple, list)) and not value:
            continue
        values[key] = list(value) if isinstance(value, tuple) else value

    try:
        return UpgradeConfig(**values)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
