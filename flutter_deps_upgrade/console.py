"""Terminal output helpers.

Status output goes to stderr so stdout only ever carries the plan itself
(text or JSON) and can be piped.
"""

from __future__ import annotations

import click


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate the scan, plan, apply and validate phases.
    """
    click.echo(f"\n{'─' * 60}\n{msg}\n{'─' * 60}", err=True)


def info(msg: str) -> None:
    """Print an indented status line."""
    click.echo(f"  {msg}", err=True)


def warn(msg: str) -> None:
    click.echo(click.style(f"  Warning: {msg}", fg="yellow"), err=True)


def success(msg: str) -> None:
    click.echo(click.style(f"✓ {msg}", fg="green"), err=True)
