"""Local dependency graph utilities.

Provides topological ordering of workspace packages (dependencies before
dependents) and reverse-dependency closure for working out which packages
are affected when a local package changes.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .models import Package


def topo_sort(packages: Mapping[str, Package]) -> list[str]:
    """Topologically sort packages by their local dependencies.

    Uses Kahn's algorithm to produce an order where dependencies come
    before dependents. Packages that become ready at the same time are
    sorted alphabetically for deterministic output.

    Args:
        packages: Map of package name → Package with local_deps list.

    Returns:
        List of package names in dependency order.

    Raises:
        RuntimeError: If a dependency cycle is detected.

    Example:
        If A depends on B, and B depends on C:
        topo_sort({A, B, C}) → [C, B, A]
    """
    in_degree = {n: 0 for n in packages}
    reverse_deps: dict[str, list[str]] = {n: [] for n in packages}

    for name, pkg in packages.items():
        for dep in set(pkg.local_deps):
            # Dependencies outside the mapping (excluded packages) are ignored
            if dep in packages and dep != name:
                in_degree[name] += 1
                reverse_deps[dep].append(name)

    queue = sorted(n for n, d in in_degree.items() if d == 0)
    order: list[str] = []

    while queue:
        node = queue.pop(0)
        order.append(node)
        ready: list[str] = []
        for dependent in reverse_deps[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)
        queue = sorted(queue + ready)

    if len(order) != len(packages):
        remaining = sorted(set(packages) - set(order))
        raise RuntimeError(f"Dependency cycle detected involving: {remaining}")

    return order


def reverse_dependencies(packages: Mapping[str, Package]) -> dict[str, list[str]]:
    """Map each package to the packages that depend on it directly."""
    reverse: dict[str, list[str]] = {n: [] for n in packages}
    for name, pkg in packages.items():
        for dep in pkg.local_deps:
            if dep in reverse and name not in reverse[dep]:
                reverse[dep].append(name)
    return {n: sorted(deps) for n, deps in reverse.items()}


def dependents_closure(
    packages: Mapping[str, Package], names: Iterable[str]
) -> set[str]:
    """Return ``names`` plus every package that transitively depends on them."""
    reverse = reverse_dependencies(packages)
    seen = {n for n in names if n in packages}
    queue = sorted(seen)
    while queue:
        node = queue.pop(0)
        for dependent in reverse[node]:
            if dependent not in seen:
                seen.add(dependent)
                queue.append(dependent)
    return seen
