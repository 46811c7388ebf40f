"""Hierarchical role manager.

The role graph maps ``domain -> member -> groups``. It is published as an
immutable snapshot: every writer builds a new snapshot under the writer
lock and swaps the reference, so readers traverse a consistent graph
without taking any lock.

Traversal rules:
    - ``has_link`` succeeds when the target is reachable in at most
      ``max_hierarchy_level`` hops (zero hops means the names are equal)
    - every traversal keeps a visited set, so cyclic input terminates
    - with a matching function, a stored name matches a queried name when
      the two are identical or ``fn(name, stored)`` holds; the same applies
      to domains with a domain matching function
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from gatekeeper.core import MatchingFunc, RoleManager, RoleManagerError

logger = logging.getLogger(__name__)


DEFAULT_MAX_HIERARCHY_LEVEL = 10

_Index = Mapping[str, Mapping[str, tuple[str, ...]]]


# =============================================================================
# Snapshot
# =============================================================================


@dataclass(frozen=True)
class RoleGraph:
    """Immutable role graph snapshot.

    ``roles`` holds the forward edges (member to groups) and ``users`` the
    reverse edges (group to members), both keyed by domain. Edge lists keep
    insertion order and hold no duplicates.
    """

    roles: _Index = field(default_factory=dict)
    users: _Index = field(default_factory=dict)

    def with_link(self, name1: str, name2: str, domain: str) -> "RoleGraph":
        if name2 in self.roles.get(domain, {}).get(name1, ()):
            return self
        return RoleGraph(
            roles=_add_edge(self.roles, domain, name1, name2),
            users=_add_edge(self.users, domain, name2, name1),
        )

    def without_link(self, name1: str, name2: str, domain: str) -> "RoleGraph":
        if name2 not in self.roles.get(domain, {}).get(name1, ()):
            return self
        return RoleGraph(
            roles=_remove_edge(self.roles, domain, name1, name2),
            users=_remove_edge(self.users, domain, name2, name1),
        )

    def link_count(self) -> int:
        return sum(len(groups) for members in self.roles.values() for groups in members.values())


def _add_edge(index: _Index, domain: str, source: str, target: str) -> _Index:
    updated = dict(index)
    members = dict(updated.get(domain, {}))
    members[source] = members.get(source, ()) + (target,)
    updated[domain] = members
    return updated


def _remove_edge(index: _Index, domain: str, source: str, target: str) -> _Index:
    updated = dict(index)
    members = dict(updated.get(domain, {}))
    remaining = tuple(name for name in members.get(source, ()) if name != target)
    if remaining:
        members[source] = remaining
    else:
        members.pop(source, None)
    if members:
        updated[domain] = members
    else:
        updated.pop(domain, None)
    return updated


def _build_graph(links: Iterable[tuple[str, str, str]]) -> RoleGraph:
    roles: dict[str, dict[str, list[str]]] = {}
    users: dict[str, dict[str, list[str]]] = {}
    for name1, name2, domain in links:
        groups = roles.setdefault(domain, {}).setdefault(name1, [])
        if name2 in groups:
            continue
        groups.append(name2)
        users.setdefault(domain, {}).setdefault(name2, []).append(name1)
    return RoleGraph(
        roles={d: {k: tuple(v) for k, v in members.items()} for d, members in roles.items()},
        users={d: {k: tuple(v) for k, v in members.items()} for d, members in users.items()},
    )


# =============================================================================
# Default Role Manager
# =============================================================================


class DefaultRoleManager(RoleManager):
    """Role manager backed by a copy-on-write role graph.

    Example:
        >>> rm = DefaultRoleManager()
        >>> rm.add_link("alice", "admin")
        >>> rm.add_link("admin", "superuser")
        >>> rm.has_link("alice", "superuser")
        True
        >>> rm.get_implicit_roles("alice")
        ['admin', 'superuser']
    """

    def __init__(self, max_hierarchy_level: int = DEFAULT_MAX_HIERARCHY_LEVEL) -> None:
        if max_hierarchy_level < 0:
            raise RoleManagerError(
                f"max_hierarchy_level must be non-negative, got {max_hierarchy_level}"
            )
        self._max_hierarchy_level = max_hierarchy_level
        self._graph = RoleGraph()
        self._matching_func: MatchingFunc | None = None
        self._matching_func_name: str | None = None
        self._domain_matching_func: MatchingFunc | None = None
        self._domain_matching_func_name: str | None = None
        self._lock = threading.RLock()

    @property
    def max_hierarchy_level(self) -> int:
        return self._max_hierarchy_level

    @property
    def graph(self) -> RoleGraph:
        """The currently published snapshot."""
        return self._graph

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def add_matching_func(self, name: str, fn: MatchingFunc) -> None:
        """Treat role names as equal when ``fn(name, stored)`` holds."""
        if not callable(fn):
            raise RoleManagerError(f"Matching function '{name}' is not callable")
        with self._lock:
            self._matching_func = fn
            self._matching_func_name = name

    def add_domain_matching_func(self, name: str, fn: MatchingFunc) -> None:
        """Treat domains as equal when ``fn(domain, stored)`` holds."""
        if not callable(fn):
            raise RoleManagerError(f"Domain matching function '{name}' is not callable")
        with self._lock:
            self._domain_matching_func = fn
            self._domain_matching_func_name = name

    # -------------------------------------------------------------------------
    # Writers
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        with self._lock:
            self._graph = RoleGraph()

    def add_link(self, name1: str, name2: str, domain: str = "") -> None:
        with self._lock:
            self._graph = self._graph.with_link(name1, name2, domain)

    def delete_link(self, name1: str, name2: str, domain: str = "") -> bool:
        with self._lock:
            graph = self._graph
            self._graph = graph.without_link(name1, name2, domain)
            return self._graph is not graph

    def rebuild(self, links: Sequence[tuple[str, str, str]]) -> None:
        """Replace the whole graph with `links` in a single swap."""
        graph = _build_graph(links)
        with self._lock:
            self._graph = graph
        logger.debug("Rebuilt role graph with %d links", graph.link_count())

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def has_link(self, name1: str, name2: str, domain: str = "") -> bool:
        if self._names_match(name1, name2):
            return True

        graph = self._graph
        visited = {name1}
        frontier = [name1]
        for _ in range(self._max_hierarchy_level):
            next_frontier: list[str] = []
            for name in frontier:
                for role in self._neighbours(graph.roles, name, domain):
                    if self._names_match(name2, role):
                        return True
                    if role not in visited:
                        visited.add(role)
                        next_frontier.append(role)
            if not next_frontier:
                break
            frontier = next_frontier
        return False

    def get_roles(self, name: str, domain: str = "") -> list[str]:
        return self._neighbours(self._graph.roles, name, domain)

    def get_users(self, name: str, domain: str = "") -> list[str]:
        return self._neighbours(self._graph.users, name, domain)

    def get_implicit_roles(self, name: str, domain: str = "") -> list[str]:
        """Every role reachable from `name`, nearest first."""
        return self._closure(self._graph.roles, name, domain)

    def get_implicit_users(self, name: str, domain: str = "") -> list[str]:
        """Every member that reaches `name`, nearest first."""
        return self._closure(self._graph.users, name, domain)

    def get_domains(self, name: str) -> list[str]:
        """Domains in which `name` holds at least one role."""
        graph = self._graph
        return [
            domain
            for domain, members in graph.roles.items()
            if any(self._names_match(name, member) for member in members)
        ]

    def get_all_domains(self) -> list[str]:
        return list(self._graph.roles)

    def print_roles(self) -> list[str]:
        """Log every link at INFO level and return the lines."""
        lines = []
        for domain, members in self._graph.roles.items():
            for member, groups in members.items():
                for group in groups:
                    prefix = f"{domain}::" if domain else ""
                    lines.append(f"{prefix}{member} < {group}")
        for line in lines:
            logger.info(line)
        return lines

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _names_match(self, name: str, stored: str) -> bool:
        if name == stored:
            return True
        fn = self._matching_func
        return fn is not None and bool(fn(name, stored))

    def _domains(self, index: _Index, domain: str) -> list[str]:
        fn = self._domain_matching_func
        if fn is None:
            return [domain] if domain in index else []
        return [stored for stored in index if stored == domain or fn(domain, stored)]

    def _neighbours(self, index: _Index, name: str, domain: str) -> list[str]:
        result: list[str] = []
        seen: set[str] = set()
        matching = self._matching_func is not None
        for stored_domain in self._domains(index, domain):
            members = index[stored_domain]
            if matching:
                candidates = [members[key] for key in members if self._names_match(name, key)]
            else:
                candidates = [members.get(name, ())]
            for names in candidates:
                for neighbour in names:
                    if neighbour not in seen:
                        seen.add(neighbour)
                        result.append(neighbour)
        return result

    def _closure(self, index: _Index, name: str, domain: str) -> list[str]:
        result: list[str] = []
        visited = {name}
        queue = deque([name])
        while queue:
            current = queue.popleft()
            for neighbour in self._neighbours(index, current, domain):
                if neighbour not in visited:
                    visited.add(neighbour)
                    result.append(neighbour)
                    queue.append(neighbour)
        return result

    def __repr__(self) -> str:
        return (
            f"DefaultRoleManager(max_hierarchy_level={self._max_hierarchy_level}, "
            f"links={self._graph.link_count()}, "
            f"matching_func={self._matching_func_name!r}, "
            f"domain_matching_func={self._domain_matching_func_name!r})"
        )
