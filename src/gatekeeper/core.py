"""Core types, exceptions, and interfaces for Gatekeeper.

This module provides the foundational types shared by every part of the
enforcement engine: effect enums, the exception hierarchy, the per-row
match outcome, and the abstract Role Manager interface.

Design Principles:
    - Deny by default: anything other than an explicit allow is a denial
    - Containment: a malformed policy row never aborts a whole decision
    - Snapshots: enforcement reads immutable state, writers swap it
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence


# =============================================================================
# Enums
# =============================================================================


class Effect(Enum):
    """Effect carried by a policy row (`p.eft`)."""

    ALLOW = "allow"
    DENY = "deny"
    INDETERMINATE = "indeterminate"

    @classmethod
    def from_value(cls, value: Any) -> "Effect":
        """Map a raw `eft` cell to an Effect.

        Anything that is not `allow` or `deny` is indeterminate.
        """
        text = str(value).strip().lower()
        if text == "allow":
            return cls.ALLOW
        if text == "deny":
            return cls.DENY
        return cls.INDETERMINATE


class EffectResult(Enum):
    """Verdict produced by the Effect Evaluator."""

    ALLOW = "allow"
    DENY = "deny"
    INDETERMINATE = "indeterminate"

    def __bool__(self) -> bool:
        return self is EffectResult.ALLOW


# =============================================================================
# Exceptions
# =============================================================================


class GatekeeperError(Exception):
    """Base exception for Gatekeeper errors."""

    def __init__(
        self,
        message: str,
        ptype: str | None = None,
        expression: str | None = None,
    ) -> None:
        self.ptype = ptype
        self.expression = expression
        super().__init__(message)


class ModelError(GatekeeperError):
    """Raised when a model definition cannot be loaded."""
    pass


class ModelValidationError(ModelError):
    """Raised when a model is structurally invalid."""
    pass


class ExpressionError(GatekeeperError):
    """Base class for matcher expression errors."""
    pass


class ExpressionSyntaxError(ExpressionError):
    """Raised when a matcher uses syntax outside the supported grammar."""
    pass


class ExpressionEvaluationError(ExpressionError):
    """Raised when a compiled matcher clause cannot be evaluated."""
    pass


class UnknownFunctionError(ExpressionEvaluationError):
    """Raised when a matcher calls a function that is not registered."""
    pass


class InvalidRequestError(GatekeeperError):
    """Raised when a request does not fit the declared request schema."""
    pass


class RoleManagerError(GatekeeperError):
    """Raised on invalid Role Manager configuration."""
    pass


class PolicyError(GatekeeperError):
    """Raised when a policy operation is given an unusable rule."""
    pass


# =============================================================================
# Core Data Types
# =============================================================================


@dataclass(frozen=True)
class MatchOutcome:
    """Result of evaluating the matcher against one policy row.

    Outcomes are ephemeral: produced during a single enforce call and
    handed to the Effect Evaluator, never stored.

    Example:
        >>> outcome = MatchOutcome(
        ...     index=0,
        ...     rule=("alice", "data1", "read"),
        ...     matched=True,
        ...     effect=Effect.ALLOW,
        ...     subject="alice",
        ... )
    """

    index: int
    rule: tuple[str, ...]
    matched: bool
    effect: Effect = Effect.ALLOW
    subject: str = ""
    error: str | None = None

    def describe(self, ptype: str = "p") -> str:
        """Human-readable trace line for this outcome."""
        rule = ", ".join(self.rule)
        if self.error is not None:
            return f"{ptype}[{self.index}] ({rule}): error: {self.error}"
        if self.matched:
            return f"{ptype}[{self.index}] ({rule}): matched, effect={self.effect.value}"
        return f"{ptype}[{self.index}] ({rule}): not matched"


@dataclass(frozen=True)
class EnforceContext:
    """Selects which request, policy, effect, and matcher sections to use.

    Models may declare several shapes (`r2`, `p2`, `e2`, `m2`); the
    default context uses the first of each.
    """

    rtype: str = "r"
    ptype: str = "p"
    etype: str = "e"
    mtype: str = "m"


@dataclass
class Decision:
    """Outcome of an explained enforce call."""

    allowed: bool
    result: EffectResult
    explain: list[str] = field(default_factory=list)
    request: tuple[Any, ...] = ()
    matched_rule: tuple[str, ...] | None = None
    outcomes: list[MatchOutcome] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.allowed

    def __iter__(self):
        # unpacks as (allowed, explain)
        yield self.allowed
        yield self.explain


# =============================================================================
# Interfaces
# =============================================================================


MatchingFunc = Callable[[str, str], bool]


class RoleManager(ABC):
    """Abstract interface for role hierarchy storage and queries."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every link."""
        ...

    @abstractmethod
    def add_link(self, name1: str, name2: str, domain: str = "") -> None:
        """Record that `name1` inherits `name2` within `domain`."""
        ...

    @abstractmethod
    def delete_link(self, name1: str, name2: str, domain: str = "") -> bool:
        """Remove an inheritance edge. Returns True if it existed."""
        ...

    @abstractmethod
    def has_link(self, name1: str, name2: str, domain: str = "") -> bool:
        """Check whether `name1` reaches `name2` within the depth limit."""
        ...

    @abstractmethod
    def get_roles(self, name: str, domain: str = "") -> list[str]:
        """Direct roles of `name`."""
        ...

    @abstractmethod
    def get_users(self, name: str, domain: str = "") -> list[str]:
        """Direct members of `name`."""
        ...

    def rebuild(self, links: Sequence[tuple[str, str, str]]) -> None:
        """Replace every link with `links` as `(name1, name2, domain)`."""
        self.clear()
        for name1, name2, domain in links:
            self.add_link(name1, name2, domain)

    def get_implicit_roles(self, name: str, domain: str = "") -> list[str]:
        """Every role reachable from `name`, nearest first."""
        return _closure(self.get_roles, name, domain)

    def get_implicit_users(self, name: str, domain: str = "") -> list[str]:
        """Every member that reaches `name`, nearest first."""
        return _closure(self.get_users, name, domain)

    def get_domains(self, name: str) -> list[str]:
        return []

    def get_all_domains(self) -> list[str]:
        return []


def _closure(step: Callable[[str, str], list[str]], name: str, domain: str) -> list[str]:
    result: list[str] = []
    visited = {name}
    frontier = [name]
    while frontier:
        next_frontier = []
        for current in frontier:
            for neighbour in step(current, domain):
                if neighbour not in visited:
                    visited.add(neighbour)
                    result.append(neighbour)
                    next_frontier.append(neighbour)
        frontier = next_frontier
    return result
