"""Policy rule storage.

Rules are stored per policy type (``p``, ``p2``, ``g``, ...) in insertion
order, without duplicates. Each type's rule list is an immutable tuple
that writers replace wholesale, so an enforce call iterating a rule list
never sees it change underneath.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

import yaml

from gatekeeper.core import PolicyError


Rule = tuple[str, ...]


def normalize_rule(rule: Sequence[Any], ptype: str | None = None) -> Rule:
    """Convert a rule to a tuple of stripped strings."""
    if isinstance(rule, str):
        raise PolicyError("A rule must be a sequence of fields, not a string", ptype=ptype)
    normalized = tuple(str(value).strip() for value in rule)
    if not normalized:
        raise PolicyError("A rule must have at least one field", ptype=ptype)
    return normalized


def rule_matches_filter(rule: Rule, field_index: int, field_values: Sequence[str]) -> bool:
    """Whether `rule` matches `field_values` starting at `field_index`.

    An empty filter value matches any field.
    """
    for offset, value in enumerate(field_values):
        if value == "":
            continue
        position = field_index + offset
        if position >= len(rule) or rule[position] != value:
            return False
    return True


class PolicyStore:
    """Ordered, duplicate-free rule sets keyed by policy type.

    Example:
        >>> store = PolicyStore()
        >>> store.add("p", ["alice", "data1", "read"])
        True
        >>> store.add("p", ["alice", "data1", "read"])
        False
        >>> store.get("p")
        [('alice', 'data1', 'read')]
    """

    def __init__(self) -> None:
        self._rules: dict[str, tuple[Rule, ...]] = {}
        self._index: dict[str, frozenset[Rule]] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def rules(self, ptype: str) -> tuple[Rule, ...]:
        """The current immutable rule tuple for `ptype`."""
        return self._rules.get(ptype, ())

    def get(self, ptype: str) -> list[Rule]:
        return list(self.rules(ptype))

    def has(self, ptype: str, rule: Sequence[Any]) -> bool:
        return normalize_rule(rule, ptype) in self._index.get(ptype, frozenset())

    def filter(self, ptype: str, field_index: int, *field_values: str) -> list[Rule]:
        return [
            rule for rule in self.rules(ptype)
            if rule_matches_filter(rule, field_index, field_values)
        ]

    def field_values(self, ptype: str, field_index: int) -> list[str]:
        """Distinct values of one field, in first-seen order."""
        seen: dict[str, None] = {}
        for rule in self.rules(ptype):
            if field_index < len(rule):
                seen.setdefault(rule[field_index], None)
        return list(seen)

    def ptypes(self) -> list[str]:
        return [ptype for ptype, rules in self._rules.items() if rules]

    def count(self, ptype: str | None = None) -> int:
        if ptype is not None:
            return len(self.rules(ptype))
        return sum(len(rules) for rules in self._rules.values())

    def __contains__(self, ptype: object) -> bool:
        return bool(self._rules.get(ptype))  # type: ignore[call-overload]

    def __iter__(self) -> Iterator[tuple[str, Rule]]:
        for ptype, rules in list(self._rules.items()):
            for rule in rules:
                yield ptype, rule

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _publish(self, ptype: str, rules: Iterable[Rule]) -> None:
        rules = tuple(rules)
        self._rules[ptype] = rules
        self._index[ptype] = frozenset(rules)

    def add(self, ptype: str, rule: Sequence[Any]) -> bool:
        """Append a rule. Returns False if it is already present."""
        normalized = normalize_rule(rule, ptype)
        with self._lock:
            if normalized in self._index.get(ptype, frozenset()):
                return False
            self._publish(ptype, self.rules(ptype) + (normalized,))
            return True

    def add_many(self, ptype: str, rules: Iterable[Sequence[Any]]) -> bool:
        """Append rules all-or-nothing: nothing is added if any already exists."""
        normalized = list(dict.fromkeys(normalize_rule(rule, ptype) for rule in rules))
        with self._lock:
            existing = self._index.get(ptype, frozenset())
            if not normalized or any(rule in existing for rule in normalized):
                return False
            self._publish(ptype, self.rules(ptype) + tuple(normalized))
            return True

    def remove(self, ptype: str, rule: Sequence[Any]) -> bool:
        """Remove a rule. Returns False if it is absent."""
        normalized = normalize_rule(rule, ptype)
        with self._lock:
            if normalized not in self._index.get(ptype, frozenset()):
                return False
            self._publish(ptype, (r for r in self.rules(ptype) if r != normalized))
            return True

    def remove_many(self, ptype: str, rules: Iterable[Sequence[Any]]) -> bool:
        """Remove rules all-or-nothing: nothing is removed if any is absent."""
        targets = {normalize_rule(rule, ptype) for rule in rules}
        with self._lock:
            existing = self._index.get(ptype, frozenset())
            if not targets or not targets <= existing:
                return False
            self._publish(ptype, (r for r in self.rules(ptype) if r not in targets))
            return True

    def remove_filtered(self, ptype: str, field_index: int, *field_values: str) -> list[Rule]:
        """Remove every rule matching the filter and return them."""
        if not field_values:
            return []
        with self._lock:
            removed = self.filter(ptype, field_index, *field_values)
            if removed:
                doomed = set(removed)
                self._publish(ptype, (r for r in self.rules(ptype) if r not in doomed))
            return removed

    def update(self, ptype: str, old_rule: Sequence[Any], new_rule: Sequence[Any]) -> bool:
        """Replace `old_rule` in place. The old rule must exist and the new one must not."""
        return self.update_many(ptype, [old_rule], [new_rule])

    def update_many(
        self,
        ptype: str,
        old_rules: Sequence[Sequence[Any]],
        new_rules: Sequence[Sequence[Any]],
    ) -> bool:
        if len(old_rules) != len(new_rules):
            raise PolicyError(
                f"Cannot update {len(old_rules)} rules with {len(new_rules)} replacements",
                ptype=ptype,
            )
        olds = [normalize_rule(rule, ptype) for rule in old_rules]
        news = [normalize_rule(rule, ptype) for rule in new_rules]
        with self._lock:
            existing = self._index.get(ptype, frozenset())
            if any(rule not in existing for rule in olds):
                return False
            if any(rule in existing for rule in news) or len(set(news)) != len(news):
                return False
            replacements = dict(zip(olds, news))
            self._publish(ptype, (replacements.get(r, r) for r in self.rules(ptype)))
            return True

    @staticmethod
    def _prepare(
        rules_by_type: Mapping[str, Iterable[Sequence[Any]]],
    ) -> dict[str, tuple[Rule, ...]]:
        return {
            ptype: tuple(dict.fromkeys(normalize_rule(rule, ptype) for rule in rules))
            for ptype, rules in rules_by_type.items()
        }

    def load(self, rules_by_type: Mapping[str, Iterable[Sequence[Any]]]) -> None:
        """Replace the contents for every type in `rules_by_type`."""
        prepared = self._prepare(rules_by_type)
        with self._lock:
            for ptype, rules in prepared.items():
                self._publish(ptype, rules)

    def replace(self, rules_by_type: Mapping[str, Iterable[Sequence[Any]]]) -> None:
        """Replace the whole store with `rules_by_type` in a single swap.

        Types absent from `rules_by_type` end up empty. Readers see either
        the previous contents or the new ones, never an empty store in
        between.
        """
        rules = self._prepare(rules_by_type)
        index = {ptype: frozenset(ptype_rules) for ptype, ptype_rules in rules.items()}
        with self._lock:
            self._rules, self._index = rules, index

    def clear(self) -> None:
        with self._lock:
            self._rules = {}
            self._index = {}


def read_policy_document(
    path: str | Path,
) -> tuple[dict[str, list[list[str]]], dict[str, list[list[str]]]]:
    """Read a YAML/JSON policy document.

    The document holds two mappings of type to rule lists:

        policies:
          p:
            - [alice, data1, read]
        grouping_policies:
          g:
            - [alice, admin]

    Returns:
        A ``(policies, grouping_policies)`` pair.
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content) or {}
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise PolicyError(f"Failed to load policy from {path}: {e}") from e

    if not isinstance(data, Mapping):
        raise PolicyError(f"Policy document {path} must contain a mapping")

    sections = []
    for key in ("policies", "grouping_policies"):
        section = data.get(key) or {}
        if not isinstance(section, Mapping):
            raise PolicyError(f"'{key}' in {path} must map types to rule lists")
        for ptype, rules in section.items():
            if not isinstance(rules, list) or not all(isinstance(rule, list) for rule in rules):
                raise PolicyError(f"Rules for '{ptype}' in {path} must be a list of lists", ptype=ptype)
        sections.append({
            str(ptype): [[str(value) for value in rule] for rule in rules]
            for ptype, rules in section.items()
        })
    return sections[0], sections[1]
