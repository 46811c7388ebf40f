"""Policy management API.

Read and write access to policy and grouping rules on an enforcer.
Grouping writes update the rule store and the role graph inside the same
writer critical section, so a decision never sees one without the other.

Conventions:
    - ``*_policy`` methods act on ``p`` and ``*_grouping_policy`` on ``g``;
      the ``*_named_*`` variants take the type explicitly
    - add returns False on duplicates; batch adds are all-or-nothing
    - remove returns False when the rule is absent
    - filtered methods match from ``field_index`` onward, with ``""``
      matching any value
"""

from __future__ import annotations

import threading
from abc import ABC
from typing import Any, Callable, Sequence

from gatekeeper.config import EnforcerConfig
from gatekeeper.core import PolicyError, RoleManager
from gatekeeper.model import Model
from gatekeeper.policy import PolicyStore, Rule


def _rule_args(params: Sequence[Any]) -> list[Any]:
    # accept both add_policy("a", "b") and add_policy(["a", "b"])
    if len(params) == 1 and isinstance(params[0], (list, tuple)):
        return list(params[0])
    return list(params)


def _as_lists(rules: Sequence[Rule]) -> list[list[str]]:
    return [list(rule) for rule in rules]


class ManagementMixin(ABC):
    """Policy and grouping-policy CRUD for an enforcer."""

    _store: PolicyStore
    _lock: threading.RLock
    _model: Model
    _config: EnforcerConfig
    _role_managers: dict[str, RoleManager]
    _grouping_links: Callable[[str], list[tuple[str, str, str]]]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_policy_type(self, ptype: str) -> None:
        if not self._model.is_policy_type(ptype):
            raise PolicyError(f"Policy type '{ptype}' is not declared in the model", ptype=ptype)

    def _check_grouping_type(self, gtype: str) -> None:
        if not self._model.is_grouping_type(gtype):
            raise PolicyError(f"Grouping type '{gtype}' is not declared in the model", ptype=gtype)

    def _policy_write(self, ptype: str, write: Callable[[], Any]) -> Any:
        self._check_policy_type(ptype)
        with self._lock:
            return write()

    def _grouping_write(self, gtype: str, write: Callable[[], Any]) -> Any:
        self._check_grouping_type(gtype)
        with self._lock:
            result = write()
            if result and self._config.auto_build_role_links:
                self._role_managers[gtype].rebuild(self._grouping_links(gtype))
            return result

    def _field_index(self, ptype: str, name: str, default: int) -> int:
        index = self._model.field_index(ptype, name)
        return default if index is None else index

    # -------------------------------------------------------------------------
    # Policy reads
    # -------------------------------------------------------------------------

    def get_policy(self) -> list[list[str]]:
        return self.get_named_policy("p")

    def get_named_policy(self, ptype: str) -> list[list[str]]:
        return _as_lists(self._store.get(ptype))

    def get_filtered_policy(self, field_index: int, *field_values: str) -> list[list[str]]:
        return self.get_filtered_named_policy("p", field_index, *field_values)

    def get_filtered_named_policy(
        self, ptype: str, field_index: int, *field_values: str
    ) -> list[list[str]]:
        return _as_lists(self._store.filter(ptype, field_index, *field_values))

    def has_policy(self, *params: Any) -> bool:
        return self.has_named_policy("p", *params)

    def has_named_policy(self, ptype: str, *params: Any) -> bool:
        return self._store.has(ptype, _rule_args(params))

    def get_all_subjects(self) -> list[str]:
        return self.get_all_named_subjects("p")

    def get_all_named_subjects(self, ptype: str) -> list[str]:
        return self._store.field_values(ptype, self._field_index(ptype, "sub", 0))

    def get_all_objects(self) -> list[str]:
        return self.get_all_named_objects("p")

    def get_all_named_objects(self, ptype: str) -> list[str]:
        return self._store.field_values(ptype, self._field_index(ptype, "obj", 1))

    def get_all_actions(self) -> list[str]:
        return self.get_all_named_actions("p")

    def get_all_named_actions(self, ptype: str) -> list[str]:
        return self._store.field_values(ptype, self._field_index(ptype, "act", 2))

    # -------------------------------------------------------------------------
    # Grouping reads
    # -------------------------------------------------------------------------

    def get_grouping_policy(self) -> list[list[str]]:
        return self.get_named_grouping_policy("g")

    def get_named_grouping_policy(self, gtype: str) -> list[list[str]]:
        return _as_lists(self._store.get(gtype))

    def get_filtered_grouping_policy(self, field_index: int, *field_values: str) -> list[list[str]]:
        return self.get_filtered_named_grouping_policy("g", field_index, *field_values)

    def get_filtered_named_grouping_policy(
        self, gtype: str, field_index: int, *field_values: str
    ) -> list[list[str]]:
        return _as_lists(self._store.filter(gtype, field_index, *field_values))

    def has_grouping_policy(self, *params: Any) -> bool:
        return self.has_named_grouping_policy("g", *params)

    def has_named_grouping_policy(self, gtype: str, *params: Any) -> bool:
        return self._store.has(gtype, _rule_args(params))

    def get_all_roles(self) -> list[str]:
        return self.get_all_named_roles("g")

    def get_all_named_roles(self, gtype: str) -> list[str]:
        return self._store.field_values(gtype, 1)

    def get_all_domains(self) -> list[str]:
        """Every domain appearing in the ``g`` role graph."""
        role_manager = self._role_managers.get("g")
        if role_manager is None:
            return []
        return [domain for domain in role_manager.get_all_domains() if domain]

    # -------------------------------------------------------------------------
    # Policy writes
    # -------------------------------------------------------------------------

    def add_policy(self, *params: Any) -> bool:
        return self.add_named_policy("p", *params)

    def add_policies(self, rules: Sequence[Sequence[Any]]) -> bool:
        return self.add_named_policies("p", rules)

    def add_named_policy(self, ptype: str, *params: Any) -> bool:
        rule = _rule_args(params)
        return self._policy_write(ptype, lambda: self._store.add(ptype, rule))

    def add_named_policies(self, ptype: str, rules: Sequence[Sequence[Any]]) -> bool:
        return self._policy_write(ptype, lambda: self._store.add_many(ptype, rules))

    def remove_policy(self, *params: Any) -> bool:
        return self.remove_named_policy("p", *params)

    def remove_policies(self, rules: Sequence[Sequence[Any]]) -> bool:
        return self.remove_named_policies("p", rules)

    def remove_named_policy(self, ptype: str, *params: Any) -> bool:
        rule = _rule_args(params)
        return self._policy_write(ptype, lambda: self._store.remove(ptype, rule))

    def remove_named_policies(self, ptype: str, rules: Sequence[Sequence[Any]]) -> bool:
        return self._policy_write(ptype, lambda: self._store.remove_many(ptype, rules))

    def remove_filtered_policy(self, field_index: int, *field_values: str) -> bool:
        return self.remove_filtered_named_policy("p", field_index, *field_values)

    def remove_filtered_named_policy(self, ptype: str, field_index: int, *field_values: str) -> bool:
        return bool(self._policy_write(
            ptype, lambda: self._store.remove_filtered(ptype, field_index, *field_values)
        ))

    def update_policy(self, old_rule: Sequence[Any], new_rule: Sequence[Any]) -> bool:
        return self.update_named_policy("p", old_rule, new_rule)

    def update_policies(
        self, old_rules: Sequence[Sequence[Any]], new_rules: Sequence[Sequence[Any]]
    ) -> bool:
        return self.update_named_policies("p", old_rules, new_rules)

    def update_named_policy(self, ptype: str, old_rule: Sequence[Any], new_rule: Sequence[Any]) -> bool:
        return self._policy_write(ptype, lambda: self._store.update(ptype, old_rule, new_rule))

    def update_named_policies(
        self,
        ptype: str,
        old_rules: Sequence[Sequence[Any]],
        new_rules: Sequence[Sequence[Any]],
    ) -> bool:
        return self._policy_write(
            ptype, lambda: self._store.update_many(ptype, old_rules, new_rules)
        )

    # -------------------------------------------------------------------------
    # Grouping writes
    # -------------------------------------------------------------------------

    def add_grouping_policy(self, *params: Any) -> bool:
        return self.add_named_grouping_policy("g", *params)

    def add_grouping_policies(self, rules: Sequence[Sequence[Any]]) -> bool:
        return self.add_named_grouping_policies("g", rules)

    def add_named_grouping_policy(self, gtype: str, *params: Any) -> bool:
        rule = _rule_args(params)
        return self._grouping_write(gtype, lambda: self._store.add(gtype, rule))

    def add_named_grouping_policies(self, gtype: str, rules: Sequence[Sequence[Any]]) -> bool:
        return self._grouping_write(gtype, lambda: self._store.add_many(gtype, rules))

    def remove_grouping_policy(self, *params: Any) -> bool:
        return self.remove_named_grouping_policy("g", *params)

    def remove_grouping_policies(self, rules: Sequence[Sequence[Any]]) -> bool:
        return self.remove_named_grouping_policies("g", rules)

    def remove_named_grouping_policy(self, gtype: str, *params: Any) -> bool:
        rule = _rule_args(params)
        return self._grouping_write(gtype, lambda: self._store.remove(gtype, rule))

    def remove_named_grouping_policies(self, gtype: str, rules: Sequence[Sequence[Any]]) -> bool:
        return self._grouping_write(gtype, lambda: self._store.remove_many(gtype, rules))

    def remove_filtered_grouping_policy(self, field_index: int, *field_values: str) -> bool:
        return self.remove_filtered_named_grouping_policy("g", field_index, *field_values)

    def remove_filtered_named_grouping_policy(
        self, gtype: str, field_index: int, *field_values: str
    ) -> bool:
        return bool(self._grouping_write(
            gtype, lambda: self._store.remove_filtered(gtype, field_index, *field_values)
        ))

    def update_grouping_policy(self, old_rule: Sequence[Any], new_rule: Sequence[Any]) -> bool:
        return self.update_named_grouping_policy("g", old_rule, new_rule)

    def update_named_grouping_policy(
        self, gtype: str, old_rule: Sequence[Any], new_rule: Sequence[Any]
    ) -> bool:
        return self._grouping_write(gtype, lambda: self._store.update(gtype, old_rule, new_rule))

    def clear_policy(self) -> None:
        """Remove every policy and grouping rule."""
        with self._lock:
            self._store.clear()
            if self._config.auto_build_role_links:
                for role_manager in self._role_managers.values():
                    role_manager.clear()
