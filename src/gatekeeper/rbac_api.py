"""Role-based access control convenience API.

Thin helpers over the management API for the common RBAC vocabulary of
users, roles, permissions and domains. Membership queries go through the
role manager, so transitive and pattern-matched memberships are honored.

Example:
    >>> enforcer.add_role_for_user("alice", "admin")
    >>> enforcer.add_permission_for_user("admin", "data1", "read")
    >>> enforcer.get_implicit_permissions_for_user("alice")
    [['admin', 'data1', 'read']]
"""

from __future__ import annotations

from abc import ABC
from typing import TYPE_CHECKING, Sequence

from gatekeeper.core import RoleManager

if TYPE_CHECKING:
    from gatekeeper.model import Model


class RBACMixin(ABC):
    """User, role, permission and domain helpers for an enforcer."""

    _model: "Model"
    _role_managers: dict[str, RoleManager]

    def _role_manager(self, gtype: str = "g") -> RoleManager:
        return self._role_managers[gtype]

    def _domain_index(self, ptype: str = "p") -> int:
        index = self._model.field_index(ptype, "dom")
        return 1 if index is None else index

    def _sub_index(self, ptype: str = "p") -> int:
        index = self._model.field_index(ptype, "sub")
        return 0 if index is None else index

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    def get_roles_for_user(self, name: str, domain: str = "") -> list[str]:
        """Direct roles of a user."""
        return self._role_manager().get_roles(name, domain)

    def get_users_for_role(self, name: str, domain: str = "") -> list[str]:
        """Direct members of a role."""
        return self._role_manager().get_users(name, domain)

    def has_role_for_user(self, name: str, role: str, domain: str = "") -> bool:
        return role in self.get_roles_for_user(name, domain)

    def add_role_for_user(self, user: str, role: str, domain: str = "") -> bool:
        return self.add_grouping_policy(*_with_domain([user, role], domain))

    def add_roles_for_user(self, user: str, roles: Sequence[str], domain: str = "") -> bool:
        return self.add_grouping_policies([_with_domain([user, role], domain) for role in roles])

    def delete_role_for_user(self, user: str, role: str, domain: str = "") -> bool:
        return self.remove_grouping_policy(*_with_domain([user, role], domain))

    def delete_roles_for_user(self, user: str, domain: str = "") -> bool:
        if domain:
            return self.remove_filtered_grouping_policy(0, user, "", domain)
        return self.remove_filtered_grouping_policy(0, user)

    def delete_user(self, user: str) -> bool:
        """Remove the user from every grouping and policy rule."""
        removed_links = self.remove_filtered_grouping_policy(0, user)
        removed_rules = self.remove_filtered_policy(self._sub_index(), user)
        return removed_links or removed_rules

    def delete_role(self, role: str) -> bool:
        """Remove the role from every grouping rule and drop its permissions."""
        removed_links = self.remove_filtered_grouping_policy(1, role)
        removed_rules = self.remove_filtered_policy(self._sub_index(), role)
        return removed_links or removed_rules

    def get_implicit_roles_for_user(self, name: str, domain: str = "") -> list[str]:
        """Direct and inherited roles of a user, nearest first."""
        return self._role_manager().get_implicit_roles(name, domain)

    def get_implicit_users_for_role(self, name: str, domain: str = "") -> list[str]:
        """Direct and indirect members of a role, nearest first."""
        return self._role_manager().get_implicit_users(name, domain)

    # -------------------------------------------------------------------------
    # Permissions
    # -------------------------------------------------------------------------

    def delete_permission(self, *permission: str) -> bool:
        """Remove a permission from every subject holding it."""
        return self.remove_filtered_policy(self._sub_index() + 1, *permission)

    def add_permission_for_user(self, user: str, *permission: str) -> bool:
        return self.add_policy(user, *permission)

    def add_permissions_for_user(self, user: str, *permissions: Sequence[str]) -> bool:
        return self.add_policies([[user, *permission] for permission in permissions])

    def delete_permission_for_user(self, user: str, *permission: str) -> bool:
        return self.remove_policy(user, *permission)

    def delete_permissions_for_user(self, user: str) -> bool:
        return self.remove_filtered_policy(self._sub_index(), user)

    def get_permissions_for_user(self, user: str, domain: str = "") -> list[list[str]]:
        """Rules held directly by the user (not through roles)."""
        return self.get_named_permissions_for_user("p", user, domain)

    def get_named_permissions_for_user(self, ptype: str, user: str, domain: str = "") -> list[list[str]]:
        sub_index = self._sub_index(ptype)
        rules = self.get_filtered_named_policy(ptype, sub_index, user)
        if domain:
            dom_index = self._domain_index(ptype)
            rules = [rule for rule in rules if dom_index < len(rule) and rule[dom_index] == domain]
        return rules

    def has_permission_for_user(self, user: str, *permission: str) -> bool:
        return self.has_policy(user, *permission)

    def get_implicit_permissions_for_user(self, user: str, domain: str = "") -> list[list[str]]:
        """Rules held by the user or any role it inherits."""
        subjects = [user] + self.get_implicit_roles_for_user(user, domain)
        permissions: list[list[str]] = []
        for subject in subjects:
            for rule in self.get_named_permissions_for_user("p", subject, domain):
                if rule not in permissions:
                    permissions.append(rule)
        return permissions

    def get_implicit_users_for_permission(self, *permission: str) -> list[str]:
        """Users (not roles) for whom the permission is enforced as allowed."""
        roles = {rule[1] for rule in self.get_grouping_policy() if len(rule) > 1}
        candidates: dict[str, None] = {}
        for subject in self.get_all_subjects():
            candidates.setdefault(subject, None)
        for rule in self.get_grouping_policy():
            candidates.setdefault(rule[0], None)
        return [
            user for user in candidates
            if user not in roles and self.enforce(user, *permission)
        ]

    # -------------------------------------------------------------------------
    # Domains
    # -------------------------------------------------------------------------

    def get_users_for_role_in_domain(self, name: str, domain: str) -> list[str]:
        return self.get_users_for_role(name, domain)

    def get_roles_for_user_in_domain(self, name: str, domain: str) -> list[str]:
        return self.get_roles_for_user(name, domain)

    def get_permissions_for_user_in_domain(self, user: str, domain: str) -> list[list[str]]:
        return self.get_permissions_for_user(user, domain)

    def add_role_for_user_in_domain(self, user: str, role: str, domain: str) -> bool:
        return self.add_grouping_policy(user, role, domain)

    def delete_role_for_user_in_domain(self, user: str, role: str, domain: str) -> bool:
        return self.remove_grouping_policy(user, role, domain)

    def delete_roles_for_user_in_domain(self, user: str, domain: str) -> bool:
        return self.remove_filtered_grouping_policy(0, user, "", domain)

    def get_all_users_by_domain(self, domain: str) -> list[str]:
        """Subjects that appear in a grouping or policy rule of the domain."""
        users: dict[str, None] = {}
        for rule in self.get_filtered_grouping_policy(2, domain):
            users.setdefault(rule[0], None)
        sub_index, dom_index = self._sub_index(), self._domain_index()
        for rule in self.get_named_policy("p"):
            if dom_index < len(rule) and rule[dom_index] == domain:
                users.setdefault(rule[sub_index], None)
        return list(users)

    def delete_all_users_by_domain(self, domain: str) -> bool:
        """Remove every grouping and policy rule of the domain."""
        removed_links = self.remove_filtered_grouping_policy(2, domain)
        removed_rules = self.remove_filtered_named_policy("p", self._domain_index(), domain)
        return removed_links or removed_rules

    def get_domains_for_user(self, user: str) -> list[str]:
        return self._role_manager().get_domains(user)


def _with_domain(rule: list[str], domain: str) -> list[str]:
    return rule + [domain] if domain else rule
