"""Structured model definitions.

A Model is the immutable, already-parsed form of a Casbin model: the
request and policy schemas, the grouping (role) definitions, the policy
effect selectors and the matcher expressions. It is built once and
replaced wholesale when the definition changes.

The INI model-file syntax is not parsed here. Models are built directly
in code or from a structured YAML/JSON document:

    >>> model = Model.from_dict({
    ...     "request": {"r": "sub, obj, act"},
    ...     "policy": {"p": "sub, obj, act"},
    ...     "role": {"g": "_, _"},
    ...     "policy_effect": {"e": "some(where (p.eft == allow))"},
    ...     "matchers": {"m": "g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act"},
    ... })
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from gatekeeper.core import ModelError, ModelValidationError


# Section aliases: short names and the Casbin section names.
_SECTION_ALIASES = {
    "request": ("request", "request_definition"),
    "policy": ("policy", "policy_definition"),
    "role": ("role", "role_definition"),
    "policy_effect": ("policy_effect", "effect"),
    "matchers": ("matchers", "matcher"),
}

DEFAULT_EFFECT = "some(where (p.eft == allow))"


def _split_tokens(value: str | Sequence[str]) -> tuple[str, ...]:
    if isinstance(value, str):
        tokens = [token.strip() for token in value.split(",")]
    else:
        tokens = [str(token).strip() for token in value]
    return tuple(token for token in tokens if token)


@dataclass(frozen=True)
class RoleDefinition:
    """A grouping relation such as `g = _, _` or `g = _, _, _`.

    With three or more fields the last one is the domain.
    """

    name: str
    arity: int = 2

    def __post_init__(self) -> None:
        if self.arity < 2:
            raise ModelValidationError(
                f"Role definition '{self.name}' needs at least two fields",
                ptype=self.name,
            )

    @property
    def has_domain(self) -> bool:
        return self.arity >= 3

    @property
    def domain_index(self) -> int | None:
        return self.arity - 1 if self.has_domain else None


@dataclass(frozen=True)
class Model:
    """Immutable loaded model configuration."""

    request: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    policy: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    role: Mapping[str, RoleDefinition] = field(default_factory=dict)
    policy_effect: Mapping[str, str] = field(default_factory=dict)
    matchers: Mapping[str, str] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def matcher(self) -> str:
        """The primary matcher expression (`m`)."""
        return self.matchers.get("m", "")

    @property
    def effect(self) -> str:
        """The primary policy-effect selector (`e`)."""
        return self.policy_effect.get("e", DEFAULT_EFFECT)

    def request_tokens(self, rtype: str = "r") -> tuple[str, ...]:
        return self.request.get(rtype, ())

    def policy_tokens(self, ptype: str = "p") -> tuple[str, ...]:
        return self.policy.get(ptype, ())

    def field_index(self, ptype: str, name: str) -> int | None:
        """Position of `name` in the declared schema of `ptype`."""
        tokens = self.policy.get(ptype, ())
        if name in tokens:
            return tokens.index(name)
        return None

    def is_grouping_type(self, ptype: str) -> bool:
        return ptype in self.role

    def is_policy_type(self, ptype: str) -> bool:
        return ptype in self.policy

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """Check that the required sections are present.

        Raises:
            ModelValidationError: If `r`, `p`, `e` or `m` is missing or
                a schema is empty.
        """
        if "r" not in self.request:
            raise ModelValidationError("Model is missing request definition 'r'")
        if "p" not in self.policy:
            raise ModelValidationError("Model is missing policy definition 'p'")
        if "e" not in self.policy_effect:
            raise ModelValidationError("Model is missing policy effect 'e'")
        if not self.matchers.get("m"):
            raise ModelValidationError("Model is missing matcher 'm'")

        for name, tokens in {**self.request, **self.policy}.items():
            if not tokens:
                raise ModelValidationError(f"Definition '{name}' declares no fields", ptype=name)
            if len(set(tokens)) != len(tokens):
                raise ModelValidationError(f"Definition '{name}' repeats a field", ptype=name)

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Model":
        """Create a model from a structured mapping.

        Section keys may use either the short names (`request`, `policy`,
        `role`, `policy_effect`, `matchers`) or the Casbin section names
        (`request_definition`, `policy_definition`, `role_definition`).
        Field lists may be comma-separated strings or lists.
        """
        if not isinstance(data, Mapping):
            raise ModelError(f"Model document must be a mapping, got {type(data).__name__}")

        sections: dict[str, Mapping[str, Any]] = {}
        for section, aliases in _SECTION_ALIASES.items():
            for alias in aliases:
                if alias in data:
                    value = data[alias] or {}
                    if not isinstance(value, Mapping):
                        raise ModelError(f"Section '{alias}' must be a mapping")
                    sections[section] = value
                    break
            else:
                sections[section] = {}

        request = {key: _split_tokens(value) for key, value in sections["request"].items()}
        policy = {key: _split_tokens(value) for key, value in sections["policy"].items()}
        role = {
            key: RoleDefinition(name=key, arity=len(_split_tokens(value)))
            for key, value in sections["role"].items()
        }
        policy_effect = {key: str(value).strip() for key, value in sections["policy_effect"].items()}
        matchers = {key: str(value).strip() for key, value in sections["matchers"].items()}

        model = cls(
            request=request,
            policy=policy,
            role=role,
            policy_effect=policy_effect,
            matchers=matchers,
        )
        model.validate()
        return model

    @classmethod
    def from_file(cls, path: str | Path) -> "Model":
        """Load a model from a YAML or JSON document."""
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ModelError(f"Failed to read model file {path}: {e}") from e

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(content)
            else:
                data = yaml.safe_load(content) or {}
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ModelError(f"Failed to parse model file {path}: {e}") from e

        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the structured document form."""
        return {
            "request": {key: ", ".join(tokens) for key, tokens in self.request.items()},
            "policy": {key: ", ".join(tokens) for key, tokens in self.policy.items()},
            "role": {key: ", ".join(["_"] * rd.arity) for key, rd in self.role.items()},
            "policy_effect": dict(self.policy_effect),
            "matchers": dict(self.matchers),
        }
