"""Tests for model definitions."""

from __future__ import annotations

import json

import pytest

from gatekeeper.core import ModelError, ModelValidationError
from gatekeeper.model import Model, RoleDefinition


RBAC_MODEL = {
    "request": {"r": "sub, obj, act"},
    "policy": {"p": "sub, obj, act"},
    "role": {"g": "_, _"},
    "policy_effect": {"e": "some(where (p.eft == allow))"},
    "matchers": {"m": "g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act"},
}


class TestModelFromDict:
    """Tests for Model.from_dict."""

    def test_basic(self):
        """Test building the classic RBAC model."""
        model = Model.from_dict(RBAC_MODEL)

        assert model.request_tokens() == ("sub", "obj", "act")
        assert model.policy_tokens("p") == ("sub", "obj", "act")
        assert model.role["g"] == RoleDefinition("g", 2)
        assert model.matcher == RBAC_MODEL["matchers"]["m"]
        assert model.effect == "some(where (p.eft == allow))"

    def test_casbin_section_names(self):
        """Test that Casbin section names are accepted."""
        model = Model.from_dict({
            "request_definition": {"r": ["sub", "dom", "obj", "act"]},
            "policy_definition": {"p": ["sub", "dom", "obj", "act"]},
            "role_definition": {"g": "_, _, _"},
            "policy_effect": {"e": "some(where (p.eft == allow))"},
            "matchers": {"m": "g(r.sub, p.sub, r.dom) && r.obj == p.obj"},
        })

        assert model.request_tokens() == ("sub", "dom", "obj", "act")
        assert model.role["g"].has_domain
        assert model.role["g"].domain_index == 2

    def test_field_index(self):
        """Test schema lookups."""
        model = Model.from_dict(RBAC_MODEL)
        assert model.field_index("p", "obj") == 1
        assert model.field_index("p", "eft") is None
        assert model.is_grouping_type("g")
        assert not model.is_policy_type("g")

    @pytest.mark.parametrize("section", ["request", "policy", "policy_effect", "matchers"])
    def test_missing_section(self, section):
        """Test that each required section is enforced."""
        data = dict(RBAC_MODEL)
        del data[section]
        with pytest.raises(ModelValidationError):
            Model.from_dict(data)

    def test_repeated_field(self):
        """Test that schemas cannot repeat a field."""
        data = dict(RBAC_MODEL, request={"r": "sub, sub"})
        with pytest.raises(ModelValidationError):
            Model.from_dict(data)

    def test_role_needs_two_fields(self):
        """Test that a grouping definition needs at least two fields."""
        with pytest.raises(ModelValidationError):
            RoleDefinition("g", 1)

    def test_not_a_mapping(self):
        """Test that non-mapping documents are rejected."""
        with pytest.raises(ModelError):
            Model.from_dict(["r", "p"])

    def test_to_dict(self):
        """Test conversion back to the document form."""
        data = Model.from_dict(RBAC_MODEL).to_dict()
        assert data["request"] == {"r": "sub, obj, act"}
        assert data["role"] == {"g": "_, _"}
        assert Model.from_dict(data) == Model.from_dict(RBAC_MODEL)


class TestModelFromFile:
    """Tests for Model.from_file."""

    def test_yaml(self, tmp_path):
        """Test loading a YAML model."""
        path = tmp_path / "model.yaml"
        path.write_text(
            "request:\n"
            "  r: sub, obj, act\n"
            "policy:\n"
            "  p: sub, obj, act\n"
            "policy_effect:\n"
            "  e: some(where (p.eft == allow))\n"
            "matchers:\n"
            "  m: r.sub == p.sub && r.obj == p.obj && r.act == p.act\n"
        )
        model = Model.from_file(path)
        assert model.policy_tokens() == ("sub", "obj", "act")
        assert model.role == {}

    def test_json(self, tmp_path):
        """Test loading a JSON model."""
        path = tmp_path / "model.json"
        path.write_text(json.dumps(RBAC_MODEL))
        assert Model.from_file(path) == Model.from_dict(RBAC_MODEL)

    def test_unreadable(self, tmp_path):
        """Test that missing and malformed files raise ModelError."""
        with pytest.raises(ModelError):
            Model.from_file(tmp_path / "missing.yaml")

        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ModelError):
            Model.from_file(path)
