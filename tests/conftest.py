"""Shared fixtures for enforcer tests.

Models are built in code; file-based loading is covered in test_model.py
and test_cli.py.
"""

from __future__ import annotations

import pytest

from gatekeeper import Enforcer, Model


# =============================================================================
# Models
# =============================================================================


RBAC_MATCHER = "g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act"


def make_model(
    matcher: str = RBAC_MATCHER,
    effect: str = "some(where (p.eft == allow))",
    request: str = "sub, obj, act",
    policy: str = "sub, obj, act",
    role: str | None = "_, _",
) -> Model:
    data = {
        "request": {"r": request},
        "policy": {"p": policy},
        "policy_effect": {"e": effect},
        "matchers": {"m": matcher},
    }
    if role:
        data["role"] = {"g": role}
    return Model.from_dict(data)


@pytest.fixture
def rbac_model() -> Model:
    return make_model()


@pytest.fixture
def domain_model() -> Model:
    return make_model(
        matcher="g(r.sub, p.sub, r.dom) && r.dom == p.dom && r.obj == p.obj && r.act == p.act",
        request="sub, dom, obj, act",
        policy="sub, dom, obj, act",
        role="_, _, _",
    )


# =============================================================================
# Enforcers
# =============================================================================


@pytest.fixture
def rbac_enforcer(rbac_model) -> Enforcer:
    """The classic alice/bob RBAC example."""
    return Enforcer(
        rbac_model,
        policies={
            "p": [
                ["alice", "data1", "read"],
                ["bob", "data2", "write"],
                ["data2_admin", "data2", "read"],
                ["data2_admin", "data2", "write"],
            ],
        },
        grouping_policies={"g": [["alice", "data2_admin"]]},
    )


@pytest.fixture
def domain_enforcer(domain_model) -> Enforcer:
    return Enforcer(
        domain_model,
        policies={
            "p": [
                ["admin", "domain1", "data1", "read"],
                ["admin", "domain1", "data1", "write"],
                ["admin", "domain2", "data2", "read"],
                ["admin", "domain2", "data2", "write"],
            ],
        },
        grouping_policies={
            "g": [
                ["alice", "admin", "domain1"],
                ["bob", "admin", "domain2"],
            ],
        },
    )
