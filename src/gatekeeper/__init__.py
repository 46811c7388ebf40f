"""Gatekeeper: an authorization decision engine for access-control models.

Gatekeeper decides whether a request is allowed by evaluating a model's
matcher against policy rules, resolving roles through a hierarchical role
manager and combining the per-rule outcomes with a policy-effect selector.
ACL, RBAC (with hierarchies and domains), ABAC and hybrids are all
expressed as models.

Quick Start
-----------

    >>> from gatekeeper import Enforcer, Model
    >>>
    >>> model = Model.from_dict({
    ...     "request": {"r": "sub, obj, act"},
    ...     "policy": {"p": "sub, obj, act"},
    ...     "role": {"g": "_, _"},
    ...     "policy_effect": {"e": "some(where (p.eft == allow))"},
    ...     "matchers": {"m": "g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act"},
    ... })
    >>> enforcer = Enforcer(model)
    >>> enforcer.add_policy("data2_admin", "data2", "read")
    >>> enforcer.add_role_for_user("alice", "data2_admin")
    >>> enforcer.enforce("alice", "data2", "read")
    True

Explaining a decision:

    >>> allowed, trace = enforcer.enforce_ex("alice", "data2", "read")
    >>> trace
    ['p[0] (data2_admin, data2, read): matched, effect=allow', 'decision: allow']

Architecture
------------

- core: enums, exceptions, match outcomes, the RoleManager interface
- model: structured model definitions (dict, YAML, JSON)
- functions: built-in matching functions and the function registry
- expression: matcher compilation and evaluation
- rbac: the default role manager
- effect: policy-effect combination
- policy: rule storage
- enforcer: the decision engine with management and RBAC APIs
- report: Rich rendering of explained decisions
- config: enforcer configuration
- cli: the ``gatekeeper`` command
"""

from gatekeeper.core import (
    # Enums
    Effect,
    EffectResult,
    # Exceptions
    ExpressionError,
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    GatekeeperError,
    InvalidRequestError,
    ModelError,
    ModelValidationError,
    PolicyError,
    RoleManagerError,
    UnknownFunctionError,
    # Core types
    Decision,
    EnforceContext,
    MatchOutcome,
    # Interfaces
    MatchingFunc,
    RoleManager,
)

from gatekeeper.model import (
    Model,
    RoleDefinition,
)

from gatekeeper.functions import (
    BUILTIN_FUNCTIONS,
    FunctionMap,
    generate_g_function,
    glob_match,
    glob_match2,
    glob_match3,
    ip_match,
    ip_match2,
    ip_match3,
    key_get,
    key_get2,
    key_get3,
    key_match,
    key_match2,
    key_match3,
    key_match4,
    key_match5,
    regex_match,
    time_match,
)

from gatekeeper.expression import (
    EvaluationContext,
    ExpressionEvaluator,
    Matcher,
    compile_matcher,
    evaluate,
)

from gatekeeper.rbac import (
    DefaultRoleManager,
    RoleGraph,
)

from gatekeeper.effect import (
    EffectSelector,
    Effector,
)

from gatekeeper.policy import (
    PolicyStore,
    read_policy_document,
)

from gatekeeper.config import (
    ConfigError,
    EnforcerConfig,
)

from gatekeeper.enforcer import (
    CoreEnforcer,
    Enforcer,
)

from gatekeeper.report import DecisionReport

# Version: Single source of truth from pyproject.toml
try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version("gatekeeper")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

__all__ = [
    "__version__",
    # ==========================================================================
    # Core
    # ==========================================================================
    "Effect",
    "EffectResult",
    "Decision",
    "EnforceContext",
    "MatchOutcome",
    "MatchingFunc",
    "RoleManager",
    # ==========================================================================
    # Exceptions
    # ==========================================================================
    "GatekeeperError",
    "ModelError",
    "ModelValidationError",
    "ExpressionError",
    "ExpressionSyntaxError",
    "ExpressionEvaluationError",
    "UnknownFunctionError",
    "InvalidRequestError",
    "RoleManagerError",
    "PolicyError",
    "ConfigError",
    # ==========================================================================
    # Model
    # ==========================================================================
    "Model",
    "RoleDefinition",
    # ==========================================================================
    # Matching Functions
    # ==========================================================================
    "BUILTIN_FUNCTIONS",
    "FunctionMap",
    "generate_g_function",
    "glob_match",
    "glob_match2",
    "glob_match3",
    "ip_match",
    "ip_match2",
    "ip_match3",
    "key_get",
    "key_get2",
    "key_get3",
    "key_match",
    "key_match2",
    "key_match3",
    "key_match4",
    "key_match5",
    "regex_match",
    "time_match",
    # ==========================================================================
    # Expressions
    # ==========================================================================
    "EvaluationContext",
    "ExpressionEvaluator",
    "Matcher",
    "compile_matcher",
    "evaluate",
    # ==========================================================================
    # Roles, Effects, Policy
    # ==========================================================================
    "DefaultRoleManager",
    "RoleGraph",
    "EffectSelector",
    "Effector",
    "PolicyStore",
    "read_policy_document",
    # ==========================================================================
    # Enforcer
    # ==========================================================================
    "CoreEnforcer",
    "Enforcer",
    "EnforcerConfig",
    "DecisionReport",
]
