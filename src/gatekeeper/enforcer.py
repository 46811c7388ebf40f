"""Enforcement decision engine.

The Enforcer ties the subsystems together for every decision:

    request
        │
        ├── ExpressionEvaluator ×N policy rows
        │       │
        │       ├── matching functions (keyMatch, ipMatch, ...)
        │       └── g(...) → RoleManager
        │
        ├── MatchOutcome list
        │
        └── Effector
                │
                v
            allow / deny (+ trace)

Concurrency:
    Decisions read immutable snapshots (model, rule tuples, role graphs)
    and take no lock. Writers serialize on one re-entrant lock, so a
    grouping rule and the role graph edge it implies always change
    together.

Example:
    >>> enforcer = Enforcer(model)
    >>> enforcer.load_policy(
    ...     {"p": [["admin", "data1", "read"]]},
    ...     {"g": [["alice", "admin"]]},
    ... )
    >>> enforcer.enforce("alice", "data1", "read")
    True
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from gatekeeper.config import EnforcerConfig
from gatekeeper.core import (
    Decision,
    Effect,
    EffectResult,
    EnforceContext,
    ExpressionError,
    InvalidRequestError,
    MatchOutcome,
    MatchingFunc,
    ModelValidationError,
    PolicyError,
    RoleManager,
)
from gatekeeper.effect import Effector, parse_selector
from gatekeeper.expression import (
    EvaluationContext,
    ExpressionEvaluator,
    Matcher,
    compile_matcher,
)
from gatekeeper.functions import FunctionMap, generate_g_function
from gatekeeper.management import ManagementMixin
from gatekeeper.model import Model
from gatekeeper.policy import PolicyStore, read_policy_document
from gatekeeper.rbac import DefaultRoleManager
from gatekeeper.rbac_api import RBACMixin

logger = logging.getLogger(__name__)


Request = Sequence[Any]


@dataclass(frozen=True)
class CompiledModel:
    """A model and its compiled matchers, published together."""

    model: Model
    matchers: Mapping[str, Matcher]


class CoreEnforcer:
    """Decision engine over one model and its policy.

    Owns the model snapshot, the rule store, one role manager per grouping
    type and the function registry matchers dispatch through.
    """

    def __init__(
        self,
        model: Model | str | Path,
        config: EnforcerConfig | None = None,
        *,
        policies: Mapping[str, Iterable[Sequence[Any]]] | None = None,
        grouping_policies: Mapping[str, Iterable[Sequence[Any]]] | None = None,
    ) -> None:
        self._config = config or EnforcerConfig()
        self._enabled = self._config.enabled
        self._lock = threading.RLock()
        self._store = PolicyStore()
        self._effector = Effector()
        self._functions = FunctionMap.default()
        self._role_managers: dict[str, RoleManager] = {}
        self._evaluator = ExpressionEvaluator(self._functions)

        self.set_model(model)
        if policies or grouping_policies:
            self.load_policy(policies, grouping_policies)

    # -------------------------------------------------------------------------
    # Model
    # -------------------------------------------------------------------------

    @property
    def model(self) -> Model:
        return self._compiled.model

    _model = model

    @property
    def config(self) -> EnforcerConfig:
        return self._config

    def set_model(self, model: Model | str | Path) -> None:
        """Replace the model, recompiling every matcher.

        Raises:
            ModelValidationError: If the model is incomplete.
            ExpressionSyntaxError: If a matcher is outside the grammar.
        """
        if not isinstance(model, Model):
            model = Model.from_file(model)
        model.validate()

        matchers = {}
        for mtype, expression in model.matchers.items():
            try:
                matchers[mtype] = compile_matcher(expression)
            except ExpressionError as e:
                e.expression = expression
                raise
        for selector in model.policy_effect.values():
            parse_selector(selector)

        with self._lock:
            self._compiled = CompiledModel(model, matchers)
            self._role_managers = {
                gtype: self._role_managers.get(gtype)
                or DefaultRoleManager(self._config.max_hierarchy_level)
                for gtype in model.role
            }
            self._refresh_evaluator()
            if self._config.auto_build_role_links:
                self.build_role_links()

    # -------------------------------------------------------------------------
    # Policy loading
    # -------------------------------------------------------------------------

    def load_policy(
        self,
        policies: Mapping[str, Iterable[Sequence[Any]]] | None = None,
        grouping_policies: Mapping[str, Iterable[Sequence[Any]]] | None = None,
    ) -> None:
        """Replace every rule with the given policy and grouping rules."""
        policies = dict(policies or {})
        grouping_policies = dict(grouping_policies or {})
        for ptype in policies:
            if not self._model.is_policy_type(ptype):
                raise PolicyError(f"Policy type '{ptype}' is not declared in the model", ptype=ptype)
        for gtype in grouping_policies:
            if not self._model.is_grouping_type(gtype):
                raise PolicyError(f"Grouping type '{gtype}' is not declared in the model", ptype=gtype)

        with self._lock:
            self._store.replace({**policies, **grouping_policies})
            if self._config.auto_build_role_links:
                self.build_role_links()
        logger.debug("Loaded %d rules", self._store.count())

    def load_policy_file(self, path: str | Path) -> None:
        """Load rules from a YAML/JSON document with ``policies`` and
        ``grouping_policies`` mappings."""
        policies, grouping_policies = read_policy_document(path)
        self.load_policy(policies, grouping_policies)

    # -------------------------------------------------------------------------
    # Role links
    # -------------------------------------------------------------------------

    def build_role_links(self) -> None:
        """Rebuild every role graph from the stored grouping rules.

        Each graph is built aside and published in a single swap, so
        concurrent decisions see either the old or the new graph.
        """
        with self._lock:
            for gtype, role_manager in self._role_managers.items():
                role_manager.rebuild(self._grouping_links(gtype))

    def _grouping_links(self, gtype: str) -> list[tuple[str, str, str]]:
        links = []
        for rule in self._store.rules(gtype):
            link = _grouping_link(gtype, rule)
            if link is not None:
                links.append(link)
        return links

    def get_role_manager(self, gtype: str = "g") -> RoleManager:
        return self._role_managers[gtype]

    def set_role_manager(self, role_manager: RoleManager, gtype: str = "g") -> None:
        """Install a role manager for a grouping type and populate it."""
        with self._lock:
            self._role_managers[gtype] = role_manager
            self._refresh_evaluator()
            role_manager.rebuild(self._grouping_links(gtype))

    def add_named_matching_func(self, gtype: str, name: str, fn: MatchingFunc) -> None:
        """Enable pattern role names (e.g. ``keyMatch2``) for a grouping type."""
        role_manager = self._role_managers[gtype]
        if not isinstance(role_manager, DefaultRoleManager):
            raise PolicyError(f"Role manager for '{gtype}' does not support matching functions")
        role_manager.add_matching_func(name, fn)

    def add_named_domain_matching_func(self, gtype: str, name: str, fn: MatchingFunc) -> None:
        """Enable pattern domains for a grouping type."""
        role_manager = self._role_managers[gtype]
        if not isinstance(role_manager, DefaultRoleManager):
            raise PolicyError(f"Role manager for '{gtype}' does not support matching functions")
        role_manager.add_domain_matching_func(name, fn)

    # -------------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------------

    def add_function(self, name: str, function: Callable[..., Any]) -> None:
        """Register a function callable from matchers."""
        with self._lock:
            self._functions.add_function(name, function)
            self._refresh_evaluator()

    def _refresh_evaluator(self) -> None:
        functions = self._functions.copy()
        for gtype, role_manager in self._role_managers.items():
            functions.add_function(gtype, generate_g_function(role_manager))
        self._evaluator = ExpressionEvaluator(functions)

    # -------------------------------------------------------------------------
    # Enforcement
    # -------------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable_enforce(self, enabled: bool = True) -> None:
        """When disabled, every request is allowed."""
        self._enabled = enabled

    @staticmethod
    def new_enforce_context(suffix: str) -> EnforceContext:
        """Context selecting ``r<suffix>``, ``p<suffix>``, ``e<suffix>`` and ``m<suffix>``."""
        return EnforceContext(
            rtype=f"r{suffix}",
            ptype=f"p{suffix}",
            etype=f"e{suffix}",
            mtype=f"m{suffix}",
        )

    def enforce(self, *rvals: Any) -> bool:
        """Decide whether a request is allowed.

        An optional EnforceContext may be passed as the first argument.

        Raises:
            InvalidRequestError: If the request does not fit the schema.
        """
        return self._enforce(None, rvals, explain=False).allowed

    def enforce_with_matcher(self, matcher: str, *rvals: Any) -> bool:
        """Decide using `matcher` instead of the model's matcher."""
        return self._enforce(matcher, rvals, explain=False).allowed

    def enforce_ex(self, *rvals: Any) -> tuple[bool, list[str]]:
        """Decide and return the evaluation trace."""
        decision = self._enforce(None, rvals, explain=True)
        return decision.allowed, decision.explain

    def enforce_ex_with_matcher(self, matcher: str, *rvals: Any) -> tuple[bool, list[str]]:
        decision = self._enforce(matcher, rvals, explain=True)
        return decision.allowed, decision.explain

    def decide(self, *rvals: Any, matcher: str | None = None) -> Decision:
        """Decide and return the full Decision record."""
        return self._enforce(matcher, rvals, explain=True)

    def batch_enforce(self, requests: Sequence[Request]) -> list[bool]:
        """Decide many requests; results keep the input order."""
        return self._batch(lambda request: self._enforce(None, request, explain=False).allowed, requests)

    def batch_enforce_with_matcher(self, matcher: str, requests: Sequence[Request]) -> list[bool]:
        return self._batch(lambda request: self._enforce(matcher, request, explain=False).allowed, requests)

    def batch_enforce_ex(self, requests: Sequence[Request]) -> list[tuple[bool, list[str]]]:
        def run(request: Request) -> tuple[bool, list[str]]:
            decision = self._enforce(None, request, explain=True)
            return decision.allowed, decision.explain

        return self._batch(run, requests)

    def _batch(self, run: Callable[[Request], Any], requests: Sequence[Request]) -> list[Any]:
        requests = [tuple(request) for request in requests]
        if len(requests) <= self._config.batch_parallel_threshold:
            return [run(request) for request in requests]
        with ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="gatekeeper-batch",
        ) as executor:
            return list(executor.map(run, requests))

    def _enforce(self, matcher_text: str | None, rvals: Sequence[Any], explain: bool) -> Decision:
        context = EnforceContext()
        if rvals and isinstance(rvals[0], EnforceContext):
            context, rvals = rvals[0], rvals[1:]
        request = tuple(rvals)

        if not self._enabled:
            return Decision(True, EffectResult.ALLOW, ["enforcer disabled"], request)

        # single reads: later writers do not affect this decision
        compiled = self._compiled
        model = compiled.model
        evaluator = self._evaluator

        request_tokens = model.request_tokens(context.rtype)
        if not request_tokens:
            raise InvalidRequestError(f"Request definition '{context.rtype}' is not declared")
        if len(request) != len(request_tokens):
            raise InvalidRequestError(
                f"Request has {len(request)} values but '{context.rtype}' declares "
                f"{len(request_tokens)} ({', '.join(request_tokens)})",
                ptype=context.rtype,
            )
        policy_tokens = model.policy_tokens(context.ptype)
        if not policy_tokens:
            raise InvalidRequestError(f"Policy definition '{context.ptype}' is not declared")

        if matcher_text:
            matcher = evaluator.compile(matcher_text)
        elif context.mtype in compiled.matchers:
            matcher = compiled.matchers[context.mtype]
        else:
            raise ModelValidationError(f"Matcher '{context.mtype}' is not declared")

        selector = model.policy_effect.get(context.etype, model.effect)
        eft_index = model.field_index(context.ptype, "eft")
        sub_index = model.field_index(context.ptype, "sub") or 0

        rules = self._store.rules(context.ptype)
        outcomes: list[MatchOutcome] = []
        trace: list[str] = []

        if not rules and context.ptype not in matcher.sections():
            # a matcher that never reads the policy can decide on its own
            rules = ((),)

        for index, rule in enumerate(rules):
            outcome = self._evaluate_row(
                evaluator, matcher, context, request, request_tokens,
                policy_tokens, index, rule, eft_index, sub_index,
            )
            outcomes.append(outcome)
            if explain:
                trace.append(outcome.describe(context.ptype))
            if self._effector.short_circuits(selector, outcome):
                break

        result = self._effector.combine(selector, outcomes)
        allowed = result is EffectResult.ALLOW
        if explain:
            trace.append(f"decision: {result.value}")

        if self._config.log_decisions:
            logger.debug("enforce %s -> %s", request, result.value)

        return Decision(
            allowed=allowed,
            result=result,
            explain=trace,
            request=request,
            matched_rule=_deciding_rule(outcomes, result),
            outcomes=outcomes if explain else [],
        )

    def _evaluate_row(
        self,
        evaluator: ExpressionEvaluator,
        matcher: Matcher,
        context: EnforceContext,
        request: tuple[Any, ...],
        request_tokens: tuple[str, ...],
        policy_tokens: tuple[str, ...],
        index: int,
        rule: tuple[str, ...],
        eft_index: int | None,
        sub_index: int,
    ) -> MatchOutcome:
        bindings = EvaluationContext.build(
            request, request_tokens, rule, policy_tokens,
            rtype=context.rtype, ptype=context.ptype,
        )
        try:
            matched = evaluator.evaluate(matcher, bindings)
        except ExpressionError as e:
            logger.warning("Error evaluating %s[%d] %s: %s", context.ptype, index, rule, e)
            return MatchOutcome(index, rule, False, error=str(e))

        effect = Effect.ALLOW
        if eft_index is not None and eft_index < len(rule):
            effect = Effect.from_value(rule[eft_index])
        subject = rule[sub_index] if sub_index < len(rule) else ""
        return MatchOutcome(index, rule, matched, effect, subject)


def _grouping_link(gtype: str, rule: tuple[str, ...]) -> tuple[str, str, str] | None:
    if len(rule) < 2:
        logger.warning("Skipping grouping rule %s %s: needs at least two fields", gtype, rule)
        return None
    domain = rule[-1] if len(rule) >= 3 else ""
    return rule[0], rule[1], domain


def _deciding_rule(outcomes: Sequence[MatchOutcome], result: EffectResult) -> tuple[str, ...] | None:
    wanted = {EffectResult.ALLOW: Effect.ALLOW, EffectResult.DENY: Effect.DENY}.get(result)
    for outcome in outcomes:
        if outcome.matched and outcome.effect is wanted and outcome.rule:
            return outcome.rule
    return None


class Enforcer(RBACMixin, ManagementMixin, CoreEnforcer):
    """Enforcer with the management and RBAC APIs."""
    pass
