"""Effect evaluator.

Reduces the per-row match outcomes of one enforce call into a single
verdict according to the model's policy-effect selector.

Selectors:
    - ``some(where (p.eft == allow))``: allow-override
    - ``!some(where (p.eft == deny))``: deny-override
    - ``some(where (p.eft == allow)) && !some(where (p.eft == deny))``:
      allow only when something allows and nothing denies
    - ``priority(p.eft) || deny``: first matched row wins
    - ``subjectPriority(p.eft) || deny``: first matched row per subject
      wins, then any deny overrides

Only matched outcomes take part; unmatched and errored rows are ignored.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Iterable, Sequence

from gatekeeper.core import Effect, EffectResult, MatchOutcome

logger = logging.getLogger(__name__)


class EffectSelector(Enum):
    """Supported policy-effect selectors, keyed by normalized text."""

    SOME_ALLOW = "some(where(p.eft==allow))"
    NO_DENY = "!some(where(p.eft==deny))"
    ALLOW_AND_NOT_DENY = "some(where(p.eft==allow))&&!some(where(p.eft==deny))"
    PRIORITY = "priority(p.eft)||deny"
    SUBJECT_PRIORITY = "subjectpriority(p.eft)||deny"


_ALIASES = {
    "subjectpriority(p.sub,p.eft)||deny": EffectSelector.SUBJECT_PRIORITY,
}

_WHITESPACE = re.compile(r"\s+")
_warned: set[str] = set()


def normalize_selector(selector: str) -> str:
    """Strip whitespace and fold case."""
    return _WHITESPACE.sub("", selector).lower()


def parse_selector(selector: str | EffectSelector) -> EffectSelector:
    """Resolve selector text, falling back to allow-override.

    An unrecognized selector is logged once at WARNING level.
    """
    if isinstance(selector, EffectSelector):
        return selector

    normalized = normalize_selector(selector)
    for candidate in EffectSelector:
        if candidate.value == normalized:
            return candidate
    if normalized in _ALIASES:
        return _ALIASES[normalized]

    if normalized not in _warned:
        _warned.add(normalized)
        logger.warning(
            "Unsupported policy effect %r, falling back to %r",
            selector,
            EffectSelector.SOME_ALLOW.value,
        )
    return EffectSelector.SOME_ALLOW


class Effector:
    """Combines match outcomes into an EffectResult.

    Example:
        >>> effector = Effector()
        >>> outcomes = [MatchOutcome(0, ("alice", "data1", "read"), True)]
        >>> effector.combine("some(where (p.eft == allow))", outcomes)
        <EffectResult.ALLOW: 'allow'>
    """

    def combine(
        self,
        selector: str | EffectSelector,
        outcomes: Iterable[MatchOutcome],
    ) -> EffectResult:
        """Reduce `outcomes` (in evaluation order) to a verdict."""
        kind = parse_selector(selector)
        matched = [outcome for outcome in outcomes if outcome.matched]
        effects = [outcome.effect for outcome in matched]

        if kind is EffectSelector.SOME_ALLOW:
            return EffectResult.ALLOW if Effect.ALLOW in effects else EffectResult.DENY

        if kind is EffectSelector.NO_DENY:
            return EffectResult.DENY if Effect.DENY in effects else EffectResult.ALLOW

        if kind is EffectSelector.ALLOW_AND_NOT_DENY:
            if Effect.DENY in effects:
                return EffectResult.DENY
            return EffectResult.ALLOW if Effect.ALLOW in effects else EffectResult.DENY

        if kind is EffectSelector.PRIORITY:
            verdict = _first_decisive(matched)
            return verdict if verdict is not None else EffectResult.DENY

        return self._subject_priority(matched)

    def short_circuits(self, selector: str | EffectSelector, outcome: MatchOutcome) -> bool:
        """Whether evaluation can stop after `outcome` without changing the verdict."""
        if not outcome.matched:
            return False

        kind = parse_selector(selector)
        if kind is EffectSelector.SOME_ALLOW:
            return outcome.effect is Effect.ALLOW
        if kind in (EffectSelector.NO_DENY, EffectSelector.ALLOW_AND_NOT_DENY):
            return outcome.effect is Effect.DENY
        if kind is EffectSelector.PRIORITY:
            return outcome.effect in (Effect.ALLOW, Effect.DENY)
        # every subject partition must be seen
        return False

    def _subject_priority(self, matched: Sequence[MatchOutcome]) -> EffectResult:
        partitions: dict[str, list[MatchOutcome]] = {}
        for outcome in matched:
            partitions.setdefault(outcome.subject, []).append(outcome)

        verdicts = [_first_decisive(rows) for rows in partitions.values()]
        if EffectResult.DENY in verdicts:
            return EffectResult.DENY
        if EffectResult.ALLOW in verdicts:
            return EffectResult.ALLOW
        return EffectResult.INDETERMINATE


def _first_decisive(outcomes: Sequence[MatchOutcome]) -> EffectResult | None:
    for outcome in outcomes:
        if outcome.effect is Effect.ALLOW:
            return EffectResult.ALLOW
        if outcome.effect is Effect.DENY:
            return EffectResult.DENY
    return None
