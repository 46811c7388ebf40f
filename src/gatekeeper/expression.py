"""Matcher expression parser and evaluator.

Matchers are parsed once into a small tagged AST and evaluated per policy
row, so no string splitting happens on the enforcement hot path.

Grammar:
    matcher    := clause ("&&" clause)*
    clause     := call | operand ("==" | "!=") operand
                | operand (">=" | "<=" | ">" | "<") operand
    operand    := field | literal | call
    call       := NAME "(" argument ("," argument)* ")"
    argument   := field | literal
    field      := ("r" | "p")[digits] "." NAME ("." NAME)*
    literal    := 'text' | "text" | number | NAME

Anything outside this grammar (``||``, ``!``, grouping parentheses,
calls nested inside call arguments) is rejected at compile time with
``ExpressionSyntaxError`` rather than being evaluated approximately.

Example:
    >>> from gatekeeper.functions import FunctionMap
    >>> evaluator = ExpressionEvaluator(FunctionMap.default())
    >>> matcher = evaluator.compile("keyMatch(r.obj, p.obj) && r.act == p.act")
    >>> context = EvaluationContext.build(
    ...     request=("alice", "/foo/bar", "GET"),
    ...     request_tokens=("sub", "obj", "act"),
    ...     policy=("alice", "/foo/*", "GET"),
    ...     policy_tokens=("sub", "obj", "act"),
    ... )
    >>> evaluator.evaluate(matcher, context)
    True
"""

from __future__ import annotations

import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence, Union

from gatekeeper.core import (
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    UnknownFunctionError,
)
from gatekeeper.functions import FunctionMap


# =============================================================================
# Tokens
# =============================================================================


_TOKEN_SPEC = [
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("NUMBER", r"-?\d+(?:\.\d+)?(?![\w.])"),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*"),
    ("OP", r"&&|\|\||==|!=|>=|<=|>|<|!"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("COMMA", r","),
    ("SPACE", r"\s+"),
    ("ERROR", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))
_SECTION_RE = re.compile(r"^[rp]\d*$")

_EQUALITY_OPS = ("==", "!=")
_RELATIONAL_OPS = (">=", "<=", ">", "<")


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    position: int


def tokenize(expression: str) -> list[Token]:
    """Split a matcher expression into tokens."""
    tokens: list[Token] = []
    for match in _TOKEN_RE.finditer(expression):
        kind = match.lastgroup or "ERROR"
        text = match.group(0)
        if kind == "SPACE":
            continue
        if kind == "ERROR":
            raise ExpressionSyntaxError(
                f"Unexpected character {text!r} at position {match.start()}",
                expression=expression,
            )
        tokens.append(Token(kind, text, match.start()))
    return tokens


# =============================================================================
# AST
# =============================================================================


@dataclass(frozen=True)
class FieldRef:
    """Reference to a request or policy field, e.g. ``r.sub.Owner``."""

    section: str
    name: str
    attrs: tuple[str, ...] = ()

    def __str__(self) -> str:
        return ".".join((self.section, self.name) + self.attrs)


@dataclass(frozen=True)
class Literal:
    """A constant operand."""

    value: Any

    def __str__(self) -> str:
        return repr(self.value)


@dataclass(frozen=True)
class FunctionCall:
    """A call to a registered function."""

    name: str
    args: tuple[Union[FieldRef, Literal], ...]

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(arg) for arg in self.args)})"


Operand = Union[FieldRef, Literal, FunctionCall]


@dataclass(frozen=True)
class Equality:
    """``lhs == rhs`` or, when negated, ``lhs != rhs``."""

    lhs: Operand
    rhs: Operand
    negated: bool = False

    def __str__(self) -> str:
        return f"{self.lhs} {'!=' if self.negated else '=='} {self.rhs}"


@dataclass(frozen=True)
class Comparison:
    """Relational comparison: ``>=``, ``<=``, ``>`` or ``<``."""

    op: str
    lhs: Operand
    rhs: Operand

    def __str__(self) -> str:
        return f"{self.lhs} {self.op} {self.rhs}"


Clause = Union[FunctionCall, Equality, Comparison]


@dataclass(frozen=True)
class Matcher:
    """A compiled matcher: a conjunction of clauses."""

    expression: str
    clauses: tuple[Clause, ...]

    def function_names(self) -> set[str]:
        """Names of every function the matcher calls."""
        names: set[str] = set()
        for clause in self.clauses:
            operands = (clause,) if isinstance(clause, FunctionCall) else (clause.lhs, clause.rhs)
            for operand in operands:
                if isinstance(operand, FunctionCall):
                    names.add(operand.name)
        return names

    def sections(self) -> set[str]:
        """Names of every section (``r``, ``p2`` ...) the matcher reads."""
        found: set[str] = set()
        for clause in self.clauses:
            operands = clause.args if isinstance(clause, FunctionCall) else (clause.lhs, clause.rhs)
            for operand in operands:
                args = operand.args if isinstance(operand, FunctionCall) else (operand,)
                found.update(arg.section for arg in args if isinstance(arg, FieldRef))
        return found

    def __iter__(self) -> Iterator[Clause]:
        return iter(self.clauses)

    def __len__(self) -> int:
        return len(self.clauses)


# =============================================================================
# Parser
# =============================================================================


class _Parser:
    """Recursive-descent parser over the token list."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = tokenize(expression)
        self._pos = 0

    def _error(self, message: str, token: Token | None = None) -> ExpressionSyntaxError:
        where = f" at position {token.position}" if token else " at end of expression"
        return ExpressionSyntaxError(f"{message}{where}", expression=self._expression)

    def _peek(self) -> Token | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self) -> Token:
        token = self._peek()
        if token is None:
            raise self._error("Unexpected end of expression")
        self._pos += 1
        return token

    def _expect(self, kind: str) -> Token:
        token = self._next()
        if token.kind != kind:
            raise self._error(f"Expected {kind.lower()}, found {token.text!r}", token)
        return token

    def parse(self) -> Matcher:
        if not self._tokens:
            raise ExpressionSyntaxError("Empty matcher expression", expression=self._expression)

        clauses = [self._clause()]
        while (token := self._peek()) is not None:
            if token.kind == "OP" and token.text == "&&":
                self._next()
                clauses.append(self._clause())
            else:
                raise self._unsupported(token)
        return Matcher(self._expression, tuple(clauses))

    def _unsupported(self, token: Token) -> ExpressionSyntaxError:
        if token.text == "||":
            return self._error("Operator '||' is not supported", token)
        if token.text == "!":
            return self._error("Negation '!' is not supported", token)
        if token.kind == "LPAREN":
            return self._error("Grouping parentheses are not supported", token)
        return self._error(f"Unexpected token {token.text!r}", token)

    def _clause(self) -> Clause:
        start = self._peek()
        lhs = self._operand(allow_call=True)
        token = self._peek()
        if token is not None and token.kind == "OP" and token.text in _EQUALITY_OPS:
            self._next()
            rhs = self._operand(allow_call=True)
            return Equality(lhs, rhs, negated=token.text == "!=")
        if token is not None and token.kind == "OP" and token.text in _RELATIONAL_OPS:
            self._next()
            rhs = self._operand(allow_call=True)
            return Comparison(token.text, lhs, rhs)
        if isinstance(lhs, FunctionCall):
            return lhs
        raise self._error(f"Operand {lhs} is not a condition", start)

    def _operand(self, allow_call: bool) -> Operand:
        token = self._next()
        if token.kind == "STRING":
            return Literal(_unquote(token.text))
        if token.kind == "NUMBER":
            return Literal(float(token.text) if "." in token.text else int(token.text))
        if token.kind == "NAME":
            following = self._peek()
            if following is not None and following.kind == "LPAREN":
                if not allow_call:
                    raise self._error("Nested function calls are not supported", following)
                return self._call(token)
            return _name_operand(token.text)
        raise self._unsupported(token)

    def _call(self, name: Token) -> FunctionCall:
        if "." in name.text:
            raise self._error(f"Invalid function name {name.text!r}", name)
        self._expect("LPAREN")
        args: list[Union[FieldRef, Literal]] = []
        while True:
            args.append(self._operand(allow_call=False))  # type: ignore[arg-type]
            token = self._next()
            if token.kind == "RPAREN":
                break
            if token.kind != "COMMA":
                raise self._error(f"Expected ',' or ')', found {token.text!r}", token)
        return FunctionCall(name.text, tuple(args))


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def _name_operand(text: str) -> Union[FieldRef, Literal]:
    parts = text.split(".")
    if len(parts) >= 2 and _SECTION_RE.match(parts[0]):
        return FieldRef(parts[0], parts[1], tuple(parts[2:]))
    return Literal(text)


def compile_matcher(expression: str) -> Matcher:
    """Parse a matcher expression into a ``Matcher``.

    Raises:
        ExpressionSyntaxError: If the expression is outside the grammar.
    """
    return _Parser(expression.strip()).parse()


# =============================================================================
# Evaluation
# =============================================================================


@dataclass(frozen=True)
class EvaluationContext:
    """Parameter bindings for one (request, policy row) pair.

    ``sections`` maps a section name (``r``, ``p``, ``r2`` ...) to its
    declared field names and the values bound to them.
    """

    sections: Mapping[str, tuple[tuple[str, ...], tuple[Any, ...]]]

    @classmethod
    def build(
        cls,
        request: Sequence[Any],
        request_tokens: Sequence[str],
        policy: Sequence[Any] = (),
        policy_tokens: Sequence[str] = (),
        rtype: str = "r",
        ptype: str = "p",
    ) -> "EvaluationContext":
        return cls({
            rtype: (tuple(request_tokens), tuple(request)),
            ptype: (tuple(policy_tokens), tuple(policy)),
        })

    def resolve(self, ref: FieldRef) -> Any:
        """Resolve a field reference against the declared schema."""
        if ref.section not in self.sections:
            raise ExpressionEvaluationError(f"Unknown section '{ref.section}' in {ref}")
        tokens, values = self.sections[ref.section]

        if ref.name in tokens:
            index = tokens.index(ref.name)
            value = values[index] if index < len(values) else ""
        elif ref.section.startswith("p") and ref.name == "eft":
            value = "allow"
        else:
            raise ExpressionEvaluationError(
                f"Field '{ref.name}' is not declared for '{ref.section}'"
            )

        for attr in ref.attrs:
            value = _lookup_attribute(value, attr, ref)
        return value


def _lookup_attribute(value: Any, attr: str, ref: FieldRef) -> Any:
    if isinstance(value, Mapping):
        if attr in value:
            return value[attr]
    elif hasattr(value, attr):
        return getattr(value, attr)
    raise ExpressionEvaluationError(f"Cannot resolve attribute '{attr}' of {ref}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(lhs: Any, rhs: Any) -> bool:
    """Equality with numeric coercion when one side is a number."""
    if lhs == rhs:
        return True
    if _is_number(lhs) or _is_number(rhs):
        try:
            return float(lhs) == float(rhs)
        except (TypeError, ValueError):
            return False
    return False


def compare_values(op: str, lhs: Any, rhs: Any) -> bool:
    """Relational comparison: numeric when both sides parse, else textual."""
    try:
        left: Any = float(lhs)
        right: Any = float(rhs)
    except (TypeError, ValueError):
        left, right = str(lhs), str(rhs)

    if op == ">=":
        return left >= right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    raise ExpressionEvaluationError(f"Unsupported comparison operator '{op}'")


DEFAULT_CACHE_SIZE = 256


class ExpressionEvaluator:
    """Evaluates compiled matchers against evaluation contexts.

    The function registry is injected at construction; registering a new
    function on it makes the function callable from every matcher without
    recompiling.
    """

    def __init__(
        self,
        functions: FunctionMap | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        if cache_size < 1:
            raise ValueError(f"cache_size must be positive, got {cache_size}")
        self._functions = functions if functions is not None else FunctionMap.default()
        self._cache: OrderedDict[str, Matcher] = OrderedDict()
        self._cache_size = cache_size
        self._lock = threading.Lock()

    @property
    def functions(self) -> FunctionMap:
        return self._functions

    @property
    def cache_size(self) -> int:
        """Maximum number of compiled matchers kept."""
        return self._cache_size

    def cached_count(self) -> int:
        return len(self._cache)

    def compile(self, expression: str) -> Matcher:
        """Compile an expression, reusing a cached result when available.

        The cache keeps the most recently used matchers; the least recently
        used one is evicted once ``cache_size`` is reached.
        """
        with self._lock:
            matcher = self._cache.get(expression)
            if matcher is not None:
                self._cache.move_to_end(expression)
                return matcher

        matcher = compile_matcher(expression)
        with self._lock:
            cached = self._cache.setdefault(expression, matcher)
            self._cache.move_to_end(expression)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return cached

    def evaluate(self, matcher: Matcher | str, context: EvaluationContext) -> bool:
        """Evaluate every clause; all must hold.

        Raises:
            ExpressionEvaluationError: If a clause cannot be evaluated.
        """
        if isinstance(matcher, str):
            matcher = self.compile(matcher)
        for clause in matcher.clauses:
            if not self._clause(clause, context):
                return False
        return True

    def _clause(self, clause: Clause, context: EvaluationContext) -> bool:
        if isinstance(clause, FunctionCall):
            return bool(self._call(clause, context))
        if isinstance(clause, Equality):
            equal = values_equal(self._value(clause.lhs, context), self._value(clause.rhs, context))
            return not equal if clause.negated else equal
        return compare_values(
            clause.op,
            self._value(clause.lhs, context),
            self._value(clause.rhs, context),
        )

    def _value(self, operand: Operand, context: EvaluationContext) -> Any:
        if isinstance(operand, FieldRef):
            return context.resolve(operand)
        if isinstance(operand, Literal):
            return operand.value
        return self._call(operand, context)

    def _call(self, call: FunctionCall, context: EvaluationContext) -> Any:
        function = self._functions.get(call.name)
        if function is None:
            raise UnknownFunctionError(f"Unknown function '{call.name}'")
        args = [self._value(arg, context) for arg in call.args]
        try:
            return function(*args)
        except Exception as e:
            raise ExpressionEvaluationError(f"{call} failed: {e}") from e


_default_evaluator = ExpressionEvaluator()


def evaluate(
    expression: str,
    request: Sequence[Any] | Mapping[str, Any],
    policy: Sequence[Any] | Mapping[str, Any],
    functions: FunctionMap | None = None,
    *,
    request_tokens: Sequence[str] | None = None,
    policy_tokens: Sequence[str] | None = None,
) -> bool:
    """Evaluate a matcher expression in one call.

    `request` and `policy` may be mappings of field name to value, or
    sequences paired with `request_tokens` / `policy_tokens`.

    Example:
        >>> evaluate("r.sub == p.sub", {"sub": "alice"}, {"sub": "alice"})
        True
    """
    request_tokens, request_values = _bind(request, request_tokens, "request")
    policy_tokens, policy_values = _bind(policy, policy_tokens, "policy")
    evaluator = _default_evaluator if functions is None else ExpressionEvaluator(functions)
    context = EvaluationContext.build(request_values, request_tokens, policy_values, policy_tokens)
    return evaluator.evaluate(evaluator.compile(expression), context)


def _bind(
    values: Sequence[Any] | Mapping[str, Any],
    tokens: Sequence[str] | None,
    label: str,
) -> tuple[tuple[str, ...], tuple[Any, ...]]:
    if isinstance(values, Mapping):
        return tuple(values.keys()), tuple(values.values())
    if tokens is None:
        raise ExpressionEvaluationError(f"{label} values given without {label} field names")
    return tuple(tokens), tuple(values)
