"""Tests for matcher compilation and evaluation."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from gatekeeper.core import (
    ExpressionEvaluationError,
    ExpressionSyntaxError,
    UnknownFunctionError,
)
from gatekeeper.expression import (
    Comparison,
    Equality,
    EvaluationContext,
    ExpressionEvaluator,
    FieldRef,
    FunctionCall,
    Literal,
    compare_values,
    compile_matcher,
    evaluate,
    tokenize,
    values_equal,
)
from gatekeeper.functions import FunctionMap


RBAC_MATCHER = "g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act"
TOKENS = ("sub", "obj", "act")


def _context(request, policy=(), request_tokens=TOKENS, policy_tokens=TOKENS):
    return EvaluationContext.build(request, request_tokens, policy, policy_tokens)


@pytest.fixture
def evaluator():
    return ExpressionEvaluator(FunctionMap.default())


# =============================================================================
# Compilation
# =============================================================================


class TestTokenize:
    """Tests for the tokenizer."""

    def test_token_kinds(self):
        """Test that each lexical element gets the right kind."""
        kinds = [t.kind for t in tokenize("keyMatch(r.obj, 'x') && r.age >= 18")]
        assert kinds == [
            "NAME", "LPAREN", "NAME", "COMMA", "STRING", "RPAREN",
            "OP", "NAME", "OP", "NUMBER",
        ]

    def test_unexpected_character(self):
        """Test that stray characters are syntax errors."""
        with pytest.raises(ExpressionSyntaxError):
            tokenize("r.sub == p.sub + 1")


class TestCompileMatcher:
    """Tests for compile_matcher."""

    def test_rbac_matcher_shape(self):
        """Test that the classic RBAC matcher compiles to three clauses."""
        matcher = compile_matcher(RBAC_MATCHER)

        assert len(matcher) == 3
        assert matcher.clauses[0] == FunctionCall(
            "g", (FieldRef("r", "sub"), FieldRef("p", "sub"))
        )
        assert matcher.clauses[1] == Equality(FieldRef("r", "obj"), FieldRef("p", "obj"))
        assert matcher.clauses[2] == Equality(FieldRef("r", "act"), FieldRef("p", "act"))

    def test_literals(self):
        """Test quoted strings, numbers and bare identifiers."""
        matcher = compile_matcher("r.sub == 'root' && r.age > 18 && p.eft == allow")

        assert matcher.clauses[0].rhs == Literal("root")
        assert matcher.clauses[1] == Comparison(">", FieldRef("r", "age"), Literal(18))
        assert matcher.clauses[2].rhs == Literal("allow")

    def test_attribute_path(self):
        """Test that dotted attribute paths are kept."""
        matcher = compile_matcher("r.sub.Owner == r.obj.Owner")
        assert matcher.clauses[0].lhs == FieldRef("r", "sub", ("Owner",))

    def test_not_equal(self):
        """Test that != compiles to a negated equality."""
        matcher = compile_matcher("r.sub != p.sub")
        assert matcher.clauses[0].negated

    def test_call_as_operand(self):
        """Test a call on one side of a comparison."""
        matcher = compile_matcher("keyGet2(r.obj, p.obj, 'id') == r.sub")
        clause = matcher.clauses[0]
        assert isinstance(clause, Equality)
        assert isinstance(clause.lhs, FunctionCall)
        assert clause.lhs.name == "keyGet2"

    def test_function_names_and_sections(self):
        """Test the introspection helpers."""
        matcher = compile_matcher("g(r.sub, p.sub) && keyMatch(r.obj, p.obj) && r.act == 'read'")
        assert matcher.function_names() == {"g", "keyMatch"}
        assert matcher.sections() == {"r", "p"}

    def test_numbered_sections(self):
        """Test that r2/p2 references are field references."""
        matcher = compile_matcher("r2.sub == p2.sub")
        assert matcher.clauses[0].lhs == FieldRef("r2", "sub")

    @pytest.mark.parametrize(
        "expression",
        [
            "r.sub == p.sub || r.sub == 'root'",
            "!(r.sub == p.sub)",
            "(r.sub == p.sub) && r.obj == p.obj",
            "keyMatch(keyGet(r.obj, p.obj), p.obj)",
            "r.sub",
            "",
            "r.sub == ",
            "r.sub == p.sub &&",
            "keyMatch(r.obj p.obj)",
        ],
    )
    def test_unsupported_syntax(self, expression):
        """Test that syntax outside the grammar fails at compile time."""
        with pytest.raises(ExpressionSyntaxError):
            compile_matcher(expression)

    def test_error_mentions_operator(self):
        """Test that || is named in the error."""
        with pytest.raises(ExpressionSyntaxError, match=r"\|\|"):
            compile_matcher("r.sub == p.sub || r.sub == 'root'")


# =============================================================================
# Evaluation
# =============================================================================


class TestValueSemantics:
    """Tests for equality and comparison rules."""

    def test_equality_coerces_numbers(self):
        """Test numeric coercion when one side is a number."""
        assert values_equal("18", 18)
        assert values_equal(18.0, "18")
        assert not values_equal("abc", 18)
        assert not values_equal("018", "18")

    def test_relational_numeric_first(self):
        """Test that numeric strings compare numerically."""
        assert compare_values(">", "10", "9")
        assert compare_values("<=", 3, "3")

    def test_relational_string_fallback(self):
        """Test lexicographic fallback for non-numbers."""
        assert compare_values(">", "b", "a")
        assert compare_values("<", "10", "9x")


class TestExpressionEvaluator:
    """Tests for ExpressionEvaluator."""

    def test_equality_match(self, evaluator):
        """Test a plain ACL matcher."""
        matcher = evaluator.compile("r.sub == p.sub && r.obj == p.obj && r.act == p.act")
        assert evaluator.evaluate(matcher, _context(("alice", "data1", "read"), ("alice", "data1", "read")))
        assert not evaluator.evaluate(matcher, _context(("alice", "data1", "write"), ("alice", "data1", "read")))

    def test_function_call(self, evaluator):
        """Test dispatch through the registry."""
        matcher = evaluator.compile("keyMatch(r.obj, p.obj)")
        assert evaluator.evaluate(matcher, _context(("a", "/foo/bar", "GET"), ("a", "/foo/*", "GET")))

    def test_compile_cache(self, evaluator):
        """Test that compiling twice returns the same matcher."""
        assert evaluator.compile(RBAC_MATCHER) is evaluator.compile(RBAC_MATCHER)

    def test_compile_cache_is_bounded(self):
        """Test that many distinct expressions never grow the cache past its size."""
        evaluator = ExpressionEvaluator(FunctionMap.default(), cache_size=8)
        for i in range(100):
            evaluator.compile(f"r.sub == 'user{i}'")
            assert evaluator.cached_count() <= evaluator.cache_size
        assert evaluator.cached_count() == 8

    def test_compile_cache_evicts_least_recently_used(self):
        """Test that a recently used matcher survives eviction."""
        evaluator = ExpressionEvaluator(FunctionMap.default(), cache_size=2)
        first = evaluator.compile("r.sub == 'a'")
        evaluator.compile("r.sub == 'b'")
        assert evaluator.compile("r.sub == 'a'") is first
        evaluator.compile("r.sub == 'c'")

        assert evaluator.compile("r.sub == 'a'") is first
        assert evaluator.cached_count() == 2

    def test_invalid_cache_size(self):
        """Test that the cache must hold at least one matcher."""
        with pytest.raises(ValueError):
            ExpressionEvaluator(cache_size=0)

    def test_missing_policy_cell_is_empty(self, evaluator):
        """Test that a short policy row reads missing cells as empty."""
        matcher = evaluator.compile("r.act == p.act")
        assert evaluator.evaluate(matcher, _context(("a", "b", ""), ("a", "b")))

    def test_eft_defaults_to_allow(self, evaluator):
        """Test that p.eft is allow when not declared."""
        matcher = evaluator.compile("p.eft == 'allow'")
        assert evaluator.evaluate(matcher, _context(("a", "b", "c"), ("a", "b", "c")))

    def test_attribute_lookup(self, evaluator):
        """Test attribute paths against dicts and objects."""

        @dataclass
        class Document:
            Owner: str

        matcher = evaluator.compile("r.sub.Name == r.obj.Owner")
        context = _context(({"Name": "alice"}, Document("alice"), "read"))
        assert evaluator.evaluate(matcher, context)

    def test_attribute_missing(self, evaluator):
        """Test that a failed attribute lookup is an evaluation error."""
        matcher = evaluator.compile("r.sub.Age > 18")
        with pytest.raises(ExpressionEvaluationError):
            evaluator.evaluate(matcher, _context(({"Name": "alice"}, "doc", "read")))

    def test_abac_comparison(self, evaluator):
        """Test a numeric attribute comparison."""
        matcher = evaluator.compile("r.sub.Age > 18 && r.act == 'read'")
        assert evaluator.evaluate(matcher, _context(({"Age": 30}, "doc", "read")))
        assert not evaluator.evaluate(matcher, _context(({"Age": 10}, "doc", "read")))

    def test_unknown_function(self, evaluator):
        """Test that an unregistered function raises UnknownFunctionError."""
        matcher = evaluator.compile("nosuchFn(r.sub, p.sub)")
        with pytest.raises(UnknownFunctionError):
            evaluator.evaluate(matcher, _context(("a", "b", "c"), ("a", "b", "c")))

    def test_undeclared_field(self, evaluator):
        """Test that fields resolve against the declared schema only."""
        matcher = evaluator.compile("r.owner == p.sub")
        with pytest.raises(ExpressionEvaluationError):
            evaluator.evaluate(matcher, _context(("a", "b", "c"), ("a", "b", "c")))

    def test_function_failure_is_wrapped(self, evaluator):
        """Test that a raising function surfaces as an evaluation error."""

        def boom(a, b):
            raise RuntimeError("boom")

        evaluator.functions.add_function("boom", boom)
        matcher = evaluator.compile("boom(r.sub, p.sub)")
        with pytest.raises(ExpressionEvaluationError, match="boom"):
            evaluator.evaluate(matcher, _context(("a", "b", "c"), ("a", "b", "c")))

    def test_registered_function_without_recompile(self, evaluator):
        """Test that functions registered after compilation are callable."""
        matcher = evaluator.compile("startsWith(r.sub, 'al')")
        evaluator.functions.add_function("startsWith", lambda a, b: str(a).startswith(b))
        assert evaluator.evaluate(matcher, _context(("alice", "b", "c")))

    def test_short_circuit_conjunction(self, evaluator):
        """Test that later clauses are skipped after a false one."""
        calls = []
        evaluator.functions.add_function("track", lambda a: calls.append(a) or True)
        matcher = evaluator.compile("r.sub == 'nobody' && track(r.sub)")
        assert not evaluator.evaluate(matcher, _context(("alice", "b", "c")))
        assert calls == []


class TestEvaluateFunction:
    """Tests for the one-shot evaluate() helper."""

    def test_mappings(self):
        """Test evaluation with field-name mappings."""
        assert evaluate("r.sub == p.sub", {"sub": "alice"}, {"sub": "alice"})
        assert not evaluate("r.sub == p.sub", {"sub": "alice"}, {"sub": "bob"})

    def test_sequences_with_tokens(self):
        """Test evaluation with positional values."""
        assert evaluate(
            "keyMatch2(r.obj, p.obj)",
            ("alice", "/users/42"),
            ("alice", "/users/:id"),
            request_tokens=("sub", "obj"),
            policy_tokens=("sub", "obj"),
        )

    def test_sequence_without_tokens(self):
        """Test that positional values need field names."""
        with pytest.raises(ExpressionEvaluationError):
            evaluate("r.sub == p.sub", ("alice",), ("alice",))

    def test_custom_functions(self):
        """Test passing a custom registry."""
        functions = FunctionMap()
        functions.add_function("same", lambda a, b: a == b)
        assert evaluate("same(r.sub, p.sub)", {"sub": "x"}, {"sub": "x"}, functions)

    def test_shared_cache_is_bounded(self):
        """Test that one-shot evaluation of many expressions keeps the shared cache bounded."""
        from gatekeeper import expression

        for i in range(expression.DEFAULT_CACHE_SIZE + 20):
            evaluate(f"r.sub == '{i}'", {"sub": "x"}, {"sub": "x"})
        assert expression._default_evaluator.cached_count() <= expression.DEFAULT_CACHE_SIZE
