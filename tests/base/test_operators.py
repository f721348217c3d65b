# tests/base/test_operators.py

import itertools

import pytest

from async_criteria.base.exceptions import InvalidOperatorValueError
from async_criteria.base.expressions import (
    Binding,
    Comparison,
    ComparisonOperator,
    Constant,
    Logical,
    LogicalOperator,
    Membership,
    Negation,
    NullCheck,
)
from async_criteria.base.operators import (
    ComparisonOperatorStrategy,
    Operator,
    OperatorRegistry,
    default_registry,
    register_operator,
)


@pytest.fixture
def next_param():
    counter = itertools.count(1)
    return lambda: f"p{next(counter)}"


@pytest.fixture
def registry() -> OperatorRegistry:
    return OperatorRegistry()


BUILTIN_NAMES = [
    "=", "eq", "!=", "<>", "neq", ">", "gt", ">=", "gte", "<", "lt", "<=", "lte",
    "like", "not_like", "ilike", "contains", "starts_with", "ends_with",
    "in", "not_in", "between", "not_between", "is_null", "is_not_null",
]


@pytest.mark.parametrize("name", BUILTIN_NAMES)
def test_builtin_operators_registered(registry, name):
    assert registry.has(name)
    assert isinstance(registry.get(name), Operator)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("=", ComparisonOperator.EQ),
        ("neq", ComparisonOperator.NE),
        ("<>", ComparisonOperator.NE),
        (">", ComparisonOperator.GT),
        ("gte", ComparisonOperator.GTE),
        ("lt", ComparisonOperator.LT),
        ("<=", ComparisonOperator.LTE),
    ],
)
def test_comparison_operators_bind_value(registry, next_param, name, expected):
    compiled = registry.apply(name, "u.age", 18, next_param)
    assert compiled.expression == Comparison("u.age", expected, "p1")
    assert compiled.bindings == (Binding("p1", 18),)


@pytest.mark.parametrize(
    "name, value, pattern, operator",
    [
        ("like", "A%", "A%", ComparisonOperator.LIKE),
        ("not_like", "A%", "A%", ComparisonOperator.NOT_LIKE),
        ("ilike", "a%", "a%", ComparisonOperator.ILIKE),
        ("contains", "ar", "%ar%", ComparisonOperator.LIKE),
        ("starts_with", "Da", "Da%", ComparisonOperator.LIKE),
        ("ends_with", "ve", "%ve", ComparisonOperator.LIKE),
        ("contains", None, "%%", ComparisonOperator.LIKE),
        ("contains", 42, "%42%", ComparisonOperator.LIKE),
    ],
)
def test_text_operators_wrap_pattern(registry, next_param, name, value, pattern, operator):
    compiled = registry.apply(name, "u.name", value, next_param)
    assert compiled.expression == Comparison("u.name", operator, "p1")
    assert compiled.bindings == (Binding("p1", pattern),)


def test_in_binds_list(registry, next_param):
    compiled = registry.apply("in", "u.id", (1, 2), next_param)
    assert compiled.expression == Membership("u.id", "p1")
    assert compiled.bindings == (Binding("p1", [1, 2]),)


def test_in_wraps_scalar(registry, next_param):
    compiled = registry.apply("in", "u.id", 7, next_param)
    assert compiled.bindings == (Binding("p1", [7]),)


def test_empty_in_is_always_false(registry, next_param):
    compiled = registry.apply("in", "u.id", [], next_param)
    assert compiled.expression == Constant(False)
    assert compiled.bindings == ()


def test_empty_not_in_is_always_true(registry, next_param):
    compiled = registry.apply("not_in", "u.id", [], next_param)
    assert compiled.expression == Constant(True)
    assert compiled.bindings == ()


def test_not_in_is_negated_membership(registry, next_param):
    compiled = registry.apply("not_in", "u.id", [3], next_param)
    assert compiled.expression == Membership("u.id", "p1", negated=True)


def test_between_renders_inclusive_range(registry, next_param):
    compiled = registry.apply("between", "u.age", [20, 35], next_param)
    assert compiled.expression == Logical(
        LogicalOperator.AND,
        (
            Comparison("u.age", ComparisonOperator.GTE, "p1"),
            Comparison("u.age", ComparisonOperator.LTE, "p2"),
        ),
    )
    assert compiled.bindings == (Binding("p1", 20), Binding("p2", 35))
    assert str(compiled) == "(u.age >= :p1 AND u.age <= :p2)"


def test_not_between_negates_range(registry, next_param):
    compiled = registry.apply("not_between", "u.age", (20, 35), next_param)
    assert isinstance(compiled.expression, Negation)
    assert str(compiled) == "NOT (u.age >= :p1 AND u.age <= :p2)"


@pytest.mark.parametrize("value", [None, 5, [1], [1, 2, 3], "ab"])
def test_between_rejects_wrong_shape(registry, next_param, value):
    with pytest.raises(InvalidOperatorValueError):
        registry.apply("between", "u.age", value, next_param)


def test_null_operators_ignore_value(registry, next_param):
    assert registry.apply("is_null", "u.email", "ignored", next_param).expression == NullCheck("u.email")
    compiled = registry.apply("is_not_null", "u.email", None, next_param)
    assert compiled.expression == NullCheck("u.email", negated=True)
    assert compiled.bindings == ()


def test_unknown_operator_returns_none(registry, next_param):
    assert registry.apply("~~", "u.name", "x", next_param) is None
    assert not registry.has("~~")


def test_lookup_is_exact(registry):
    assert not registry.has("LIKE")
    assert not registry.has(" like")
    assert not registry.has(None)


def test_register_plain_callable(registry, next_param):
    def starts_with_upper(field, value, next_name):
        name = next_name()
        return Comparison(f"UPPER({field})", ComparisonOperator.LIKE, name), [
            Binding(name, f"{str(value).upper()}%")
        ]

    registry.register("istarts_with", starts_with_upper)
    compiled = registry.apply("istarts_with", "u.name", "al", next_param)
    assert str(compiled) == "UPPER(u.name) LIKE :p1"
    assert compiled.bindings == (Binding("p1", "AL%"),)


def test_register_overwrites(registry, next_param):
    registry.register("=", ComparisonOperatorStrategy(ComparisonOperator.NE))
    compiled = registry.apply("=", "u.id", 1, next_param)
    assert compiled.expression.operator is ComparisonOperator.NE


def test_register_rejects_non_callable(registry):
    with pytest.raises(TypeError):
        registry.register("bad", 42)


def test_registry_without_defaults_is_empty():
    assert OperatorRegistry(register_defaults=False).names() == []


def test_copy_is_independent(registry):
    clone = registry.copy()
    clone.register("custom", ComparisonOperatorStrategy(ComparisonOperator.EQ))
    assert clone.has("custom")
    assert not registry.has("custom")


def test_register_operator_uses_default_registry():
    register_operator("same_as", ComparisonOperatorStrategy(ComparisonOperator.EQ))
    try:
        assert default_registry.has("same_as")
    finally:
        default_registry._operators.pop("same_as", None)
