# tests/base/test_filters.py

import pytest

from async_criteria.base.compiler import CriteriaCompiler, QueryState
from async_criteria.base.criteria import Equality, GroupKind, LogicalGroup, OperatorClause
from async_criteria.base.filters import FilterChain, Macroable


@pytest.fixture
def chain() -> FilterChain:
    return FilterChain()


@pytest.fixture
def state() -> QueryState:
    return QueryState("u")


# --- Filter Chain ---


def test_filter_may_mutate_state(chain, state):
    def active(query):
        query.where({"status": "active"})

    result = chain.apply(state, [active])
    assert result is state
    assert state.criteria == [Equality("status", "active")]


def test_filter_may_return_criteria(chain, state):
    chain.apply(state, [lambda query: [["age", ">=", 18]]])
    assert state.criteria == [OperatorClause("age", ">=", 18)]


def test_filter_may_return_replacement_state(chain, state):
    replacement = QueryState("u").where({"role": "admin"})
    result = chain.apply(state, [lambda query: replacement])
    assert result is replacement


def test_filters_applied_in_order(chain, state):
    chain.apply(
        state,
        [lambda q: q.where({"a": 1}), lambda q: {"b": 2}, lambda q: q.add_order_by("a")],
    )
    assert state.criteria == [Equality("a", 1), Equality("b", 2)]
    assert state.order_by == [("a", "ASC")]


def test_non_callables_skipped(chain, state):
    chain.apply(state, [None, "status", 3, lambda q: {"a": 1}])
    assert state.criteria == [Equality("a", 1)]


def test_filter_can_add_join(chain, state):
    chain.apply(state, [lambda q: q.add_join("inner", "orders", "o").where({"o.status": "paid"})])
    compiled = CriteriaCompiler().compile_query(state)
    assert [(j.relation_path, j.alias) for j in compiled.joins] == [("u.orders", "o")]
    assert str(compiled.predicate) == "o.status = :param_1"


def test_apply_named_skips_unknown(chain, state):
    definitions = {"adults": lambda q: [["age", ">=", 18]], "admins": lambda q: {"role": "admin"}}
    chain.apply_named(state, definitions, ["admins", "missing"])
    assert state.criteria == [Equality("role", "admin")]


def test_apply_scopes_honours_exclusions(chain, state):
    scopes = {"active": lambda q: {"status": "active"}, "verified": lambda q: {"verified": True}}
    chain.apply_scopes(state, scopes, excluded=["active"])
    assert state.criteria == [Equality("verified", True)]


def test_compose_folds_filters(chain, state):
    composed = chain.compose([lambda q: {"a": 1}, lambda q: {"b": 2}])
    chain.apply(state, [composed])
    assert state.criteria == [Equality("a", 1), Equality("b", 2)]


def test_where_and_or_where_filters(chain, state):
    chain.apply(
        state,
        [
            FilterChain.where_filter({"status": "active"}),
            FilterChain.or_where_filter([{"role": "admin"}, {"role": "owner"}]),
            FilterChain.or_where_filter([]),
        ],
    )
    assert state.criteria == [
        Equality("status", "active"),
        LogicalGroup(GroupKind.OR, (Equality("role", "admin"), Equality("role", "owner"))),
    ]


# --- Macros ---


class Greeter(Macroable):
    def __init__(self, name):
        self.name = name


class LoudGreeter(Greeter):
    pass


def test_macro_receives_instance_and_arguments():
    Greeter.macro("greet", lambda self, punctuation="!": f"hello {self.name}{punctuation}")
    assert Greeter("bob").greet() == "hello bob!"
    assert Greeter("bob").greet("?") == "hello bob?"


def test_macros_are_inherited():
    Greeter.macro("shout", lambda self: self.name.upper())
    assert LoudGreeter.has_macro("shout")
    assert LoudGreeter("amy").shout() == "AMY"


def test_subclass_macro_does_not_leak_to_parent():
    LoudGreeter.macro("whisper", lambda self: self.name.lower())
    assert not Greeter.has_macro("whisper")
    with pytest.raises(AttributeError):
        Greeter("x").whisper()


def test_subclass_macro_overrides_parent():
    Greeter.macro("kind", lambda self: "plain")
    LoudGreeter.macro("kind", lambda self: "loud")
    assert Greeter("a").kind() == "plain"
    assert LoudGreeter("a").kind() == "loud"
    assert LoudGreeter.macros()["kind"]("ignored") == "loud"


def test_remove_and_clear_macros():
    Greeter.macro("a", lambda self: 1)
    Greeter.macro("b", lambda self: 2)
    Greeter.remove_macro("a")
    assert not Greeter.has_macro("a")
    Greeter.clear_macros()
    assert Greeter.macros() == {}


def test_macro_must_be_callable():
    with pytest.raises(TypeError):
        Greeter.macro("bad", "not callable")


def test_private_names_never_resolve_to_macros():
    Greeter.macro("_secret", lambda self: 1)
    with pytest.raises(AttributeError):
        Greeter("x")._secret


class Helpers:
    @staticmethod
    def double(self, value):
        return value * 2

    @staticmethod
    def _hidden(self):
        return None

    label = "not callable"


def test_mixin_registers_public_callables():
    Greeter.mixin(Helpers)
    assert Greeter("x").double(4) == 8
    assert not Greeter.has_macro("_hidden")
    assert not Greeter.has_macro("label")


def test_mixin_without_replace_keeps_existing():
    Greeter.macro("double", lambda self, value: "kept")
    Greeter.mixin(Helpers, replace=False)
    assert Greeter("x").double(4) == "kept"
