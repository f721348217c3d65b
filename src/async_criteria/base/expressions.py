# src/async_criteria/base/expressions.py
"""
Backend-agnostic predicate tree produced by the criteria compiler.

Every node is an immutable dataclass. Values never appear inside the tree:
leaves reference bind parameters by name and the values travel alongside as
``Binding`` records, so a driver-specific renderer decides placeholder style.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Tuple

# Signature of the callable handed to operators for fresh parameter names.
ParameterNameGenerator = Callable[[], str]


class ComparisonOperator(Enum):
    """Binary comparison operators a leaf predicate can carry."""

    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"
    ILIKE = "ILIKE"


class LogicalOperator(Enum):
    AND = "AND"
    OR = "OR"


# --- Predicate Nodes ---
@dataclass(frozen=True)
class Predicate:
    """Base class for compiled boolean expression nodes."""

    def parameter_names(self) -> Iterator[str]:
        """Yields the bind parameter names referenced by this node, in order."""
        return iter(())


@dataclass(frozen=True)
class Comparison(Predicate):
    """``field <operator> :parameter``"""

    field: str
    operator: ComparisonOperator
    parameter: str

    def parameter_names(self) -> Iterator[str]:
        yield self.parameter

    def __str__(self) -> str:
        return f"{self.field} {self.operator.value} :{self.parameter}"


@dataclass(frozen=True)
class Membership(Predicate):
    """``field [NOT] IN (:parameter)`` where the parameter is bound to a list."""

    field: str
    parameter: str
    negated: bool = False

    def parameter_names(self) -> Iterator[str]:
        yield self.parameter

    def __str__(self) -> str:
        keyword = "NOT IN" if self.negated else "IN"
        return f"{self.field} {keyword} (:{self.parameter})"


@dataclass(frozen=True)
class NullCheck(Predicate):
    field: str
    negated: bool = False

    def __str__(self) -> str:
        return f"{self.field} IS NOT NULL" if self.negated else f"{self.field} IS NULL"


@dataclass(frozen=True)
class Constant(Predicate):
    """A predicate that is always true or always false."""

    value: bool

    def __str__(self) -> str:
        return "1 = 1" if self.value else "1 = 0"


@dataclass(frozen=True)
class Logical(Predicate):
    operator: LogicalOperator
    conditions: Tuple[Predicate, ...]

    def parameter_names(self) -> Iterator[str]:
        for condition in self.conditions:
            yield from condition.parameter_names()

    def __str__(self) -> str:
        joiner = f" {self.operator.value} "
        return "(" + joiner.join(str(c) for c in self.conditions) + ")"


@dataclass(frozen=True)
class Negation(Predicate):
    condition: Predicate

    def parameter_names(self) -> Iterator[str]:
        return self.condition.parameter_names()

    def __str__(self) -> str:
        inner = str(self.condition)
        if not isinstance(self.condition, Logical):
            inner = f"({inner})"
        return f"NOT {inner}"


@dataclass(frozen=True)
class RelationCheck(Predicate):
    """
    A correlated sub-query over the rows reached through one relation.

    Without ``operator`` it renders as ``[NOT] EXISTS (...)``; with one it
    compares ``(SELECT COUNT(*) ...)`` against ``:parameter``. ``joins`` and
    ``condition`` belong to the sub-query and are resolved against ``alias``.
    """

    owner_alias: str
    relation: str
    alias: str
    joins: Tuple[Any, ...] = ()
    condition: Optional[Predicate] = None
    operator: Optional[ComparisonOperator] = None
    parameter: Optional[str] = None
    negated: bool = False

    def parameter_names(self) -> Iterator[str]:
        if self.condition is not None:
            yield from self.condition.parameter_names()
        if self.parameter is not None:
            yield self.parameter

    def __str__(self) -> str:
        inner = f"{self.owner_alias}.{self.relation} AS {self.alias}"
        if self.condition is not None:
            inner += f" WHERE {self.condition}"
        if self.operator is not None:
            return f"COUNT({inner}) {self.operator.value} :{self.parameter}"
        return f"{'NOT EXISTS' if self.negated else 'EXISTS'}({inner})"


# --- Compiled Output ---
@dataclass(frozen=True)
class Binding:
    """A named bind parameter and the value it carries."""

    name: str
    value: Any


@dataclass(frozen=True)
class CompiledPredicate:
    """A predicate node plus the ordered bindings it produced."""

    expression: Predicate
    bindings: Tuple[Binding, ...] = ()

    def __str__(self) -> str:
        return str(self.expression)


def combine(
    operator: LogicalOperator, predicates: Tuple[CompiledPredicate, ...]
) -> CompiledPredicate:
    """Wraps several compiled predicates in one logical node, keeping binding order."""
    bindings: Tuple[Binding, ...] = ()
    for predicate in predicates:
        bindings += predicate.bindings
    return CompiledPredicate(
        Logical(operator, tuple(p.expression for p in predicates)), bindings
    )
