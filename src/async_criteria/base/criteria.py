# src/async_criteria/base/criteria.py
"""
Typed criteria nodes and the parse step that produces them.

Raw criteria is the loosely shaped structure callers write by hand::

    [
        {"status": "active"},                      # named equality
        ["age", ">=", 18],                         # operator triple
        ["or", [{"role": "admin"}, ["credits", ">", 100]]],
    ]

``parse_criteria`` classifies every element exactly once so the compiler
only ever sees ``Equality``, ``OperatorClause`` and ``LogicalGroup`` values.
``RelationClause`` nodes have no raw form; ``relation_clause`` builds them
and they pass through ``parse_criteria`` like any other node.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional, Tuple

from .expressions import ComparisonOperator

log = logging.getLogger(__name__)


class GroupKind(Enum):
    AND = "and"
    OR = "or"
    NOT = "not"


_GROUP_MARKERS = {kind.value: kind for kind in GroupKind}

# Comparisons accepted when filtering on the number of related rows
COUNT_OPERATORS = {
    "=": ComparisonOperator.EQ,
    "==": ComparisonOperator.EQ,
    "!=": ComparisonOperator.NE,
    "<>": ComparisonOperator.NE,
    ">": ComparisonOperator.GT,
    ">=": ComparisonOperator.GTE,
    "<": ComparisonOperator.LT,
    "<=": ComparisonOperator.LTE,
}


# --- Criteria Nodes ---
@dataclass(frozen=True)
class CriteriaNode:
    """Base class for parsed criteria."""

    pass


@dataclass(frozen=True)
class Equality(CriteriaNode):
    """``field = value``; None means IS NULL and a list means IN."""

    field: str
    value: Any


@dataclass(frozen=True)
class OperatorClause(CriteriaNode):
    field: str
    operator: Any = "="
    value: Any = None


@dataclass(frozen=True)
class LogicalGroup(CriteriaNode):
    kind: GroupKind
    children: Tuple[CriteriaNode, ...] = ()


@dataclass(frozen=True)
class RelationClause(CriteriaNode):
    """
    Root rows that have (or lack) related rows matching ``criteria``.

    ``relation`` may be dotted (``profile.country``); each step nests one
    more existence check. With ``operator`` and ``count`` the number of
    matching rows of the first step is compared instead.
    """

    relation: str
    criteria: Tuple[CriteriaNode, ...] = ()
    operator: Optional[str] = None
    count: Any = None
    negated: bool = False


# --- Parsing ---
def parse_criteria(criteria: Any) -> List[CriteriaNode]:
    """
    Parses raw criteria into typed nodes.

    Accepts a sequence of elements, a mapping of field/value pairs, a single
    node, or None. Elements whose shape matches no node kind are skipped.
    """
    if criteria is None:
        return []
    if isinstance(criteria, CriteriaNode):
        return [criteria]
    if isinstance(criteria, Mapping):
        return _parse_named(criteria)
    if not isinstance(criteria, (list, tuple)):
        log.debug(f"Skipping criteria of unsupported type {type(criteria).__name__}")
        return []

    nodes: List[CriteriaNode] = []
    for element in criteria:
        nodes.extend(_parse_element(element))
    return nodes


def _parse_element(element: Any) -> List[CriteriaNode]:
    if isinstance(element, CriteriaNode):
        return [element]
    if isinstance(element, Mapping):
        return _parse_named(element)
    if isinstance(element, (list, tuple)):
        node = _parse_positional(element)
        return [node] if node is not None else []
    log.debug(f"Skipping malformed criteria element: {element!r}")
    return []


def _parse_named(pairs: Mapping) -> List[CriteriaNode]:
    nodes: List[CriteriaNode] = []
    for key, value in pairs.items():
        if not isinstance(key, str):
            log.debug(f"Skipping criteria entry with non-string key: {key!r}")
            continue
        nodes.append(Equality(key, value))
    return nodes


def _parse_positional(items: Any) -> "CriteriaNode | None":
    if not items:
        return None

    first = items[0]
    if isinstance(first, str) and first in _GROUP_MARKERS:
        children = items[1] if len(items) > 1 else None
        if not isinstance(children, (list, tuple, Mapping)):
            log.debug(f"Skipping '{first}' group without a child sequence: {items!r}")
            return None
        return LogicalGroup(_GROUP_MARKERS[first], tuple(parse_criteria(children)))

    if len(items) >= 2 and isinstance(first, str):
        operator = items[1] if items[1] is not None else "="
        value = items[2] if len(items) > 2 else None
        return OperatorClause(first, operator, value)

    log.debug(f"Skipping malformed criteria array: {items!r}")
    return None


def relation_clause(
    relation: str,
    criteria: Any = None,
    operator: Optional[str] = None,
    count: Any = None,
    negated: bool = False,
) -> RelationClause:
    """Builds a ``RelationClause``, rejecting count operators the compiler cannot render."""
    if not relation:
        raise ValueError("A relation name is required")
    if operator is not None and operator not in COUNT_OPERATORS:
        raise ValueError(f"Invalid relation count operator: {operator!r}")
    if operator is not None and count is None:
        raise ValueError(f"Relation count operator {operator!r} requires a count")
    return RelationClause(relation, tuple(parse_criteria(criteria)), operator, count, negated)
