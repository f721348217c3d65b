# src/async_criteria/base/compiler.py
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .criteria import (
    COUNT_OPERATORS,
    CriteriaNode,
    Equality,
    GroupKind,
    LogicalGroup,
    OperatorClause,
    RelationClause,
    parse_criteria,
)
from .expressions import (
    Binding,
    CompiledPredicate,
    ComparisonOperator,
    LogicalOperator,
    Negation,
    NullCheck,
    Predicate,
    RelationCheck,
    combine,
)
from .joins import ConditionKind, JoinKind, JoinResolver, JoinSpec
from .operators import (
    ComparisonOperatorStrategy,
    MembershipOperator,
    OperatorRegistry,
    default_registry,
)

log = logging.getLogger(__name__)

_EQUALITY = ComparisonOperatorStrategy(ComparisonOperator.EQ)
_MEMBERSHIP = MembershipOperator()

_DIRECTIONS = ("ASC", "DESC")


# --- Query State and Output ---
class SelectMode(Enum):
    ROWS = "rows"
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"
    EXISTS = "exists"


@dataclass(frozen=True)
class Selection:
    """What the engine should select. ``field`` is required for aggregates."""

    mode: SelectMode = SelectMode.ROWS
    field: Optional[str] = None
    # (column name, RelationCheck) pairs selected next to the root row
    counts: Tuple[Tuple[str, Any], ...] = ()


@dataclass
class QueryState:
    """
    The in-progress query a repository assembles before compiling it.

    Filters, global scopes and macros receive this object and may append
    criteria, joins or ordering to it. Nothing here is compiled yet.
    """

    root_alias: str
    criteria: List[CriteriaNode] = field(default_factory=list)
    joins: List[Any] = field(default_factory=list)
    order_by: List[Tuple[str, str]] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    selection: Selection = field(default_factory=Selection)
    counts: List[Tuple[str, str, Any]] = field(default_factory=list)

    def where(self, criteria: Any) -> "QueryState":
        self.criteria.extend(parse_criteria(criteria))
        return self

    def add_join(
        self,
        kind: Any,
        relation_path: str,
        alias: str,
        condition: Any = None,
        condition_kind: ConditionKind = ConditionKind.WITH,
    ) -> "QueryState":
        self.joins.append((kind, relation_path, alias, condition, condition_kind))
        return self

    def add_order_by(self, field_path: str, direction: str = "ASC") -> "QueryState":
        self.order_by.append((field_path, normalize_direction(direction)))
        return self

    def add_count(
        self, relation_path: str, criteria: Any = None, name: Optional[str] = None
    ) -> "QueryState":
        """Selects the number of related rows as ``name`` (default ``<relation>_count``)."""
        if name is None:
            name = relation_path.replace(".", "_") + "_count"
        self.counts.append((name, relation_path, criteria))
        return self


@dataclass(frozen=True)
class CompiledQuery:
    """Everything the execution engine needs, with no SQL dialect baked in."""

    root_alias: str
    predicate: Optional[Predicate]
    joins: Tuple[JoinSpec, ...] = ()
    bindings: Tuple[Binding, ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    selection: Selection = Selection()

    @property
    def parameters(self) -> Dict[str, Any]:
        return {binding.name: binding.value for binding in self.bindings}

    def __str__(self) -> str:
        parts = [f"FROM {self.root_alias}"]
        parts.extend(str(join) for join in self.joins)
        if self.predicate is not None:
            parts.append(f"WHERE {self.predicate}")
        if self.order_by:
            parts.append(
                "ORDER BY " + ", ".join(f"{f} {d}" for f, d in self.order_by)
            )
        return " ".join(parts)


def normalize_direction(direction: str) -> str:
    normalized = str(direction).upper()
    if normalized not in _DIRECTIONS:
        raise ValueError(f"Order direction must be ASC or DESC, got {direction!r}")
    return normalized


# --- Compiler ---
class CriteriaCompiler:
    """
    Compiles criteria into one predicate tree plus joins and bindings.

    A compiler instance represents one compile run: its parameter counter and
    join resolver are shared by everything compiled through it, so parameter
    names and joins never repeat. Use a fresh instance (or ``reset()``) per
    query.
    """

    def __init__(
        self,
        registry: Optional[OperatorRegistry] = None,
        join_resolver: Optional[JoinResolver] = None,
        parameter_prefix: str = "param_",
        counter_start: int = 0,
    ):
        self.registry = registry if registry is not None else default_registry
        self.join_resolver = join_resolver if join_resolver is not None else JoinResolver()
        self._parameter_prefix = parameter_prefix
        self._counter_start = counter_start
        self._counter = counter_start
        self._subqueries = 0

    @property
    def joins(self) -> Tuple[JoinSpec, ...]:
        return self.join_resolver.joins

    def next_parameter_name(self) -> str:
        self._counter += 1
        return f"{self._parameter_prefix}{self._counter}"

    def reset(self) -> None:
        self._counter = self._counter_start
        self._subqueries = 0
        self.join_resolver.reset()

    def compile(self, criteria: Any, root_alias: str) -> Optional[CompiledPredicate]:
        """
        Compiles criteria against ``root_alias``.

        Returns None when nothing is left to filter on, which callers treat
        as "no WHERE clause" rather than an error.
        """
        compiled = self._compile_sequence(parse_criteria(criteria), root_alias)
        if not compiled:
            return None
        if len(compiled) == 1:
            return compiled[0]
        return combine(LogicalOperator.AND, tuple(compiled))

    def compile_query(self, state: QueryState) -> CompiledQuery:
        """Compiles a full query state: manual joins, criteria, ordering, selection."""
        root_alias = state.root_alias
        bindings: List[Binding] = []

        for config in state.joins:
            bindings.extend(self._apply_join_config(config, root_alias))

        predicate = self.compile(state.criteria, root_alias)
        if predicate is not None:
            bindings.extend(predicate.bindings)

        order_by = tuple(
            (self.join_resolver.resolve(root_alias, field_path)[0], direction)
            for field_path, direction in state.order_by
        )

        selection = state.selection
        if selection.field is not None:
            reference, _ = self.join_resolver.resolve(root_alias, selection.field)
            selection = replace(selection, field=reference)
        if state.counts:
            counts = []
            for name, relation_path, criteria in state.counts:
                check, check_bindings = self.compile_relation(
                    relation_path, root_alias, parse_criteria(criteria)
                )
                counts.append((name, check))
                bindings.extend(check_bindings)
            selection = replace(selection, counts=selection.counts + tuple(counts))

        compiled = CompiledQuery(
            root_alias=root_alias,
            predicate=predicate.expression if predicate is not None else None,
            joins=self.join_resolver.joins,
            bindings=tuple(bindings),
            order_by=order_by,
            limit=state.limit,
            offset=state.offset,
            selection=selection,
        )
        log.debug(f"Compiled query: {compiled} with {len(bindings)} binding(s)")
        return compiled

    # --- Node Compilation ---

    def _compile_sequence(
        self, nodes: List[CriteriaNode], root_alias: str
    ) -> List[CompiledPredicate]:
        compiled = []
        for node in nodes:
            predicate = self._compile_node(node, root_alias)
            if predicate is not None:
                compiled.append(predicate)
        return compiled

    def _compile_node(
        self, node: CriteriaNode, root_alias: str
    ) -> Optional[CompiledPredicate]:
        if isinstance(node, Equality):
            return self._compile_equality(node, root_alias)
        if isinstance(node, OperatorClause):
            return self._compile_clause(node, root_alias)
        if isinstance(node, LogicalGroup):
            return self._compile_group(node, root_alias)
        if isinstance(node, RelationClause):
            return self._compile_relation_clause(node, root_alias)
        raise TypeError(f"Unsupported criteria node type: {type(node).__name__}")

    def _compile_equality(self, node: Equality, root_alias: str) -> CompiledPredicate:
        reference, _ = self.join_resolver.resolve(root_alias, node.field)
        value = node.value

        if value is None:
            return CompiledPredicate(NullCheck(reference))
        if isinstance(value, (list, tuple, set, frozenset)):
            predicate, bindings = _MEMBERSHIP.render(
                reference, value, self.next_parameter_name
            )
        else:
            # bools are bound too, never inlined
            predicate, bindings = _EQUALITY.render(
                reference, value, self.next_parameter_name
            )
        return CompiledPredicate(predicate, tuple(bindings))

    def _compile_clause(self, node: OperatorClause, root_alias: str) -> CompiledPredicate:
        reference, _ = self.join_resolver.resolve(root_alias, node.field)
        compiled = self.registry.apply(
            node.operator, reference, node.value, self.next_parameter_name
        )
        if compiled is None:
            log.debug(
                f"Unknown operator {node.operator!r} on '{node.field}', "
                f"falling back to equality"
            )
            predicate, bindings = _EQUALITY.render(
                reference, node.value, self.next_parameter_name
            )
            compiled = CompiledPredicate(predicate, tuple(bindings))
        return compiled

    def _compile_group(
        self, node: LogicalGroup, root_alias: str
    ) -> Optional[CompiledPredicate]:
        compiled = self._compile_sequence(list(node.children), root_alias)
        if not compiled:
            return None

        if node.kind is GroupKind.OR:
            return combine(LogicalOperator.OR, tuple(compiled))

        conjunction = combine(LogicalOperator.AND, tuple(compiled))
        if node.kind is GroupKind.NOT:
            return CompiledPredicate(
                Negation(conjunction.expression), conjunction.bindings
            )
        return conjunction

    # --- Relation Checks ---

    def compile_relation(
        self, relation_path: str, owner_alias: str, criteria: List[CriteriaNode]
    ) -> Tuple[RelationCheck, Tuple[Binding, ...]]:
        """
        Compiles an existence sub-query over ``relation_path`` from ``owner_alias``.

        Criteria are resolved against the related entity inside the
        sub-query, so their relation paths join there and not on the outer
        query. A dotted path nests one sub-query per step.
        """
        head, _, rest = relation_path.partition(self.join_resolver.separator)
        self._subqueries += 1
        alias = f"{head}_sub{self._subqueries}"

        inner: List[CriteriaNode] = list(criteria)
        if rest:
            inner = [RelationClause(rest, tuple(inner))]

        sub = CriteriaCompiler(
            registry=self.registry,
            parameter_prefix=self._parameter_prefix,
            counter_start=self._counter,
        )
        sub._subqueries = self._subqueries
        condition = sub.compile(inner, alias)
        self._counter = sub._counter
        self._subqueries = sub._subqueries

        check = RelationCheck(
            owner_alias,
            head,
            alias,
            joins=sub.joins,
            condition=condition.expression if condition is not None else None,
        )
        bindings = condition.bindings if condition is not None else ()
        log.debug(f"Compiled relation check: {check}")
        return check, bindings

    def _compile_relation_clause(
        self, node: RelationClause, root_alias: str
    ) -> CompiledPredicate:
        check, bindings = self.compile_relation(node.relation, root_alias, list(node.criteria))
        if node.operator is None:
            return CompiledPredicate(replace(check, negated=node.negated), bindings)

        operator = COUNT_OPERATORS.get(node.operator)
        if operator is None:
            raise ValueError(f"Invalid relation count operator: {node.operator!r}")
        parameter = self.next_parameter_name()
        predicate: Predicate = replace(check, operator=operator, parameter=parameter)
        if node.negated:
            predicate = Negation(predicate)
        return CompiledPredicate(predicate, bindings + (Binding(parameter, node.count),))

    # --- Manual Joins ---

    def _apply_join_config(self, config: Any, root_alias: str) -> List[Binding]:
        """Registers a manually configured join; returns its condition bindings."""
        if isinstance(config, JoinSpec):
            self.join_resolver.add_join(config)
            return []

        if isinstance(config, Mapping):
            kind = config.get("kind", config.get("type", JoinKind.LEFT))
            relation_path = config.get("relation_path", config.get("relation"))
            alias = config.get("alias")
            condition = config.get("condition")
            condition_kind = config.get("condition_kind", ConditionKind.WITH)
        elif isinstance(config, (list, tuple)) and len(config) >= 3:
            kind, relation_path, alias = config[0], config[1], config[2]
            condition = config[3] if len(config) > 3 else None
            condition_kind = config[4] if len(config) > 4 else ConditionKind.WITH
        else:
            log.debug(f"Skipping malformed join configuration: {config!r}")
            return []

        if not relation_path or not alias:
            log.debug(f"Skipping join configuration without relation/alias: {config!r}")
            return []

        if self.join_resolver.separator not in relation_path:
            relation_path = f"{root_alias}{self.join_resolver.separator}{relation_path}"
        if self.join_resolver.has_join(relation_path, alias):
            return []

        resolved_condition = None
        bindings: Tuple[Binding, ...] = ()
        if condition is not None:
            if isinstance(condition, CompiledPredicate):
                compiled_condition: Optional[CompiledPredicate] = condition
            elif isinstance(condition, Predicate):
                compiled_condition = CompiledPredicate(condition)
            else:
                # Bare field names in a join condition refer to the joined entity
                compiled_condition = self.compile(condition, alias)
            if compiled_condition is not None:
                resolved_condition = (
                    ConditionKind(condition_kind),
                    compiled_condition.expression,
                )
                bindings = compiled_condition.bindings

        self.join_resolver.add_join(
            JoinSpec(JoinKind.parse(kind), relation_path, alias, resolved_condition)
        )
        return list(bindings)
