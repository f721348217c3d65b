# src/async_criteria/db_implementations/sql_renderer.py
"""
SQL rendering shared by the SQLite and PostgreSQL engines.

Predicates reference bind parameters by name; the renderer turns them into
positional placeholders (``?`` or ``$n``) in the order they appear in the SQL
text and collects the matching values.
"""

import logging
from abc import abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

from async_criteria.base.compiler import CompiledQuery, SelectMode, Selection
from async_criteria.base.exceptions import UnknownRelationError
from async_criteria.base.expressions import (
    Comparison,
    ComparisonOperator,
    Constant,
    Logical,
    LogicalOperator,
    Membership,
    Negation,
    NullCheck,
    Predicate,
    RelationCheck,
)
from async_criteria.base.interfaces import QueryEngine, SelectQuery
from async_criteria.base.joins import ConditionKind, JoinSpec
from async_criteria.base.mapping import EntityMapping

log = logging.getLogger(__name__)

QMARK = "qmark"
NUMERIC = "numeric"


class SqlRenderer:
    """Renders predicate trees with one placeholder style."""

    def __init__(self, paramstyle: str = QMARK):
        if paramstyle not in (QMARK, NUMERIC):
            raise ValueError(f"Unsupported paramstyle: {paramstyle!r}")
        self.paramstyle = paramstyle

    @staticmethod
    def quote(identifier: str) -> str:
        """Quotes every dotted part: ``u.name`` -> ``"u"."name"``."""
        return ".".join('"' + part.replace('"', '""') + '"' for part in identifier.split("."))

    def placeholder(self, value: Any, params: List[Any]) -> str:
        params.append(value)
        return "?" if self.paramstyle == QMARK else f"${len(params)}"

    def render_predicate(
        self,
        predicate: Predicate,
        bindings: Mapping[str, Any],
        params: List[Any],
        tables: Optional[Dict[str, EntityMapping]] = None,
    ) -> str:
        """
        Renders one predicate, appending its values to ``params``.

        ``tables`` maps the aliases in scope to their tables; relation checks
        need it to find the relation they start from.
        """
        if isinstance(predicate, Comparison):
            value = self._lookup(bindings, predicate.parameter)
            operator = predicate.operator.value
            if predicate.operator is ComparisonOperator.ILIKE and self.paramstyle == QMARK:
                # SQLite LIKE is already case-insensitive for ASCII
                operator = "LIKE"
            return (
                f"{self.quote(predicate.field)} {operator} "
                f"{self.placeholder(value, params)}"
            )
        if isinstance(predicate, Membership):
            return self._render_membership(predicate, bindings, params)
        if isinstance(predicate, NullCheck):
            keyword = "IS NOT NULL" if predicate.negated else "IS NULL"
            return f"{self.quote(predicate.field)} {keyword}"
        if isinstance(predicate, Constant):
            return "1 = 1" if predicate.value else "1 = 0"
        if isinstance(predicate, Logical):
            joiner = f" {predicate.operator.value} "
            return "(" + joiner.join(
                self.render_predicate(c, bindings, params, tables) for c in predicate.conditions
            ) + ")"
        if isinstance(predicate, Negation):
            inner = self.render_predicate(predicate.condition, bindings, params, tables)
            if not isinstance(predicate.condition, Logical):
                inner = f"({inner})"
            return f"NOT {inner}"
        if isinstance(predicate, RelationCheck):
            return self._render_relation_check(predicate, bindings, params, tables or {})
        raise TypeError(f"Cannot render predicate of type {type(predicate).__name__}")

    def render_join(
        self,
        join: JoinSpec,
        tables: Dict[str, EntityMapping],
        bindings: Mapping[str, Any],
        params: List[Any],
    ) -> str:
        """Renders one join and records the joined alias in ``tables``."""
        owner = tables.get(join.owner_alias)
        if owner is None:
            raise UnknownRelationError(
                f"Join '{join.relation_path}' starts from unknown alias '{join.owner_alias}'"
            )
        relation = owner.relation(join.relation)
        tables[join.alias] = relation.target

        key_match = (
            f"{self.quote(join.owner_alias)}.{self.quote(relation.local_key)} = "
            f"{self.quote(join.alias)}.{self.quote(relation.remote_key)}"
        )
        on_clause = key_match
        if join.condition is not None:
            kind, predicate = join.condition
            rendered = self.render_predicate(predicate, bindings, params, tables)
            on_clause = rendered if kind is ConditionKind.ON else f"{key_match} AND {rendered}"

        return (
            f"{join.kind.value.upper()} JOIN {self.quote(relation.target.table)} "
            f"AS {self.quote(join.alias)} ON {on_clause}"
        )

    def render_paging(
        self, limit: Optional[int], offset: Optional[int], params: List[Any]
    ) -> str:
        parts = []
        if limit is not None:
            parts.append(f"LIMIT {self.placeholder(limit, params)}")
        elif offset and self.paramstyle == QMARK:
            # SQLite only accepts OFFSET after a LIMIT
            parts.append("LIMIT -1")
        if offset:
            parts.append(f"OFFSET {self.placeholder(offset, params)}")
        return " ".join(parts)

    def render_relation_subquery(
        self,
        check: RelationCheck,
        select: str,
        tables: Dict[str, EntityMapping],
        bindings: Mapping[str, Any],
        params: List[Any],
    ) -> str:
        """``SELECT <select> FROM related ... WHERE related.key = owner.key [AND ...]``"""
        owner = tables.get(check.owner_alias)
        if owner is None:
            raise UnknownRelationError(
                f"Relation '{check.relation}' starts from unknown alias '{check.owner_alias}'"
            )
        relation = owner.relation(check.relation)
        scope = dict(tables)
        scope[check.alias] = relation.target

        parts = [
            f"SELECT {select} FROM {self.quote(relation.target.table)} "
            f"AS {self.quote(check.alias)}"
        ]
        for join in check.joins:
            parts.append(self.render_join(join, scope, bindings, params))

        where = (
            f"{self.quote(check.alias)}.{self.quote(relation.remote_key)} = "
            f"{self.quote(check.owner_alias)}.{self.quote(relation.local_key)}"
        )
        if check.condition is not None:
            where += " AND " + self.render_predicate(check.condition, bindings, params, scope)
        parts.append(f"WHERE {where}")
        return " ".join(parts)

    def _render_relation_check(
        self,
        check: RelationCheck,
        bindings: Mapping[str, Any],
        params: List[Any],
        tables: Dict[str, EntityMapping],
    ) -> str:
        if check.operator is None:
            subquery = self.render_relation_subquery(check, "1", tables, bindings, params)
            keyword = "NOT EXISTS" if check.negated else "EXISTS"
            return f"{keyword} ({subquery})"

        subquery = self.render_relation_subquery(check, "COUNT(*)", tables, bindings, params)
        value = self._lookup(bindings, check.parameter)
        return f"({subquery}) {check.operator.value} {self.placeholder(value, params)}"

    def _render_membership(
        self, predicate: Membership, bindings: Mapping[str, Any], params: List[Any]
    ) -> str:
        values = self._lookup(bindings, predicate.parameter)
        if not isinstance(values, (list, tuple, set, frozenset)):
            values = [values]
        values = list(values)
        if not values:
            return "1 = 1" if predicate.negated else "1 = 0"

        field = self.quote(predicate.field)
        if self.paramstyle == NUMERIC:
            placeholder = self.placeholder(values, params)
            if predicate.negated:
                return f"NOT ({field} = ANY({placeholder}))"
            return f"{field} = ANY({placeholder})"

        placeholders = ", ".join(self.placeholder(v, params) for v in values)
        keyword = "NOT IN" if predicate.negated else "IN"
        return f"{field} {keyword} ({placeholders})"

    @staticmethod
    def _lookup(bindings: Mapping[str, Any], name: str) -> Any:
        try:
            return bindings[name]
        except KeyError:
            raise KeyError(f"No value bound for parameter '{name}'") from None


# --- Select Query ---
class SqlSelectQuery(SelectQuery):
    """Accumulates one SELECT and renders it; execution goes through the engine."""

    def __init__(self, engine: "SqlQueryEngine", mapping: EntityMapping, root_alias: str):
        self._engine = engine
        self._mapping = mapping
        self._root_alias = root_alias
        self._joins: List[JoinSpec] = []
        self._wheres: List[Predicate] = []
        self._bindings: Dict[str, Any] = {}
        self._order_by: List[Tuple[str, str]] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._selection = Selection()

    def add_join(self, join: JoinSpec) -> None:
        self._joins.append(join)

    def add_where(self, predicate: Predicate) -> None:
        self._wheres.append(predicate)

    def bind_parameter(self, name: str, value: Any) -> None:
        self._bindings[name] = self._engine.adapt_value(value)

    def add_order_by(self, field: str, direction: str) -> None:
        self._order_by.append((field, direction))

    def set_limit(self, limit: Optional[int]) -> None:
        self._limit = limit

    def set_offset(self, offset: Optional[int]) -> None:
        self._offset = offset

    def set_select(self, selection: Selection) -> None:
        self._selection = selection

    def to_sql(self) -> Tuple[str, List[Any]]:
        renderer = self._engine.renderer
        params: List[Any] = []
        mode = self._selection.mode

        tables = {self._root_alias: self._mapping}
        select = self._select_clause(params, tables)
        parts = [f"SELECT {select}", self._from_clause(params, tables)]

        where = self.render_where(params, tables)
        if where:
            parts.append(f"WHERE {where}")

        if mode is SelectMode.ROWS:
            if self._order_by:
                parts.append("ORDER BY " + ", ".join(
                    f"{renderer.quote(f)} {d}" for f, d in self._order_by
                ))
            paging = renderer.render_paging(self._limit, self._offset, params)
            if paging:
                parts.append(paging)
        elif mode is SelectMode.EXISTS:
            parts.append("LIMIT 1")

        return " ".join(parts), params

    def render_where(
        self, params: List[Any], tables: Optional[Dict[str, EntityMapping]] = None
    ) -> str:
        renderer = self._engine.renderer
        if not self._wheres:
            return ""
        if tables is None:
            tables = {self._root_alias: self._mapping}
        predicate = self._wheres[0]
        if len(self._wheres) > 1:
            predicate = Logical(LogicalOperator.AND, tuple(self._wheres))
        return renderer.render_predicate(predicate, self._bindings, params, tables)

    def render_key_subquery(self, params: List[Any]) -> str:
        """``SELECT root.pk FROM ... WHERE ... [ORDER BY ... LIMIT ...]`` for bulk writes."""
        renderer = self._engine.renderer
        pk = renderer.quote(f"{self._root_alias}.{self._mapping.primary_key}")
        tables = {self._root_alias: self._mapping}
        parts = [f"SELECT {pk}", self._from_clause(params, tables)]
        where = self.render_where(params, tables)
        if where:
            parts.append(f"WHERE {where}")
        if self._limit is not None or self._offset:
            if self._order_by:
                parts.append("ORDER BY " + ", ".join(
                    f"{renderer.quote(f)} {d}" for f, d in self._order_by
                ))
            parts.append(renderer.render_paging(self._limit, self._offset, params))
        return " ".join(parts)

    async def execute(self) -> List[Dict[str, Any]]:
        sql, params = self.to_sql()
        return await self._engine.fetch_all(sql, params)

    async def execute_scalar(self) -> Any:
        sql, params = self.to_sql()
        return await self._engine.fetch_value(sql, params)

    def _select_clause(self, params: List[Any], tables: Dict[str, EntityMapping]) -> str:
        renderer = self._engine.renderer
        mode = self._selection.mode
        root = renderer.quote(self._root_alias)
        if mode is SelectMode.ROWS:
            # Joined one-to-many relations would repeat root rows
            columns = [f"DISTINCT {root}.*" if self._joins else f"{root}.*"]
            for name, check in self._selection.counts:
                subquery = renderer.render_relation_subquery(
                    check, "COUNT(*)", tables, self._bindings, params
                )
                columns.append(f"({subquery}) AS {renderer.quote(name)}")
            return ", ".join(columns)
        if mode is SelectMode.COUNT:
            pk = renderer.quote(f"{self._root_alias}.{self._mapping.primary_key}")
            return f"COUNT(DISTINCT {pk})"
        if mode is SelectMode.EXISTS:
            return "1"
        if self._selection.field is None:
            raise ValueError(f"Aggregate {mode.value.upper()} requires a field")
        return f"{mode.value.upper()}({renderer.quote(self._selection.field)})"

    def _from_clause(self, params: List[Any], tables: Dict[str, EntityMapping]) -> str:
        """Renders FROM and the joins, recording every joined alias in ``tables``."""
        renderer = self._engine.renderer
        clause = (
            f"FROM {renderer.quote(self._mapping.table)} AS {renderer.quote(self._root_alias)}"
        )
        for join in self._joins:
            clause += " " + renderer.render_join(join, tables, self._bindings, params)
        return clause


# --- Engine Base ---
class SqlQueryEngine(QueryEngine):
    """
    Query engine for SQL databases; subclasses supply the driver calls.

    Bulk writes select the affected primary keys in a sub-query so that
    criteria on joined relations work for UPDATE and DELETE as well.
    """

    renderer: SqlRenderer

    def create_query(self, mapping: EntityMapping, root_alias: str) -> SqlSelectQuery:
        return SqlSelectQuery(self, mapping, root_alias)

    async def execute_update(
        self, compiled: CompiledQuery, mapping: EntityMapping, values: Mapping[str, Any]
    ) -> int:
        if not values:
            return 0
        query = self.prepare(compiled, mapping)
        params: List[Any] = []
        assignments = ", ".join(
            f"{self.renderer.quote(column)} = "
            f"{self.renderer.placeholder(self.adapt_column_value(value), params)}"
            for column, value in values.items()
        )
        subquery = query.render_key_subquery(params)
        sql = (
            f"UPDATE {self.renderer.quote(mapping.table)} SET {assignments} "
            f"WHERE {self.renderer.quote(mapping.primary_key)} IN ({subquery})"
        )
        return await self.execute_statement(sql, params)

    async def execute_delete(self, compiled: CompiledQuery, mapping: EntityMapping) -> int:
        query = self.prepare(compiled, mapping)
        params: List[Any] = []
        subquery = query.render_key_subquery(params)
        sql = (
            f"DELETE FROM {self.renderer.quote(mapping.table)} "
            f"WHERE {self.renderer.quote(mapping.primary_key)} IN ({subquery})"
        )
        return await self.execute_statement(sql, params)

    def adapt_value(self, value: Any) -> Any:
        """Converts a bound value into something the driver accepts."""
        return value

    def adapt_column_value(self, value: Any) -> Any:
        """Converts a value written to a column by a bulk update."""
        return self.adapt_value(value)

    @abstractmethod
    async def fetch_all(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def fetch_value(self, sql: str, params: List[Any]) -> Any:
        pass

    @abstractmethod
    async def execute_statement(self, sql: str, params: List[Any]) -> int:
        """Runs a write statement and returns the affected row count."""
        pass
