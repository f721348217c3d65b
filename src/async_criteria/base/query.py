# src/async_criteria/base/query.py
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .cache import DEFAULT_CACHE_LIFETIME, CacheDirective
from .compiler import (
    CompiledQuery,
    CriteriaCompiler,
    QueryState,
    SelectMode,
    Selection,
    normalize_direction,
)
from .criteria import (
    CriteriaNode,
    Equality,
    GroupKind,
    LogicalGroup,
    OperatorClause,
    parse_criteria,
    relation_clause,
)
from .exceptions import MultipleObjectsFoundException
from .filters import Macroable
from .operators import OperatorRegistry, default_registry
from .pagination import PaginationResult

if TYPE_CHECKING:
    from .interfaces import Repository

# --- Setup Logging ---
log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ROOT_ALIAS = "e"
DEFAULT_PER_PAGE = 20

_MISSING = object()


# --- Query Builder ---
class QueryBuilder(Macroable, Generic[T]):
    """
    Accumulates criteria through a fluent API and compiles them on demand.

    Chain methods mutate this builder and return it. Terminal coroutines
    (``get``, ``count``, ``paginate`` ...) compile the accumulated state once
    per call and hand the result to the bound repository for execution; a
    builder without a repository can still ``build()`` and ``to_sql()``.

    Example::

        users = await (
            repo.query()
            .where("status", "active")
            .where("age", ">=", 18)
            .or_where(lambda q: q.where("role", "admin").where("credits", ">", 100))
            .order_by("created_at", "DESC")
            .limit(10)
            .get()
        )
    """

    def __init__(
        self,
        repository: Optional["Repository[T]"] = None,
        root_alias: Optional[str] = None,
        registry: Optional[OperatorRegistry] = None,
    ):
        self._repository = repository
        if root_alias is None:
            root_alias = repository.alias if repository is not None else DEFAULT_ROOT_ALIAS
        self.root_alias = root_alias
        self._registry = registry
        self._logger = log
        self.reset()

    def reset(self) -> "QueryBuilder[T]":
        """Clears all accumulated criteria, ordering, paging and directives."""
        self._criteria: List[CriteriaNode] = []
        self._order_by: List[Tuple[str, str]] = []
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._excluded_scopes: List[str] = []
        self._filters: List[str] = []
        self._cache: Optional[CacheDirective] = None
        return self

    # --- Conditions ---

    def where(
        self, field: Any, operator: Any = _MISSING, value: Any = _MISSING
    ) -> "QueryBuilder[T]":
        """
        Adds a condition AND-ed with the existing ones.

        Args:
            field: A field path, a callable receiving a fresh builder (its
                conditions become one nested AND group), or raw criteria
                (a list or a mapping).
            operator: With two arguments this is the value to compare for
                equality; with three it names the operator.
            value: The operand for ``operator``.
        """
        if callable(field) and not isinstance(field, str):
            group = self._group_from_callback(GroupKind.AND, field)
            if group is not None:
                self._criteria.append(group)
            return self

        nodes = self._conditions(field, operator, value)
        self._logger.debug(f"where: adding {nodes!r}")
        self._criteria.extend(nodes)
        return self

    def or_where(
        self, field: Any, operator: Any = _MISSING, value: Any = _MISSING
    ) -> "QueryBuilder[T]":
        """
        Adds a condition to a trailing OR group.

        Consecutive ``or_where`` calls share one OR group, which is AND-ed with
        the rest of the query. A callable receives a fresh builder and its
        conditions become one OR group of their own.
        """
        if callable(field) and not isinstance(field, str):
            group = self._group_from_callback(GroupKind.OR, field)
            if group is not None:
                self._criteria.append(group)
            return self

        nodes = tuple(self._conditions(field, operator, value))
        if not nodes:
            return self

        last = self._criteria[-1] if self._criteria else None
        if isinstance(last, LogicalGroup) and last.kind is GroupKind.OR:
            self._criteria[-1] = LogicalGroup(GroupKind.OR, last.children + nodes)
        else:
            self._criteria.append(LogicalGroup(GroupKind.OR, nodes))
        self._logger.debug(f"or_where: OR group is now {self._criteria[-1]!r}")
        return self

    def where_in(self, field: str, values: Iterable[Any]) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "in", list(values)))

    def where_not_in(self, field: str, values: Iterable[Any]) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "not_in", list(values)))

    def where_between(self, field: str, start: Any, end: Any) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "between", [start, end]))

    def where_null(self, field: str) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "is_null", True))

    def where_not_null(self, field: str) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "is_not_null", True))

    def where_like(self, field: str, pattern: str) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "like", pattern))

    def where_contains(self, field: str, value: str) -> "QueryBuilder[T]":
        return self._add(OperatorClause(field, "contains", value))

    def get_criteria(self) -> List[CriteriaNode]:
        return list(self._criteria)

    # --- Relation Checks ---

    def has(
        self, relation: str, operator: Any = None, count: Optional[int] = None
    ) -> "QueryBuilder[T]":
        """
        Keeps rows that have related rows through ``relation``.

        Args:
            relation: Relation name, optionally dotted (``profile.country``).
            operator: A callable receiving a fresh builder whose conditions
                the related rows must match, or a comparison (``=``, ``!=``,
                ``<>``, ``>``, ``>=``, ``<``, ``<=``) applied to the number of
                related rows together with ``count``.
            count: The number of related rows to compare against.

        Example::

            repo.query().has("orders", ">=", 2)
            repo.query().has("orders", lambda q: q.where("status", "pending"))
        """
        if callable(operator):
            return self._add(relation_clause(relation, self._callback_criteria(operator)))
        return self._add(relation_clause(relation, operator=operator, count=count))

    def has_count(self, relation: str, count: int) -> "QueryBuilder[T]":
        return self.has(relation, "=", count)

    def doesnt_have(self, relation: str, criteria: Any = None) -> "QueryBuilder[T]":
        """Keeps rows without related rows (matching ``criteria`` when given)."""
        if callable(criteria):
            criteria = self._callback_criteria(criteria)
        return self._add(relation_clause(relation, criteria, negated=True))

    def where_has(
        self, relation: str, field: Any = None, value: Any = _MISSING
    ) -> "QueryBuilder[T]":
        """
        Keeps rows with at least one related row matching the given conditions.

        ``field`` is a field of the related entity compared with ``value``,
        raw criteria, or a callable receiving a fresh builder.
        """
        if value is not _MISSING:
            criteria: Any = [Equality(field, value)]
        elif callable(field):
            criteria = self._callback_criteria(field)
        else:
            criteria = field
        return self._add(relation_clause(relation, criteria))

    def where_relation(
        self, relation: str, conditions: Mapping[str, Any]
    ) -> "QueryBuilder[T]":
        """
        Like ``where_has`` with ``{field: value}`` conditions.

        A ``(operator, value)`` pair whose operator is registered compares
        with that operator; anything else is an equality.
        """
        registry = self._registry if self._registry is not None else default_registry
        criteria: List[CriteriaNode] = []
        for field, value in conditions.items():
            if (
                isinstance(value, (list, tuple))
                and len(value) == 2
                and isinstance(value[0], str)
                and registry.has(value[0])
            ):
                criteria.append(OperatorClause(field, value[0], value[1]))
            else:
                criteria.append(Equality(field, value))
        return self._add(relation_clause(relation, criteria))

    def has_any_relation(self, relations: Iterable[str]) -> "QueryBuilder[T]":
        clauses = tuple(relation_clause(relation) for relation in relations)
        if not clauses:
            return self
        return self._add(LogicalGroup(GroupKind.OR, clauses))

    def has_all_relations(self, relations: Iterable[str]) -> "QueryBuilder[T]":
        for relation in relations:
            self._add(relation_clause(relation))
        return self

    # --- Ordering, Paging and Directives ---

    def order_by(self, field: str, direction: str = "ASC") -> "QueryBuilder[T]":
        """Orders by ``field``; ordering the same field again replaces its direction."""
        direction = normalize_direction(direction)
        self._order_by = [(f, d) for f, d in self._order_by if f != field]
        self._order_by.append((field, direction))
        self._logger.debug(f"Order set: {self._order_by}")
        return self

    def limit(self, num: int) -> "QueryBuilder[T]":
        if not isinstance(num, int) or num < 0:
            raise ValueError("Limit must be a non-negative integer.")
        self._limit = num
        return self

    def offset(self, num: int) -> "QueryBuilder[T]":
        if not isinstance(num, int) or num < 0:
            raise ValueError("Offset must be a non-negative integer.")
        self._offset = num
        return self

    def take(self, num: int) -> "QueryBuilder[T]":
        return self.limit(num)

    def skip(self, num: int) -> "QueryBuilder[T]":
        return self.offset(num)

    def page(self, page: int, per_page: int = DEFAULT_PER_PAGE) -> "QueryBuilder[T]":
        page, per_page = max(1, page), max(1, per_page)
        self._limit = per_page
        self._offset = (page - 1) * per_page
        return self

    def cache(
        self, lifetime: int = DEFAULT_CACHE_LIFETIME, key: Optional[str] = None
    ) -> "QueryBuilder[T]":
        self._cache = CacheDirective(lifetime, key)
        self._logger.debug(f"Result cache enabled: {self._cache!r}")
        return self

    def without_global_scope(self, scopes: Union[str, Iterable[str]]) -> "QueryBuilder[T]":
        if isinstance(scopes, str):
            scopes = [scopes]
        self._excluded_scopes.extend(scopes)
        return self

    def apply_filter(self, name: str) -> "QueryBuilder[T]":
        """Applies a filter from the repository's ``define_filters()``."""
        self._filters.append(name)
        return self

    # --- Terminals ---

    async def get(self) -> List[T]:
        compiled = self._materialize()
        return await self._require_repository().execute_rows(compiled, cache=self._cache)

    async def first(self) -> Optional[T]:
        compiled = self._materialize(limit=1)
        items = await self._require_repository().execute_rows(compiled, cache=self._cache)
        return items[0] if items else None

    async def one(self) -> Optional[T]:
        """Returns the only match or None; raises when more than one row matches."""
        fetch_limit = 2 if self._limit is None else min(self._limit, 2)
        compiled = self._materialize(limit=fetch_limit)
        items = await self._require_repository().execute_rows(compiled, cache=self._cache)
        if len(items) > 1:
            raise MultipleObjectsFoundException(
                "Query expected at most one result but found several."
            )
        return items[0] if items else None

    async def count(self) -> int:
        result = await self._scalar(Selection(SelectMode.COUNT))
        return int(result or 0)

    async def sum(self, field: str) -> float:
        result = await self._scalar(Selection(SelectMode.SUM, field))
        return float(result or 0)

    async def avg(self, field: str) -> float:
        result = await self._scalar(Selection(SelectMode.AVG, field))
        return float(result or 0)

    async def max(self, field: str) -> Any:
        return await self._scalar(Selection(SelectMode.MAX, field))

    async def min(self, field: str) -> Any:
        return await self._scalar(Selection(SelectMode.MIN, field))

    async def exists(self) -> bool:
        return await self._scalar(Selection(SelectMode.EXISTS)) is not None

    async def paginate(
        self, page: int = 1, per_page: int = DEFAULT_PER_PAGE
    ) -> PaginationResult[T]:
        """
        Runs a count pass and a fetch pass, each compiled from scratch.

        The builder's own limit and offset are left untouched.
        """
        page, per_page = max(1, page), max(1, per_page)
        total = await self.count()
        compiled = self._materialize(limit=per_page, offset=(page - 1) * per_page)
        items = await self._require_repository().execute_rows(compiled, cache=self._cache)
        return PaginationResult(items, total, page, per_page)

    async def simple_paginate(
        self, page: int = 1, per_page: int = DEFAULT_PER_PAGE
    ) -> Dict[str, Any]:
        """Fetches one extra row to tell whether another page exists; no count."""
        page, per_page = max(1, page), max(1, per_page)
        compiled = self._materialize(limit=per_page + 1, offset=(page - 1) * per_page)
        items = await self._require_repository().execute_rows(compiled, cache=self._cache)
        has_more = len(items) > per_page
        return {"items": items[:per_page], "has_more": has_more}

    # --- Debugging ---

    def build(self) -> CompiledQuery:
        return self._materialize()

    def to_sql(self) -> str:
        compiled = self._materialize()
        if self._repository is None:
            return str(compiled)
        sql, _ = self._repository.render_sql(compiled)
        return sql

    def get_parameters(self) -> Dict[str, Any]:
        return self._materialize().parameters

    def debug(self) -> Dict[str, Any]:
        compiled = self._materialize()
        info: Dict[str, Any] = {
            "query": str(compiled),
            "parameters": compiled.parameters,
            "joins": [str(join) for join in compiled.joins],
        }
        if self._repository is not None:
            info["sql"], info["sql_parameters"] = self._repository.render_sql(compiled)
        return info

    def __repr__(self) -> str:
        parts = [f"root_alias={self.root_alias!r}", f"criteria={self._criteria!r}"]
        if self._order_by:
            parts.append(f"order_by={self._order_by!r}")
        if self._limit is not None:
            parts.append(f"limit={self._limit!r}")
        if self._offset is not None:
            parts.append(f"offset={self._offset!r}")
        if self._cache is not None:
            parts.append(f"cache={self._cache!r}")
        return f"QueryBuilder({', '.join(parts)})"

    # --- Internals ---

    def _add(self, node: CriteriaNode) -> "QueryBuilder[T]":
        self._logger.debug(f"Adding condition: {node!r}")
        self._criteria.append(node)
        return self

    def _conditions(self, field: Any, operator: Any, value: Any) -> List[CriteriaNode]:
        if isinstance(field, (list, tuple, Mapping, CriteriaNode)):
            return parse_criteria(field)
        if not isinstance(field, str):
            raise TypeError(
                f"where() expects a field name, criteria or a callable, "
                f"got {type(field).__name__}"
            )
        if operator is _MISSING:
            return [OperatorClause(field, "is_not_null", True)]
        if value is _MISSING:
            return [Equality(field, operator)]
        return [OperatorClause(field, operator, value)]

    def _callback_criteria(self, callback: Any) -> List[CriteriaNode]:
        child = type(self)(self._repository, self.root_alias, self._registry)
        callback(child)
        return child._criteria

    def _group_from_callback(self, kind: GroupKind, callback: Any) -> Optional[LogicalGroup]:
        criteria = self._callback_criteria(callback)
        if not criteria:
            self._logger.debug("Callback added no conditions; group dropped")
            return None
        return LogicalGroup(kind, tuple(criteria))

    def _materialize(
        self,
        selection: Optional[Selection] = None,
        limit: Any = _MISSING,
        offset: Any = _MISSING,
    ) -> CompiledQuery:
        limit = self._limit if limit is _MISSING else limit
        offset = self._offset if offset is _MISSING else offset
        order_by = list(self._order_by)
        if selection is not None and selection.mode is not SelectMode.ROWS:
            # Aggregates see every matching row
            limit, offset, order_by = None, None, []

        if self._repository is not None:
            return self._repository.build_query(
                criteria=list(self._criteria),
                order_by=order_by,
                limit=limit,
                offset=offset,
                selection=selection,
                excluded_scopes=self._excluded_scopes,
                named_filters=self._filters,
                registry=self._registry,
            )

        if self._filters:
            self._logger.debug(
                f"Named filters {self._filters} ignored: builder has no repository"
            )
        state = QueryState(
            self.root_alias,
            criteria=list(self._criteria),
            order_by=order_by,
            limit=limit,
            offset=offset,
            selection=selection or Selection(),
        )
        return CriteriaCompiler(registry=self._registry).compile_query(state)

    async def _scalar(self, selection: Selection) -> Any:
        compiled = self._materialize(selection=selection)
        return await self._require_repository().execute_scalar(compiled, cache=self._cache)

    def _require_repository(self) -> "Repository[T]":
        if self._repository is None:
            raise RuntimeError(
                "QueryBuilder is not bound to a repository; use build() or to_sql()"
            )
        return self._repository
