# src/async_criteria/base/interfaces.py

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncGenerator,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from async_criteria.base.cache import (
    DEFAULT_CACHE_LIFETIME,
    CacheDirective,
    InMemoryResultCache,
    derive_cache_key,
)
from async_criteria.base.compiler import (
    CompiledQuery,
    CriteriaCompiler,
    QueryState,
    SelectMode,
    Selection,
    normalize_direction,
)
from async_criteria.base.criteria import CriteriaNode, parse_criteria
from async_criteria.base.exceptions import (
    MultipleObjectsFoundException,
    ObjectNotFoundException,
)
from async_criteria.base.expressions import Predicate
from async_criteria.base.filters import FilterChain, Macroable, QueryFilter
from async_criteria.base.joins import JoinSpec
from async_criteria.base.mapping import EntityMapping
from async_criteria.base.operators import OperatorRegistry, default_registry
from async_criteria.base.pagination import PaginationResult
from async_criteria.base.query import DEFAULT_PER_PAGE, QueryBuilder
from async_criteria.base.utils import default_alias, hydrate, prepare_value

# Type variable for any entity
T = TypeVar("T")

OrderBy = Union[None, str, Mapping[str, str], Sequence[Any]]

_MISSING = object()


# --- Execution Engine Interfaces ---
class SelectQuery(ABC):
    """
    One executable SELECT under construction on an engine.

    The repository feeds a ``CompiledQuery`` into it through these calls and
    then executes it; implementations decide the SQL dialect and driver.
    """

    @abstractmethod
    def add_join(self, join: JoinSpec) -> None:
        pass

    @abstractmethod
    def add_where(self, predicate: Predicate) -> None:
        """Adds a predicate; several predicates are AND-ed."""
        pass

    @abstractmethod
    def bind_parameter(self, name: str, value: Any) -> None:
        pass

    @abstractmethod
    def add_order_by(self, field: str, direction: str) -> None:
        pass

    @abstractmethod
    def set_limit(self, limit: Optional[int]) -> None:
        pass

    @abstractmethod
    def set_offset(self, offset: Optional[int]) -> None:
        pass

    @abstractmethod
    def set_select(self, selection: Selection) -> None:
        pass

    @abstractmethod
    def to_sql(self) -> Tuple[str, List[Any]]:
        """Returns the SQL text and its positional parameters."""
        pass

    @abstractmethod
    async def execute(self) -> List[Dict[str, Any]]:
        """Runs the query and returns every row as a dict."""
        pass

    @abstractmethod
    async def execute_scalar(self) -> Any:
        """Runs the query and returns the first column of the first row, or None."""
        pass


class QueryEngine(ABC):
    """Executes compiled queries against one database."""

    @abstractmethod
    def create_query(self, mapping: EntityMapping, root_alias: str) -> SelectQuery:
        pass

    @abstractmethod
    async def execute_update(
        self, compiled: CompiledQuery, mapping: EntityMapping, values: Mapping[str, Any]
    ) -> int:
        """
        Updates every root row matched by ``compiled``.

        Returns:
            The number of rows updated.
        """
        pass

    @abstractmethod
    async def execute_delete(self, compiled: CompiledQuery, mapping: EntityMapping) -> int:
        """
        Deletes every root row matched by ``compiled``.

        Returns:
            The number of rows deleted.
        """
        pass

    def prepare(self, compiled: CompiledQuery, mapping: EntityMapping) -> SelectQuery:
        """Loads a compiled query into a fresh ``SelectQuery``."""
        query = self.create_query(mapping, compiled.root_alias)
        for join in compiled.joins:
            query.add_join(join)
        if compiled.predicate is not None:
            query.add_where(compiled.predicate)
        for binding in compiled.bindings:
            query.bind_parameter(binding.name, binding.value)
        for field, direction in compiled.order_by:
            query.add_order_by(field, direction)
        query.set_limit(compiled.limit)
        query.set_offset(compiled.offset)
        query.set_select(compiled.selection)
        return query

    async def fetch_rows(
        self, compiled: CompiledQuery, mapping: EntityMapping
    ) -> List[Dict[str, Any]]:
        return await self.prepare(compiled, mapping).execute()

    async def fetch_scalar(self, compiled: CompiledQuery, mapping: EntityMapping) -> Any:
        return await self.prepare(compiled, mapping).execute_scalar()

    def to_sql(
        self, compiled: CompiledQuery, mapping: EntityMapping
    ) -> Tuple[str, List[Any]]:
        return self.prepare(compiled, mapping).to_sql()


# --- Repository ---
class Repository(Macroable, Generic[T]):
    """
    Criteria-driven read and bulk-write operations for one entity type.

    Configure through constructor arguments or class attributes on a
    subclass. Subclasses customise behaviour through hooks:

    * ``global_scopes()`` returns ``{name: filter}`` applied to every query;
    * ``define_filters()`` returns ``{name: filter}`` usable through
      ``QueryBuilder.apply_filter(name)``;
    * ``apply_<name>_filter(query, value)`` (or the generic
      ``apply_filter(query, name, value)``) applies a persistent filter set
      with ``with_filter(name, value)``.

    A filter receives the in-progress ``QueryState`` and either mutates it or
    returns criteria to AND onto it.
    """

    entity_type: Type[T] = dict
    mapping: Optional[EntityMapping] = None
    alias: Optional[str] = None
    joins: Sequence[Any] = ()
    soft_delete_field: Optional[str] = "deleted_at"
    cache_key_prefix: Optional[str] = None
    default_cache_lifetime: int = DEFAULT_CACHE_LIFETIME

    def __init__(
        self,
        engine: QueryEngine,
        entity_type: Optional[Type[T]] = None,
        mapping: Optional[EntityMapping] = None,
        alias: Optional[str] = None,
        joins: Optional[Sequence[Any]] = None,
        soft_delete_field: Any = _MISSING,
        cache: Optional[InMemoryResultCache] = None,
        cache_key_prefix: Optional[str] = None,
        default_cache_lifetime: Optional[int] = None,
        registry: Optional[OperatorRegistry] = None,
    ):
        """
        Initialize the repository.

        Args:
            engine: The query engine executing compiled queries.
            entity_type: Class rows are hydrated into (pydantic models use
                         ``model_validate``). Defaults to plain dicts.
            mapping: Table metadata of the root entity, including relations.
            alias: Root alias used in compiled queries. Defaults to the first
                   two letters of the entity name, lower-cased.
            joins: Manual joins applied to every query before derived ones.
            soft_delete_field: Column holding the deletion timestamp; None
                               disables the soft-delete helpers.
            cache: Store used by cached reads. Caching is off without one.
            cache_key_prefix: Prefix of derived cache keys. Defaults to the
                              lower-cased repository class name.
            default_cache_lifetime: Lifetime in seconds for ``fetch_cached``.
            registry: Operator registry. Defaults to the process-wide one.
        """
        self.engine = engine
        if entity_type is not None:
            self.entity_type = entity_type
        if mapping is not None:
            self.mapping = mapping
        if self.mapping is None:
            raise ValueError(f"{type(self).__name__} requires an EntityMapping")
        if alias is not None:
            self.alias = alias
        if not self.alias:
            self.alias = (
                default_alias(self.entity_type)
                if self.entity_type is not dict
                else self.mapping.table[:2].lower()
            )
        if joins is not None:
            self.joins = joins
        if soft_delete_field is not _MISSING:
            self.soft_delete_field = soft_delete_field
        if cache_key_prefix is not None:
            self.cache_key_prefix = cache_key_prefix
        if default_cache_lifetime is not None:
            self.default_cache_lifetime = default_cache_lifetime

        self.cache = cache
        self.registry = registry if registry is not None else default_registry
        self._filter_chain = FilterChain()
        self._persistent_filters: Dict[str, Any] = {}
        self._excluded_scopes: List[str] = []
        self._global_scopes_enabled = True
        self._soft_delete_mode: Optional[str] = None

        entity_name = getattr(self.entity_type, "__name__", str(self.entity_type))
        self._logger = logging.getLogger(
            f"{__name__}.{self.__class__.__name__}[{entity_name}]"
        )
        self._logger.info(
            f"Repository instance created for {entity_name} using table "
            f"'{self.mapping.table}' (alias '{self.alias}')."
        )

    # --- Hooks ---

    def global_scopes(self) -> Dict[str, QueryFilter]:
        """Filters applied to every query unless excluded. Override in subclasses."""
        return {}

    def define_filters(self) -> Dict[str, QueryFilter]:
        """Named filters available to ``QueryBuilder.apply_filter``."""
        return {}

    def apply_filter(self, query: QueryState, name: str, value: Any) -> None:
        """Fallback for persistent filters that have no ``apply_<name>_filter`` hook."""
        self._logger.debug(f"No handler for persistent filter '{name}'; ignored")

    # --- Query Construction ---

    def query(self) -> QueryBuilder[T]:
        return QueryBuilder(self)

    def build_query(
        self,
        criteria: Any = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        selection: Optional[Selection] = None,
        excluded_scopes: Iterable[str] = (),
        named_filters: Iterable[str] = (),
        filters: Iterable[QueryFilter] = (),
        registry: Optional[OperatorRegistry] = None,
        soft_delete: Optional[str] = None,
        scoped: bool = True,
        counts: Iterable[Any] = (),
    ) -> CompiledQuery:
        """
        Assembles and compiles one query.

        Applied in order: manual joins, ``criteria``, global scopes, named
        filters, persistent filters, the soft-delete condition, one-shot
        ``filters``, then ordering. With ``scoped=False`` only joins,
        criteria and ordering are applied. ``counts`` lists relation paths
        (or ``(relation, criteria)`` pairs) whose related-row counts are
        selected next to each row.
        """
        if limit is not None and limit < 0:
            raise ValueError("Limit must be a non-negative integer.")
        if offset is not None and offset < 0:
            raise ValueError("Offset must be a non-negative integer.")

        state = QueryState(
            self.alias,
            limit=limit,
            offset=offset,
            selection=selection or Selection(),
        )
        state.joins.extend(self.joins)
        state.where(criteria)

        if scoped:
            if self._global_scopes_enabled:
                excluded = set(self._excluded_scopes) | set(excluded_scopes)
                state = self._filter_chain.apply_scopes(state, self.global_scopes(), excluded)
            state = self._filter_chain.apply_named(state, self.define_filters(), named_filters)
            self._apply_persistent_filters(state)
            self._apply_soft_delete(state, soft_delete or self._soft_delete_mode)
            state = self._filter_chain.apply(state, filters)

        for field, direction in self._normalize_order(order_by):
            state.add_order_by(field, direction)
        for count in counts:
            if isinstance(count, str):
                state.add_count(count)
            else:
                state.add_count(*count)

        compiler = CriteriaCompiler(registry=registry if registry is not None else self.registry)
        return compiler.compile_query(state)

    def render_sql(self, compiled: CompiledQuery) -> Tuple[str, List[Any]]:
        return self.engine.to_sql(compiled, self.mapping)

    # --- Execution ---

    async def execute_rows(
        self, compiled: CompiledQuery, cache: Optional[CacheDirective] = None
    ) -> List[T]:
        rows = await self._cached(
            compiled, cache, lambda: self.engine.fetch_rows(compiled, self.mapping)
        )
        return [hydrate(self.entity_type, row) for row in rows]

    async def execute_scalar(
        self, compiled: CompiledQuery, cache: Optional[CacheDirective] = None
    ) -> Any:
        return await self._cached(
            compiled, cache, lambda: self.engine.fetch_scalar(compiled, self.mapping)
        )

    # --- Fetching ---

    async def fetch(
        self,
        criteria: Any = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[T]:
        compiled = self.build_query(criteria, order_by, limit, offset)
        return await self.execute_rows(compiled)

    async def fetch_one(self, criteria: Any = None, order_by: OrderBy = None) -> Optional[T]:
        items = await self.fetch(criteria, order_by, limit=1)
        return items[0] if items else None

    async def fetch_all(
        self, order_by: OrderBy = None, limit: Optional[int] = None, offset: Optional[int] = None
    ) -> List[T]:
        return await self.fetch(None, order_by, limit, offset)

    async def count(self, criteria: Any = None) -> int:
        compiled = self.build_query(criteria, selection=Selection(SelectMode.COUNT))
        return int(await self.execute_scalar(compiled) or 0)

    # --- Existence Checks ---

    async def exists(self, criteria: Any = None) -> bool:
        compiled = self.build_query(criteria, selection=Selection(SelectMode.EXISTS))
        return await self.execute_scalar(compiled) is not None

    async def doesnt_exist(self, criteria: Any = None) -> bool:
        return not await self.exists(criteria)

    async def has_exactly(self, count: int, criteria: Any = None) -> bool:
        return await self.count(criteria) == count

    async def has_at_least(self, minimum: int, criteria: Any = None) -> bool:
        return await self.count(criteria) >= minimum

    async def has_at_most(self, maximum: int, criteria: Any = None) -> bool:
        return await self.count(criteria) <= maximum

    async def has_between(self, minimum: int, maximum: int, criteria: Any = None) -> bool:
        return minimum <= await self.count(criteria) <= maximum

    # --- Fetch or Fail ---

    async def fetch_one_or_fail(
        self, criteria: Any = None, order_by: OrderBy = None, message: Optional[str] = None
    ) -> T:
        entity = await self.fetch_one(criteria, order_by)
        if entity is None:
            raise ObjectNotFoundException(
                message
                or f"No {self._entity_name} found matching criteria: {criteria!r}"
            )
        return entity

    async def first_or_fail(
        self, criteria: Any = None, order_by: OrderBy = None, message: Optional[str] = None
    ) -> T:
        return await self.fetch_one_or_fail(criteria, order_by or self._pk_order(), message)

    async def sole(self, criteria: Any = None) -> T:
        """Returns the only matching entity; raises unless exactly one matches."""
        items = await self.fetch(criteria, limit=2)
        if not items:
            raise ObjectNotFoundException(
                f"No {self._entity_name} found matching criteria: {criteria!r}"
            )
        if len(items) > 1:
            raise MultipleObjectsFoundException(
                f"More than one {self._entity_name} matches criteria: {criteria!r}"
            )
        return items[0]

    # --- Pagination ---

    async def paginate(
        self,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
        criteria: Any = None,
        order_by: OrderBy = None,
    ) -> PaginationResult[T]:
        page, per_page = max(1, page), max(1, per_page)
        total = await self.count(criteria)
        items = await self.fetch(criteria, order_by, per_page, (page - 1) * per_page)
        return PaginationResult(items, total, page, per_page)

    async def simple_paginate(
        self,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
        criteria: Any = None,
        order_by: OrderBy = None,
    ) -> Dict[str, Any]:
        page, per_page = max(1, page), max(1, per_page)
        items = await self.fetch(criteria, order_by, per_page + 1, (page - 1) * per_page)
        return {"items": items[:per_page], "has_more": len(items) > per_page}

    # --- Chunk Processing ---

    async def chunk(
        self, size: int, criteria: Any = None, order_by: OrderBy = None
    ) -> AsyncGenerator[List[T], None]:
        """Yields lists of at most ``size`` entities, ordered by primary key by default."""
        if size < 1:
            raise ValueError("Chunk size must be a positive integer.")
        order_by = order_by or self._pk_order()
        offset = 0
        while True:
            items = await self.fetch(criteria, order_by, size, offset)
            if items:
                yield items
            if len(items) < size:
                break
            offset += size

    async def each(
        self, criteria: Any = None, chunk_size: int = 1000, order_by: OrderBy = None
    ) -> AsyncGenerator[T, None]:
        async for items in self.chunk(chunk_size, criteria, order_by):
            for entity in items:
                yield entity

    # --- Bulk Operations ---

    async def bulk_update(
        self,
        values: Mapping[str, Any],
        criteria: Any = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> int:
        """Sets ``values`` on every matching row. Returns the number of rows updated."""
        if not values:
            self._logger.warning("bulk_update called with no values. Returning 0.")
            return 0
        compiled = self.build_query(criteria, order_by, limit, scoped=False)
        prepared = {self._column(field): prepare_value(value) for field, value in values.items()}
        updated = await self.engine.execute_update(compiled, self.mapping, prepared)
        self._logger.info(f"Bulk updated {updated} {self._entity_name}(s).")
        return updated

    async def bulk_delete(
        self, criteria: Any = None, order_by: OrderBy = None, limit: Optional[int] = None
    ) -> int:
        compiled = self.build_query(criteria, order_by, limit, scoped=False)
        deleted = await self.engine.execute_delete(compiled, self.mapping)
        self._logger.info(f"Bulk deleted {deleted} {self._entity_name}(s).")
        return deleted

    # --- Relation Checks ---

    def has(
        self, relation: str, operator: Any = None, count: Optional[int] = None,
        criteria: Any = None,
    ) -> QueryBuilder[T]:
        """
        Starts a query for entities with related rows through ``relation``.

        See ``QueryBuilder.has``; ``criteria`` filters the root entities.
        """
        return self._criteria_query(criteria).has(relation, operator, count)

    def has_count(self, relation: str, count: int, criteria: Any = None) -> QueryBuilder[T]:
        return self._criteria_query(criteria).has_count(relation, count)

    def doesnt_have(
        self, relation: str, related: Any = None, criteria: Any = None
    ) -> QueryBuilder[T]:
        return self._criteria_query(criteria).doesnt_have(relation, related)

    def where_has(
        self, relation: str, field: Any = None, value: Any = _MISSING, criteria: Any = None
    ) -> QueryBuilder[T]:
        return self._criteria_query(criteria).where_has(relation, field, value)

    def where_relation(
        self, relation: str, conditions: Mapping[str, Any], criteria: Any = None
    ) -> QueryBuilder[T]:
        return self._criteria_query(criteria).where_relation(relation, conditions)

    def has_any_relation(self, relations: Iterable[str], criteria: Any = None) -> QueryBuilder[T]:
        return self._criteria_query(criteria).has_any_relation(relations)

    def has_all_relations(self, relations: Iterable[str], criteria: Any = None) -> QueryBuilder[T]:
        return self._criteria_query(criteria).has_all_relations(relations)

    async def with_count(
        self, relation: str, criteria: Any = None, order_by: OrderBy = None,
        limit: Optional[int] = None, offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetches entities together with the number of rows related through ``relation``.

        Returns:
            One ``{"entity": entity, "<relation>_count": n}`` dict per entity;
            dots in ``relation`` become underscores in the key.
        """
        name = relation.replace(".", "_") + "_count"
        compiled = self.build_query(criteria, order_by, limit, offset, counts=[relation])
        rows = await self.engine.fetch_rows(compiled, self.mapping)
        results = []
        for row in rows:
            row = dict(row)
            related = row.pop(name, 0)
            results.append({"entity": hydrate(self.entity_type, row), name: int(related or 0)})
        return results

    # --- Soft Delete ---

    def exclude_soft_deleted(self) -> "Repository[T]":
        """Returns a copy whose queries skip soft-deleted rows."""
        return self._with_soft_delete_mode("exclude")

    def include_soft_deleted(self) -> "Repository[T]":
        return self._with_soft_delete_mode("include")

    async def fetch_without_deleted(
        self, criteria: Any = None, order_by: OrderBy = None,
        limit: Optional[int] = None, offset: Optional[int] = None,
    ) -> List[T]:
        compiled = self.build_query(criteria, order_by, limit, offset, soft_delete="exclude")
        return await self.execute_rows(compiled)

    async def fetch_with_deleted(
        self, criteria: Any = None, order_by: OrderBy = None,
        limit: Optional[int] = None, offset: Optional[int] = None,
    ) -> List[T]:
        compiled = self.build_query(criteria, order_by, limit, offset, soft_delete="include")
        return await self.execute_rows(compiled)

    async def fetch_only_deleted(
        self, criteria: Any = None, order_by: OrderBy = None,
        limit: Optional[int] = None, offset: Optional[int] = None,
    ) -> List[T]:
        compiled = self.build_query(criteria, order_by, limit, offset, soft_delete="only")
        return await self.execute_rows(compiled)

    async def count_without_deleted(self, criteria: Any = None) -> int:
        compiled = self.build_query(
            criteria, selection=Selection(SelectMode.COUNT), soft_delete="exclude"
        )
        return int(await self.execute_scalar(compiled) or 0)

    async def count_only_deleted(self, criteria: Any = None) -> int:
        compiled = self.build_query(
            criteria, selection=Selection(SelectMode.COUNT), soft_delete="only"
        )
        return int(await self.execute_scalar(compiled) or 0)

    async def soft_delete(self, criteria: Any = None, at: Optional[datetime] = None) -> int:
        """Stamps the soft-delete field on matching rows that are not yet deleted."""
        field = self._require_soft_delete_field()
        stamped = at or datetime.now(timezone.utc)
        return await self.bulk_update(
            {field: stamped}, self._and(criteria, [field, "is_null", True])
        )

    async def restore(self, criteria: Any = None) -> int:
        field = self._require_soft_delete_field()
        return await self.bulk_update(
            {field: None}, self._and(criteria, [field, "is_not_null", True])
        )

    # --- Global Scopes ---

    def without_global_scopes(self, scopes: Union[str, Iterable[str]]) -> "Repository[T]":
        """Returns a copy that skips the named global scopes."""
        if isinstance(scopes, str):
            scopes = [scopes]
        clone = self._clone()
        clone._excluded_scopes.extend(scopes)
        return clone

    def disable_global_scopes(self) -> "Repository[T]":
        clone = self._clone()
        clone._global_scopes_enabled = False
        return clone

    def is_scope_excluded(self, name: str) -> bool:
        return not self._global_scopes_enabled or name in self._excluded_scopes

    async def fetch_without_scopes(
        self, scopes: Union[str, Iterable[str]], criteria: Any = None,
        order_by: OrderBy = None, limit: Optional[int] = None, offset: Optional[int] = None,
    ) -> List[T]:
        return await self.without_global_scopes(scopes).fetch(criteria, order_by, limit, offset)

    async def fetch_without_any_scopes(
        self, criteria: Any = None, order_by: OrderBy = None,
        limit: Optional[int] = None, offset: Optional[int] = None,
    ) -> List[T]:
        return await self.disable_global_scopes().fetch(criteria, order_by, limit, offset)

    # --- Persistent Filters ---

    def with_filter(self, name: str, value: Any) -> "Repository[T]":
        clone = self._clone()
        clone._persistent_filters[name] = value
        return clone

    def with_filters(self, filters: Mapping[str, Any]) -> "Repository[T]":
        clone = self._clone()
        clone._persistent_filters.update(filters)
        return clone

    def without_filter(self, name: str) -> "Repository[T]":
        clone = self._clone()
        clone._persistent_filters.pop(name, None)
        return clone

    def without_filters(self) -> "Repository[T]":
        clone = self._clone()
        clone._persistent_filters = {}
        return clone

    def get_filters(self) -> Dict[str, Any]:
        return dict(self._persistent_filters)

    def has_filter(self, name: str) -> bool:
        return name in self._persistent_filters

    def get_filter(self, name: str, default: Any = None) -> Any:
        return self._persistent_filters.get(name, default)

    # --- Caching ---

    def cache_key(self, compiled: CompiledQuery) -> str:
        sql, params = self.render_sql(compiled)
        prefix = self.cache_key_prefix or type(self).__name__.lower()
        return derive_cache_key(prefix, [sql, params])

    async def fetch_cached(
        self, criteria: Any = None, order_by: OrderBy = None,
        limit: Optional[int] = None, offset: Optional[int] = None,
        lifetime: Optional[int] = None,
    ) -> List[T]:
        compiled = self.build_query(criteria, order_by, limit, offset)
        directive = CacheDirective(lifetime or self.default_cache_lifetime)
        return await self.execute_rows(compiled, cache=directive)

    async def fetch_one_cached(
        self, criteria: Any = None, order_by: OrderBy = None, lifetime: Optional[int] = None
    ) -> Optional[T]:
        items = await self.fetch_cached(criteria, order_by, limit=1, lifetime=lifetime)
        return items[0] if items else None

    async def clear_cache(self) -> None:
        """Drops every cached result under this repository's key prefix."""
        if self.cache is not None:
            await self.cache.clear(self.cache_key_prefix or type(self).__name__.lower())

    # --- Helpers ---

    @property
    def _entity_name(self) -> str:
        return getattr(self.entity_type, "__name__", "entity")

    def _criteria_query(self, criteria: Any) -> QueryBuilder[T]:
        query = self.query()
        if criteria is not None:
            query.where(criteria)
        return query

    def _clone(self) -> "Repository[T]":
        clone = copy.copy(self)
        clone._persistent_filters = dict(self._persistent_filters)
        clone._excluded_scopes = list(self._excluded_scopes)
        return clone

    def _with_soft_delete_mode(self, mode: Optional[str]) -> "Repository[T]":
        clone = self._clone()
        clone._soft_delete_mode = mode
        return clone

    def _require_soft_delete_field(self) -> str:
        if not self.soft_delete_field:
            raise ValueError(f"{type(self).__name__} has no soft-delete field configured.")
        return self.soft_delete_field

    def _apply_soft_delete(self, state: QueryState, mode: Optional[str]) -> None:
        if not self.soft_delete_field or mode in (None, "include"):
            return
        if mode == "exclude":
            state.where([[self.soft_delete_field, "is_null", True]])
        elif mode == "only":
            state.where([[self.soft_delete_field, "is_not_null", True]])
        else:
            raise ValueError(f"Unknown soft-delete mode: {mode!r}")

    def _apply_persistent_filters(self, state: QueryState) -> None:
        for name, value in self._persistent_filters.items():
            hook = getattr(type(self), f"apply_{name}_filter", None)
            if callable(hook):
                result = hook(self, state, value)
            else:
                result = self.apply_filter(state, name, value)
            if result is not None and not isinstance(result, QueryState):
                state.where(result)

    def _pk_order(self) -> List[Tuple[str, str]]:
        return [(self.mapping.primary_key, "ASC")]

    def _column(self, field: str) -> str:
        prefix = f"{self.alias}."
        if field.startswith(prefix):
            field = field[len(prefix):]
        if "." in field:
            raise ValueError(f"Bulk updates can only set root columns, got '{field}'")
        return field

    @staticmethod
    def _and(criteria: Any, extra: Any) -> List[CriteriaNode]:
        return parse_criteria(criteria) + parse_criteria([extra])

    @staticmethod
    def _normalize_order(order_by: OrderBy) -> List[Tuple[str, str]]:
        if not order_by:
            return []
        if isinstance(order_by, str):
            return [(order_by, "ASC")]
        if isinstance(order_by, Mapping):
            return [(field, normalize_direction(d)) for field, d in order_by.items()]
        normalized = []
        for item in order_by:
            if isinstance(item, str):
                normalized.append((item, "ASC"))
            else:
                field, direction = item
                normalized.append((field, normalize_direction(direction)))
        return normalized

    async def _cached(
        self,
        compiled: CompiledQuery,
        directive: Optional[CacheDirective],
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        if directive is None:
            return await loader()
        if self.cache is None:
            self._logger.debug("Cache requested but no cache store configured")
            return await loader()

        key = self._slot_key(directive.key, compiled) if directive.key else self.cache_key(compiled)
        hit = await self.cache.get(key)
        if hit is not None:
            self._logger.debug(f"Cache hit for '{key}'")
            return hit[0]
        value = await loader()
        await self.cache.put(key, (value,), directive.lifetime)
        self._logger.debug(f"Cache miss for '{key}'; stored result")
        return value

    @staticmethod
    def _slot_key(key: str, compiled: CompiledQuery) -> str:
        """
        Qualifies an explicit cache key with what the terminal selects.

        ``count()``, ``get()`` and the passes of ``paginate()`` on one cached
        builder each get their own slot: the select mode (and aggregate
        field) and any limit/offset are appended. A plain row fetch keeps the
        key unchanged.
        """
        parts = [key]
        selection = compiled.selection
        if selection.mode is not SelectMode.ROWS:
            mode = selection.mode.value
            parts.append(f"{mode}({selection.field})" if selection.field else mode)
        if compiled.limit is not None or compiled.offset:
            parts.append(f"{compiled.limit}+{compiled.offset or 0}")
        return ":".join(parts)
