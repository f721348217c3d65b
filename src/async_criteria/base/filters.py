# src/async_criteria/base/filters.py
import functools
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .compiler import QueryState
from .criteria import GroupKind, LogicalGroup, parse_criteria

log = logging.getLogger(__name__)

# A filter receives the in-progress query. It may mutate it and return None
# (or the state itself), or return criteria to be AND-ed onto it.
QueryFilter = Callable[[QueryState], Any]


# --- Filter Chain ---
class FilterChain:
    """Applies filter functions, named filters and global scopes to a query state."""

    def apply(self, state: QueryState, filters: Iterable[Any]) -> QueryState:
        for query_filter in filters:
            if not callable(query_filter):
                log.debug(f"Skipping non-callable filter: {query_filter!r}")
                continue
            result = query_filter(state)
            if result is None or result is state:
                continue
            if isinstance(result, QueryState):
                state = result
            else:
                state.where(result)
        return state

    def apply_named(
        self,
        state: QueryState,
        definitions: Mapping[str, QueryFilter],
        names: Iterable[str],
    ) -> QueryState:
        """Applies the filters listed in ``names``; unknown names are skipped."""
        selected = []
        for name in names:
            definition = definitions.get(name)
            if definition is None:
                log.debug(f"No filter named '{name}' is defined; skipping")
                continue
            selected.append(definition)
        return self.apply(state, selected)

    def apply_scopes(
        self,
        state: QueryState,
        scopes: Mapping[str, QueryFilter],
        excluded: Iterable[str] = (),
    ) -> QueryState:
        excluded = set(excluded)
        active = [scope for name, scope in scopes.items() if name not in excluded]
        if excluded:
            log.debug(f"Global scopes excluded: {sorted(excluded)}")
        return self.apply(state, active)

    def compose(self, filters: Iterable[Any]) -> QueryFilter:
        """Folds several filters into one."""
        filters = list(filters)

        def composed(state: QueryState) -> QueryState:
            return self.apply(state, filters)

        return composed

    @staticmethod
    def where_filter(criteria: Any) -> QueryFilter:
        """A filter that AND-s ``criteria`` onto the query."""

        def where(state: QueryState) -> QueryState:
            return state.where(criteria)

        return where

    @staticmethod
    def or_where_filter(criteria: Any) -> QueryFilter:
        """A filter that AND-s an OR group of ``criteria`` onto the query."""

        def or_where(state: QueryState) -> QueryState:
            children = tuple(parse_criteria(criteria))
            if children:
                state.criteria.append(LogicalGroup(GroupKind.OR, children))
            return state

        return or_where


# --- Macros ---
_MACROS: Dict[type, Dict[str, Callable[..., Any]]] = {}


class Macroable:
    """
    Class-scoped registry of extra methods.

    A macro is a plain callable whose first argument is the instance it is
    invoked on. Macros registered on a class are visible to its subclasses.
    """

    @classmethod
    def macro(cls, name: str, fn: Callable[..., Any]) -> None:
        if not callable(fn):
            raise TypeError(f"Macro '{name}' must be callable")
        _MACROS.setdefault(cls, {})[name] = fn
        log.debug(f"Registered macro '{name}' on {cls.__name__}")

    @classmethod
    def has_macro(cls, name: str) -> bool:
        return cls._find_macro(name) is not None

    @classmethod
    def remove_macro(cls, name: str) -> None:
        _MACROS.get(cls, {}).pop(name, None)

    @classmethod
    def clear_macros(cls) -> None:
        _MACROS.pop(cls, None)

    @classmethod
    def macros(cls) -> Dict[str, Callable[..., Any]]:
        found: Dict[str, Callable[..., Any]] = {}
        for klass in reversed(cls.__mro__):
            found.update(_MACROS.get(klass, {}))
        return found

    @classmethod
    def mixin(cls, source: Any, replace: bool = True) -> None:
        """Registers every public callable attribute of ``source`` as a macro."""
        for name in dir(source):
            if name.startswith("_"):
                continue
            member = getattr(source, name)
            if not callable(member):
                continue
            if replace or not cls.has_macro(name):
                cls.macro(name, member)

    @classmethod
    def _find_macro(cls, name: str) -> Optional[Callable[..., Any]]:
        for klass in cls.__mro__:
            macro = _MACROS.get(klass, {}).get(name)
            if macro is not None:
                return macro
        return None

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            )
        macro = type(self)._find_macro(name)
        if macro is None:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute or macro '{name}'"
            )
        return functools.partial(macro, self)
