# src/async_criteria/base/operators.py
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import InvalidOperatorValueError
from .expressions import (
    Binding,
    CompiledPredicate,
    Comparison,
    ComparisonOperator,
    Constant,
    Logical,
    LogicalOperator,
    Membership,
    Negation,
    NullCheck,
    ParameterNameGenerator,
    Predicate,
)

log = logging.getLogger(__name__)

RenderResult = Tuple[Predicate, List[Binding]]


# --- Operator Interface ---
class Operator(ABC):
    """
    A named comparison strategy.

    Implementations receive the already-resolved field reference (for example
    ``ad1.city``), the raw value from the criteria and a generator of unique
    parameter names. They return one predicate node and the bindings it
    references; they never touch the query being built.
    """

    @abstractmethod
    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        pass


class FunctionOperator(Operator):
    """Adapts a plain ``fn(field, value, next_param)`` callable to ``Operator``."""

    def __init__(self, fn: Callable[[str, Any, ParameterNameGenerator], RenderResult]):
        self._fn = fn

    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        predicate, bindings = self._fn(field, value, next_param)
        return predicate, list(bindings)

    def __repr__(self) -> str:
        return f"FunctionOperator({self._fn!r})"


# --- Built-in Operators ---
class ComparisonOperatorStrategy(Operator):
    """Binds the value and compares with a fixed SQL operator."""

    def __init__(self, operator: ComparisonOperator):
        self.operator = operator

    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        name = next_param()
        return Comparison(field, self.operator, name), [Binding(name, value)]

    def __repr__(self) -> str:
        return f"ComparisonOperatorStrategy({self.operator.value!r})"


class TextOperator(Operator):
    """LIKE-style matching; ``template`` places the value inside wildcards."""

    def __init__(self, operator: ComparisonOperator, template: str = "{}"):
        self.operator = operator
        self.template = template

    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        name = next_param()
        pattern = self.template.format("" if value is None else str(value))
        return Comparison(field, self.operator, name), [Binding(name, pattern)]

    def __repr__(self) -> str:
        return f"TextOperator({self.operator.value!r}, {self.template!r})"


class MembershipOperator(Operator):
    """IN / NOT IN. An empty list short-circuits to a constant predicate."""

    def __init__(self, negated: bool = False):
        self.negated = negated

    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        if isinstance(value, (tuple, set, frozenset)):
            value = list(value)
        elif not isinstance(value, list):
            value = [value]

        if not value:
            # IN () can never match; NOT IN () always does
            return Constant(self.negated), []

        name = next_param()
        return Membership(field, name, self.negated), [Binding(name, value)]


class RangeOperator(Operator):
    """BETWEEN as two bound comparisons, ``field >= low AND field <= high``."""

    def __init__(self, negated: bool = False):
        self.negated = negated

    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        keyword = "not_between" if self.negated else "between"
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise InvalidOperatorValueError(
                f"Operator '{keyword}' requires exactly two values, got {value!r}"
            )
        low_name = next_param()
        high_name = next_param()
        pair = Logical(
            LogicalOperator.AND,
            (
                Comparison(field, ComparisonOperator.GTE, low_name),
                Comparison(field, ComparisonOperator.LTE, high_name),
            ),
        )
        bindings = [Binding(low_name, value[0]), Binding(high_name, value[1])]
        if self.negated:
            return Negation(pair), bindings
        return pair, bindings


class NullOperator(Operator):
    """IS NULL / IS NOT NULL. The value argument is ignored."""

    def __init__(self, negated: bool = False):
        self.negated = negated

    def render(
        self, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> RenderResult:
        return NullCheck(field, self.negated), []


# --- Registry ---
class OperatorRegistry:
    """Maps operator names to strategies. Lookup is by exact name."""

    def __init__(self, register_defaults: bool = True):
        self._operators: Dict[str, Operator] = {}
        if register_defaults:
            self._register_defaults()

    def register(self, name: str, operator: Any) -> None:
        """Registers (or overwrites) an operator. Plain callables are wrapped."""
        if not isinstance(operator, Operator):
            if not callable(operator):
                raise TypeError(
                    f"Operator '{name}' must be an Operator or a callable, "
                    f"got {type(operator).__name__}"
                )
            operator = FunctionOperator(operator)
        if name in self._operators:
            log.debug(f"Overwriting operator '{name}' with {operator!r}")
        self._operators[name] = operator

    def has(self, name: Any) -> bool:
        return isinstance(name, str) and name in self._operators

    def get(self, name: str) -> Optional[Operator]:
        return self._operators.get(name) if self.has(name) else None

    def names(self) -> List[str]:
        return list(self._operators)

    def apply(
        self, name: str, field: str, value: Any, next_param: ParameterNameGenerator
    ) -> Optional[CompiledPredicate]:
        """Renders ``field <name> value``; returns None for an unknown name."""
        operator = self.get(name)
        if operator is None:
            return None
        predicate, bindings = operator.render(field, value, next_param)
        return CompiledPredicate(predicate, tuple(bindings))

    def copy(self) -> "OperatorRegistry":
        clone = OperatorRegistry(register_defaults=False)
        clone._operators = dict(self._operators)
        return clone

    def _register_defaults(self) -> None:
        comparisons = {
            ComparisonOperator.EQ: ("=", "eq"),
            ComparisonOperator.NE: ("!=", "<>", "neq"),
            ComparisonOperator.GT: (">", "gt"),
            ComparisonOperator.GTE: (">=", "gte"),
            ComparisonOperator.LT: ("<", "lt"),
            ComparisonOperator.LTE: ("<=", "lte"),
        }
        for op, names in comparisons.items():
            for name in names:
                self.register(name, ComparisonOperatorStrategy(op))

        self.register("like", TextOperator(ComparisonOperator.LIKE))
        self.register("not_like", TextOperator(ComparisonOperator.NOT_LIKE))
        self.register("ilike", TextOperator(ComparisonOperator.ILIKE))
        self.register("contains", TextOperator(ComparisonOperator.LIKE, "%{}%"))
        self.register("starts_with", TextOperator(ComparisonOperator.LIKE, "{}%"))
        self.register("ends_with", TextOperator(ComparisonOperator.LIKE, "%{}"))

        self.register("in", MembershipOperator())
        self.register("not_in", MembershipOperator(negated=True))
        self.register("between", RangeOperator())
        self.register("not_between", RangeOperator(negated=True))

        self.register("is_null", NullOperator())
        self.register("is_not_null", NullOperator(negated=True))


# Process-wide registry used by compilers that are not given their own.
default_registry = OperatorRegistry()


def register_operator(name: str, operator: Any) -> None:
    """Registers an operator on the process-wide registry (last write wins)."""
    default_registry.register(name, operator)
