# src/async_criteria/base/joins.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .expressions import Predicate

log = logging.getLogger(__name__)


class JoinKind(Enum):
    LEFT = "left"
    INNER = "inner"
    RIGHT = "right"

    @classmethod
    def parse(cls, value: "JoinKind | str") -> "JoinKind":
        """Accepts ``left``, ``leftJoin``, ``left_join`` and the like."""
        if isinstance(value, JoinKind):
            return value
        normalized = str(value).lower().replace("_", "")
        if normalized.endswith("join"):
            normalized = normalized[: -len("join")]
        for kind in cls:
            if kind.value == normalized:
                return kind
        raise ValueError(f"Unknown join type: {value!r}")


class ConditionKind(Enum):
    """WITH adds the condition to the relation's key match; ON replaces it."""

    WITH = "WITH"
    ON = "ON"


@dataclass(frozen=True)
class JoinSpec:
    """
    One relation traversal.

    ``relation_path`` is ``<owner alias>.<relation name>`` (for example
    ``u.profile``); ``alias`` names the joined entity in the rest of the query.
    """

    kind: JoinKind
    relation_path: str
    alias: str
    condition: Optional[Tuple[ConditionKind, Predicate]] = None

    @property
    def owner_alias(self) -> str:
        return self.relation_path.split(".", 1)[0]

    @property
    def relation(self) -> str:
        return self.relation_path.split(".", 1)[1]

    def __str__(self) -> str:
        text = f"{self.kind.value.upper()} JOIN {self.relation_path} {self.alias}"
        if self.condition is not None:
            kind, predicate = self.condition
            text += f" {kind.value} {predicate}"
        return text


# --- Join Resolver ---
class JoinResolver:
    """
    Turns dotted field paths into alias-qualified references, emitting the
    minimal chain of LEFT joins needed to reach the final field.

    One resolver lives for one compile run; every join it records is emitted
    once no matter how many times the same path is resolved.
    """

    def __init__(self, separator: str = "."):
        self.separator = separator
        self._joins: List[JoinSpec] = []
        self._seen: Set[Tuple[str, str]] = set()
        self._alias_by_relation: Dict[str, str] = {}
        self._relation_by_alias: Dict[str, str] = {}

    @property
    def joins(self) -> Tuple[JoinSpec, ...]:
        return tuple(self._joins)

    def known_aliases(self, root_alias: str) -> Set[str]:
        return {root_alias, *self._relation_by_alias}

    def has_join(self, relation_path: str, alias: str) -> bool:
        return (relation_path, alias) in self._seen

    def add_join(self, spec: JoinSpec) -> bool:
        """Records a join; returns False when the pair was already present."""
        key = (spec.relation_path, spec.alias)
        if key in self._seen:
            log.debug(f"Join {spec.relation_path} AS {spec.alias} already applied")
            return False
        self._seen.add(key)
        self._joins.append(spec)
        self._alias_by_relation.setdefault(spec.relation_path, spec.alias)
        self._relation_by_alias.setdefault(spec.alias, spec.relation_path)
        log.debug(f"Added join: {spec}")
        return True

    def resolve(self, root_alias: str, field_path: str) -> Tuple[str, List[JoinSpec]]:
        """
        Resolves ``field_path`` against ``root_alias``.

        Args:
            root_alias: Alias of the root entity.
            field_path: Field name, optionally dotted through relations.

        Returns:
            The alias-qualified field reference and the joins this call added.
        """
        parts = field_path.split(self.separator)
        if len(parts) == 1:
            return f"{root_alias}{self.separator}{field_path}", []

        if parts[0] in self.known_aliases(root_alias):
            # Already alias-qualified, e.g. "u.name" or a manual join alias
            return field_path, []

        emitted: List[JoinSpec] = []
        current_alias = root_alias
        for depth, relation in enumerate(parts[:-1]):
            relation_path = f"{current_alias}{self.separator}{relation}"
            alias = self._alias_by_relation.get(relation_path)
            if alias is None:
                alias = self._derive_alias(relation, depth, relation_path)
            if not self.has_join(relation_path, alias):
                spec = JoinSpec(JoinKind.LEFT, relation_path, alias)
                self.add_join(spec)
                emitted.append(spec)
            current_alias = alias

        return f"{current_alias}{self.separator}{parts[-1]}", emitted

    def reset(self) -> None:
        self._joins.clear()
        self._seen.clear()
        self._alias_by_relation.clear()
        self._relation_by_alias.clear()

    def _derive_alias(self, relation: str, depth: int, relation_path: str) -> str:
        base = f"{relation}_{depth}"
        alias = base
        suffix = 2
        # Same relation name and depth reached through a different owner
        while alias in self._relation_by_alias and self._relation_by_alias[alias] != relation_path:
            alias = f"{base}_{suffix}"
            suffix += 1
        return alias
