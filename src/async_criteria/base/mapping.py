# src/async_criteria/base/mapping.py
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .exceptions import UnknownRelationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Relation:
    """
    A named traversal from one table to another.

    The join condition is ``owner.local_key = target.remote_key``; for a
    one-to-many relation such as ``user -> orders`` that is
    ``Relation(orders, local_key="id", remote_key="user_id")``.
    """

    target: "EntityMapping"
    local_key: str
    remote_key: str


@dataclass
class EntityMapping:
    """Table metadata an engine needs to turn join paths into SQL joins."""

    table: str
    primary_key: str = "id"
    relations: Dict[str, Relation] = field(default_factory=dict, repr=False, compare=False)

    def relate(
        self, name: str, target: "EntityMapping", local_key: str, remote_key: str
    ) -> "EntityMapping":
        self.relations[name] = Relation(target, local_key, remote_key)
        return self

    def relation(self, name: str) -> Relation:
        try:
            return self.relations[name]
        except KeyError:
            raise UnknownRelationError(
                f"Table '{self.table}' has no relation named '{name}'"
            ) from None

    def get_relation(self, name: str) -> Optional[Relation]:
        return self.relations.get(name)
