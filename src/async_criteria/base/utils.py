# src/async_criteria/base/utils.py
import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Mapping, Type, TypeVar

from pydantic import AnyUrl, BaseModel

log = logging.getLogger(__name__)

T = TypeVar("T")


def prepare_value(data: Any) -> Any:
    """
    Recursively convert pydantic models, dataclasses and special types into
    values a database driver can bind.

    It handles:
    - pydantic models (dumped by alias in JSON mode)
    - dataclasses
    - enums (replaced by their value)
    - dicts, lists and tuples (converted item by item)
    - sets (converted to lists)
    - pydantic URL types (converted to strings)

    Dates and times are left alone; each engine adapts them for its driver.
    """
    if data is None:
        return None
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, BaseModel):
        return prepare_value(data.model_dump(mode="json", by_alias=True))
    if is_dataclass(data) and not isinstance(data, type):
        return prepare_value(asdict(data))
    if isinstance(data, dict):
        return {k: prepare_value(v) for k, v in data.items()}
    if isinstance(data, list):
        return [prepare_value(item) for item in data]
    if isinstance(data, tuple):
        return tuple(prepare_value(item) for item in data)
    if isinstance(data, (set, frozenset)):
        return [prepare_value(item) for item in data]
    if isinstance(data, AnyUrl):
        return str(data)
    return data


def hydrate(entity_type: Type[T], row: Mapping[str, Any]) -> T:
    """Builds an entity from a result row (``model_validate`` for pydantic models)."""
    if entity_type is dict:
        return dict(row)
    if isinstance(entity_type, type) and issubclass(entity_type, BaseModel):
        return entity_type.model_validate(dict(row))
    return entity_type(**row)


def default_alias(entity_type: Type[Any]) -> str:
    """First two letters of the entity name, lower-cased (``User`` -> ``us``)."""
    return entity_type.__name__[:2].lower()
