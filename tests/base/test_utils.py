# tests/base/test_utils.py

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field

from async_criteria.base.utils import default_alias, hydrate, prepare_value
from tests.models import User


class Status(Enum):
    ACTIVE = "active"


class Tagged(BaseModel):
    label: str = Field(alias="tagLabel")
    status: Status


@dataclass
class Point:
    x: int
    y: int


def test_prepare_value_converts_models_and_enums():
    tagged = Tagged(tagLabel="a", status=Status.ACTIVE)
    assert prepare_value(tagged) == {"tagLabel": "a", "status": "active"}
    assert prepare_value(Status.ACTIVE) == "active"


def test_prepare_value_walks_containers():
    assert prepare_value({"p": Point(1, 2)}) == {"p": {"x": 1, "y": 2}}
    assert prepare_value((Status.ACTIVE, 1)) == ("active", 1)
    assert prepare_value({Status.ACTIVE}) == ["active"]
    assert prepare_value(None) is None


def test_hydrate_variants():
    row = {"id": 1, "name": "Alice", "status": "active", "age": 30, "role": "admin"}
    user = hydrate(User, row)
    assert isinstance(user, User)
    assert user.credits == 0
    assert hydrate(dict, {"a": 1}) == {"a": 1}
    assert hydrate(Point, {"x": 1, "y": 2}) == Point(1, 2)


def test_default_alias():
    assert default_alias(User) == "us"
