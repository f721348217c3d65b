# src/async_criteria/__init__.py

"""
Async Criteria Library Initialization.

This package compiles loosely shaped filter criteria into backend-agnostic
predicate trees, resolves dotted relation paths into joins, and executes the
result through async SQL engines behind a repository and fluent builder.

It initializes a logger with a NullHandler and makes the core components
available at the top level.
"""

import logging

# --------------------------------------------------------------------------
# Logging Setup
# --------------------------------------------------------------------------
# Library logs are discarded unless the consuming application configures
# logging.
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())
logger.propagate = False

# --------------------------------------------------------------------------
# Core Interface and Exception Exports
# --------------------------------------------------------------------------
from .base.interfaces import QueryEngine, Repository, SelectQuery
from .base.exceptions import (
    InvalidOperatorValueError,
    MultipleObjectsFoundException,
    ObjectNotFoundException,
    UnknownRelationError,
)

# --------------------------------------------------------------------------
# Compilation Exports
# --------------------------------------------------------------------------
from .base.compiler import CompiledQuery, CriteriaCompiler, QueryState
from .base.joins import JoinKind, JoinResolver, JoinSpec
from .base.mapping import EntityMapping
from .base.operators import Operator, OperatorRegistry, default_registry, register_operator

# --------------------------------------------------------------------------
# Query Building Exports
# --------------------------------------------------------------------------
from .base.query import QueryBuilder
from .base.filters import FilterChain
from .base.pagination import PaginationResult
from .base.cache import InMemoryResultCache

# --------------------------------------------------------------------------
# Engine Implementation Exports
# --------------------------------------------------------------------------
from .db_implementations.postgresql_engine import PostgresQueryEngine
from .db_implementations.sqlite_engine import SqliteQueryEngine

# --------------------------------------------------------------------------
# __all__ Definition
# --------------------------------------------------------------------------
__all__ = [
    # Core
    "Repository",
    "QueryEngine",
    "SelectQuery",
    # Exceptions
    "ObjectNotFoundException",
    "MultipleObjectsFoundException",
    "UnknownRelationError",
    "InvalidOperatorValueError",
    # Compilation
    "CriteriaCompiler",
    "CompiledQuery",
    "QueryState",
    "JoinResolver",
    "JoinSpec",
    "JoinKind",
    "EntityMapping",
    "Operator",
    "OperatorRegistry",
    "default_registry",
    "register_operator",
    # Query
    "QueryBuilder",
    "FilterChain",
    "PaginationResult",
    "InMemoryResultCache",
    # Implementations
    "PostgresQueryEngine",
    "SqliteQueryEngine",
    # Logging
    "logger",
]
