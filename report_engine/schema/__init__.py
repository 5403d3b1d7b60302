"""
Schema registry for reportable fleet tables.

Main Components:
- TableDefinition / ColumnDefinition / ComputedColumnDefinition / RelationshipDefinition:
  immutable metadata describing what may be reported on
- SchemaRegistry: thread-safe catalogue with column resolution and discovery
- bootstrap_registry / get_registry: process start-up wiring
"""

from .definitions import (
    ColumnDefinition,
    ComputedColumnDefinition,
    RelationshipDefinition,
    TableDefinition,
    JoinType,
)
from .registry import SchemaRegistry, ResolvedReference
from .bootstrap import bootstrap_registry, get_registry, reset_registry

__all__ = [
    "ColumnDefinition",
    "ComputedColumnDefinition",
    "RelationshipDefinition",
    "TableDefinition",
    "JoinType",
    "SchemaRegistry",
    "ResolvedReference",
    "bootstrap_registry",
    "get_registry",
    "reset_registry",
]
