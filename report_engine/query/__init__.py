"""
Query module for the report engine.

Main Components:
- ExpressionValidator: safelist validation of computed-column expressions
- QueryCompiler: turns a QuerySpecification into a tenant-scoped SQLAlchemy statement
- Schemas: the QuerySpecification wire shape and the CompiledQuery it compiles to
"""

from .expression import ExpressionValidator, ExpressionValidationResult
from .compiler import QueryCompiler, compute_fingerprint
from .schemas import (
    # Wire shape
    QuerySpecification,
    SelectItem,
    JoinSpec,
    JoinCondition,
    Condition,
    OrderSpec,
    # Compiled output
    CompiledQuery,
    OutputColumn,
    ResolvedJoin,
    TenantContext,
    # Enums
    AggregateFunction,
    FilterOperator,
    SortDirection,
)

__all__ = [
    "ExpressionValidator",
    "ExpressionValidationResult",
    "QueryCompiler",
    "compute_fingerprint",
    "QuerySpecification",
    "SelectItem",
    "JoinSpec",
    "JoinCondition",
    "Condition",
    "OrderSpec",
    "CompiledQuery",
    "OutputColumn",
    "ResolvedJoin",
    "TenantContext",
    "AggregateFunction",
    "FilterOperator",
    "SortDirection",
]
