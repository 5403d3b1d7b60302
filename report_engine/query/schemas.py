"""
Query specification schemas.

QuerySpecification is the already-decoded, schema-independent description of
a report query. Pydantic only checks its shape here; semantic checks against
the schema registry happen in the QueryCompiler.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.sql import Select


class AggregateFunction(str, Enum):
    """Closed set of aggregate functions a select entry may apply."""

    COUNT = "COUNT"
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"


class FilterOperator(str, Enum):
    """Operators allowed in where/having conditions."""

    EQ = "="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    LIKE = "LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"
    BETWEEN = "BETWEEN"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class SelectItem(BaseModel):
    """A selected column, computed column or ad-hoc computed expression."""

    table: Optional[str] = None
    column: Optional[str] = None
    expression: Optional[str] = None
    alias: Optional[str] = None
    function: Optional[str] = None

    @model_validator(mode="after")
    def _column_or_expression(self):
        if not self.column and not self.expression:
            raise ValueError("select entries need a column or an expression")
        if self.column and self.expression:
            raise ValueError("select entries take either a column or an expression, not both")
        return self


class JoinCondition(BaseModel):
    """Equality condition: ``left`` is resolved against the query, ``right`` against the joined table."""

    left: str
    right: str


class JoinSpec(BaseModel):
    type: str = "left"
    table: Optional[str] = None
    relationship: Optional[str] = None
    alias: Optional[str] = None
    on: List[JoinCondition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _table_or_relationship(self):
        if not self.table and not self.relationship:
            raise ValueError("joins need a table or a relationship")
        return self


class Condition(BaseModel):
    """One link of the implicit left-to-right predicate chain."""

    column: str
    operator: str = "="
    value: Any = None
    logic: str = "and"


class OrderSpec(BaseModel):
    column: str
    direction: str = SortDirection.ASC.value


class QuerySpecification(BaseModel):
    """Structured report query as received from the request boundary."""

    model_config = ConfigDict(populate_by_name=True)

    select: List[SelectItem] = Field(default_factory=list)
    from_: str = Field(alias="from")
    joins: List[JoinSpec] = Field(default_factory=list)
    where: List[Condition] = Field(default_factory=list)
    group_by: List[str] = Field(default_factory=list, alias="groupBy")
    having: List[Condition] = Field(default_factory=list)
    order_by: List[OrderSpec] = Field(default_factory=list, alias="orderBy")
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy in wire shape, suitable for execution and audit records."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


@dataclass(frozen=True)
class TenantContext:
    """Caller identity and organisational scope supplied by the authentication collaborator."""

    tenant_id: str
    actor_id: Optional[str] = None
    permissions: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class OutputColumn:
    alias: str
    label: str
    type: str
    source: str
    aggregate: Optional[str] = None


@dataclass(frozen=True)
class ResolvedJoin:
    alias: str
    table: str
    type: str
    conditions: Tuple[Tuple[str, str], ...]
    auto: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alias": self.alias,
            "table": self.table,
            "type": self.type,
            "on": [list(pair) for pair in self.conditions],
            "auto": self.auto,
        }


@dataclass(frozen=True)
class CompiledQuery:
    """Executable query plus the metadata the execution layer needs. Never mutated after compilation."""

    statement: Select
    table_name: str
    tenant_id: str
    fingerprint: str
    columns: Tuple[OutputColumn, ...]
    joins: Tuple[ResolvedJoin, ...]
    effective_limit: Optional[int]
    requested_limit: Optional[int]
    limit_clamped: bool
    offset: Optional[int]
    cacheable: bool
    cache_ttl: int
    timeout_seconds: Optional[float]
    required_permissions: Tuple[str, ...]
    specification: Dict[str, Any] = field(compare=False, hash=False)
    transformers: Dict[str, Callable[[Any], Any]] = field(default_factory=dict, compare=False, hash=False, repr=False)
    warnings: Tuple[str, ...] = field(default=(), compare=False, hash=False)
    summary: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def aliases(self) -> List[str]:
        return [column.alias for column in self.columns]

    def to_sql(self, dialect=None, literal_binds: bool = False) -> str:
        """Render the statement for previews and logging."""
        compile_kwargs = {"literal_binds": True} if literal_binds else {}
        if dialect is None:
            return str(self.statement.compile(compile_kwargs=compile_kwargs))
        return str(self.statement.compile(dialect=dialect, compile_kwargs=compile_kwargs))

    def metadata(self) -> Dict[str, Any]:
        return {
            "table": self.table_name,
            "fingerprint": self.fingerprint,
            "effective_limit": self.effective_limit,
            "requested_limit": self.requested_limit,
            "limit_clamped": self.limit_clamped,
            "offset": self.offset,
            "joins": [join.to_dict() for join in self.joins],
            "columns": [column.alias for column in self.columns],
            "required_permissions": list(self.required_permissions),
            "warnings": list(self.warnings),
            "summary": dict(self.summary),
        }
