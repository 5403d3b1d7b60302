"""
Immutable schema definitions for reportable tables.

Definitions are constructed once (usually in a catalogue module) and registered
with the SchemaRegistry at process start. They are never mutated afterwards;
``copy_with`` returns a new value.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Union

from report_engine.core.exceptions import SchemaDefinitionError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DOTTED_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

FOREIGN_KEY_SUFFIXES = ("_uuid", "_id")


class ColumnType(str, Enum):
    """Semantic column types understood by the engine."""

    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    FLOAT = "float"
    DATE = "date"
    DATETIME = "datetime"
    TIME = "time"
    BOOLEAN = "boolean"
    JSON = "json"


class JoinType(str, Enum):
    """Closed set of join types a relationship or explicit join may use."""

    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"


# Numeric and temporal types are aggregatable unless a definition says otherwise
AGGREGATABLE_TYPES = frozenset(
    {
        ColumnType.INTEGER.value,
        ColumnType.DECIMAL.value,
        ColumnType.FLOAT.value,
        ColumnType.DATE.value,
        ColumnType.DATETIME.value,
        ColumnType.TIME.value,
    }
)

_TYPE_ALIASES = {
    "int": "integer",
    "bigint": "integer",
    "smallint": "integer",
    "tinyint": "integer",
    "numeric": "decimal",
    "double": "float",
    "timestamp": "datetime",
    "bool": "boolean",
    "text": "string",
}


def _normalize_type(value: Union[str, ColumnType], owner: str) -> str:
    raw = value.value if isinstance(value, ColumnType) else str(value).lower()
    raw = _TYPE_ALIASES.get(raw, raw)
    try:
        return ColumnType(raw).value
    except ValueError:
        raise SchemaDefinitionError(f"Unknown column type '{value}' for '{owner}'")


def _default_label(name: str) -> str:
    return re.sub(r"[_\-.]+", " ", name).strip().title()


def _check_identifier(name: str, kind: str, dotted: bool = False) -> None:
    pattern = DOTTED_IDENTIFIER_PATTERN if dotted else IDENTIFIER_PATTERN
    if not isinstance(name, str) or not pattern.match(name):
        raise SchemaDefinitionError(f"Invalid {kind} name '{name}'")


class _ColumnMixin:
    """Behaviour shared by physical and computed columns."""

    is_computed: ClassVar[bool] = False

    @property
    def is_json_path(self) -> bool:
        return "." in self.name

    @property
    def json_root(self) -> str:
        return self.name.split(".", 1)[0]

    @property
    def json_path(self) -> Tuple[str, ...]:
        return tuple(self.name.split(".")[1:])

    @property
    def is_foreign_key(self) -> bool:
        return self.name.endswith(FOREIGN_KEY_SUFFIXES)

    def transform_value(self, value: Any) -> Any:
        if self.transformer is None:
            return value
        return self.transformer(value)

    def copy_with(self, **overrides):
        """Return a new definition with the given fields replaced."""
        if "name" in overrides and "label" not in overrides:
            overrides["label"] = None
        if not self.is_computed and "type" in overrides and "aggregatable" not in overrides:
            overrides["aggregatable"] = None
        try:
            return replace(self, **overrides)
        except TypeError as exc:
            raise SchemaDefinitionError(f"Cannot copy column '{self.name}': {exc}")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "label": self.label,
            "type": self.type,
            "description": self.description,
            "nullable": self.nullable,
            "searchable": self.searchable,
            "sortable": self.sortable,
            "filterable": self.filterable,
            "aggregatable": self.aggregatable,
            "computed": self.is_computed,
        }
        if self.format:
            data["format"] = self.format
        return data


@dataclass(frozen=True)
class ColumnDefinition(_ColumnMixin):
    """A physical column, or a dotted path into a JSON-typed physical column."""

    name: str
    type: str = ColumnType.STRING.value
    label: Optional[str] = None
    description: Optional[str] = None
    nullable: bool = True
    searchable: bool = True
    sortable: bool = True
    filterable: bool = True
    aggregatable: Optional[bool] = None
    hidden: bool = False
    transformer: Optional[Callable[[Any], Any]] = field(default=None, compare=False, repr=False)
    format: Optional[str] = None

    def __post_init__(self):
        _check_identifier(self.name, "column", dotted=True)
        object.__setattr__(self, "type", _normalize_type(self.type, self.name))
        if self.label is None:
            object.__setattr__(self, "label", _default_label(self.name))
        if self.aggregatable is None:
            object.__setattr__(self, "aggregatable", self.type in AGGREGATABLE_TYPES)


@dataclass(frozen=True)
class ComputedColumnDefinition(_ColumnMixin):
    """A column whose value is derived at query time from a validated expression."""

    is_computed: ClassVar[bool] = True

    name: str
    expression: str
    type: str = ColumnType.STRING.value
    label: Optional[str] = None
    description: Optional[str] = None
    nullable: bool = True
    searchable: bool = False
    sortable: bool = False
    filterable: bool = True
    aggregatable: bool = False
    hidden: bool = False
    transformer: Optional[Callable[[Any], Any]] = field(default=None, compare=False, repr=False)
    format: Optional[str] = None

    def __post_init__(self):
        _check_identifier(self.name, "computed column")
        if not isinstance(self.expression, str) or not self.expression.strip():
            raise SchemaDefinitionError(f"Computed column '{self.name}' requires an expression")
        object.__setattr__(self, "type", _normalize_type(self.type, self.name))
        if self.label is None:
            object.__setattr__(self, "label", _default_label(self.name))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["expression"] = self.expression
        return data

    # Aggregate helpers

    @classmethod
    def count(cls, name: str, field_name: str = "*", **kwargs) -> "ComputedColumnDefinition":
        kwargs.setdefault("aggregatable", True)
        return cls(name=name, expression=f"COUNT({field_name})", type=ColumnType.INTEGER, **kwargs)

    @classmethod
    def sum(cls, name: str, field_name: str, **kwargs) -> "ComputedColumnDefinition":
        kwargs.setdefault("aggregatable", True)
        return cls(name=name, expression=f"SUM({field_name})", type=ColumnType.DECIMAL, **kwargs)

    @classmethod
    def avg(cls, name: str, field_name: str, **kwargs) -> "ComputedColumnDefinition":
        kwargs.setdefault("aggregatable", True)
        return cls(name=name, expression=f"AVG({field_name})", type=ColumnType.DECIMAL, **kwargs)

    @classmethod
    def min(cls, name: str, field_name: str, **kwargs) -> "ComputedColumnDefinition":
        kwargs.setdefault("aggregatable", True)
        return cls(name=name, expression=f"MIN({field_name})", **kwargs)

    @classmethod
    def max(cls, name: str, field_name: str, **kwargs) -> "ComputedColumnDefinition":
        kwargs.setdefault("aggregatable", True)
        return cls(name=name, expression=f"MAX({field_name})", **kwargs)


AnyColumn = Union[ColumnDefinition, ComputedColumnDefinition]


def _index_unique(items, kind: str, owner: str) -> Dict[str, Any]:
    index: Dict[str, Any] = {}
    for item in items:
        if item.name in index:
            raise SchemaDefinitionError(f"Duplicate {kind} '{item.name}' in '{owner}'")
        index[item.name] = item
    return index


@dataclass(frozen=True)
class RelationshipDefinition:
    """
    A relationship from a table (or a parent relationship) to another table.

    The join condition is always ``parent.local_key = target.foreign_key``.
    Auto-join relationships are added to a query implicitly whenever one of
    their columns is referenced; the rest must be joined explicitly.
    """

    name: str
    table: str
    type: str = JoinType.LEFT.value
    local_key: Optional[str] = None
    foreign_key: str = "uuid"
    enabled: bool = True
    auto_join: bool = False
    label: Optional[str] = None
    description: Optional[str] = None
    columns: Tuple[ColumnDefinition, ...] = ()
    relationships: Tuple["RelationshipDefinition", ...] = ()

    def __post_init__(self):
        _check_identifier(self.name, "relationship")
        _check_identifier(self.table, "table")
        try:
            object.__setattr__(self, "type", JoinType(str(getattr(self.type, "value", self.type)).lower()).value)
        except ValueError:
            raise SchemaDefinitionError(f"Unknown join type '{self.type}' for relationship '{self.name}'")
        if self.local_key is None:
            object.__setattr__(self, "local_key", f"{self.name}_uuid")
        _check_identifier(self.local_key, "local key")
        _check_identifier(self.foreign_key, "foreign key")
        if self.label is None:
            object.__setattr__(self, "label", _default_label(self.name))
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "relationships", tuple(self.relationships))
        object.__setattr__(self, "_column_index", _index_unique(self.columns, "column", self.name))
        object.__setattr__(self, "_relationship_index", _index_unique(self.relationships, "relationship", self.name))

    @classmethod
    def belongs_to(cls, name: str, table: str, local_key: Optional[str] = None, foreign_key: str = "uuid", **kwargs):
        return cls(name=name, table=table, local_key=local_key, foreign_key=foreign_key, **kwargs)

    @classmethod
    def has_one(cls, name: str, table: str, foreign_key: str, local_key: str = "uuid", **kwargs):
        return cls(name=name, table=table, local_key=local_key, foreign_key=foreign_key, **kwargs)

    @classmethod
    def has_many(cls, name: str, table: str, foreign_key: str, local_key: str = "uuid", **kwargs):
        return cls(name=name, table=table, local_key=local_key, foreign_key=foreign_key, **kwargs)

    @classmethod
    def auto_join_to(cls, name: str, table: str, local_key: Optional[str] = None, foreign_key: str = "uuid", **kwargs):
        kwargs["auto_join"] = True
        return cls(name=name, table=table, local_key=local_key, foreign_key=foreign_key, **kwargs)

    def get_column(self, name: str) -> Optional[ColumnDefinition]:
        return self._column_index.get(name)

    def get_relationship(self, name: str) -> Optional["RelationshipDefinition"]:
        return self._relationship_index.get(name)

    def auto_join_relationships(self) -> List["RelationshipDefinition"]:
        return [rel for rel in self.relationships if rel.enabled and rel.auto_join]

    def available_columns(self, prefix: Optional[str] = None, label_prefix: Optional[str] = None) -> List[ColumnDefinition]:
        """Columns of this relationship and its auto-joined children under dotted, prefixed names."""
        prefix = prefix or self.name
        label_prefix = label_prefix or self.label
        materialized = [
            column.copy_with(name=f"{prefix}.{column.name}", label=f"{label_prefix} - {column.label}")
            for column in self.columns
            if not column.hidden
        ]
        for nested in self.auto_join_relationships():
            materialized.extend(
                nested.available_columns(f"{prefix}.{nested.name}", f"{label_prefix} - {nested.label}")
            )
        return materialized

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "table": self.table,
            "type": self.type,
            "local_key": self.local_key,
            "foreign_key": self.foreign_key,
            "auto_join": self.auto_join,
            "enabled": self.enabled,
            "columns": [column.to_dict() for column in self.columns if not column.hidden],
            "relationships": [rel.to_dict() for rel in self.relationships if rel.enabled],
        }


@dataclass(frozen=True)
class TableDefinition:
    """One reportable relation."""

    name: str
    label: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    extension: Optional[str] = None
    columns: Tuple[ColumnDefinition, ...] = ()
    computed_columns: Tuple[ComputedColumnDefinition, ...] = ()
    relationships: Tuple[RelationshipDefinition, ...] = ()
    excluded_columns: FrozenSet[str] = frozenset()
    supports_aggregates: bool = True
    max_rows: Optional[int] = None
    cacheable: bool = True
    cache_ttl: int = 3600
    permissions: Tuple[str, ...] = ()
    tenant_column: Optional[str] = "company_uuid"
    timeout_seconds: Optional[float] = None

    def __post_init__(self):
        _check_identifier(self.name, "table")
        if self.label is None:
            object.__setattr__(self, "label", _default_label(self.name))
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "computed_columns", tuple(self.computed_columns))
        object.__setattr__(self, "relationships", tuple(self.relationships))
        object.__setattr__(self, "excluded_columns", frozenset(self.excluded_columns))
        object.__setattr__(self, "permissions", tuple(self.permissions))
        if self.max_rows is not None and self.max_rows < 1:
            raise SchemaDefinitionError(f"max_rows for table '{self.name}' must be positive")

        # Physical and computed columns share one namespace
        object.__setattr__(
            self, "_column_index", _index_unique(self.columns + self.computed_columns, "column", self.name)
        )
        object.__setattr__(self, "_relationship_index", _index_unique(self.relationships, "relationship", self.name))

        if self.tenant_column is not None:
            tenant = self._column_index.get(self.tenant_column)
            if tenant is None or tenant.is_computed:
                raise SchemaDefinitionError(
                    f"Tenant column '{self.tenant_column}' is not a physical column of table '{self.name}'"
                )

    def all_columns(self) -> List[AnyColumn]:
        return list(self.columns) + list(self.computed_columns)

    def get_column(self, name: str) -> Optional[AnyColumn]:
        return self._column_index.get(name)

    def has_column(self, name: str) -> bool:
        return name in self._column_index

    def get_relationship(self, name: str) -> Optional[RelationshipDefinition]:
        return self._relationship_index.get(name)

    def auto_join_relationships(self) -> List[RelationshipDefinition]:
        return [rel for rel in self.relationships if rel.enabled and rel.auto_join]

    def manual_join_relationships(self) -> List[RelationshipDefinition]:
        return [rel for rel in self.relationships if rel.enabled and not rel.auto_join]

    def visible_columns(self) -> List[AnyColumn]:
        """Columns offered for discovery; excluded, hidden and foreign-key columns are still queryable by name."""
        return [
            column
            for column in self.all_columns()
            if not column.hidden and column.name not in self.excluded_columns and not column.is_foreign_key
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "category": self.category,
            "extension": self.extension,
            "supports_aggregates": self.supports_aggregates,
            "max_rows": self.max_rows,
            "cacheable": self.cacheable,
            "cache_ttl": self.cache_ttl,
            "permissions": list(self.permissions),
            "columns": [column.to_dict() for column in self.visible_columns()],
            "relationships": [rel.to_dict() for rel in self.relationships if rel.enabled],
        }
