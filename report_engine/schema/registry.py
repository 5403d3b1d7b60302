"""Schema registry: catalogue of reportable tables with column resolution and discovery."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from report_engine.core.exceptions import DuplicateTableError, UnknownColumnError, UnknownTableError
from report_engine.schema.definitions import (
    AnyColumn,
    ColumnType,
    RelationshipDefinition,
    TableDefinition,
)

logger = logging.getLogger(__name__)

_Context = Union[TableDefinition, RelationshipDefinition]


@dataclass(frozen=True)
class ResolvedReference:
    """Outcome of resolving a column reference against a table."""

    reference: str
    definition: AnyColumn
    owner_table: str
    column_name: str
    relationship_path: Tuple[RelationshipDefinition, ...] = ()
    json_path: Tuple[str, ...] = ()

    @property
    def is_computed(self) -> bool:
        return self.definition.is_computed

    @property
    def join_path(self) -> Tuple[str, ...]:
        return tuple(rel.name for rel in self.relationship_path)


class SchemaRegistry:
    """
    Thread-safe catalogue of TableDefinitions.

    Registration normally completes before any lookups happen. Lookups still
    take the registry lock so that a registration in progress is never
    observed half-applied.
    """

    def __init__(self):
        self._tables: Dict[str, TableDefinition] = {}
        self._lock = threading.RLock()

    # ===== REGISTRATION =====

    def register_table(self, table: TableDefinition, replace: bool = False) -> TableDefinition:
        with self._lock:
            if table.name in self._tables and not replace:
                raise DuplicateTableError(table.name)
            self._tables[table.name] = table
        logger.debug(f"Registered report table '{table.name}'")
        return table

    def unregister_table(self, name: str) -> None:
        with self._lock:
            self._tables.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()

    # ===== LOOKUP =====

    def get_table(self, name: str) -> TableDefinition:
        with self._lock:
            table = self._tables.get(name)
        if table is None:
            raise UnknownTableError(name)
        return table

    def has_table(self, name: str) -> bool:
        with self._lock:
            return name in self._tables

    def table_names(self) -> List[str]:
        with self._lock:
            return list(self._tables)

    def resolve_column(self, table_name: str, name: str) -> AnyColumn:
        return self.resolve_reference(table_name, name).definition

    def resolve_reference(self, table_name: str, name: str) -> ResolvedReference:
        """
        Resolve a column reference against a registered table.

        Non-dotted names must match a physical or computed column. Dotted names
        are tried, in order, as an auto-join relationship traversal, as a
        declared JSON-path column, and as a path into a JSON-typed root column.
        """
        table = self.get_table(table_name)
        resolved = self._resolve_in(table, table.name, name, name, ())
        if resolved is None:
            raise UnknownColumnError(name, table.name)
        return resolved

    def resolve_relationship_reference(self, relationship: RelationshipDefinition, name: str) -> ResolvedReference:
        """Resolve a column reference inside a relationship's own column set."""
        resolved = self._resolve_in(relationship, relationship.table, name, name, ())
        if resolved is None:
            raise UnknownColumnError(name, relationship.table)
        return resolved

    def _resolve_in(
        self,
        context: _Context,
        owner_table: str,
        reference: str,
        name: str,
        path: Tuple[RelationshipDefinition, ...],
    ) -> Optional[ResolvedReference]:
        if "." not in name:
            column = context.get_column(name)
            if column is None:
                return None
            return ResolvedReference(reference, column, owner_table, name, path)

        prefix, remainder = name.split(".", 1)

        relationship = context.get_relationship(prefix)
        if relationship is not None and relationship.enabled and relationship.auto_join:
            resolved = self._resolve_in(relationship, relationship.table, reference, remainder, path + (relationship,))
            if resolved is not None:
                return resolved

        declared = context.get_column(name)
        if declared is not None:
            return ResolvedReference(
                reference, declared, owner_table, declared.json_root, path, declared.json_path
            )

        root = context.get_column(prefix)
        if root is not None and not root.is_computed and root.type == ColumnType.JSON.value:
            synthesized = root.copy_with(name=name)
            return ResolvedReference(reference, synthesized, owner_table, prefix, path, tuple(remainder.split(".")))

        return None

    def is_column_allowed(self, table_name: str, name: str) -> bool:
        try:
            self.resolve_reference(table_name, name)
        except (UnknownTableError, UnknownColumnError):
            return False
        return True

    def resolve_auto_join_path(self, table_name: str, name: str) -> List[Dict[str, Any]]:
        """Joins required to reach a relationship-qualified column, parents first."""
        resolved = self.resolve_reference(table_name, name)
        joins = []
        parent_alias = table_name
        for relationship in resolved.relationship_path:
            alias = f"{parent_alias}_{relationship.name}"
            joins.append(
                {
                    "relationship": relationship.name,
                    "table": relationship.table,
                    "alias": alias,
                    "type": relationship.type,
                    "local_key": f"{parent_alias}.{relationship.local_key}",
                    "foreign_key": f"{alias}.{relationship.foreign_key}",
                }
            )
            parent_alias = alias
        return joins

    # ===== DISCOVERY =====

    def get_available_tables(
        self, extension: Optional[str] = None, category: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            tables = list(self._tables.values())
        return [
            {
                "name": table.name,
                "label": table.label,
                "description": table.description,
                "category": table.category,
                "extension": table.extension,
                "supports_aggregates": table.supports_aggregates,
                "max_rows": table.max_rows,
            }
            for table in tables
            if (extension is None or table.extension == extension)
            and (category is None or table.category == category)
        ]

    def get_auto_join_columns(self, table_name: str) -> List[Dict[str, Any]]:
        table = self.get_table(table_name)
        columns = []
        for relationship in table.auto_join_relationships():
            for column in relationship.available_columns():
                data = column.to_dict()
                data["auto_join_path"] = column.name.rsplit(".", 1)[0]
                columns.append(data)
        return columns

    def get_table_columns(self, table_name: str) -> List[Dict[str, Any]]:
        table = self.get_table(table_name)
        return [column.to_dict() for column in table.visible_columns()] + self.get_auto_join_columns(table_name)

    def get_table_relationships(self, table_name: str) -> List[Dict[str, Any]]:
        table = self.get_table(table_name)
        return [rel.to_dict() for rel in table.relationships if rel.enabled]

    def get_table_schema(self, table_name: str) -> Dict[str, Any]:
        data = self.get_table(table_name).to_dict()
        data["auto_join_columns"] = self.get_auto_join_columns(table_name)
        return data
