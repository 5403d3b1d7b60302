"""Process start-up wiring for the schema registry."""

import logging
import threading
from typing import Iterable, Optional

from report_engine.core.exceptions import InvalidExpressionError
from report_engine.schema.definitions import TableDefinition
from report_engine.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)

_registry: Optional[SchemaRegistry] = None
_registry_lock = threading.Lock()


def bootstrap_registry(
    tables: Iterable[TableDefinition], registry: Optional[SchemaRegistry] = None, replace: bool = False
) -> SchemaRegistry:
    """
    Register an ordered list of tables and validate their computed columns.

    Every table is registered before any expression is validated so computed
    columns may reference tables registered later in the list. A table whose
    computed column fails validation is unregistered again and the error raised.
    """
    from report_engine.query.expression import ExpressionValidator

    registry = registry if registry is not None else SchemaRegistry()
    tables = list(tables)
    for table in tables:
        registry.register_table(table, replace=replace)

    validator = ExpressionValidator(registry)
    for table in tables:
        for computed in table.computed_columns:
            result = validator.validate(computed.expression, table.name)
            if not result.valid:
                registry.unregister_table(table.name)
                logger.error(f"Computed column '{table.name}.{computed.name}' is invalid: {result.errors}")
                raise InvalidExpressionError(computed.expression, result.errors)

    logger.info(f"Schema registry bootstrapped with {len(tables)} table(s)")
    return registry


def get_registry() -> SchemaRegistry:
    """Get the process-wide registry, bootstrapping the fleet catalogue on first use."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                from report_engine.schema.catalog import FLEET_TABLES

                _registry = bootstrap_registry(FLEET_TABLES)
    return _registry


def reset_registry() -> None:
    """Drop the process-wide registry (used by tests and tooling)."""
    global _registry
    with _registry_lock:
        _registry = None
