"""
Query specification compiler.

Turns a QuerySpecification into a SQLAlchemy Core ``Select`` after resolving
every table, column and relationship against the schema registry. Problems
are accumulated so one QueryCompilationError reports everything wrong with a
specification. Compilation does no I/O and is deterministic.
"""

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, column, func, literal_column, or_, select, table
from sqlalchemy.sql import ColumnElement

from report_engine.core.exceptions import (
    InvalidExpressionError,
    QueryCompilationError,
    UnknownColumnError,
    UnknownTableError,
)
from report_engine.query.expression import ExpressionValidator, contains_aggregate, render_tokens
from report_engine.query.schemas import (
    AggregateFunction,
    CompiledQuery,
    Condition,
    FilterOperator,
    JoinSpec,
    OutputColumn,
    QuerySpecification,
    ResolvedJoin,
    SelectItem,
    SortDirection,
    TenantContext,
)
from report_engine.schema.definitions import (
    IDENTIFIER_PATTERN,
    ColumnType,
    JoinType,
    RelationshipDefinition,
    TableDefinition,
)
from report_engine.schema.registry import ResolvedReference, SchemaRegistry

logger = logging.getLogger(__name__)

MAX_EXPANSION_DEPTH = 10

# Query analysis thresholds
LOW_COMPLEXITY_SCORE = 10
HIGH_COMPLEXITY_SCORE = 25
RESOURCE_SCORE_THRESHOLD = 100
DEFAULT_RESOURCE_LIMIT = 1000
SENSITIVE_COLUMN_MARKERS = ("password", "token", "secret", "key", "ssn", "credit_card")
INDEXED_COLUMNS = {"id", "uuid", "created_at", "updated_at"}

_AGGREGATE_TYPES = {
    AggregateFunction.COUNT.value: ColumnType.INTEGER.value,
    AggregateFunction.SUM.value: ColumnType.DECIMAL.value,
    AggregateFunction.AVG.value: ColumnType.DECIMAL.value,
}

_VALUELESS_OPERATORS = {FilterOperator.IS_NULL.value, FilterOperator.IS_NOT_NULL.value}
_LIST_OPERATORS = {FilterOperator.IN.value, FilterOperator.NOT_IN.value}


@dataclass
class _Ref:
    """A resolved column reference ready to be turned into a SQL element."""

    source: str
    definition: Any
    alias: Optional[str] = None
    column: Optional[str] = None
    json_path: Tuple[str, ...] = ()
    sql: Optional[str] = None
    aggregate: bool = False


@dataclass
class _JoinPlan:
    alias: str
    table: str
    type: str
    conditions: List[Tuple[Tuple[str, str], Tuple[str, str]]]
    auto: bool
    base: str
    depth: int = 0
    tenant_column: Optional[str] = None


@dataclass
class _ExplicitJoin:
    alias: str
    table: str
    definition: Optional[TableDefinition]
    relationship: Optional[RelationshipDefinition]


@dataclass
class _SelectPlan:
    alias: str
    ref: Optional[_Ref]
    function: Optional[str]
    output: OutputColumn
    transformer: Optional[Callable[[Any], Any]] = None

    @property
    def is_aggregate(self) -> bool:
        return self.function is not None or (self.ref is not None and self.ref.aggregate)


@dataclass
class _FilterPlan:
    ref: Optional[_Ref]
    select_alias: Optional[str]
    operator: str
    value: Any
    logic: str


@dataclass
class _OrderPlan:
    ref: Optional[_Ref]
    select_alias: Optional[str]
    direction: str


def _json_sql(alias: str, column_name: str, json_path: Tuple[str, ...]) -> str:
    if not json_path:
        return f"{alias}.{column_name}"
    return f"JSON_EXTRACT({alias}.{column_name}, '$.{'.'.join(json_path)}')"


def _default_alias(table_name: str, column_name: str, function: Optional[str]) -> str:
    if column_name == "*":
        base = "all"
    else:
        base = re.sub(r"[^A-Za-z0-9_]", "_", f"{table_name}.{column_name}")
    return f"{function.lower()}_{base}" if function else base


def compute_fingerprint(payload: Dict[str, Any]) -> str:
    """Stable sha256 over a canonical JSON rendering (sorted keys)."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class _Compilation:
    """State for a single compile() call."""

    def __init__(self, registry: SchemaRegistry, validator: ExpressionValidator, spec: QuerySpecification, tenant: TenantContext):
        self.registry = registry
        self.validator = validator
        self.spec = spec
        self.tenant = tenant
        self.problems: List[str] = []
        self.root: Optional[TableDefinition] = None
        self.root_alias = spec.from_
        self.needed: Dict[str, Set[str]] = {}
        self.joins: Dict[str, _JoinPlan] = {}
        self.explicit: Dict[str, _ExplicitJoin] = {}
        self.selects: List[_SelectPlan] = []
        self.select_index: Dict[str, _SelectPlan] = {}
        self.where: List[_FilterPlan] = []
        self.having: List[_FilterPlan] = []
        self.group_by: List[_Ref] = []
        self.order_by: List[_OrderPlan] = []

    def problem(self, message: str) -> None:
        if message not in self.problems:
            self.problems.append(message)

    def need(self, alias: str, column_name: str) -> None:
        self.needed.setdefault(alias, set()).add(column_name)

    # ===== RESOLUTION =====

    def ensure_auto_joins(self, base_alias: str, path: Tuple[RelationshipDefinition, ...]) -> str:
        parent = base_alias
        for depth, relationship in enumerate(path, start=1):
            alias = f"{parent}_{relationship.name}"
            if alias in self.explicit:
                self.problem(f"Join alias '{alias}' conflicts with auto-join relationship '{relationship.name}'")
            elif alias not in self.joins:
                # Registered targets keep their own tenant scope; unregistered ones have none to apply
                target = self.registry.get_table(relationship.table) if self.registry.has_table(relationship.table) else None
                tenant_column = target.tenant_column if target is not None else None
                self.joins[alias] = _JoinPlan(
                    alias=alias,
                    table=relationship.table,
                    type=relationship.type,
                    conditions=[((parent, relationship.local_key), (alias, relationship.foreign_key))],
                    auto=True,
                    base=base_alias,
                    depth=depth,
                    tenant_column=tenant_column,
                )
                self.need(parent, relationship.local_key)
                self.need(alias, relationship.foreign_key)
                if tenant_column is not None:
                    self.need(alias, tenant_column)
            parent = alias
        return parent

    def ref_from(self, resolved: ResolvedReference, base_alias: str, base_table: str) -> Optional[_Ref]:
        definition = resolved.definition
        if definition.is_computed:
            if resolved.relationship_path:
                # Related computed columns are expanded in the related table's own context
                base_alias = self.ensure_auto_joins(base_alias, resolved.relationship_path)
                base_table = resolved.owner_table
                if not self.registry.has_table(base_table):
                    self.problem(f"Computed column '{resolved.reference}' belongs to unregistered table '{base_table}'")
                    return None
            expanded = self.expand_expression(definition.expression, base_table, base_alias, (definition.name,), 0)
            if expanded is None:
                return None
            sql, aggregate = expanded
            return _Ref(source=f"({sql})", definition=definition, sql=sql, aggregate=aggregate)

        alias = self.ensure_auto_joins(base_alias, resolved.relationship_path)
        self.need(alias, resolved.column_name)
        return _Ref(
            source=_json_sql(alias, resolved.column_name, resolved.json_path),
            definition=definition,
            alias=alias,
            column=resolved.column_name,
            json_path=resolved.json_path,
        )

    def expand_expression(
        self, expression: str, base_table: str, base_alias: str, stack: Tuple[str, ...], depth: int
    ) -> Optional[Tuple[str, bool]]:
        """Validate an expression and render it with every identifier rewritten to ``alias.column``."""
        if depth > MAX_EXPANSION_DEPTH:
            self.problem(f"Computed column '{stack[0]}' expands deeper than {MAX_EXPANSION_DEPTH} levels")
            return None
        try:
            tokens = self.validator.assert_valid(expression, base_table)
        except InvalidExpressionError as exc:
            label = f"Computed column '{stack[-1]}'" if stack else "Expression"
            for error in exc.errors:
                self.problem(f"{label}: {error}")
            return None

        failed = False
        aggregate = contains_aggregate(tokens)

        def render_identifier(identifier: str) -> str:
            nonlocal failed, aggregate
            resolved = self.registry.resolve_reference(base_table, identifier)
            if resolved.definition.is_computed and resolved.relationship_path:
                nested = self.ref_from(resolved, base_alias, base_table)
                if nested is None:
                    failed = True
                    return "NULL"
                aggregate = aggregate or nested.aggregate
                return nested.source
            if resolved.definition.is_computed:
                name = resolved.definition.name
                if name in stack:
                    self.problem(f"Computed column '{name}' references itself")
                    failed = True
                    return "NULL"
                inner = self.expand_expression(
                    resolved.definition.expression, base_table, base_alias, stack + (name,), depth + 1
                )
                if inner is None:
                    failed = True
                    return "NULL"
                aggregate = aggregate or inner[1]
                return f"({inner[0]})"
            alias = self.ensure_auto_joins(base_alias, resolved.relationship_path)
            return _json_sql(alias, resolved.column_name, resolved.json_path)

        sql = render_tokens(tokens, render_identifier)
        if failed:
            return None
        return sql, aggregate

    def resolve(self, reference: str) -> Optional[_Ref]:
        """Resolve a column reference against the root table, its auto-joins and explicit joins."""
        if self.root is None:
            return None

        name = reference
        if "." in reference and reference.split(".", 1)[0] == self.root_alias and self.root_alias not in self.explicit:
            name = reference.split(".", 1)[1]

        try:
            resolved = self.registry.resolve_reference(self.root.name, name)
            return self.ref_from(resolved, self.root_alias, self.root.name)
        except UnknownColumnError:
            pass

        if "." in name:
            prefix, remainder = name.split(".", 1)
            joined = self.explicit.get(prefix)
            if joined is not None:
                try:
                    if joined.definition is not None:
                        resolved = self.registry.resolve_reference(joined.definition.name, remainder)
                    else:
                        resolved = self.registry.resolve_relationship_reference(joined.relationship, remainder)
                except UnknownColumnError:
                    self.problem(str(UnknownColumnError(remainder, joined.table)))
                    return None
                return self.ref_from(resolved, joined.alias, joined.table)

            relationship = self.root.get_relationship(prefix)
            if relationship is not None and relationship.enabled and not relationship.auto_join:
                self.problem(
                    f"Relationship '{prefix}' on table '{self.root.name}' is not auto-joined; "
                    f"declare it in joins to reference '{reference}'"
                )
                return None

        self.problem(str(UnknownColumnError(reference, self.root.name)))
        return None

    # ===== STEPS =====

    def resolve_root(self) -> None:
        try:
            self.root = self.registry.get_table(self.spec.from_)
        except UnknownTableError as exc:
            self.problem(str(exc))
            return
        if self.root.tenant_column is not None:
            if not self.tenant.tenant_id:
                self.problem(f"A tenant context is required to query table '{self.root.name}'")
            self.need(self.root_alias, self.root.tenant_column)

    def compile_joins(self) -> None:
        for index, join in enumerate(self.spec.joins):
            self.compile_join(index, join)

    def compile_join(self, index: int, join: JoinSpec) -> None:
        join_type = (join.type or "").lower()
        if join_type not in {member.value for member in JoinType}:
            self.problem(f"Join #{index + 1}: unknown join type '{join.type}'")

        relationship = None
        if join.relationship:
            if self.root is not None:
                relationship = self.root.get_relationship(join.relationship)
                if relationship is None or not relationship.enabled:
                    self.problem(f"Relationship '{join.relationship}' does not exist on table '{self.root.name}'")
                    return
            else:
                return
            if join.table and join.table != relationship.table:
                self.problem(
                    f"Join #{index + 1}: relationship '{relationship.name}' targets '{relationship.table}', not '{join.table}'"
                )
        table_name = join.table or relationship.table

        alias = join.alias or join.relationship or table_name
        if not IDENTIFIER_PATTERN.match(alias):
            self.problem(f"Join #{index + 1}: invalid alias '{alias}'")
            return
        if alias == self.root_alias or alias in self.explicit:
            self.problem(f"Join #{index + 1}: duplicate table alias '{alias}'")
            return

        definition = self.registry.get_table(table_name) if self.registry.has_table(table_name) else None
        if definition is None and relationship is None:
            self.problem(str(UnknownTableError(table_name)))
            return

        conditions = []
        if join.on:
            for condition in join.on:
                left = self.resolve(condition.left) if self.root is not None else None
                if left is not None and (left.column is None or left.json_path):
                    self.problem(f"Join #{index + 1}: '{condition.left}' must be a physical column")
                    left = None
                right = self.join_column(definition or relationship, alias, table_name, condition.right, index)
                if left is not None and right is not None:
                    conditions.append(((left.alias, left.column), right))
        elif relationship is not None:
            conditions.append(((self.root_alias, relationship.local_key), (alias, relationship.foreign_key)))
            self.need(self.root_alias, relationship.local_key)
            self.need(alias, relationship.foreign_key)
        else:
            self.problem(f"Join #{index + 1}: a join to '{table_name}' requires at least one 'on' condition")

        self.explicit[alias] = _ExplicitJoin(alias, table_name, definition, relationship)
        # Explicitly joined tenant-scoped tables are restricted to the caller's tenant in the ON clause
        tenant_column = definition.tenant_column if definition is not None else None
        if tenant_column is not None:
            self.need(alias, tenant_column)
        self.joins[alias] = _JoinPlan(
            alias, table_name, join_type, conditions, auto=False, base=alias, tenant_column=tenant_column
        )

    def join_column(self, context, alias: str, table_name: str, name: str, index: int) -> Optional[Tuple[str, str]]:
        for prefix in (f"{alias}.", f"{table_name}."):
            if name.startswith(prefix):
                name = name[len(prefix):]
                break
        column_definition = context.get_column(name)
        if column_definition is None or column_definition.is_computed or column_definition.is_json_path:
            self.problem(f"Join #{index + 1}: column '{name}' is not a physical column of '{table_name}'")
            return None
        self.need(alias, name)
        return alias, name

    def compile_select(self) -> None:
        if not self.spec.select:
            self.problem("At least one column must be selected")
        for index, item in enumerate(self.spec.select):
            self.compile_select_item(index, item)

    def compile_select_item(self, index: int, item: SelectItem) -> None:
        function = item.function.upper() if item.function else None
        if function is not None and function not in {member.value for member in AggregateFunction}:
            self.problem(f"Select #{index + 1}: aggregate function '{item.function}' is not allowed")
            function = None
        if self.root is None:
            return

        if function is not None and not self.root.supports_aggregates:
            self.problem(f"Table '{self.root.name}' does not support aggregate functions")

        transformer = None
        if item.expression is not None:
            if not item.alias:
                self.problem(f"Select #{index + 1}: expression entries require an alias")
                return
            expanded = self.expand_expression(item.expression, self.root.name, self.root_alias, (item.alias,), 0)
            if expanded is None:
                return
            sql, aggregate = expanded
            ref = _Ref(source=f"({sql})", definition=None, sql=sql, aggregate=aggregate)
            source_table, source_column = self.root.name, item.alias
            output_type = ColumnType.STRING.value
            label = item.alias
        else:
            source_table = item.table or self.root.name
            source_column = item.column
            reference = source_column if source_table in (self.root.name, self.root_alias) else f"{source_table}.{source_column}"
            if source_column == "*":
                if function != AggregateFunction.COUNT.value:
                    self.problem(f"Select #{index + 1}: '*' may only be used with COUNT")
                    return
                ref = None
                output_type = ColumnType.INTEGER.value
                label = "Count"
            else:
                ref = self.resolve(reference)
                if ref is None:
                    return
                if (
                    function in (AggregateFunction.SUM.value, AggregateFunction.AVG.value)
                    and not ref.definition.aggregatable
                ):
                    self.problem(f"Column '{reference}' cannot be aggregated with {function}")
                if function is not None and ref.aggregate:
                    self.problem(f"Select #{index + 1}: cannot apply {function} to aggregate column '{reference}'")
                    return
                output_type = ref.definition.type
                label = ref.definition.label
                if function is None:
                    transformer = ref.definition.transformer

        if function is not None:
            output_type = _AGGREGATE_TYPES.get(function, output_type)
            label = f"{function.title()} of {label}"

        alias = item.alias or _default_alias(source_table, source_column, function)
        if not IDENTIFIER_PATTERN.match(alias):
            self.problem(f"Select #{index + 1}: invalid alias '{alias}'")
            return
        if alias in self.select_index:
            self.problem(f"Duplicate select alias '{alias}'")
            return

        plan = _SelectPlan(
            alias=alias,
            ref=ref,
            function=function,
            output=OutputColumn(
                alias=alias,
                label=label,
                type=output_type,
                source=ref.source if ref is not None else "*",
                aggregate=function,
            ),
            transformer=transformer,
        )
        self.selects.append(plan)
        self.select_index[alias] = plan

    def compile_conditions(self, conditions: List[Condition], clause: str) -> List[_FilterPlan]:
        plans = []
        for index, condition in enumerate(conditions):
            label = f"{clause} #{index + 1}"
            operator = " ".join(condition.operator.upper().split())
            if operator == "<>":
                operator = FilterOperator.NE.value
            if operator not in {member.value for member in FilterOperator}:
                self.problem(f"{label}: operator '{condition.operator}' is not allowed")
                continue
            logic = (condition.logic or "and").lower()
            if logic not in ("and", "or"):
                self.problem(f"{label}: logic connector '{condition.logic}' must be 'and' or 'or'")
                continue
            if not self.check_value(label, operator, condition.value):
                continue

            if clause == "HAVING" and condition.column in self.select_index:
                plans.append(_FilterPlan(None, condition.column, operator, condition.value, logic))
                continue

            ref = self.resolve(condition.column)
            if ref is None:
                continue
            if ref.definition is not None and not ref.definition.filterable:
                self.problem(f"Column '{condition.column}' is not filterable")
                continue
            if clause == "WHERE" and ref.aggregate:
                self.problem(f"{label}: aggregate column '{condition.column}' cannot be filtered in WHERE; use HAVING")
                continue
            plans.append(_FilterPlan(ref, None, operator, condition.value, logic))
        return plans

    def check_value(self, label: str, operator: str, value: Any) -> bool:
        if operator in _VALUELESS_OPERATORS:
            if value not in (None, "", []):
                self.problem(f"{label}: operator '{operator}' does not take a value")
                return False
            return True
        if operator in _LIST_OPERATORS:
            if not isinstance(value, (list, tuple)) or len(value) == 0:
                self.problem(f"{label}: operator '{operator}' requires a non-empty list of values")
                return False
            return True
        if operator == FilterOperator.BETWEEN.value:
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                self.problem(f"{label}: operator 'BETWEEN' requires exactly two values")
                return False
            return True
        if value is None:
            self.problem(f"{label}: operator '{operator}' requires a value; use IS NULL to match nulls")
            return False
        if isinstance(value, (list, tuple, dict)):
            self.problem(f"{label}: operator '{operator}' requires a single value")
            return False
        return True

    def compile_grouping(self) -> None:
        group_sources: Set[str] = set()
        for entry in self.spec.group_by:
            plan = self.select_index.get(entry)
            if plan is not None:
                if plan.is_aggregate:
                    self.problem(f"Cannot GROUP BY aggregate column '{entry}'")
                    continue
                ref = plan.ref
            else:
                ref = self.resolve(entry)
                if ref is not None and ref.aggregate:
                    self.problem(f"Cannot GROUP BY aggregate column '{entry}'")
                    continue
            if ref is None:
                continue
            if ref.source not in group_sources:
                group_sources.add(ref.source)
                self.group_by.append(ref)

        has_aggregates = any(plan.is_aggregate for plan in self.selects)
        grouping = has_aggregates or bool(self.spec.group_by)

        if grouping:
            for plan in self.selects:
                if not plan.is_aggregate and plan.ref is not None and plan.ref.source not in group_sources:
                    self.problem(
                        f"Column '{plan.alias}' must appear in GROUP BY or be used in an aggregate function"
                    )

        for index, order in enumerate(self.spec.order_by):
            direction = (order.direction or "").lower()
            if direction not in {member.value for member in SortDirection}:
                self.problem(f"ORDER BY #{index + 1}: direction '{order.direction}' must be 'asc' or 'desc'")
                continue
            plan = self.select_index.get(order.column)
            if plan is not None:
                if grouping and not plan.is_aggregate and plan.ref is not None and plan.ref.source not in group_sources:
                    self.problem(f"ORDER BY column '{order.column}' must appear in GROUP BY when aggregates are selected")
                    continue
                self.order_by.append(_OrderPlan(None, order.column, direction))
                continue
            ref = self.resolve(order.column)
            if ref is None:
                continue
            if ref.definition is not None and not ref.definition.sortable:
                self.problem(f"Column '{order.column}' is not sortable")
                continue
            if grouping and not ref.aggregate and ref.source not in group_sources:
                self.problem(f"ORDER BY column '{order.column}' must appear in GROUP BY when aggregates are selected")
                continue
            self.order_by.append(_OrderPlan(ref, None, direction))

    # ===== ANALYSIS =====

    def complexity(self) -> str:
        score = (
            len(self.selects)
            + len(self.joins) * 3
            + (len(self.where) + len(self.having)) * 2
            + len(self.group_by) * 4
            + len(self.order_by)
        )
        if score < LOW_COMPLEXITY_SCORE:
            return "low"
        if score < HIGH_COMPLEXITY_SCORE:
            return "medium"
        return "high"

    def analyze(self, effective_limit: Optional[int]) -> Tuple[List[str], Dict[str, Any]]:
        """Non-fatal warnings and a summary of a query that already compiled cleanly."""
        warnings: List[str] = []
        complexity = self.complexity()
        join_count = len(self.joins)
        condition_count = len(self.where) + len(self.having)

        if complexity == "high":
            warnings.append("Query complexity is high and may result in slow execution")

        for plan in self.selects:
            name = plan.ref.column if plan.ref is not None and plan.ref.column else plan.alias
            if any(marker in name.lower() for marker in SENSITIVE_COLUMN_MARKERS):
                warnings.append(f"Accessing potentially sensitive column: {name}")

        limit = effective_limit if self.spec.limit is not None else DEFAULT_RESOURCE_LIMIT
        if len(self.selects) + join_count * 5 + limit / 100 > RESOURCE_SCORE_THRESHOLD:
            warnings.append("Query may consume significant system resources")

        if len(self.where) > 3 and not any(
            plan.ref is not None and plan.ref.column in INDEXED_COLUMNS and not plan.ref.json_path for plan in self.where
        ):
            warnings.append("Consider adding conditions on indexed columns for better performance")

        if len(self.explicit) > 2:
            warnings.append("Multiple joins may result in cartesian products - ensure proper join conditions")

        if complexity == "low" and join_count <= 1 and condition_count <= 3:
            performance = "fast"
        elif complexity == "medium" and join_count <= 3 and condition_count <= 10:
            performance = "moderate"
        else:
            performance = "slow"

        summary = {
            "complexity": complexity,
            "total_columns": len(self.selects),
            "total_joins": join_count,
            "total_conditions": condition_count,
            "has_grouping": bool(self.group_by),
            "has_sorting": bool(self.order_by),
            "has_limit": self.spec.limit is not None,
            "estimated_performance": performance,
        }
        return warnings, summary

    def row_cap(self) -> Tuple[Optional[int], bool]:
        requested = self.spec.limit
        cap = self.root.max_rows if self.root is not None else None
        if requested is None:
            return cap, False
        if cap is not None and requested > cap:
            return cap, True
        return requested, False

    # ===== CANONICAL FORM =====

    def canonical(self, effective_limit: Optional[int]) -> Dict[str, Any]:
        def filter_entry(plan: _FilterPlan, first: bool) -> Dict[str, Any]:
            value = list(plan.value) if isinstance(plan.value, tuple) else plan.value
            return {
                "source": plan.ref.source if plan.ref is not None else f"alias:{plan.select_alias}",
                "operator": plan.operator,
                "value": value,
                "logic": "and" if first else plan.logic,
            }

        return {
            "table": self.root.name,
            "tenant": self.tenant.tenant_id,
            "select": sorted(
                (
                    {"alias": plan.alias, "source": plan.output.source, "function": plan.function}
                    for plan in self.selects
                ),
                key=lambda entry: entry["alias"],
            ),
            "joins": sorted(
                (
                    {
                        "alias": join.alias,
                        "table": join.table,
                        "type": join.type,
                        "on": sorted(f"{l[0]}.{l[1]}={r[0]}.{r[1]}" for l, r in join.conditions),
                    }
                    for join in self.joins.values()
                ),
                key=lambda entry: entry["alias"],
            ),
            "where": [filter_entry(plan, index == 0) for index, plan in enumerate(self.where)],
            "group_by": sorted(ref.source for ref in self.group_by),
            "having": [filter_entry(plan, index == 0) for index, plan in enumerate(self.having)],
            "order_by": [
                {
                    "source": plan.ref.source if plan.ref is not None else f"alias:{plan.select_alias}",
                    "direction": plan.direction,
                }
                for plan in self.order_by
            ],
            "limit": effective_limit,
            "offset": self.spec.offset or 0,
        }

    # ===== EMISSION =====

    def ordered_joins(self) -> List[_JoinPlan]:
        def autos(base: str) -> List[_JoinPlan]:
            return sorted(
                (join for join in self.joins.values() if join.auto and join.base == base),
                key=lambda join: (join.depth, join.alias),
            )

        ordered = autos(self.root_alias)
        for join in self.joins.values():
            if not join.auto:
                ordered.append(join)
                ordered.extend(autos(join.alias))
        return ordered

    def build_statement(self, effective_limit: Optional[int]):
        tables = {}
        root_clause = table(self.root.name, *[column(name) for name in sorted(self.needed.get(self.root_alias, ()))])
        tables[self.root_alias] = root_clause
        ordered = self.ordered_joins()
        for join in ordered:
            clause = table(join.table, *[column(name) for name in sorted(self.needed.get(join.alias, ()))])
            tables[join.alias] = clause.alias(join.alias) if join.alias != join.table else clause

        def element(ref: _Ref) -> ColumnElement:
            if ref.sql is not None:
                return literal_column(ref.sql)
            target = tables[ref.alias].c[ref.column]
            if ref.json_path:
                return func.json_extract(target, "$." + ".".join(ref.json_path))
            return target

        from_clause = root_clause
        for join in ordered:
            target = tables[join.alias]
            criteria = [tables[l[0]].c[l[1]] == tables[r[0]].c[r[1]] for l, r in join.conditions]
            if join.tenant_column is not None:
                criteria.append(target.c[join.tenant_column] == self.tenant.tenant_id)
            onclause = and_(*criteria)
            if join.type == JoinType.RIGHT.value:
                from_clause = target.join(from_clause, onclause, isouter=True)
            elif join.type == JoinType.FULL.value:
                from_clause = from_clause.join(target, onclause, full=True)
            else:
                from_clause = from_clause.join(target, onclause, isouter=join.type == JoinType.LEFT.value)

        raw: Dict[str, ColumnElement] = {}
        labelled = {}
        for plan in self.selects:
            if plan.function is not None:
                aggregate = getattr(func, plan.function.lower())
                expression = aggregate() if plan.ref is None and plan.function == "COUNT" else aggregate(element(plan.ref))
            else:
                expression = element(plan.ref)
            raw[plan.alias] = expression
            labelled[plan.alias] = expression.label(plan.alias)

        statement = select(*labelled.values()).select_from(from_clause)

        def predicate(plans: List[_FilterPlan]):
            clause = None
            for plan in plans:
                target = raw[plan.select_alias] if plan.select_alias is not None else element(plan.ref)
                current = self.condition(target, plan.operator, plan.value)
                if clause is None:
                    clause = current
                elif plan.logic == "or":
                    clause = or_(clause, current)
                else:
                    clause = and_(clause, current)
            return clause

        filters = []
        if self.root.tenant_column is not None:
            filters.append(root_clause.c[self.root.tenant_column] == self.tenant.tenant_id)
        where_clause = predicate(self.where)
        if where_clause is not None:
            filters.append(where_clause)
        if filters:
            statement = statement.where(and_(*filters))

        if self.group_by:
            statement = statement.group_by(*[element(ref) for ref in self.group_by])
        having_clause = predicate(self.having)
        if having_clause is not None:
            statement = statement.having(having_clause)

        for plan in self.order_by:
            target = labelled[plan.select_alias] if plan.select_alias is not None else element(plan.ref)
            statement = statement.order_by(target.desc() if plan.direction == "desc" else target.asc())

        if effective_limit is not None:
            statement = statement.limit(effective_limit)
        if self.spec.offset:
            statement = statement.offset(self.spec.offset)
        return statement

    @staticmethod
    def condition(target: ColumnElement, operator: str, value: Any):
        if operator == FilterOperator.EQ.value:
            return target == value
        if operator == FilterOperator.NE.value:
            return target != value
        if operator == FilterOperator.LT.value:
            return target < value
        if operator == FilterOperator.LE.value:
            return target <= value
        if operator == FilterOperator.GT.value:
            return target > value
        if operator == FilterOperator.GE.value:
            return target >= value
        if operator == FilterOperator.LIKE.value:
            return target.like(value)
        if operator == FilterOperator.IN.value:
            return target.in_(list(value))
        if operator == FilterOperator.NOT_IN.value:
            return target.not_in(list(value))
        if operator == FilterOperator.IS_NULL.value:
            return target.is_(None)
        if operator == FilterOperator.IS_NOT_NULL.value:
            return target.is_not(None)
        return target.between(value[0], value[1])


class QueryCompiler:
    """Compiles QuerySpecifications against a schema registry."""

    def __init__(self, registry: SchemaRegistry, validator: Optional[ExpressionValidator] = None):
        self.registry = registry
        self.validator = validator or ExpressionValidator(registry)

    def compile(self, spec: QuerySpecification, tenant: TenantContext) -> CompiledQuery:
        """
        Compile a specification for a tenant.

        Raises:
            QueryCompilationError: with every problem found, never just the first
        """
        state = _Compilation(self.registry, self.validator, spec, tenant)

        # 1. Root table
        state.resolve_root()
        # 4. Explicit joins first so their aliases are resolvable from the rest of the query
        state.compile_joins()
        # 2-3. Select list (auto-joins are added as references resolve)
        state.compile_select()
        if state.root is not None:
            # 5. Filters
            state.where = state.compile_conditions(spec.where, "WHERE")
            state.having = state.compile_conditions(spec.having, "HAVING")
            # 6. Grouping and ordering
            state.compile_grouping()

        if state.problems:
            logger.info(f"Compilation of query on '{spec.from_}' failed with {len(state.problems)} problem(s)")
            raise QueryCompilationError(state.problems)

        # 7. Row cap
        effective_limit, clamped = state.row_cap()
        if clamped:
            logger.info(f"Clamped limit {spec.limit} to {effective_limit} rows for table '{state.root.name}'")

        warnings, summary = state.analyze(effective_limit)
        if warnings:
            logger.info(f"Query on '{state.root.name}' compiled with {len(warnings)} warning(s)")

        # 8. Fingerprint
        fingerprint = compute_fingerprint(state.canonical(effective_limit))

        # 9. Emit
        statement = state.build_statement(effective_limit)
        permissions = list(state.root.permissions)
        for joined in state.explicit.values():
            if joined.definition is not None:
                permissions.extend(tag for tag in joined.definition.permissions if tag not in permissions)

        return CompiledQuery(
            statement=statement,
            table_name=state.root.name,
            tenant_id=tenant.tenant_id,
            fingerprint=fingerprint,
            columns=tuple(plan.output for plan in state.selects),
            joins=tuple(
                ResolvedJoin(
                    alias=join.alias,
                    table=join.table,
                    type=join.type,
                    conditions=tuple((f"{l[0]}.{l[1]}", f"{r[0]}.{r[1]}") for l, r in join.conditions),
                    auto=join.auto,
                )
                for join in state.ordered_joins()
            ),
            effective_limit=effective_limit,
            requested_limit=spec.limit,
            limit_clamped=clamped,
            offset=spec.offset,
            cacheable=state.root.cacheable,
            cache_ttl=state.root.cache_ttl,
            timeout_seconds=state.root.timeout_seconds,
            required_permissions=tuple(permissions),
            specification=spec.snapshot(),
            transformers={plan.alias: plan.transformer for plan in state.selects if plan.transformer is not None},
            warnings=tuple(warnings),
            summary=summary,
        )
