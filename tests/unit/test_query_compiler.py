"""
Unit tests for the query compiler.
Tests resolution, joins, tenant scoping, row caps, fingerprints and problem reporting.
"""

import pytest

from report_engine.core.exceptions import QueryCompilationError
from report_engine.query.compiler import QueryCompiler, compute_fingerprint
from report_engine.query.schemas import QuerySpecification, TenantContext
from report_engine.schema.definitions import ColumnDefinition, ComputedColumnDefinition, TableDefinition
from report_engine.schema.registry import SchemaRegistry


def spec(**kwargs) -> QuerySpecification:
    kwargs.setdefault("from", "orders")
    return QuerySpecification.model_validate(kwargs)


@pytest.fixture
def compiler(registry):
    return QueryCompiler(registry)


def problems_for(compiler, query, tenant):
    with pytest.raises(QueryCompilationError) as exc_info:
        compiler.compile(query, tenant)
    return exc_info.value.problems


class TestBasicCompilation:
    """Test root resolution, select lists and tenant scoping"""

    def test_simple_select(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "public_id"}, {"column": "status"}]), tenant_a)

        assert compiled.table_name == "orders"
        assert compiled.aliases == ["orders_public_id", "orders_status"]
        assert compiled.columns[1].label == "Status"
        assert compiled.joins == ()
        assert compiled.tenant_id == "company-a"

    def test_tenant_predicate_is_always_applied(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}]), tenant_a)
        sql = compiled.to_sql()

        assert "orders.company_uuid = :" in sql
        assert "company-a" in compiled.statement.compile().params.values()

    def test_literal_values_are_bound_parameters(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(select=[{"column": "status"}], where=[{"column": "status", "operator": "=", "value": "x' OR '1'='1"}]),
            tenant_a,
        )
        assert "x' OR '1'='1" not in compiled.to_sql()
        assert "x' OR '1'='1" in compiled.statement.compile().params.values()

    def test_root_alias_prefix_is_accepted(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "orders.status", "alias": "status"}]), tenant_a)
        assert compiled.columns[0].source == "orders.status"

    def test_compilation_is_deterministic(self, compiler, tenant_a):
        query = spec(select=[{"column": "status"}, {"column": "driver.name"}], where=[{"column": "distance", "operator": ">", "value": 10}])
        first = compiler.compile(query, tenant_a)
        second = compiler.compile(query, tenant_a)

        assert first.fingerprint == second.fingerprint
        assert first.to_sql() == second.to_sql()

    def test_specification_snapshot_uses_wire_names(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}], groupBy=["status"]), tenant_a)
        assert compiled.specification["from"] == "orders"
        assert compiled.specification["groupBy"] == ["status"]

    def test_required_permissions(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(select=[{"column": "status"}], joins=[{"relationship": "fuel_reports"}]),
            tenant_a,
        )
        assert compiled.required_permissions == ("fleet-ops view order", "fleet-ops view fuel-report")


class TestRowCap:
    """Test limit clamping against the table's max_rows"""

    def test_limit_above_cap_is_clamped(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}], limit=100000), tenant_a)

        assert compiled.effective_limit == 10000
        assert compiled.requested_limit == 100000
        assert compiled.limit_clamped is True
        assert "LIMIT" in compiled.to_sql()

    def test_limit_below_cap_is_kept(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}], limit=25, offset=50), tenant_a)

        assert compiled.effective_limit == 25
        assert compiled.limit_clamped is False
        assert compiled.offset == 50

    def test_missing_limit_uses_cap(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}]), tenant_a)
        assert compiled.effective_limit == 10000
        assert compiled.limit_clamped is False

    def test_uncapped_table(self, compiler, tenant_a):
        compiled = compiler.compile(spec(**{"from": "places", "select": [{"column": "city"}]}), tenant_a)
        assert compiled.effective_limit is None


class TestFingerprint:
    """Test the canonical cache fingerprint"""

    def test_independent_of_select_order(self, compiler, tenant_a):
        first = compiler.compile(spec(select=[{"column": "status"}, {"column": "public_id"}]), tenant_a)
        second = compiler.compile(spec(select=[{"column": "public_id"}, {"column": "status"}]), tenant_a)
        assert first.fingerprint == second.fingerprint

    def test_clamped_limits_share_a_fingerprint(self, compiler, tenant_a):
        first = compiler.compile(spec(select=[{"column": "status"}], limit=20000), tenant_a)
        second = compiler.compile(spec(select=[{"column": "status"}], limit=10000), tenant_a)
        assert first.fingerprint == second.fingerprint

    def test_differs_by_tenant(self, compiler, tenant_a, tenant_b):
        query = spec(select=[{"column": "status"}])
        assert compiler.compile(query, tenant_a).fingerprint != compiler.compile(query, tenant_b).fingerprint

    def test_differs_by_filter_value(self, compiler, tenant_a):
        first = compiler.compile(spec(select=[{"column": "status"}], where=[{"column": "status", "value": "created"}]), tenant_a)
        second = compiler.compile(spec(select=[{"column": "status"}], where=[{"column": "status", "value": "completed"}]), tenant_a)
        assert first.fingerprint != second.fingerprint

    def test_compute_fingerprint_ignores_key_order(self):
        assert compute_fingerprint({"a": 1, "b": [1, 2]}) == compute_fingerprint({"b": [1, 2], "a": 1})
        assert len(compute_fingerprint({})) == 64


class TestJoins:
    """Test auto-joins and explicit joins"""

    def test_auto_join_added_for_relationship_column(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "driver.name", "alias": "driver_name"}]), tenant_a)

        assert [join.alias for join in compiled.joins] == ["orders_driver"]
        assert compiled.joins[0].auto is True
        assert compiled.joins[0].conditions == (("orders.driver_assigned_uuid", "orders_driver.uuid"),)
        assert "LEFT OUTER JOIN drivers AS orders_driver" in compiled.to_sql()

    def test_auto_join_added_once(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(
                select=[{"column": "driver.name"}, {"column": "driver.phone"}],
                where=[{"column": "driver.status", "value": "active"}],
            ),
            tenant_a,
        )
        assert [join.alias for join in compiled.joins] == ["orders_driver"]

    def test_same_table_through_two_relationships(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "pickup.city"}, {"column": "dropoff.city"}]), tenant_a)
        assert sorted(join.alias for join in compiled.joins) == ["orders_dropoff", "orders_pickup"]

    def test_auto_join_is_tenant_scoped(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "driver.name"}]), tenant_a)
        sql = compiled.to_sql()

        assert "orders_driver.company_uuid = :" in sql
        assert list(compiled.statement.compile().params.values()).count("company-a") == 2

    def test_auto_join_to_unregistered_table_has_no_tenant_predicate(self, validator_registry, tenant_a):
        compiled = QueryCompiler(validator_registry).compile(
            QuerySpecification.model_validate({"from": "test_table", "select": [{"column": "related.value"}]}), tenant_a
        )
        assert "company_uuid" not in compiled.to_sql()

    def test_explicit_relationship_join_is_tenant_scoped(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(
                select=[{"column": "public_id"}, {"table": "fuel_reports", "column": "amount"}],
                joins=[{"relationship": "fuel_reports"}],
            ),
            tenant_a,
        )
        sql = compiled.to_sql()

        assert compiled.joins[0].conditions == (("orders.uuid", "fuel_reports.order_uuid"),)
        assert "orders.uuid = fuel_reports.order_uuid" in sql
        assert "fuel_reports.company_uuid = :" in sql

    def test_explicit_table_join_with_alias(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(
                select=[{"column": "public_id"}, {"column": "d.name", "alias": "driver_name"}],
                joins=[{"type": "inner", "table": "drivers", "alias": "d", "on": [{"left": "driver_assigned_uuid", "right": "uuid"}]}],
            ),
            tenant_a,
        )
        sql = compiled.to_sql()

        assert "JOIN drivers AS d ON orders.driver_assigned_uuid = d.uuid" in sql
        assert "d.company_uuid = :" in sql
        assert compiled.joins[0].type == "inner"

    def test_manual_relationship_requires_explicit_join(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(select=[{"column": "fuel_reports.amount"}]), tenant_a)
        assert any("not auto-joined" in problem for problem in problems)

    def test_join_without_conditions_rejected(self, compiler, tenant_a):
        problems = problems_for(
            compiler, spec(select=[{"column": "status"}], joins=[{"table": "vehicles"}]), tenant_a
        )
        assert any("requires at least one 'on' condition" in problem for problem in problems)

    def test_duplicate_alias_rejected(self, compiler, tenant_a):
        problems = problems_for(
            compiler,
            spec(select=[{"column": "status"}], joins=[{"table": "drivers", "alias": "orders", "on": [{"left": "driver_assigned_uuid", "right": "uuid"}]}]),
            tenant_a,
        )
        assert any("duplicate table alias 'orders'" in problem for problem in problems)


class TestColumns:
    """Test computed columns, JSON paths and aggregates"""

    def test_computed_column_is_expanded(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "distance_km"}]), tenant_a)
        assert compiled.columns[0].source == "(ROUND(orders.distance / 1000, 2))"
        assert compiled.columns[0].type == "decimal"

    def test_computed_column_adds_its_auto_joins(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "driver_display"}]), tenant_a)
        assert compiled.columns[0].source == "(COALESCE(orders_driver.name, 'Unassigned'))"
        assert [join.alias for join in compiled.joins] == ["orders_driver"]

    def test_json_path_column(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(select=[{"column": "meta.declared_value", "alias": "declared_value"}], where=[{"column": "meta.declared_value", "operator": ">", "value": 100}]),
            tenant_a,
        )
        assert compiled.columns[0].source == "JSON_EXTRACT(orders.meta, '$.declared_value')"
        assert "json_extract(orders.meta" in compiled.to_sql().lower()

    def test_ad_hoc_expression(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(select=[{"expression": "CONCAT(public_id, ' / ', driver.name)", "alias": "summary"}]), tenant_a
        )
        assert compiled.columns[0].source == "(CONCAT(orders.public_id, ' / ', orders_driver.name))"

    def test_ad_hoc_expression_requires_alias(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(select=[{"expression": "UPPER(status)"}]), tenant_a)
        assert any("require an alias" in problem for problem in problems)

    def test_grouped_aggregate(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(
                select=[{"column": "status"}, {"column": "*", "function": "COUNT", "alias": "total"}],
                groupBy=["status"],
                having=[{"column": "total", "operator": ">", "value": 1}],
                orderBy=[{"column": "total", "direction": "desc"}],
            ),
            tenant_a,
        )
        sql = compiled.to_sql()

        assert compiled.columns[1].type == "integer"
        assert compiled.columns[1].aggregate == "COUNT"
        assert "GROUP BY orders.status" in sql
        assert "HAVING count(*) > :" in sql
        assert "ORDER BY total DESC" in sql

    def test_ungrouped_column_with_aggregate_rejected(self, compiler, tenant_a):
        problems = problems_for(
            compiler, spec(select=[{"column": "status"}, {"column": "distance", "function": "SUM"}]), tenant_a
        )
        assert any("must appear in GROUP BY" in problem for problem in problems)

    def test_aggregate_computed_column_cannot_be_grouped(self, compiler, tenant_a):
        problems = problems_for(
            compiler, spec(select=[{"column": "status"}, {"column": "order_count"}], groupBy=["status", "order_count"]), tenant_a
        )
        assert any("Cannot GROUP BY aggregate column 'order_count'" in problem for problem in problems)

    def test_aggregate_column_in_where_rejected(self, compiler, tenant_a):
        problems = problems_for(
            compiler,
            spec(select=[{"column": "status"}], where=[{"column": "order_count", "operator": ">", "value": 1}], groupBy=["status"]),
            tenant_a,
        )
        assert "WHERE #1: aggregate column 'order_count' cannot be filtered in WHERE; use HAVING" in problems

    def test_aggregate_column_in_having(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(select=[{"column": "status"}], having=[{"column": "order_count", "operator": ">", "value": 1}], groupBy=["status"]),
            tenant_a,
        )
        assert "HAVING" in compiled.to_sql()

    def test_sum_of_non_numeric_column_rejected(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(select=[{"column": "status", "function": "SUM"}]), tenant_a)
        assert any("cannot be aggregated with SUM" in problem for problem in problems)

    def test_star_only_with_count(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(select=[{"column": "*", "function": "SUM"}]), tenant_a)
        assert any("'*' may only be used with COUNT" in problem for problem in problems)

    def test_unsortable_column(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(select=[{"column": "status"}], orderBy=[{"column": "meta"}]), tenant_a)
        assert "Column 'meta' is not sortable" in problems

    def test_computed_cycle_detected(self, tenant_a):
        registry = SchemaRegistry()
        registry.register_table(
            TableDefinition(
                name="loops",
                tenant_column=None,
                columns=(ColumnDefinition("value", "integer"),),
                computed_columns=(
                    ComputedColumnDefinition("alpha", "beta + 1"),
                    ComputedColumnDefinition("beta", "alpha + 1"),
                ),
            )
        )
        problems = problems_for(
            QueryCompiler(registry), QuerySpecification.model_validate({"from": "loops", "select": [{"column": "alpha"}]}), tenant_a
        )
        assert any("references itself" in problem for problem in problems)


class TestAnalysis:
    """Non-fatal warnings and the query summary"""

    def test_simple_query(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "public_id"}, {"column": "status"}]), tenant_a)

        assert compiled.warnings == ()
        assert compiled.summary == {
            "complexity": "low",
            "total_columns": 2,
            "total_joins": 0,
            "total_conditions": 0,
            "has_grouping": False,
            "has_sorting": False,
            "has_limit": False,
            "estimated_performance": "fast",
        }

    def test_high_complexity(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(
                select=[
                    {"column": "status"},
                    {"column": "driver.name", "alias": "driver_name"},
                    {"column": "pickup.city", "alias": "pickup_city"},
                    {"column": "*", "function": "COUNT", "alias": "total"},
                ],
                where=[{"column": "status", "value": "completed"}, {"column": "distance", "operator": ">", "value": 1000}],
                groupBy=["status", "driver.name", "pickup.city"],
                having=[{"column": "total", "operator": ">", "value": 1}],
                orderBy=[{"column": "total", "direction": "desc"}],
            ),
            tenant_a,
        )

        assert "Query complexity is high and may result in slow execution" in compiled.warnings
        assert compiled.summary["complexity"] == "high"
        assert compiled.summary["total_joins"] == 2
        assert compiled.summary["total_conditions"] == 3
        assert compiled.summary["has_grouping"] is True
        assert compiled.summary["estimated_performance"] == "slow"

    def test_sensitive_column(self, tenant_a):
        registry = SchemaRegistry()
        registry.register_table(
            TableDefinition(
                name="accounts",
                tenant_column=None,
                columns=(ColumnDefinition("id", "integer"), ColumnDefinition("api_token", "string")),
            )
        )
        compiled = QueryCompiler(registry).compile(
            QuerySpecification.model_validate({"from": "accounts", "select": [{"column": "id"}, {"column": "api_token"}]}), tenant_a
        )
        assert compiled.warnings == ("Accessing potentially sensitive column: api_token",)

    def test_large_limit_warns_about_resources(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}], limit=50000), tenant_a)
        assert compiled.warnings == ("Query may consume significant system resources",)
        assert compiled.summary["has_limit"] is True

    def test_conditions_without_indexed_column(self, compiler, tenant_a):
        conditions = [
            {"column": "status", "value": "completed"},
            {"column": "type", "value": "transport"},
            {"column": "distance", "operator": ">", "value": 100},
            {"column": "time", "operator": "<", "value": 3600},
        ]
        message = "Consider adding conditions on indexed columns for better performance"
        assert message in compiler.compile(spec(select=[{"column": "status"}], where=conditions), tenant_a).warnings

        indexed = conditions + [{"column": "created_at", "operator": "IS NOT NULL"}]
        assert message not in compiler.compile(spec(select=[{"column": "status"}], where=indexed), tenant_a).warnings

    def test_many_explicit_joins(self, compiler, tenant_a):
        compiled = compiler.compile(
            spec(
                select=[{"column": "public_id"}],
                joins=[
                    {"table": "drivers", "alias": "d", "on": [{"left": "driver_assigned_uuid", "right": "uuid"}]},
                    {"table": "vehicles", "alias": "v", "on": [{"left": "vehicle_assigned_uuid", "right": "uuid"}]},
                    {"table": "places", "alias": "p", "on": [{"left": "pickup_uuid", "right": "uuid"}]},
                ],
            ),
            tenant_a,
        )
        assert "Multiple joins may result in cartesian products - ensure proper join conditions" in compiled.warnings
        assert compiled.summary["total_joins"] == 3

    def test_metadata_carries_analysis(self, compiler, tenant_a):
        compiled = compiler.compile(spec(select=[{"column": "status"}], limit=50000), tenant_a)
        metadata = compiled.metadata()
        assert metadata["warnings"] == ["Query may consume significant system resources"]
        assert metadata["summary"]["estimated_performance"] == "fast"


class TestProblemReporting:
    """Every structural problem is reported at once"""

    def test_problems_are_aggregated(self, compiler, tenant_a):
        problems = problems_for(
            compiler,
            spec(
                select=[{"column": "nope"}],
                joins=[{"type": "cross", "relationship": "fuel_reports"}],
                where=[{"column": "status", "operator": "~~", "value": "x"}],
            ),
            tenant_a,
        )

        assert len(problems) >= 3
        assert any("unknown join type 'cross'" in problem for problem in problems)
        assert any("'nope'" in problem for problem in problems)
        assert any("operator '~~' is not allowed" in problem for problem in problems)

    def test_unknown_table(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(**{"from": "invoices", "select": [{"column": "id"}]}), tenant_a)
        assert problems == ["Table 'invoices' not found in schema registry"]

    def test_empty_select(self, compiler, tenant_a):
        problems = problems_for(compiler, spec(select=[]), tenant_a)
        assert "At least one column must be selected" in problems

    def test_tenant_required_for_scoped_table(self, compiler):
        problems = problems_for(compiler, spec(select=[{"column": "status"}]), TenantContext(tenant_id=""))
        assert any("tenant context is required" in problem for problem in problems)

    @pytest.mark.parametrize(
        "condition, message",
        [
            ({"column": "status", "operator": "IN", "value": []}, "non-empty list"),
            ({"column": "status", "operator": "BETWEEN", "value": [1]}, "exactly two values"),
            ({"column": "status", "operator": "IS NULL", "value": "x"}, "does not take a value"),
            ({"column": "status", "operator": "=", "value": None}, "use IS NULL"),
            ({"column": "status", "logic": "xor", "value": "x"}, "must be 'and' or 'or'"),
        ],
    )
    def test_condition_values_checked(self, compiler, tenant_a, condition, message):
        problems = problems_for(compiler, spec(select=[{"column": "status"}], where=[condition]), tenant_a)
        assert any(message in problem for problem in problems)
