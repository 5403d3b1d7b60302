"""Reportable fleet tables registered at process start."""

from typing import List

from report_engine.schema.definitions import (
    ColumnDefinition,
    ComputedColumnDefinition,
    RelationshipDefinition,
    TableDefinition,
)

FLEET_EXTENSION = "fleet-ops"


def _timestamps() -> List[ColumnDefinition]:
    return [
        ColumnDefinition("created_at", "datetime", label="Created"),
        ColumnDefinition("updated_at", "datetime", label="Last Updated"),
    ]


def _identity() -> List[ColumnDefinition]:
    return [
        ColumnDefinition("uuid", "string", label="ID", hidden=True),
        ColumnDefinition("public_id", "string", label="Public ID"),
        ColumnDefinition("company_uuid", "string", hidden=True),
    ]


DRIVER_COLUMNS = (
    ColumnDefinition("name", "string"),
    ColumnDefinition("phone", "string"),
    ColumnDefinition("drivers_license_number", "string", label="License Number"),
    ColumnDefinition("status", "string"),
    ColumnDefinition("online", "boolean"),
)

VEHICLE_COLUMNS = (
    ColumnDefinition("plate_number", "string"),
    ColumnDefinition("make", "string"),
    ColumnDefinition("model", "string"),
    ColumnDefinition("year", "integer", aggregatable=False),
    ColumnDefinition("status", "string"),
)

PLACE_COLUMNS = (
    ColumnDefinition("name", "string"),
    ColumnDefinition("street1", "string", label="Street"),
    ColumnDefinition("city", "string"),
    ColumnDefinition("postal_code", "string"),
    ColumnDefinition("country", "string"),
)


ORDERS = TableDefinition(
    name="orders",
    label="Orders",
    description="Orders with their assigned driver, vehicle and route",
    category="operations",
    extension=FLEET_EXTENSION,
    columns=tuple(
        _identity()
        + [
            ColumnDefinition("internal_id", "string", label="Internal ID"),
            ColumnDefinition("status", "string"),
            ColumnDefinition("type", "string"),
            ColumnDefinition("driver_assigned_uuid", "string"),
            ColumnDefinition("vehicle_assigned_uuid", "string"),
            ColumnDefinition("pickup_uuid", "string"),
            ColumnDefinition("dropoff_uuid", "string"),
            ColumnDefinition("distance", "integer", description="Route distance in meters"),
            ColumnDefinition("time", "integer", description="Estimated route time in seconds"),
            ColumnDefinition("dispatched", "boolean"),
            ColumnDefinition("scheduled_at", "datetime"),
            ColumnDefinition("dispatched_at", "datetime"),
            ColumnDefinition("started_at", "datetime"),
            ColumnDefinition("completed_at", "datetime"),
            ColumnDefinition("meta", "json", searchable=False, sortable=False),
            ColumnDefinition("meta.declared_value", "decimal", label="Declared Value"),
        ]
        + _timestamps()
    ),
    computed_columns=(
        ComputedColumnDefinition(
            "distance_km", "ROUND(distance / 1000, 2)", type="decimal", sortable=True, label="Distance (km)"
        ),
        ComputedColumnDefinition(
            "days_to_complete", "DATEDIFF(completed_at, created_at)", type="integer", sortable=True
        ),
        ComputedColumnDefinition(
            "driver_display", "COALESCE(driver.name, 'Unassigned')", label="Driver"
        ),
        ComputedColumnDefinition.count("order_count", "uuid"),
    ),
    relationships=(
        RelationshipDefinition.auto_join_to(
            "driver", "drivers", local_key="driver_assigned_uuid", columns=DRIVER_COLUMNS
        ),
        RelationshipDefinition.auto_join_to(
            "vehicle", "vehicles", local_key="vehicle_assigned_uuid", columns=VEHICLE_COLUMNS
        ),
        RelationshipDefinition.auto_join_to("pickup", "places", local_key="pickup_uuid", columns=PLACE_COLUMNS),
        RelationshipDefinition.auto_join_to("dropoff", "places", local_key="dropoff_uuid", columns=PLACE_COLUMNS),
        RelationshipDefinition.has_many(
            "fuel_reports", "fuel_reports", foreign_key="order_uuid", label="Fuel Reports"
        ),
    ),
    excluded_columns=frozenset({"meta"}),
    max_rows=10000,
    cache_ttl=900,
    permissions=("fleet-ops view order",),
)

DRIVERS = TableDefinition(
    name="drivers",
    label="Drivers",
    category="resources",
    extension=FLEET_EXTENSION,
    columns=tuple(
        _identity()
        + list(DRIVER_COLUMNS)
        + [
            ColumnDefinition("vehicle_uuid", "string"),
            ColumnDefinition("current_job_uuid", "string"),
            ColumnDefinition("country", "string"),
            ColumnDefinition("city", "string"),
        ]
        + _timestamps()
    ),
    relationships=(
        RelationshipDefinition.auto_join_to("vehicle", "vehicles", columns=VEHICLE_COLUMNS),
        RelationshipDefinition.has_many("orders", "orders", foreign_key="driver_assigned_uuid"),
    ),
    max_rows=5000,
    permissions=("fleet-ops view driver",),
)

VEHICLES = TableDefinition(
    name="vehicles",
    label="Vehicles",
    category="resources",
    extension=FLEET_EXTENSION,
    columns=tuple(
        _identity()
        + list(VEHICLE_COLUMNS)
        + [
            ColumnDefinition("vin", "string", label="VIN"),
            ColumnDefinition("odometer", "integer"),
            ColumnDefinition("fuel_volume_unit", "string"),
        ]
        + _timestamps()
    ),
    computed_columns=(
        ComputedColumnDefinition("display_name", "CONCAT(make, ' ', model, ' (', plate_number, ')')", label="Vehicle"),
    ),
    max_rows=5000,
    permissions=("fleet-ops view vehicle",),
)

PLACES = TableDefinition(
    name="places",
    label="Places",
    category="resources",
    extension=FLEET_EXTENSION,
    columns=tuple(_identity() + list(PLACE_COLUMNS) + [ColumnDefinition("province", "string")] + _timestamps()),
    permissions=("fleet-ops view place",),
)

FUEL_REPORTS = TableDefinition(
    name="fuel_reports",
    label="Fuel Reports",
    category="operations",
    extension=FLEET_EXTENSION,
    columns=tuple(
        _identity()
        + [
            ColumnDefinition("driver_uuid", "string"),
            ColumnDefinition("vehicle_uuid", "string"),
            ColumnDefinition("order_uuid", "string"),
            ColumnDefinition("odometer", "integer"),
            ColumnDefinition("volume", "decimal"),
            ColumnDefinition("amount", "decimal", format="currency"),
            ColumnDefinition("currency", "string"),
            ColumnDefinition("status", "string"),
        ]
        + _timestamps()
    ),
    computed_columns=(
        ComputedColumnDefinition(
            "price_per_unit", "ROUND(COALESCE(amount / NULLIF(volume, 0), 0), 2)", type="decimal", sortable=True
        ),
    ),
    relationships=(
        RelationshipDefinition.auto_join_to("driver", "drivers", local_key="driver_uuid", columns=DRIVER_COLUMNS),
        RelationshipDefinition.auto_join_to("vehicle", "vehicles", local_key="vehicle_uuid", columns=VEHICLE_COLUMNS),
    ),
    max_rows=10000,
    permissions=("fleet-ops view fuel-report",),
)

ISSUES = TableDefinition(
    name="issues",
    label="Issues",
    category="operations",
    extension=FLEET_EXTENSION,
    columns=tuple(
        _identity()
        + [
            ColumnDefinition("driver_uuid", "string"),
            ColumnDefinition("vehicle_uuid", "string"),
            ColumnDefinition("type", "string"),
            ColumnDefinition("category", "string"),
            ColumnDefinition("priority", "string"),
            ColumnDefinition("status", "string"),
            ColumnDefinition("report", "string", sortable=False),
            ColumnDefinition("resolved_at", "datetime"),
        ]
        + _timestamps()
    ),
    computed_columns=(
        ComputedColumnDefinition(
            "days_open", "DATEDIFF(COALESCE(resolved_at, NOW()), created_at)", type="integer", sortable=True
        ),
    ),
    relationships=(
        RelationshipDefinition.auto_join_to("driver", "drivers", local_key="driver_uuid", columns=DRIVER_COLUMNS),
        RelationshipDefinition.auto_join_to("vehicle", "vehicles", local_key="vehicle_uuid", columns=VEHICLE_COLUMNS),
    ),
    permissions=("fleet-ops view issue",),
)

FLEET_TABLES = [ORDERS, DRIVERS, VEHICLES, PLACES, FUEL_REPORTS, ISSUES]
