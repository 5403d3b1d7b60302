"""
Test configuration and shared fixtures for the report engine test suite.
Provides database setup, a fleet data warehouse, and the wired-up report service.
"""

import os

# Settings are read once at import time, so the test environment must be in place first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DATA_WAREHOUSE_URL", "sqlite:///:memory:")
os.environ.setdefault("REPORT_CACHE_BACKEND", "memory")
os.environ.setdefault("LOG_DIR", "")

import pytest
from typing import Dict, List
from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Time,
    create_engine,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from report_engine.app import create_app
from report_engine.core.database import Base, get_db, get_dw_db
from report_engine.core.dependencies import get_report_query_service
from report_engine.query.schemas import TenantContext
from report_engine.reporting.audit import AuditRecorder
from report_engine.reporting.cache import InMemoryCacheStore, ReportCache
from report_engine.reporting.execution_dao import ReportExecutionDAO
from report_engine.reporting.executor import ReportExecutor
from report_engine.reporting.report_dao import ReportDAO
from report_engine.reporting.service import ReportQueryService
from report_engine.reporting.storage import SqlAlchemyStorage
from report_engine.schema.bootstrap import bootstrap_registry
from report_engine.schema.catalog import FLEET_TABLES
from report_engine.schema.definitions import (
    ColumnDefinition,
    ComputedColumnDefinition,
    RelationshipDefinition,
    TableDefinition,
)
from report_engine.schema.registry import SchemaRegistry


# ===== DATA WAREHOUSE TABLES =====

_DW_TYPES = {
    "string": String,
    "integer": Integer,
    "decimal": Float,
    "float": Float,
    "date": Date,
    "datetime": DateTime,
    "time": Time,
    "boolean": Boolean,
    "json": JSON,
}

DW_METADATA = MetaData()

# Physical fleet tables mirror the registered catalogue (JSON-path columns live inside their root column)
for _definition in FLEET_TABLES:
    Table(
        _definition.name,
        DW_METADATA,
        *[
            Column(column.name, _DW_TYPES[column.type], primary_key=column.name == "uuid")
            for column in _definition.columns
            if not column.is_json_path
        ],
    )


# ===== DATABASE SETUP =====


@pytest.fixture(scope="session")
def config_engine():
    """Create in-memory SQLite engine for config database"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    # Import all config models to register them
    from report_engine.reporting.models import Report, ReportExecution, ReportCacheEntry, ReportAuditLog  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="session")
def dw_engine():
    """Create in-memory SQLite engine for data warehouse database"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    DW_METADATA.create_all(bind=engine)
    return engine


@pytest.fixture
def config_session_factory(config_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=config_engine)


@pytest.fixture(scope="function")
def config_db_session(config_engine, config_session_factory):
    """Create a database session for config database"""
    session = config_session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        # Clean up all data after each test
        Base.metadata.drop_all(bind=config_engine)
        Base.metadata.create_all(bind=config_engine)


@pytest.fixture(scope="function")
def dw_db_session(dw_engine):
    """Create a database session for data warehouse database"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=dw_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        DW_METADATA.drop_all(bind=dw_engine)
        DW_METADATA.create_all(bind=dw_engine)


# ===== REGISTRIES =====


@pytest.fixture(scope="session")
def registry() -> SchemaRegistry:
    """The fleet catalogue, bootstrapped into a private registry"""
    return bootstrap_registry(FLEET_TABLES, SchemaRegistry())


@pytest.fixture
def validator_registry() -> SchemaRegistry:
    """Small registry with one table covering dates, numbers, JSON paths and an auto-join"""
    registry = SchemaRegistry()
    registry.register_table(
        TableDefinition(
            name="test_table",
            label="Test Table",
            tenant_column=None,
            columns=(
                ColumnDefinition("id", "integer", label="ID"),
                ColumnDefinition("name", "string", label="Name"),
                ColumnDefinition("start_date", "date", label="Start Date"),
                ColumnDefinition("end_date", "date", label="End Date"),
                ColumnDefinition("amount", "decimal", label="Amount"),
                ColumnDefinition("quantity", "integer", label="Quantity"),
                ColumnDefinition("details", "json"),
                ColumnDefinition("details.price", "decimal", label="Price"),
                ColumnDefinition("related_id", "integer"),
            ),
            relationships=(
                RelationshipDefinition.auto_join_to(
                    "related",
                    "related_table",
                    local_key="related_id",
                    foreign_key="id",
                    label="Related",
                    columns=(ColumnDefinition("value", "string", label="Value"),),
                ),
            ),
        )
    )
    return registry


@pytest.fixture
def tenant_a() -> TenantContext:
    return TenantContext(tenant_id="company-a", actor_id="user-a")


@pytest.fixture
def tenant_b() -> TenantContext:
    return TenantContext(tenant_id="company-b", actor_id="user-b")


# ===== SERVICE WIRING =====


@pytest.fixture
def report_cache() -> ReportCache:
    return ReportCache(InMemoryCacheStore())


@pytest.fixture
def audit_recorder(config_db_session, config_session_factory) -> AuditRecorder:
    """Audit recorder on its own sessions against the test config database"""
    return AuditRecorder(session_factory=config_session_factory)


def build_test_service(registry, config_db_session, dw_db_session, cache, audit) -> ReportQueryService:
    execution_dao = ReportExecutionDAO(config_db_session)
    return ReportQueryService(
        registry=registry,
        executor=ReportExecutor(SqlAlchemyStorage(dw_db_session), execution_dao, cache=cache),
        report_dao=ReportDAO(config_db_session),
        execution_dao=execution_dao,
        audit=audit,
    )


@pytest.fixture
def report_service(registry, config_db_session, dw_db_session, report_cache, audit_recorder) -> ReportQueryService:
    return build_test_service(registry, config_db_session, dw_db_session, report_cache, audit_recorder)


@pytest.fixture
def client(registry, config_db_session, dw_db_session, report_cache, audit_recorder):
    """Create FastAPI test client with database and service overrides"""
    app = create_app()

    def override_get_db():
        try:
            yield config_db_session
        finally:
            pass

    def override_get_dw_db():
        try:
            yield dw_db_session
        finally:
            pass

    def override_get_report_query_service():
        return build_test_service(registry, config_db_session, dw_db_session, report_cache, audit_recorder)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dw_db] = override_get_dw_db
    app.dependency_overrides[get_report_query_service] = override_get_report_query_service

    with TestClient(app) as test_client:
        yield test_client

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers() -> Dict[str, str]:
    return {"X-Tenant-ID": "company-a", "X-Actor-ID": "user-a"}


# ===== SAMPLE DATA FIXTURES =====


@pytest.fixture
def sample_fleet_data(dw_db_session) -> Dict[str, List[dict]]:
    """Two tenants' worth of drivers, vehicles, places, orders and fuel reports"""
    created = datetime(2024, 3, 1, 8, 0, 0)
    data = {
        "drivers": [
            {"uuid": "drv-1", "public_id": "driver_1", "company_uuid": "company-a", "name": "Alice Driver", "status": "active", "online": True, "created_at": created},
            {"uuid": "drv-2", "public_id": "driver_2", "company_uuid": "company-a", "name": "Bob Driver", "status": "active", "online": False, "created_at": created},
            {"uuid": "drv-3", "public_id": "driver_3", "company_uuid": "company-b", "name": "Carol Driver", "status": "active", "online": True, "created_at": created},
        ],
        "vehicles": [
            {"uuid": "veh-1", "public_id": "vehicle_1", "company_uuid": "company-a", "plate_number": "ABC-123", "make": "Isuzu", "model": "NPR", "year": 2020, "status": "operational", "created_at": created},
        ],
        "places": [
            {"uuid": "plc-1", "public_id": "place_1", "company_uuid": "company-a", "name": "Depot", "city": "Singapore", "country": "SG", "created_at": created},
            {"uuid": "plc-2", "public_id": "place_2", "company_uuid": "company-a", "name": "Customer", "city": "Singapore", "country": "SG", "created_at": created},
        ],
        "orders": [
            {
                "uuid": "ord-1", "public_id": "order_1", "company_uuid": "company-a", "status": "completed", "type": "transport",
                "driver_assigned_uuid": "drv-1", "vehicle_assigned_uuid": "veh-1", "pickup_uuid": "plc-1", "dropoff_uuid": "plc-2",
                "distance": 12000, "time": 1800, "dispatched": True, "meta": {"declared_value": 150.5},
                "created_at": created, "completed_at": datetime(2024, 3, 3, 8, 0, 0),
            },
            {
                "uuid": "ord-2", "public_id": "order_2", "company_uuid": "company-a", "status": "dispatched", "type": "transport",
                "driver_assigned_uuid": "drv-2", "pickup_uuid": "plc-1", "dropoff_uuid": "plc-2",
                "distance": 3000, "time": 600, "dispatched": True, "meta": {"declared_value": 20},
                "created_at": created,
            },
            {
                "uuid": "ord-3", "public_id": "order_3", "company_uuid": "company-a", "status": "created", "type": "transport",
                "distance": 500, "time": 120, "dispatched": False, "meta": {},
                "created_at": created,
            },
            {
                "uuid": "ord-4", "public_id": "order_4", "company_uuid": "company-b", "status": "completed", "type": "transport",
                "driver_assigned_uuid": "drv-3", "distance": 8000, "time": 900, "dispatched": True, "meta": {},
                "created_at": created,
            },
        ],
        "fuel_reports": [
            {"uuid": "fuel-1", "public_id": "fuel_1", "company_uuid": "company-a", "order_uuid": "ord-1", "driver_uuid": "drv-1", "volume": 40.0, "amount": 80.0, "currency": "SGD", "created_at": created},
            {"uuid": "fuel-2", "public_id": "fuel_2", "company_uuid": "company-a", "order_uuid": "ord-1", "driver_uuid": "drv-1", "volume": 10.0, "amount": 25.0, "currency": "SGD", "created_at": created},
            {"uuid": "fuel-3", "public_id": "fuel_3", "company_uuid": "company-b", "order_uuid": "ord-1", "driver_uuid": "drv-3", "volume": 5.0, "amount": 9.0, "currency": "SGD", "created_at": created},
        ],
    }

    for table_name, rows in data.items():
        for row in rows:
            dw_db_session.execute(DW_METADATA.tables[table_name].insert().values(**row))
    dw_db_session.commit()

    return data
