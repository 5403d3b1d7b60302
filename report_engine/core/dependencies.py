# report_engine/core/dependencies.py
"""Dependencies shared by the HTTP routers and the task queue"""

from functools import lru_cache
from typing import Annotated, Optional
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session
from report_engine.core.config import get_settings
from report_engine.core.database import SessionLocal, get_db, get_dw_db
from report_engine.query.schemas import TenantContext

# Core database dependencies
SessionDep = Annotated[Session, Depends(get_db)]
DWSessionDep = Annotated[Session, Depends(get_dw_db)]


@lru_cache()
def get_report_cache():
    """Process-wide result cache built from settings"""
    from report_engine.reporting.cache import DatabaseCacheStore, InMemoryCacheStore, ReportCache

    settings = get_settings()
    if settings.cache_backend == "memory":
        store = InMemoryCacheStore()
    else:
        store = DatabaseCacheStore(SessionLocal)
    return ReportCache(store, enabled=settings.cache_enabled)


def build_report_service(config_db: Session, dw_db: Session):
    """Wire a ReportQueryService onto a pair of sessions"""
    from report_engine.reporting.audit import get_audit_recorder
    from report_engine.reporting.execution_dao import ReportExecutionDAO
    from report_engine.reporting.executor import ReportExecutor
    from report_engine.reporting.report_dao import ReportDAO
    from report_engine.reporting.service import ReportQueryService
    from report_engine.reporting.storage import SqlAlchemyStorage
    from report_engine.schema.bootstrap import get_registry

    execution_dao = ReportExecutionDAO(config_db)
    executor = ReportExecutor(
        SqlAlchemyStorage(dw_db),
        execution_dao,
        cache=get_report_cache(),
        default_timeout=get_settings().execution_timeout,
    )
    return ReportQueryService(
        registry=get_registry(),
        executor=executor,
        report_dao=ReportDAO(config_db),
        execution_dao=execution_dao,
        audit=get_audit_recorder(),
    )


# Main service dependency for report queries
def get_report_query_service(config_db: SessionDep, dw_db: DWSessionDep):
    return build_report_service(config_db, dw_db)


def get_report_scheduler(service=Depends(get_report_query_service)):
    from report_engine.reporting.scheduler import ReportScheduler

    return ReportScheduler(service)


def get_tenant_context(
    x_tenant_id: Annotated[Optional[str], Header()] = None,
    x_actor_id: Annotated[Optional[str], Header()] = None,
) -> TenantContext:
    """Caller identity from the upstream authentication layer"""
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return TenantContext(tenant_id=x_tenant_id, actor_id=x_actor_id)


TenantDep = Annotated[TenantContext, Depends(get_tenant_context)]
