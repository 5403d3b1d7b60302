# report_engine/reporting/executor.py
"""Execution of compiled queries with result caching and execution tracking."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from report_engine.core.exceptions import ExecutionError, ExecutionTimeoutError
from report_engine.query.schemas import CompiledQuery, TenantContext
from report_engine.reporting.cache import ReportCache
from report_engine.reporting.execution_dao import ReportExecutionDAO

logger = logging.getLogger(__name__)


class CacheStatus:
    HIT = "HIT"
    MISS = "MISS"
    STORE = "STORE"
    BYPASS = "BYPASS"


# Per-call (context-local) status; never shared between independent requests
_cache_status: ContextVar[Optional[str]] = ContextVar("report_cache_status", default=None)


def get_cache_status() -> Optional[str]:
    return _cache_status.get()


def reset_cache_status() -> None:
    _cache_status.set(None)


@dataclass
class ExecutionResult:
    rows: List[Dict[str, Any]]
    row_count: int
    execution_time_ms: float
    cache_status: str
    execution_id: Optional[int] = None
    limit_clamped: bool = False
    columns: List[str] = field(default_factory=list)


class ReportExecutor:
    """
    Runs CompiledQueries against the storage collaborator.

    A cache hit returns without storage I/O and without an execution record.
    Every other path creates exactly one ReportExecution, and that record is
    always finalized (completed or failed) before the call returns or raises.
    """

    def __init__(
        self,
        storage,
        execution_dao: ReportExecutionDAO,
        cache: Optional[ReportCache] = None,
        default_timeout: Optional[float] = None,
    ):
        self.storage = storage
        self.execution_dao = execution_dao
        self.cache = cache
        self.default_timeout = default_timeout

    def get_cache_status(self) -> Optional[str]:
        return get_cache_status()

    def reset_cache_status(self) -> None:
        reset_cache_status()

    def invalidate(self, table_name: str, fingerprint_prefix: Optional[str] = None) -> int:
        if self.cache is None:
            return 0
        return self.cache.invalidate(table_name, fingerprint_prefix)

    def execute(self, compiled: CompiledQuery, tenant: TenantContext, report_id: Optional[int] = None) -> ExecutionResult:
        use_cache = self.cache is not None and self.cache.enabled and compiled.cacheable

        if not use_cache:
            _cache_status.set(CacheStatus.BYPASS)
            return self._run(compiled, tenant, report_id, use_cache=False)

        cached = self._from_cache(compiled)
        if cached is not None:
            return cached

        with self.cache.population_lock(compiled.table_name, compiled.fingerprint):
            # Another caller may have populated the entry while we waited
            cached = self._from_cache(compiled)
            if cached is not None:
                return cached
            _cache_status.set(CacheStatus.MISS)
            return self._run(compiled, tenant, report_id, use_cache=True)

    def _from_cache(self, compiled: CompiledQuery) -> Optional[ExecutionResult]:
        payload = self.cache.get(compiled.table_name, compiled.fingerprint)
        if payload is None:
            return None
        _cache_status.set(CacheStatus.HIT)
        logger.debug(f"Cache hit for '{compiled.table_name}' ({compiled.fingerprint[:12]})")
        return ExecutionResult(
            rows=payload["rows"],
            row_count=payload["row_count"],
            execution_time_ms=payload["execution_time_ms"],
            cache_status=CacheStatus.HIT,
            limit_clamped=compiled.limit_clamped,
            columns=compiled.aliases,
        )

    def _run(self, compiled: CompiledQuery, tenant: TenantContext, report_id: Optional[int], use_cache: bool) -> ExecutionResult:
        execution = self.execution_dao.create(
            tenant_id=tenant.tenant_id,
            actor_id=tenant.actor_id,
            query_spec=compiled.specification,
            fingerprint=compiled.fingerprint,
            report_id=report_id,
        )
        self.execution_dao.mark_running(execution)

        timeout = compiled.timeout_seconds if compiled.timeout_seconds is not None else self.default_timeout
        start_time = time.perf_counter()
        try:
            rows = self._fetch(compiled, timeout)
        except FutureTimeoutError:
            elapsed = (time.perf_counter() - start_time) * 1000
            message = f"Execution exceeded timeout of {timeout} seconds"
            self.execution_dao.mark_failed(execution, message, elapsed)
            logger.error(f"Execution {execution.id} on '{compiled.table_name}' timed out after {timeout}s")
            raise ExecutionTimeoutError(message, execution_id=execution.id)
        except Exception as exc:
            elapsed = (time.perf_counter() - start_time) * 1000
            self.execution_dao.mark_failed(execution, str(exc), elapsed)
            logger.error(f"Execution {execution.id} on '{compiled.table_name}' failed: {exc}")
            raise ExecutionError(f"Query execution failed: {exc}", execution_id=execution.id) from exc

        # Enforce the row cap again on what storage actually returned
        if compiled.effective_limit is not None:
            rows = rows[: compiled.effective_limit]
        rows = self._transform(compiled, rows)
        execution_time_ms = (time.perf_counter() - start_time) * 1000

        self.execution_dao.mark_completed(execution, len(rows), execution_time_ms)
        logger.info(
            f"Execution {execution.id} on '{compiled.table_name}' returned {len(rows)} rows in {execution_time_ms:.2f}ms"
        )

        status = CacheStatus.BYPASS
        if use_cache:
            stored = self.cache.put(
                compiled.table_name,
                compiled.fingerprint,
                {"rows": rows, "row_count": len(rows), "execution_time_ms": execution_time_ms},
                compiled.cache_ttl,
            )
            status = CacheStatus.STORE if stored else CacheStatus.MISS
        _cache_status.set(status)

        return ExecutionResult(
            rows=rows,
            row_count=len(rows),
            execution_time_ms=execution_time_ms,
            cache_status=status,
            execution_id=execution.id,
            limit_clamped=compiled.limit_clamped,
            columns=compiled.aliases,
        )

    def _fetch(self, compiled: CompiledQuery, timeout: Optional[float]) -> List[Dict[str, Any]]:
        if not timeout:
            return self.storage.execute_query(compiled)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="report-exec")
        try:
            future = pool.submit(self.storage.execute_query, compiled)
            return future.result(timeout=timeout)
        finally:
            # Do not wait for an abandoned query; its result is discarded
            pool.shutdown(wait=False)

    @staticmethod
    def _transform(compiled: CompiledQuery, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not compiled.transformers:
            return rows
        transformed = []
        for row in rows:
            row = dict(row)
            for alias, transformer in compiled.transformers.items():
                if alias in row:
                    row[alias] = transformer(row[alias])
            transformed.append(row)
        return transformed
