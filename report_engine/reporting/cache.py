# report_engine/reporting/cache.py
"""
Report result cache.

A ReportCache sits on top of a pluggable store. Store failures are never
fatal: they are logged as CacheError and the cache behaves as a miss (or a
no-op on writes), so execution proceeds as if caching were disabled.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Tuple

from sqlalchemy.orm import Session

from report_engine.core.exceptions import CacheError
from report_engine.reporting.models import ReportCacheEntry

logger = logging.getLogger(__name__)

KEY_PREFIX = "report"


def cache_key(table_name: str, fingerprint: str) -> str:
    return f"{KEY_PREFIX}:{table_name}:{fingerprint}"


class CacheStore(Protocol):
    """Key/value store with per-entry TTL."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        ...

    def forget(self, key: str) -> None:
        ...

    def forget_prefix(self, prefix: str) -> int:
        ...


class InMemoryCacheStore:
    """Process-local store. Suitable for tests and single-worker deployments."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._entries: Dict[str, Tuple[datetime, str]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
        return json.loads(payload)

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        payload = json.dumps(value, default=str)
        with self._lock:
            self._entries[key] = (self._clock() + timedelta(seconds=ttl_seconds), payload)

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def forget_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        return len(keys)


class DatabaseCacheStore:
    """Store backed by the ``report_cache`` table. Uses its own short-lived sessions."""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = datetime.utcnow):
        self.session_factory = session_factory
        self._clock = clock

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            entry = db.query(ReportCacheEntry).filter(ReportCacheEntry.cache_key == key).first()
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                db.delete(entry)
                db.commit()
                return None
            return json.loads(entry.payload)
        finally:
            db.close()

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        db = self.session_factory()
        try:
            entry = db.query(ReportCacheEntry).filter(ReportCacheEntry.cache_key == key).first()
            if entry is None:
                entry = ReportCacheEntry(cache_key=key)
                db.add(entry)
            parts = key.split(":", 2)
            entry.table_name = parts[1] if len(parts) == 3 else None
            entry.fingerprint = parts[2] if len(parts) == 3 else None
            entry.payload = json.dumps(value, default=str)
            entry.row_count = value.get("row_count")
            entry.execution_time_ms = value.get("execution_time_ms")
            entry.expires_at = self._clock() + timedelta(seconds=ttl_seconds)
            entry.created_at = self._clock()
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def forget(self, key: str) -> None:
        db = self.session_factory()
        try:
            db.query(ReportCacheEntry).filter(ReportCacheEntry.cache_key == key).delete()
            db.commit()
        finally:
            db.close()

    def forget_prefix(self, prefix: str) -> int:
        db = self.session_factory()
        try:
            deleted = (
                db.query(ReportCacheEntry)
                .filter(ReportCacheEntry.cache_key.startswith(prefix, autoescape=True))
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted
        finally:
            db.close()


class ReportCache:
    """Fault-tolerant façade over a CacheStore keyed by table and fingerprint."""

    def __init__(self, store: CacheStore, enabled: bool = True):
        self.store = store
        self.enabled = enabled
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def get(self, table_name: str, fingerprint: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            return self.store.get(cache_key(table_name, fingerprint))
        except Exception as exc:
            self._degraded("read", table_name, exc)
            return None

    def put(self, table_name: str, fingerprint: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        if not self.enabled or ttl_seconds <= 0:
            return False
        try:
            self.store.put(cache_key(table_name, fingerprint), value, ttl_seconds)
            return True
        except Exception as exc:
            self._degraded("write", table_name, exc)
            return False

    def invalidate(self, table_name: str, fingerprint_prefix: Optional[str] = None) -> int:
        """Forget every entry for a table, or only those whose fingerprint starts with a prefix."""
        prefix = cache_key(table_name, fingerprint_prefix or "")
        try:
            forget_prefix = getattr(self.store, "forget_prefix", None)
            if forget_prefix is None:
                if not fingerprint_prefix:
                    raise CacheError("Cache store cannot invalidate by prefix")
                self.store.forget(prefix)
                return 1
            count = forget_prefix(prefix)
        except Exception as exc:
            self._degraded("invalidate", table_name, exc)
            return 0
        logger.info(f"Invalidated {count} cache entr{'y' if count == 1 else 'ies'} for '{prefix}'")
        return count

    @contextmanager
    def population_lock(self, table_name: str, fingerprint: str) -> Iterator[None]:
        """Serialize concurrent population of the same fingerprint within this process."""
        key = cache_key(table_name, fingerprint)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                if not lock.locked() and self._locks.get(key) is lock:
                    del self._locks[key]

    def _degraded(self, operation: str, table_name: str, exc: Exception) -> None:
        error = exc if isinstance(exc, CacheError) else CacheError(f"Cache {operation} failed for '{table_name}': {exc}")
        logger.warning(f"{error}; continuing without cache")
