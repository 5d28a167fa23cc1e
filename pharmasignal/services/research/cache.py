"""Result cache backends keyed by request fingerprint."""
# ruff: noqa: UP017

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from pharmasignal.config import settings
from pharmasignal.models.records import ResearchCacheRecord
from pharmasignal.observability.metrics import metrics
from pharmasignal.services.research.errors import CacheWriteWarning

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResultCache(Protocol):
    """Key/value store for serialized research results."""

    def get(self, key: str) -> bytes | None:
        ...

    def set(self, key: str, payload: bytes, ttl_seconds: int) -> None:
        ...


class InMemoryResultCache(ResultCache):
    """Thread-safe cache used for API/local development."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._entries: dict[str, tuple[bytes, datetime]] = {}
        self._lock = Lock()
        self._clock = clock or _utcnow

    def get(self, key: str) -> bytes | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
        return payload

    def set(self, key: str, payload: bytes, ttl_seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._entries[key] = (payload, expires_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SQLResultCache(ResultCache):
    """SQLModel-backed cache persisting to Postgres/Supabase or SQLite."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
        clock: Clock | None = None,
    ) -> None:
        self._engine = create_sql_engine(
            database_url,
            pool_min_size=pool_min_size,
            pool_max_size=pool_max_size,
        )
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine, tables=[ResearchCacheRecord.__table__])
        self._clock = clock or _utcnow

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def get(self, key: str) -> bytes | None:
        now = self._clock()
        try:
            with self._session() as session:
                record = session.get(ResearchCacheRecord, key)
                if record is None:
                    return None
                if _aware(record.expires_at) <= now:
                    session.execute(delete(ResearchCacheRecord).where(ResearchCacheRecord.cache_key == key))
                    session.commit()
                    return None
                return bytes(record.payload)
        except SQLAlchemyError:
            logger.exception("research.cache.read_error", extra={"cache_key": key, "backend": "database"})
            return None

    def set(self, key: str, payload: bytes, ttl_seconds: int) -> None:
        record = ResearchCacheRecord(
            cache_key=key,
            payload=payload,
            expires_at=self._clock() + timedelta(seconds=ttl_seconds),
        )
        try:
            with self._session() as session:
                session.merge(record)
                session.commit()
        except SQLAlchemyError as exc:
            raise CacheWriteWarning(f"Failed to persist cache entry {key}: {exc}") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def write_guarded(
    cache: ResultCache,
    key: str,
    payload: bytes,
    *,
    ttl_seconds: int | None = None,
    max_bytes: int | None = None,
) -> bool:
    """Store ``payload`` unless it exceeds the byte ceiling; never raises on backend failure."""
    ceiling = max_bytes if max_bytes is not None else settings.research_cache_max_bytes
    ttl = ttl_seconds if ttl_seconds is not None else settings.research_cache_ttl_seconds
    size = len(payload)
    if size > ceiling:
        metrics.increment("research.cache.skipped", tags={"reason": "oversize"})
        logger.warning(
            "research.cache.oversize",
            extra={"cache_key": key, "size_bytes": size, "max_bytes": ceiling},
        )
        return False
    try:
        cache.set(key, payload, ttl)
    except Exception as exc:
        metrics.increment("research.cache.skipped", tags={"reason": "write_error"})
        logger.exception(
            "research.cache.write_failed",
            extra={"cache_key": key, "error": str(exc), "error_type": type(exc).__name__},
        )
        return False
    metrics.gauge("research.cache.payload_bytes", size)
    logger.info("research.cache.stored", extra={"cache_key": key, "size_bytes": size, "ttl_seconds": ttl})
    return True


def create_sql_engine(
    database_url: str,
    *,
    pool_min_size: int | None = None,
    pool_max_size: int | None = None,
) -> Engine:
    """Build a sync SQLAlchemy engine from DATABASE_URL-style strings."""
    if not database_url:
        raise ValueError("DATABASE_URL is required for SQL-backed research storage.")
    parsed_url = make_url(database_url)
    sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
    pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
    pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
    is_sqlite = drivername.startswith("sqlite")
    engine_kwargs: dict[str, Any] = {
        "echo": settings.debug,
        "connect_args": connect_args,
        "pool_pre_ping": not is_sqlite,
    }
    if not is_sqlite:
        engine_kwargs["pool_size"] = pool_min
        engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)
    return create_engine(sync_url, **engine_kwargs)


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = "sqlite"
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql") and "sslmode" not in query and (removed_ssl or "supabase.co" in host):
        connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def build_result_cache(database_url: str | None = None) -> ResultCache:
    """Instantiate a ResultCache using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("research.cache.initialized", extra={"backend": "memory"})
        return InMemoryResultCache()
    try:
        cache = SQLResultCache(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
        )
        logger.info("research.cache.initialized", extra={"backend": "database"})
        return cache
    except Exception:
        logger.exception("research.cache.init_failed", extra={"backend": "database"})
        raise
