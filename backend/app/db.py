import os
import threading
from contextlib import contextmanager
from typing import Optional

import psycopg
from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings

DATABASE_URL = os.getenv("APP_DATABASE_URL") or settings.db_url


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


# Pool sizing defaults are conservative: one terminal talks to the backend.
# Override via DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE.
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 4)

_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    # Created on first use so the terminal can start (and sell) while the
    # backend is unreachable.
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ConnectionPool(
                conninfo=DATABASE_URL,
                min_size=_POOL_MIN,
                max_size=_POOL_MAX,
                kwargs={
                    "row_factory": dict_row,
                    "connect_timeout": max(1, int(settings.connect_timeout_seconds)),
                },
                timeout=settings.connect_timeout_seconds,
                open=True,
            )
        return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception,
    # and returns the connection to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pools() -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.close()


def direct_conn(db_url: Optional[str] = None):
    # Unpooled connection for one-shot tools (the offline sync worker).
    # `with direct_conn(url) as conn:` commits/rolls back and closes.
    return psycopg.connect(
        db_url or DATABASE_URL,
        row_factory=dict_row,
        connect_timeout=max(1, int(settings.connect_timeout_seconds)),
    )
