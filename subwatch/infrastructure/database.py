"""Centralized database access for SubWatch

**DATABASE POLICY**: SubWatch keeps all pipeline state in ONE SQLite database,
subwatch/data/subwatch.db by default (override with SUBWATCH_DB_PATH).

Provides:
- Connection pooling (reuses WAL-mode connections across worker threads)
- Single source of truth for the database path
- Transactions, including BEGIN IMMEDIATE for read-modify-write sequences
- Retry on SQLITE_BUSY / "database is locked"
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import lru_cache, wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from subwatch.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from subwatch.observability.logging import get_logger
from subwatch.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DB_PATH = Path(__file__).parent.parent / "data" / "subwatch.db"

logger = get_logger(__name__)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Decorator to retry database operations on SQLITE_BUSY errors

    Concurrent extraction lanes and overlapping scheduler ticks can both hold
    the write lock briefly. Lock errors are retried with exponential backoff
    plus jitter; every other OperationalError propagates immediately.

    Args:
        max_retries: Maximum number of retry attempts (default: 5)
        base_delay: Initial delay in seconds (default: 0.1)
        max_delay: Maximum delay between retries (default: 2.0)

    Side Effects:
        - Sleeps between retries
        - Logs a warning per retry and an error when retries are exhausted
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_error = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except sqlite3.OperationalError as e:
                    last_error = e

                    if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            "Database lock retry exhausted after %d attempts: %s",
                            max_retries,
                            e,
                        )
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    sleep_time = delay + random.uniform(0, delay * DB_RETRY_JITTER)

                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.2fs: %s",
                        attempt + 1,
                        max_retries,
                        sleep_time,
                        e,
                    )
                    counter("database.lock_retry")
                    time.sleep(sleep_time)

            raise last_error  # type: ignore

        return wrapper  # type: ignore[return-value]

    return decorator


class DatabaseConnectionPool:
    """
    Thread-safe connection pool for SQLite

    Connections are opened with check_same_thread=False so extraction lanes
    running on worker threads can share them. Each connection is handed to
    one caller at a time.
    """

    def __init__(self, db_path: Path, pool_size: int = DB_POOL_SIZE):
        self.db_path = db_path
        self.pool_size = pool_size
        self.pool: Queue[sqlite3.Connection] = Queue(maxsize=pool_size)
        self.lock = Lock()
        self.closed = False
        self.temp_conn_count = 0
        self.temp_conn_max = DB_TEMP_CONN_MAX
        self._initialize_pool()

        atexit.register(self.close_all)

    def _create_connection(self) -> sqlite3.Connection:
        """
        Create a configured SQLite connection (WAL, NORMAL sync, FKs, Row factory).

        Raises:
            RuntimeError: If the integrity quick check fails
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=DB_CONNECT_TIMEOUT,
            check_same_thread=False,
        )

        try:
            result = conn.execute("PRAGMA quick_check(1)").fetchone()
            if result[0] != "ok":
                conn.close()
                logger.critical("Database corruption detected: %s", result[0])
                counter("database.corruption_detected")
                raise RuntimeError(f"Database corruption detected: {result[0]}")
        except sqlite3.DatabaseError as e:
            conn.close()
            logger.critical("Database corruption or error during integrity check: %s", e)
            counter("database.corruption_detected")
            raise RuntimeError(f"Database corruption detected: {e}") from e

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row

        return conn

    def _initialize_pool(self) -> None:
        for _ in range(self.pool_size):
            try:
                self.pool.put(self._create_connection())
            except Exception as e:
                logger.warning("Failed to create pooled connection: %s", e)

    def get_connection(self) -> sqlite3.Connection:
        """
        Get connection from pool, or a temporary one when the pool is exhausted.

        Raises:
            RuntimeError: If pool closed or temporary connection limit exceeded
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self.pool.get(block=True, timeout=DB_POOL_TIMEOUT)
        except Empty:
            with self.lock:
                if self.temp_conn_count >= self.temp_conn_max:
                    logger.critical(
                        "Temporary connection limit reached: %d/%d (pool_size=%d)",
                        self.temp_conn_count,
                        self.temp_conn_max,
                        self.pool_size,
                    )
                    msg = (
                        "Database connection pool exhausted and temporary "
                        f"connection limit reached. pool_size={self.pool_size}, "
                        f"temp_conn_max={self.temp_conn_max}."
                    )
                    raise RuntimeError(msg) from None

                self.temp_conn_count += 1
                temp_count = self.temp_conn_count

            logger.error(
                "Connection pool exhausted (pool_size=%d). Creating temporary connection %d/%d.",
                self.pool_size,
                temp_count,
                self.temp_conn_max,
            )
            log_event(
                "database.pool_exhausted",
                pool_size=self.pool_size,
                temp_conn_count=temp_count,
                severity="error",
            )

            conn = self._create_connection()
            conn._is_temporary = True  # type: ignore[attr-defined]
            return conn

    def return_connection(self, conn: sqlite3.Connection) -> None:
        """
        Return connection to pool

        Side Effects:
            - Closes temporary connections and decrements temp_conn_count
            - Rolls back any transaction the caller left open
        """
        is_temp = getattr(conn, "_is_temporary", False)

        if self.closed or is_temp:
            conn.close()
            if is_temp:
                with self.lock:
                    self.temp_conn_count -= 1
            return

        if conn.in_transaction:
            conn.rollback()

        try:
            self.pool.put_nowait(conn)
        except Full:
            logger.warning("Failed to return connection to pool (pool full), closing")
            conn.close()

    def close_all(self) -> None:
        """Close all pooled connections."""
        self.closed = True
        while not self.pool.empty():
            try:
                self.pool.get_nowait().close()
            except Empty:
                break


@lru_cache(maxsize=1)
def get_pool() -> DatabaseConnectionPool:
    """
    Get or create the process-wide connection pool (thread-safe via @lru_cache).
    """
    return DatabaseConnectionPool(get_db_path(), pool_size=DB_POOL_SIZE)


def reset_pool() -> None:
    """
    Close and forget the current pool.

    The next get_pool() call re-reads SUBWATCH_DB_PATH, which is how tests
    point the pipeline at a temporary database.
    """
    if get_pool.cache_info().currsize:
        get_pool().close_all()
    get_pool.cache_clear()


def get_db_path() -> Path:
    """
    Get database path (environment-aware)

    Checks SUBWATCH_DB_PATH first, falls back to the default location.
    """
    if env_path := os.getenv("SUBWATCH_DB_PATH"):
        return Path(env_path)

    return DB_PATH


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Get pooled database connection (context manager)

    Usage:
        with get_db_connection() as conn:
            rows = conn.execute("SELECT * FROM receipts").fetchall()

    Raises:
        FileNotFoundError: If database doesn't exist (run init_database first)
    """
    db_path = get_db_path()

    if not db_path.exists():
        raise FileNotFoundError(f"Database not found: {db_path}\nRun init_database() first")

    pool = get_pool()
    conn = pool.get_connection()
    try:
        yield conn
    finally:
        pool.return_connection(conn)


@contextmanager
def db_transaction(immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database transactions

    Commits on success, rolls back on error. With immediate=True the write
    lock is taken up front (BEGIN IMMEDIATE), so a read followed by a write
    inside the block cannot interleave with another writer.

    Usage:
        with db_transaction(immediate=True) as conn:
            row = conn.execute("SELECT ...").fetchone()
            conn.execute("UPDATE ...")
    """
    with get_db_connection() as conn:
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def get_pool_stats() -> dict[str, Any]:
    """Connection pool health metrics."""
    pool = get_pool()
    available = pool.pool.qsize()
    in_use = pool.pool_size - available
    usage_percent = (in_use / pool.pool_size) * 100 if pool.pool_size > 0 else 0

    return {
        "pool_size": pool.pool_size,
        "available": available,
        "in_use": in_use,
        "usage_percent": round(usage_percent, 1),
        "closed": pool.closed,
    }


def init_database() -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
    - Creates subwatch tables and indexes if they don't exist
    - Creates the data directory if needed
    """
    from subwatch.infrastructure.database_schema import init_database as _init_database

    _init_database(get_db_path())
