"""
Database connection factory for the ARN reconciler.

Provides the DSN builder, a retried one-off connection, and a process-wide
connection pool owned by PoolManager. The pool is closed on interpreter exit.

Connection establishment is retried with tenacity for transient failures.
"""

from __future__ import annotations

import atexit
import threading
from typing import Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from arn_reconciler.config import Settings, get_settings


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


class PoolManager:
    """
    Thread-safe singleton owning the synchronous connection pool.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool = None
                atexit.register(cls._instance.close)
            return cls._instance

    def get_pool(
        self,
        min_size: int = 1,
        max_size: int = 4,
        dsn: Optional[str] = None,
    ) -> ConnectionPool:
        """
        Get or create the pool.

        Parameters
        ----------
        min_size : int
            Minimum number of idle connections to keep.
        max_size : int
            Maximum total connections in the pool.
        dsn : str, optional
            Override the DSN built from settings.
        """
        with self._lock:
            if self._pool is None:
                settings = get_settings()
                self._pool = ConnectionPool(
                    conninfo=dsn or build_dsn(settings),
                    min_size=min_size,
                    max_size=max_size,
                    kwargs={"connect_timeout": settings.db_connect_timeout},
                    open=True,
                )
            return self._pool

    def close(self) -> None:
        """Close the pool if one was created."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.close()


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def get_sync_connection(dsn: Optional[str] = None) -> Connection:
    """
    Open a dedicated connection, retrying transient failures up to 3 times.

    Raises
    ------
    psycopg.OperationalError
        If the database stays unreachable after all attempts.
    """
    settings = get_settings()
    return psycopg.connect(dsn or build_dsn(settings), connect_timeout=settings.db_connect_timeout)


def get_sync_pool(min_size: int = 1, max_size: int = 4, dsn: Optional[str] = None) -> ConnectionPool:
    """Get or create the shared pool via PoolManager."""
    return PoolManager().get_pool(min_size=min_size, max_size=max_size, dsn=dsn)


__all__ = ["PoolManager", "build_dsn", "get_sync_connection", "get_sync_pool"]
