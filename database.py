"""
Database connection and transaction module.

Provides connection pooling and the transaction scope used by retention
runs. Every retention run executes inside exactly one transaction obtained
from ``DatabaseManager.transaction()``.
"""

import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from config import get_config
from errors import StorageError

logger = logging.getLogger(__name__)

# Tables the engine retains; reported by health_check.
RETAINED_TABLES = ("notifications", "integration_logs")

_ISOLATION_LEVELS = {
    "read_committed": "READ COMMITTED",
    "repeatable_read": "REPEATABLE READ",
    "serializable": "SERIALIZABLE",
}


class DatabaseError(Exception):
    """Base exception for database errors."""
    pass


class ConnectionPoolError(DatabaseError):
    """Exception for connection pool errors."""
    pass


class QueryError(DatabaseError):
    """Exception for query execution errors."""
    pass


class DatabaseManager:
    """
    Manages database connections with connection pooling.

    Provides context manager interfaces for plain cursors and for
    isolated retention transactions, with automatic connection management.
    """

    def __init__(self):
        """Initialize database manager."""
        self.config = get_config().database
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._initialized = False

    def initialize(self) -> None:
        """Initialize connection pool."""
        if self._initialized:
            logger.warning("Database manager already initialized")
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=self.config.pool_size,
                host=self.config.host,
                port=self.config.port,
                dbname=self.config.name,
                user=self.config.user,
                password=self.config.password,
                connect_timeout=self.config.connect_timeout,
                application_name="retention-engine",
            )
            self._initialized = True
            logger.info(
                "Database connection pool initialized (host=%s, db=%s)",
                self.config.host, self.config.name,
            )
        except Exception as e:
            logger.error("Failed to initialize connection pool: %s", e)
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}")

    def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool:
            self._pool.closeall()
            self._initialized = False
            logger.info("Database connection pool closed")

    @contextmanager
    def get_connection(self):
        """
        Get a connection from the pool as a context manager.

        Yields:
            psycopg2.connection: Database connection

        Raises:
            ConnectionPoolError: If pool is not initialized or connection fails
        """
        if not self._initialized:
            self.initialize()

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error("Database connection error: %s", e)
            raise ConnectionPoolError(f"Connection error: {e}")
        finally:
            if conn:
                self._pool.putconn(conn)

    @contextmanager
    def get_cursor(self, dict_cursor: bool = False):
        """
        Get a cursor from a pooled connection.

        Args:
            dict_cursor: If True, return RealDictCursor for dict-like results

        Yields:
            psycopg2.cursor: Database cursor
        """
        with self.get_connection() as conn:
            cursor_factory = RealDictCursor if dict_cursor else None
            cursor = conn.cursor(cursor_factory=cursor_factory)
            try:
                yield cursor
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error("Cursor operation error: %s", e)
                raise QueryError(f"Query execution failed: {e}")
            finally:
                cursor.close()

    @contextmanager
    def transaction(
        self,
        isolation_level: str = "repeatable_read",
        statement_timeout_ms: Optional[int] = None,
    ):
        """
        Open one transaction at the requested isolation level.

        Commits when the block exits normally and rolls back on any
        exception. Storage failures (pool, connection, statement, commit)
        surface as ``StorageError``; other exceptions propagate unchanged
        after the rollback.

        Args:
            isolation_level: 'read_committed', 'repeatable_read' or 'serializable'
            statement_timeout_ms: Optional ``SET LOCAL statement_timeout``

        Yields:
            psycopg2.cursor: Cursor bound to the open transaction
        """
        level = _ISOLATION_LEVELS.get(isolation_level)
        if level is None:
            raise ValueError(f"Unsupported isolation level: {isolation_level}")

        try:
            if not self._initialized:
                self.initialize()
            conn = self._pool.getconn()
        except (DatabaseError, pool.PoolError, psycopg2.Error) as e:
            raise StorageError(f"Storage unavailable: {e}") from e

        cursor = None
        try:
            cursor = conn.cursor()
            cursor.execute(f"SET TRANSACTION ISOLATION LEVEL {level}")
            if statement_timeout_ms:
                cursor.execute("SET LOCAL statement_timeout = %s", (statement_timeout_ms,))
            yield cursor
            conn.commit()
        except Exception as e:
            self._rollback_quietly(conn)
            if isinstance(e, psycopg2.Error):
                raise StorageError(f"Transaction failed: {e}") from e
            raise
        finally:
            if cursor is not None and not cursor.closed:
                cursor.close()
            self._pool.putconn(conn, close=bool(conn.closed))

    @staticmethod
    def _rollback_quietly(conn) -> None:
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning("Rollback failed: %s", e)

    def execute_query(
        self,
        query: str,
        params: Optional[tuple] = None,
        fetch: bool = False
    ) -> Optional[List[tuple]]:
        """
        Execute a query with optional parameters.

        Args:
            query: SQL query string
            params: Query parameters
            fetch: If True, fetch and return results

        Returns:
            Query results if fetch=True, None otherwise
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, params)
            if fetch:
                return cursor.fetchall()
            return None

    def health_check(self) -> Dict[str, Any]:
        """
        Perform database health check.

        Returns:
            Dict with health status and row counts of the retained tables
        """
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT version();")
                version = cursor.fetchone()[0]

                counts = {}
                for table in RETAINED_TABLES:
                    cursor.execute("SELECT to_regclass(%s)", (table,))
                    if cursor.fetchone()[0] is None:
                        counts[table] = None
                        continue
                    cursor.execute(f"SELECT COUNT(*) FROM {table}")
                    counts[table] = cursor.fetchone()[0]

                return {
                    "status": "healthy",
                    "postgres_version": version,
                    "row_counts": counts,
                }
        except DatabaseError as e:
            logger.error("Health check failed: %s", e)
            return {
                "status": "unhealthy",
                "error": str(e),
            }


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()
    return _db_manager


def close_db_manager() -> None:
    """Close global database manager."""
    global _db_manager
    if _db_manager:
        _db_manager.close()
        _db_manager = None
