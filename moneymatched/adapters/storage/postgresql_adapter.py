"""PostgreSQL Storage Adapter.

This adapter implements the PropertyStorePort contract: the Bulk Loader (COPY into
the staging table), the Stage-to-Final Transformer, the Index Builder, and the
persistence of import-run records.

Security Impact:
    - Connection credentials are managed via DatabaseConfig and never logged
    - Every statement is static SQL or uses bound parameters
    - SSL connections supported for secure network communication

Architecture:
    - Implements PropertyStorePort (Hexagonal Architecture)
    - One pooled connection is held for the whole run, in autocommit mode, so
      each COPY commits on its own and `transaction()` opens explicit blocks
    - psycopg2 errors are translated into the pipeline's exception taxonomy here
      and never leak to callers

Memory Impact:
    - COPY pulls from a file-like stream in fixed-size reads; no file is
      materialized in memory or on disk
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional, TextIO

import psycopg2
from psycopg2 import pool

from moneymatched.adapters.storage import queries
from moneymatched.domain.models import ImportRunRecord, ImportStatus
from moneymatched.domain.ports import (
    BulkCopyError,
    IndexBuildError,
    PropertyStorePort,
    StorageError,
    TransformError,
)
from moneymatched.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

DEFAULT_COPY_BUFFER_SIZE = 64 * 1024


class PostgreSQLAdapter(PropertyStorePort):
    """PostgreSQL implementation of PropertyStorePort.

    Parameters:
        db_config: DatabaseConfig from the configuration manager
        copy_buffer_size: Size of each read COPY makes from the input stream
        work_mem: Session work_mem applied before the load
        maintenance_work_mem: Session maintenance_work_mem (skipped if refused)

    Example Usage:
        ```python
        from moneymatched.infrastructure.config_manager import ConnectionProfile, get_database_config

        adapter = PostgreSQLAdapter(db_config=get_database_config(ConnectionProfile.LOCAL))
        adapter.prepare_schema()
        rows = adapter.copy_into_staging(stream, "file.csv")
        ```
    """

    def __init__(
        self,
        db_config: DatabaseConfig,
        copy_buffer_size: int = DEFAULT_COPY_BUFFER_SIZE,
        work_mem: str = "256MB",
        maintenance_work_mem: str = "1GB",
    ):
        self.db_config = db_config
        self.copy_buffer_size = copy_buffer_size
        self.work_mem = work_mem
        self.maintenance_work_mem = maintenance_work_mem
        self.connection_params = {"dsn": db_config.get_connection_string()}
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._conn = None
        self._in_transaction = False

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        """Get or create the connection pool (created lazily on first use).

        The run holds a single connection for its whole lifetime, so the pool never
        grows past one.
        """
        if self._connection_pool is None:
            try:
                self._connection_pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=1,
                    **self.connection_params
                )
                logger.info("Created PostgreSQL connection pool")
            except Exception as e:
                raise StorageError(
                    f"Failed to create PostgreSQL connection pool: {str(e)}",
                    operation="connect",
                    details={"host": self.db_config.host or "N/A"}
                )
        return self._connection_pool

    def _get_connection(self):
        """Return the run's connection, checking one out of the pool on first use.

        Raises:
            StorageError: If connection cannot be obtained
        """
        if self._conn is None:
            try:
                conn = self._get_connection_pool().getconn()
                conn.autocommit = True
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(
                    f"Failed to get connection from pool: {str(e)}",
                    operation="get_connection"
                )
            self._conn = conn
        return self._conn

    def _execute(self, statement: str, params: Optional[tuple] = None, operation: str = "execute") -> None:
        try:
            with self._get_connection().cursor() as cursor:
                cursor.execute(statement, params)
        except psycopg2.Error as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    def _fetch_scalar(self, statement: str, params: Optional[tuple] = None, operation: str = "query") -> Any:
        try:
            with self._get_connection().cursor() as cursor:
                cursor.execute(statement, params)
                row = cursor.fetchone()
                return row[0] if row else None
        except psycopg2.Error as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e

    def check_connection_health(self) -> bool:
        """Return True if the connection answers `SELECT 1`."""
        try:
            return self._fetch_scalar(queries.HEALTH_CHECK, operation="health_check") == 1
        except StorageError as e:
            logger.error(f"Database connection health check failed: {str(e)}")
            return False

    def configure_session(self) -> None:
        """Raise work_mem for the transform; attempt settings managed servers may refuse."""
        self._execute(queries.SET_WORK_MEM, (self.work_mem,), operation="configure_session")
        optional_settings = (
            (queries.SET_MAINTENANCE_WORK_MEM, (self.maintenance_work_mem,), "maintenance_work_mem"),
            (queries.SET_WAL_COMPRESSION, None, "wal_compression"),
        )
        for statement, params, name in optional_settings:
            try:
                self._execute(statement, params, operation=f"set_{name}")
            except StorageError as e:
                logger.warning(f"Could not set {name}, continuing with server default: {str(e)}")
        logger.info("Configured session for bulk loading")

    # ------------------------------------------------------------------
    # Schema and staging
    # ------------------------------------------------------------------

    def prepare_schema(self) -> None:
        """Create the run table if missing and re-create the staging table."""
        self._execute(queries.CREATE_IMPORT_RUNS_TABLE, operation="create_import_runs_table")
        self._execute(queries.DROP_STAGING_TABLE, operation="drop_staging_table")
        self._execute(queries.CREATE_STAGING_TABLE, operation="create_staging_table")
        logger.info("Created staging table for fast imports")

    def truncate_staging(self) -> None:
        self._execute(queries.TRUNCATE_STAGING_TABLE, operation="truncate_staging")
        logger.info("Cleared staging table")

    def count_staging(self) -> int:
        return int(self._fetch_scalar(queries.COUNT_STAGING, operation="count_staging") or 0)

    # ------------------------------------------------------------------
    # Bulk Loader
    # ------------------------------------------------------------------

    def copy_into_staging(self, stream: TextIO, source_name: str) -> int:
        """Stream one normalized CSV file into the staging table via COPY FROM STDIN.

        Parameters:
            stream: File-like object whose `read(size)` yields COPY CSV text (header first)
            source_name: File name, for logging and error context

        Returns:
            Number of rows copied

        Raises:
            BulkCopyError: If the server rejects the stream
        """
        start_time = time.time()
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.copy_expert(queries.COPY_INTO_STAGING, stream, size=self.copy_buffer_size)
                rows = cursor.rowcount
        except psycopg2.Error as e:
            if not conn.autocommit:
                conn.rollback()
            raise BulkCopyError(f"COPY of {source_name} failed: {str(e).strip()}", source=source_name) from e

        elapsed = time.time() - start_time
        rate = rows / elapsed if elapsed > 0 else float(rows)
        logger.info(f"Copied {rows} rows from {source_name} in {elapsed:.2f}s ({rate:.0f} rows/sec)")
        return rows

    # ------------------------------------------------------------------
    # Stage-to-Final Transformer
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Explicit BEGIN/COMMIT block; any exception inside rolls back and propagates."""
        if self._in_transaction:
            raise StorageError("Nested transactions are not supported", operation="transaction")
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute("BEGIN")
        except psycopg2.Error as e:
            raise StorageError(f"BEGIN failed: {str(e)}", operation="transaction") from e
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._rollback(conn)
            raise
        else:
            try:
                with conn.cursor() as cursor:
                    cursor.execute("COMMIT")
            except psycopg2.Error as e:
                self._rollback(conn)
                raise TransformError(f"COMMIT failed: {str(e)}") from e
        finally:
            self._in_transaction = False

    @staticmethod
    def _rollback(conn) -> None:
        try:
            with conn.cursor() as cursor:
                cursor.execute("ROLLBACK")
            logger.warning("Rolled back transaction")
        except psycopg2.Error as e:
            logger.error(f"Rollback failed: {str(e)}")

    def rebuild_final_table(self) -> int:
        """Drop, re-create and populate the final table from staging.

        Must run inside `transaction()` so a failure leaves the previous final
        table in place.

        Returns:
            Number of rows in the final table

        Raises:
            TransformError: If any step of the rebuild fails
        """
        start_time = time.time()
        try:
            with self._get_connection().cursor() as cursor:
                cursor.execute(queries.DROP_FINAL_TABLE)
                cursor.execute(queries.CREATE_FINAL_TABLE)
                logger.info("Transforming data from staging to final table...")
                cursor.execute(queries.INSERT_FINAL_FROM_STAGING)
                cursor.execute(queries.COUNT_FINAL)
                final_count = int(cursor.fetchone()[0])
        except psycopg2.Error as e:
            raise TransformError(f"Stage-to-final transform failed: {str(e).strip()}") from e

        logger.info(f"Transformed {final_count} records in {time.time() - start_time:.2f}s")
        return final_count

    # ------------------------------------------------------------------
    # Index Builder
    # ------------------------------------------------------------------

    def build_indexes(self) -> list[str]:
        """Refresh planner statistics, then build each search index concurrently.

        CREATE INDEX CONCURRENTLY cannot run inside a transaction block; the
        connection is in autocommit mode outside `transaction()`.

        Returns:
            Names of the indexes built (or already present)

        Raises:
            IndexBuildError: On the first index that fails to build
        """
        if self._in_transaction:
            raise IndexBuildError("Indexes cannot be built inside a transaction")
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute(queries.ANALYZE_FINAL)
        except psycopg2.Error as e:
            raise IndexBuildError(f"ANALYZE failed: {str(e).strip()}") from e
        logger.info("Refreshed table statistics")

        built = []
        for name, statement in queries.SEARCH_INDEXES:
            try:
                with conn.cursor() as cursor:
                    cursor.execute(statement)
            except psycopg2.Error as e:
                raise IndexBuildError(f"Failed to build index {name}: {str(e).strip()}", index_name=name) from e
            logger.info(f"Built index {name}")
            built.append(name)
        return built

    # ------------------------------------------------------------------
    # Import runs
    # ------------------------------------------------------------------

    def create_import_run(self, source: str, status: ImportStatus = ImportStatus.PENDING) -> int:
        run_id = self._fetch_scalar(
            queries.INSERT_IMPORT_RUN,
            (source, ImportStatus(status).value),
            operation="create_import_run",
        )
        return int(run_id)

    def update_import_run(self, run_id: int, **fields: Any) -> None:
        if not fields:
            return
        values = [v.value if isinstance(v, ImportStatus) else v for v in fields.values()]
        try:
            statement = queries.update_import_run(list(fields))
        except ValueError as e:
            raise StorageError(str(e), operation="update_import_run") from e
        self._execute(statement, (*values, run_id), operation="update_import_run")

    def _fetch_runs(self, statement: str, params: tuple, operation: str) -> list[ImportRunRecord]:
        try:
            with self._get_connection().cursor() as cursor:
                cursor.execute(statement, params)
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            raise StorageError(f"{operation} failed: {str(e)}", operation=operation) from e
        return [ImportRunRecord(**dict(zip(queries.IMPORT_RUN_COLUMNS, row))) for row in rows]

    def get_import_run(self, run_id: int) -> Optional[ImportRunRecord]:
        runs = self._fetch_runs(queries.SELECT_IMPORT_RUN, (run_id,), "get_import_run")
        return runs[0] if runs else None

    def list_import_runs(self, limit: int = 20) -> list[ImportRunRecord]:
        return self._fetch_runs(queries.LIST_IMPORT_RUNS, (limit,), "list_import_runs")

    def close(self) -> None:
        """Return the run's connection and close the pool."""
        if self._connection_pool is not None:
            try:
                if self._conn is not None:
                    self._connection_pool.putconn(self._conn)
                    self._conn = None
                self._connection_pool.closeall()
                self._connection_pool = None
                logger.info("Closed PostgreSQL connection pool")
            except Exception as e:
                logger.warning(f"Error closing connection pool: {str(e)}")
