"""Domain Ports - Abstract Contracts for the Property Import Pipeline.

This module defines the Port interfaces (abstract contracts) that Adapters must implement,
the Result type used to communicate per-record outcomes, and the pipeline's exception
taxonomy. Following Hexagonal Architecture, the Domain Core defines what it needs,
not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Archive sources (remote ZIP, local directory) implement ArchiveSourcePort
    - The relational store (PostgreSQL) implements PropertyStorePort
    - Iterator pattern enables memory-efficient streaming from source to database

Memory Impact:
    - SourceEntry exposes its content as an iterator of byte chunks, never as a
      whole file, so no stage has to hold an archive member in memory
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, BinaryIO, Generic, Iterator, Optional, TextIO, TypeVar, Union

from moneymatched.domain.models import ImportRunRecord, ImportStatus

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    The Tolerant CSV Normalizer yields one Result per input record, so a bad row
    is an ordinary value flowing down the pipeline rather than an exception
    unwinding the file's stream.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Type of error (RecordParseError, BulkCopyError, etc.)
        error_details: Additional error context (file, line, data)

    Example:
        ```python
        for result in normalizer.normalize("file.csv", chunks):
            if result.is_success():
                write(result.value)
            else:
                recorder.record_result(result)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "RecordParseError")
            error_details: Additional context (file, line, data)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ImportPipelineError(Exception):
    """Base exception for all import pipeline errors."""
    pass


class SourceUnavailableError(ImportPipelineError):
    """Raised when an archive URL is unreachable or a local path is missing or invalid.

    Fatal to the whole run.

    Attributes:
        source: The URL or path that could not be read
        status_code: HTTP status of the terminal response, when there was one
    """

    def __init__(self, message: str, source: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class RecordParseError(ImportPipelineError):
    """Raised (or carried in a failure Result) when one row fails tokenization or normalization.

    Recovered locally: the row becomes a Failed-record entry and the file's stream continues.

    Attributes:
        source: File name the row came from
        line: 1-based data-row position
        raw_data: Partially parsed record, when available
    """

    def __init__(self, message: str, source: Optional[str] = None, line: Optional[int] = None,
                 raw_data: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.line = line
        self.raw_data = raw_data


class BulkCopyError(ImportPipelineError):
    """Raised when the bulk-copy protocol rejects a file's stream.

    Recorded at file granularity; the run continues with the next file but the
    current file is not credited.

    Attributes:
        source: File name whose COPY failed
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class TransformError(ImportPipelineError):
    """Raised when the Stage-to-Final bulk operation fails. Fatal: the transaction is rolled back."""
    pass


class IndexBuildError(ImportPipelineError):
    """Raised when building a search index fails after the transform was committed.

    Attributes:
        index_name: Name of the index whose build failed
    """

    def __init__(self, message: str, index_name: Optional[str] = None):
        super().__init__(message)
        self.index_name = index_name


class ImportCancelledError(ImportPipelineError):
    """Raised when a run observes an external cancellation request at a file boundary."""
    pass


class InvalidStatusTransitionError(ImportPipelineError):
    """Raised when an import run is moved to a state its current state cannot reach."""

    def __init__(self, current: ImportStatus, requested: ImportStatus):
        super().__init__(f"Cannot transition import run from '{current.value}' to '{requested.value}'")
        self.current = current
        self.requested = requested


class StorageError(ImportPipelineError):
    """Raised when a storage operation outside the taxonomy above fails (connect, DDL, run records).

    Attributes:
        operation: The storage operation that failed
        details: Additional error details
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


# ============================================================================
# Source Port
# ============================================================================

@dataclass
class SourceEntry:
    """One tabular member of a source: a name and a lazily produced byte stream.

    The chunks iterator must be consumed (or drained) before the next entry of the
    same archive is requested; archive decompression is sequential. Archive members
    set `drain_on_close` so that closing an abandoned entry still advances the
    archive.
    """

    name: str
    chunks: Iterator[bytes]
    drain_on_close: bool = False

    def drain(self) -> int:
        """Discard whatever is left of the entry's content.

        Returns:
            Number of bytes discarded
        """
        discarded = 0
        for chunk in self.chunks:
            discarded += len(chunk)
        return discarded

    def close(self) -> None:
        """Release an entry whose content will not be read any further."""
        if self.drain_on_close:
            self.drain()
            return
        close = getattr(self.chunks, "close", None)
        if close is not None:
            close()


class ArchiveSourcePort(ABC):
    """Abstract contract for where raw unclaimed-property files come from.

    Key Principles:
        - Streaming: entries and their bytes are produced on demand
        - Filtered: only tabular (CSV) members are yielded; others are drained internally
        - Ordered: entries are yielded in discovery order
    """

    @abstractmethod
    def entries(self) -> Iterator[SourceEntry]:
        """Yield every tabular entry of the source, in discovery order.

        Raises:
            SourceUnavailableError: If a URL is unreachable or the path is missing/invalid
        """
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human-readable source descriptor stored on the import run record."""
        pass


# ============================================================================
# Storage Port
# ============================================================================

class PropertyStorePort(ABC):
    """Abstract contract for the relational store holding staging, final and run tables.

    The store owns a single connection for the duration of a run; every method
    runs on it, so calls are strictly sequential.
    """

    @abstractmethod
    def check_connection_health(self) -> bool:
        """Return True if the connection answers a trivial query."""
        pass

    @abstractmethod
    def configure_session(self) -> None:
        """Apply session parameters that speed up bulk loading and index builds."""
        pass

    @abstractmethod
    def prepare_schema(self) -> None:
        """Create the run table if missing and (re)create the staging table."""
        pass

    @abstractmethod
    def truncate_staging(self) -> None:
        """Empty the staging table."""
        pass

    @abstractmethod
    def copy_into_staging(self, stream: Union[TextIO, BinaryIO], source_name: str) -> int:
        """Bulk-copy one normalized CSV stream into the staging table.

        Returns:
            Number of rows copied

        Raises:
            BulkCopyError: If the bulk-copy protocol rejects the stream
        """
        pass

    @abstractmethod
    def count_staging(self) -> int:
        pass

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager wrapping a BEGIN/COMMIT, rolling back on any exception."""
        pass

    @abstractmethod
    def rebuild_final_table(self) -> int:
        """Drop, re-create and populate the final table from staging in one set-based operation.

        Returns:
            Number of rows in the final table

        Raises:
            TransformError: If the bulk operation fails
        """
        pass

    @abstractmethod
    def build_indexes(self) -> list[str]:
        """Refresh statistics and build the search indexes without blocking readers.

        Returns:
            Names of the indexes built (or already present)

        Raises:
            IndexBuildError: If an index cannot be built
        """
        pass

    @abstractmethod
    def create_import_run(self, source: str, status: ImportStatus) -> int:
        """Insert a run record and return its id."""
        pass

    @abstractmethod
    def update_import_run(self, run_id: int, **fields: Any) -> None:
        """Update columns of a run record (updated_at is refreshed automatically)."""
        pass

    @abstractmethod
    def get_import_run(self, run_id: int) -> Optional[ImportRunRecord]:
        pass

    @abstractmethod
    def list_import_runs(self, limit: int = 20) -> list[ImportRunRecord]:
        """Return the most recent run records, newest first."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass
