"""Failed-record entries and the run-scoped Failure Recorder.

Every row or file that could not be parsed or loaded becomes a FailedRecord.
The recorder is created per run and passed to each stage through the run
context, so concurrent test runs never share failure state.

Memory Impact:
    - Entries accumulate in memory for the whole run; an input with a very
      high failure rate grows this list without bound
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from moneymatched.domain.ports import Result

logger = logging.getLogger(__name__)

COPY_OPERATION = "COPY operation"


@dataclass(frozen=True)
class FailedRecord:
    """One row or file that failed to parse or load.

    Attributes:
        file: Source file name
        line: 1-based data-row position, or "COPY operation" for file-level load failures
        error: Error description
        data: Partially parsed record, when available
    """
    file: str
    line: Optional[Union[int, str]]
    error: str
    data: Optional[dict[str, Any]] = None


class FailureRecorder:
    """Ordered, in-memory accumulator of FailedRecord entries for one run."""

    def __init__(self) -> None:
        self._entries: list[FailedRecord] = []

    def record(
        self,
        file: str,
        line: Optional[Union[int, str]],
        error: str,
        data: Optional[dict[str, Any]] = None,
    ) -> FailedRecord:
        entry = FailedRecord(file=file, line=line, error=error, data=data)
        self._entries.append(entry)
        logger.debug(f"Recorded failure in {file} at {line}: {error}")
        return entry

    def record_result(self, result: Result) -> FailedRecord:
        """Record a failure Result produced by the normalizer."""
        details = result.error_details or {}
        return self.record(
            file=details.get("file", "unknown"),
            line=details.get("line"),
            error=f"{result.error_type}: {result.error}",
            data=details.get("data"),
        )

    def record_copy_failure(self, file: str, error: Union[str, Exception]) -> FailedRecord:
        """Record a bulk-copy failure at file granularity."""
        return self.record(file=file, line=COPY_OPERATION, error=f"Database COPY error: {error}")

    @property
    def entries(self) -> list[FailedRecord]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[FailedRecord]:
        return iter(self._entries)

    def clear(self) -> None:
        self._entries.clear()
