"""Import Run Models.

Pydantic models describing one execution of the import pipeline: the persisted
run record and the summary reported to the operator when a run ends.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Validated at construction (Pydantic V2)
    - ImportStatus values are the exact strings stored in the run record table
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ImportStatus(str, Enum):
    """Lifecycle states of one import run."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ImportStatus.COMPLETED,
    ImportStatus.COMPLETED_WITH_ERRORS,
    ImportStatus.FAILED,
    ImportStatus.CANCELLED,
})


class ImportRunRecord(BaseModel):
    """One row of the import run table.

    Parameters:
        id: Database identifier of the run
        source_url: Source descriptor (archive URLs or local directory)
        total_records: Rows staged; None until staging completes
        successful_records: Rows in the final table after the transform
        failed_records: Failed-record entries collected during the run
        import_status: Current lifecycle state
        error_message: Captured error for failed or degraded runs
        created_at: Row creation time
        updated_at: Last mutation time
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    source_url: str
    total_records: Optional[int] = None
    successful_records: int = 0
    failed_records: int = 0
    import_status: ImportStatus = ImportStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RunSummary(BaseModel):
    """Operator-facing summary of a finished (or aborted) run."""

    run_id: Optional[int] = None
    source: str
    status: ImportStatus
    staged_count: int = 0
    final_count: int = 0
    files_processed: int = 0
    files_failed: int = 0
    failed_record_count: int = 0
    indexes_built: list[str] = Field(default_factory=list)
    index_error: Optional[str] = None
    error_message: Optional[str] = None
    report_path: Optional[Path] = None

    @property
    def success_rate(self) -> Optional[float]:
        """Final rows as a percentage of staged rows (None when nothing was staged)."""
        if self.staged_count <= 0:
            return None
        return (self.final_count / self.staged_count) * 100
