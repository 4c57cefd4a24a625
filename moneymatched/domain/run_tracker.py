"""Import Run Tracker - lifecycle state machine of one pipeline execution.

    pending -> in_progress -> {completed | completed_with_errors | failed | cancelled}

A run record is created when the run begins, mutated as it progresses, and never
changed again once it reaches a terminal state. `cancelled` is only entered through
an external cancellation request; the tracker notices it by re-reading the record.
"""

import logging
from typing import Optional

from moneymatched.domain.models import ImportRunRecord, ImportStatus
from moneymatched.domain.ports import InvalidStatusTransitionError, PropertyStorePort

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ImportStatus, frozenset[ImportStatus]] = {
    ImportStatus.PENDING: frozenset({
        ImportStatus.IN_PROGRESS,
        ImportStatus.FAILED,
        ImportStatus.CANCELLED,
    }),
    ImportStatus.IN_PROGRESS: frozenset({
        ImportStatus.COMPLETED,
        ImportStatus.COMPLETED_WITH_ERRORS,
        ImportStatus.FAILED,
        ImportStatus.CANCELLED,
    }),
}


def can_transition(current: ImportStatus, requested: ImportStatus) -> bool:
    """Return True if a run in `current` may move to `requested`."""
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def resolve_completion_status(failed_record_count: int, degraded: bool = False) -> ImportStatus:
    """Pick the terminal status of a run whose transform committed.

    Any failed record, failed file, or failed index build makes the run
    `completed_with_errors`; a clean run is `completed`.
    """
    if failed_record_count > 0 or degraded:
        return ImportStatus.COMPLETED_WITH_ERRORS
    return ImportStatus.COMPLETED


class ImportRunTracker:
    """Tracks one run's record through its lifecycle.

    Parameters:
        store: Storage port holding the run record table

    Example Usage:
        ```python
        tracker = ImportRunTracker(store)
        tracker.begin("https://example.gov/archive.zip")
        tracker.record_staged(1200)
        tracker.complete(successful_records=1100, failed_records=3)
        ```
    """

    def __init__(self, store: PropertyStorePort):
        self.store = store
        self.run_id: Optional[int] = None
        self.status: Optional[ImportStatus] = None

    def begin(self, source: str) -> int:
        """Create the run record (pending) and move it to in_progress."""
        self.run_id = self.store.create_import_run(source, ImportStatus.PENDING)
        self.status = ImportStatus.PENDING
        logger.info(f"Created import record with ID: {self.run_id}")
        self._transition(ImportStatus.IN_PROGRESS)
        return self.run_id

    def record_staged(self, total_records: int) -> None:
        self._require_run()
        self.store.update_import_run(self.run_id, total_records=total_records)

    def complete(
        self,
        successful_records: int,
        failed_records: int,
        degraded: bool = False,
        error_message: Optional[str] = None,
    ) -> ImportStatus:
        """Mark the run completed (or completed_with_errors) and record its counts.

        If the record reached a terminal state from outside in the meantime (a late
        cancellation request), that state is kept and returned.
        """
        if self.refresh() is not None and self.status.is_terminal:
            logger.warning(f"Import run {self.run_id} is already {self.status.value}; not completing it")
            return self.status
        status = resolve_completion_status(failed_records, degraded)
        fields = {
            "successful_records": successful_records,
            "failed_records": failed_records,
        }
        if error_message:
            fields["error_message"] = error_message
        self._transition(status, **fields)
        return status

    def fail(self, error_message: str, failed_records: Optional[int] = None) -> None:
        """Mark the run failed with the captured error message.

        A run that already reached a terminal state (e.g. cancelled from outside)
        keeps that state.
        """
        if self.run_id is None or (self.status is not None and self.status.is_terminal):
            return
        fields = {"error_message": error_message}
        if failed_records is not None:
            fields["failed_records"] = failed_records
        self._transition(ImportStatus.FAILED, **fields)

    def cancel(self, reason: Optional[str] = None) -> None:
        if self.status == ImportStatus.CANCELLED:
            return
        fields = {"error_message": reason} if reason else {}
        self._transition(ImportStatus.CANCELLED, **fields)

    def refresh(self) -> Optional[ImportStatus]:
        """Re-read the persisted status, picking up external cancellation requests."""
        if self.run_id is None:
            return self.status
        record = self.store.get_import_run(self.run_id)
        if record is not None:
            self.status = record.import_status
        return self.status

    def _require_run(self) -> None:
        if self.run_id is None:
            raise RuntimeError("Import run has not been started")

    def _transition(self, new_status: ImportStatus, **fields) -> None:
        self._require_run()
        if not can_transition(self.status, new_status):
            raise InvalidStatusTransitionError(self.status, new_status)
        self.store.update_import_run(self.run_id, import_status=new_status.value, **fields)
        self.status = new_status
        logger.info(f"Import run {self.run_id} is now {new_status.value}")


def request_cancellation(store: PropertyStorePort, run_id: int, reason: str = "Cancelled by operator") -> ImportRunRecord:
    """External cancellation request: move a non-terminal run to `cancelled`.

    Does not interrupt an in-flight bulk copy; the running pipeline observes the
    new state at its next file boundary.

    Raises:
        LookupError: If no run has the given id
        InvalidStatusTransitionError: If the run already finished
    """
    record = store.get_import_run(run_id)
    if record is None:
        raise LookupError(f"Import run {run_id} not found")
    if not can_transition(record.import_status, ImportStatus.CANCELLED):
        raise InvalidStatusTransitionError(record.import_status, ImportStatus.CANCELLED)
    store.update_import_run(run_id, import_status=ImportStatus.CANCELLED.value, error_message=reason)
    logger.info(f"Cancellation requested for import run {run_id}")
    return record.model_copy(update={"import_status": ImportStatus.CANCELLED, "error_message": reason})
