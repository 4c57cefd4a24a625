"""Run-scoped state threaded through every pipeline stage.

Counters, the failure recorder and the cancellation token live on one RunContext
object created per run, instead of module-level globals, so runs can be tested
in isolation.
"""

from dataclasses import dataclass, field
from typing import Optional

from moneymatched.domain.failures import FailureRecorder
from moneymatched.domain.models import ImportStatus
from moneymatched.domain.ports import ImportCancelledError
from moneymatched.domain.run_tracker import ImportRunTracker


class CancellationToken:
    """Cooperative cancellation flag, checked by the pipeline between files."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        return self._cancelled


class RunRecordCancellationToken(CancellationToken):
    """Cancellation token that also honours a `cancelled` status set on the run record.

    This is how a `cancel` issued from another process reaches a running import.
    """

    def __init__(self, tracker: ImportRunTracker):
        super().__init__()
        self.tracker = tracker

    def is_cancelled(self) -> bool:
        if super().is_cancelled():
            return True
        return self.tracker.refresh() == ImportStatus.CANCELLED


@dataclass
class RunCounters:
    """Per-run counters.

    Files and their parsed records are credited only when their COPY committed;
    rejected rows count as soon as they are recorded.
    """
    files_processed: int = 0
    files_failed: int = 0
    rows_copied: int = 0
    records_parsed: int = 0
    records_failed: int = 0


@dataclass
class RunContext:
    """Accumulators and controls for one run."""
    recorder: FailureRecorder = field(default_factory=FailureRecorder)
    counters: RunCounters = field(default_factory=RunCounters)
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    run_id: Optional[int] = None

    def raise_if_cancelled(self) -> None:
        if self.cancellation.is_cancelled():
            raise ImportCancelledError(f"Import run {self.run_id} was cancelled")
