"""Unit tests for the import run state machine.

Tests cover:
- Allowed and rejected transitions
- Completion status policy
- Tracker lifecycle against the in-memory store
- External cancellation requests and how a running tracker observes them
"""

import pytest

from moneymatched.domain.models import ImportStatus
from moneymatched.domain.ports import InvalidStatusTransitionError
from moneymatched.domain.run_context import CancellationToken, RunContext, RunRecordCancellationToken
from moneymatched.domain.ports import ImportCancelledError
from moneymatched.domain.run_tracker import (
    ImportRunTracker,
    can_transition,
    request_cancellation,
    resolve_completion_status,
)


class TestTransitions:
    """Test the transition table."""

    @pytest.mark.parametrize("target", [
        ImportStatus.COMPLETED,
        ImportStatus.COMPLETED_WITH_ERRORS,
        ImportStatus.FAILED,
        ImportStatus.CANCELLED,
    ])
    def test_in_progress_reaches_every_terminal_state(self, target):
        assert can_transition(ImportStatus.IN_PROGRESS, target)

    @pytest.mark.parametrize("terminal", [
        ImportStatus.COMPLETED,
        ImportStatus.COMPLETED_WITH_ERRORS,
        ImportStatus.FAILED,
        ImportStatus.CANCELLED,
    ])
    def test_terminal_states_are_final(self, terminal):
        for target in ImportStatus:
            assert not can_transition(terminal, target)

    def test_pending_cannot_complete_directly(self):
        assert not can_transition(ImportStatus.PENDING, ImportStatus.COMPLETED)


class TestCompletionPolicy:
    """Test completed vs completed_with_errors."""

    def test_clean_run_is_completed(self):
        assert resolve_completion_status(0) == ImportStatus.COMPLETED

    def test_failed_records_mark_errors(self):
        assert resolve_completion_status(1) == ImportStatus.COMPLETED_WITH_ERRORS

    def test_degraded_run_marks_errors(self):
        assert resolve_completion_status(0, degraded=True) == ImportStatus.COMPLETED_WITH_ERRORS


class TestImportRunTracker:
    """Test the tracker lifecycle."""

    def test_begin_creates_pending_then_in_progress(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")

        assert tracker.status == ImportStatus.IN_PROGRESS
        assert fake_store.status_history == [
            (run_id, ImportStatus.PENDING),
            (run_id, ImportStatus.IN_PROGRESS),
        ]
        assert fake_store.runs[run_id].total_records is None

    def test_complete_records_counts(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")
        tracker.record_staged(10)
        status = tracker.complete(successful_records=8, failed_records=2)

        record = fake_store.runs[run_id]
        assert status == ImportStatus.COMPLETED_WITH_ERRORS
        assert record.import_status == ImportStatus.COMPLETED_WITH_ERRORS
        assert (record.total_records, record.successful_records, record.failed_records) == (10, 8, 2)

    def test_fail_records_message(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")
        tracker.fail("transform exploded", failed_records=3)

        record = fake_store.runs[run_id]
        assert record.import_status == ImportStatus.FAILED
        assert record.error_message == "transform exploded"
        assert record.failed_records == 3

    def test_fail_after_terminal_state_is_ignored(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")
        tracker.cancel("operator")
        tracker.fail("late error")

        assert fake_store.runs[run_id].import_status == ImportStatus.CANCELLED

    def test_fail_without_run_is_noop(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        tracker.fail("never started")
        assert fake_store.runs == {}

    def test_terminal_run_cannot_be_reopened(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        tracker.begin("memory://test")
        tracker.complete(successful_records=1, failed_records=0)

        with pytest.raises(InvalidStatusTransitionError):
            tracker.cancel()

    def test_complete_keeps_external_cancellation(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")
        request_cancellation(fake_store, run_id)

        status = tracker.complete(successful_records=5, failed_records=0)

        assert status == ImportStatus.CANCELLED
        assert fake_store.runs[run_id].import_status == ImportStatus.CANCELLED

    def test_record_staged_requires_started_run(self, fake_store):
        with pytest.raises(RuntimeError):
            ImportRunTracker(fake_store).record_staged(1)


class TestRequestCancellation:
    """Test the external cancellation entry point."""

    def test_cancels_in_progress_run(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")

        record = request_cancellation(fake_store, run_id, reason="stop")

        assert record.import_status == ImportStatus.CANCELLED
        assert fake_store.runs[run_id].error_message == "stop"

    def test_unknown_run_raises_lookup_error(self, fake_store):
        with pytest.raises(LookupError):
            request_cancellation(fake_store, 99)

    def test_finished_run_cannot_be_cancelled(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")
        tracker.complete(successful_records=1, failed_records=0)

        with pytest.raises(InvalidStatusTransitionError):
            request_cancellation(fake_store, run_id)


class TestCancellationTokens:
    """Test cooperative cancellation."""

    def test_plain_token(self):
        token = CancellationToken()
        assert not token.is_cancelled()
        token.cancel()
        assert token.is_cancelled()

    def test_run_record_token_sees_external_cancel(self, fake_store):
        tracker = ImportRunTracker(fake_store)
        run_id = tracker.begin("memory://test")
        token = RunRecordCancellationToken(tracker)

        assert not token.is_cancelled()
        request_cancellation(fake_store, run_id)
        assert token.is_cancelled()

    def test_context_raises_when_cancelled(self):
        context = RunContext(run_id=4)
        context.raise_if_cancelled()
        context.cancellation.cancel()

        with pytest.raises(ImportCancelledError, match="4"):
            context.raise_if_cancelled()
