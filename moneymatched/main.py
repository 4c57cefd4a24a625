"""Import pipeline orchestration.

Wires an archive source, the Tolerant CSV Normalizer and a property store into
one run:

    prepare -> stage every file (COPY) -> transform (one transaction) -> index

The run record tracks the lifecycle, the run context collects failures, and the
failed-records report is written on every terminal path.

Architecture:
    - Follows Hexagonal Architecture principles: only ports are used here
    - Single-threaded; each stage pulls from the one before it
    - Files are staged strictly one at a time, in discovery order
"""

import logging
from pathlib import Path
from typing import Optional, Union

from moneymatched.adapters.normalizer import CopyStream, TolerantCSVNormalizer
from moneymatched.adapters.storage import PostgreSQLAdapter
from moneymatched.domain.analysis import DuplicateKeyAnalyzer, FileAnalysis, SourceAnalysis
from moneymatched.domain.models import ImportStatus, RunSummary
from moneymatched.domain.ports import (
    ArchiveSourcePort,
    BulkCopyError,
    ImportCancelledError,
    IndexBuildError,
    PropertyStorePort,
    SourceEntry,
    StorageError,
)
from moneymatched.domain.run_context import RunContext, RunRecordCancellationToken
from moneymatched.domain.run_tracker import ImportRunTracker
from moneymatched.infrastructure.config_manager import ConnectionProfile
from moneymatched.infrastructure.failure_report import write_failure_report
from moneymatched.infrastructure.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_storage_adapter(
    profile: ConnectionProfile = ConnectionProfile.PRODUCTION,
    settings: Optional[Settings] = None,
) -> PropertyStorePort:
    """Create the PostgreSQL adapter for a connection profile.

    Raises:
        pydantic.ValidationError: If the profile's configuration is incomplete
    """
    settings = settings or get_settings()
    db_config = settings.db_config(profile)
    logger.info(f"Initializing PostgreSQL adapter ({db_config.profile.value}) with host: {db_config.host}")
    return PostgreSQLAdapter(
        db_config=db_config,
        copy_buffer_size=settings.copy_buffer_size,
        work_mem=settings.work_mem,
        maintenance_work_mem=settings.maintenance_work_mem,
    )


def create_normalizer(settings: Optional[Settings] = None) -> TolerantCSVNormalizer:
    settings = settings or get_settings()
    return TolerantCSVNormalizer(encoding=settings.csv_encoding, max_field_size=settings.max_field_size)


def stage_entry(
    entry: SourceEntry,
    store: PropertyStorePort,
    normalizer: TolerantCSVNormalizer,
    context: RunContext,
) -> Optional[int]:
    """Normalize one entry and COPY it into staging.

    A COPY failure is recorded at file granularity and the entry is closed so the
    source can advance; neither the file nor its parsed rows are then credited.

    Returns:
        Rows copied, or None if the COPY failed

    Raises:
        SourceUnavailableError: If the source broke while the COPY was reading it
    """
    stream = CopyStream(normalizer.normalize(entry.name, entry.chunks), context.recorder)
    try:
        rows = store.copy_into_staging(stream, entry.name)
    except BulkCopyError as e:
        if stream.source_error is not None:
            raise stream.source_error
        logger.error(f"Error processing {entry.name}: {str(e)}")
        context.recorder.record_copy_failure(entry.name, e)
        context.counters.files_failed += 1
        context.counters.records_failed += stream.records_failed
        entry.close()
        return None

    context.counters.files_processed += 1
    context.counters.rows_copied += rows
    context.counters.records_parsed += stream.records_written
    context.counters.records_failed += stream.records_failed
    if stream.records_failed:
        logger.warning(f"Completed {entry.name} with {stream.records_failed} rejected rows")
    else:
        logger.info(f"Completed {entry.name}")
    return rows


def _mark_failed(tracker: ImportRunTracker, message: str, failed_records: int) -> None:
    """Mark the run failed without letting a tracking error replace the original one."""
    try:
        tracker.fail(message, failed_records=failed_records)
    except Exception as e:
        logger.error(f"Could not mark import run {tracker.run_id} as failed: {str(e)}")


def process_import(
    source: ArchiveSourcePort,
    store: PropertyStorePort,
    context: Optional[RunContext] = None,
    normalizer: Optional[TolerantCSVNormalizer] = None,
    report_dir: Optional[Union[str, Path]] = None,
    settings: Optional[Settings] = None,
) -> RunSummary:
    """Run the import pipeline from source to indexed final table.

    Parameters:
        source: Where the CSV files come from
        store: Relational store holding the staging, final and run tables
        context: Run-scoped accumulators; by default one whose cancellation token
            polls the run record
        normalizer: CSV normalizer (default built from settings)
        report_dir: Failed-records report directory (default from settings)
        settings: Application settings

    Returns:
        RunSummary: Outcome of the run. Fatal errors are logged and reported as a
        `failed` status rather than raised.

    Raises:
        KeyboardInterrupt: Re-raised after the run is marked failed and the report written
    """
    settings = settings or get_settings()
    normalizer = normalizer or create_normalizer(settings)
    report_dir = report_dir if report_dir is not None else settings.failure_report_dir
    tracker = ImportRunTracker(store)
    context = context or RunContext(cancellation=RunRecordCancellationToken(tracker))
    summary = RunSummary(source=source.describe(), status=ImportStatus.PENDING)

    try:
        if not store.check_connection_health():
            raise StorageError("Database connection health check failed", operation="health_check")
        store.configure_session()
        store.prepare_schema()
        store.truncate_staging()

        context.run_id = tracker.begin(summary.source)
        summary.run_id = context.run_id

        entries = source.entries()
        while True:
            context.raise_if_cancelled()
            entry = next(entries, None)
            if entry is None:
                break
            stage_entry(entry, store, normalizer, context)

        staged = store.count_staging()
        tracker.record_staged(staged)
        summary.staged_count = staged
        logger.info(f"Total records in staging: {staged}")

        context.raise_if_cancelled()
        with store.transaction():
            summary.final_count = store.rebuild_final_table()

        try:
            summary.indexes_built = store.build_indexes()
        except IndexBuildError as e:
            logger.error(f"Index build failed after the load was committed: {str(e)}")
            summary.index_error = str(e)

        degraded = context.counters.files_failed > 0 or summary.index_error is not None
        summary.status = tracker.complete(
            successful_records=summary.final_count,
            failed_records=len(context.recorder),
            degraded=degraded,
            error_message=summary.index_error,
        )
        logger.info(
            f"Import {summary.status.value}: {summary.staged_count} staged, "
            f"{summary.final_count} final, {len(context.recorder)} failed records"
        )

    except ImportCancelledError as e:
        logger.warning(str(e))
        summary.status = ImportStatus.CANCELLED
        summary.error_message = str(e)
        try:
            tracker.cancel(str(e))
        except Exception as track_error:
            logger.error(f"Could not mark import run {tracker.run_id} as cancelled: {str(track_error)}")

    except KeyboardInterrupt:
        summary.status = ImportStatus.FAILED
        summary.error_message = "Import interrupted by operator"
        _mark_failed(tracker, summary.error_message, len(context.recorder))
        raise

    except Exception as e:
        logger.error(f"Import failed: {str(e)}", exc_info=True)
        summary.status = ImportStatus.FAILED
        summary.error_message = str(e)
        _mark_failed(tracker, str(e), len(context.recorder))

    finally:
        summary.files_processed = context.counters.files_processed
        summary.files_failed = context.counters.files_failed
        summary.failed_record_count = len(context.recorder)
        report = write_failure_report(context.recorder.entries, report_dir)
        if report.is_success():
            summary.report_path = report.value

    return summary


def analyze_sources(
    source: ArchiveSourcePort,
    context: Optional[RunContext] = None,
    normalizer: Optional[TolerantCSVNormalizer] = None,
    top_n: int = 5,
) -> SourceAnalysis:
    """Dry run: parse every file and predict the transform's outcome, without a database.

    Parameters:
        source: Where the CSV files come from
        context: Run context collecting failures (a fresh one by default)
        normalizer: CSV normalizer (default built from settings)
        top_n: Number of most duplicated keys to report

    Raises:
        SourceUnavailableError: If the source cannot be read
    """
    context = context or RunContext()
    normalizer = normalizer or create_normalizer()
    analyzer = DuplicateKeyAnalyzer()
    analysis = SourceAnalysis(source=source.describe())

    for entry in source.entries():
        context.raise_if_cancelled()
        file_stats = FileAnalysis(name=entry.name)
        for result in normalizer.normalize(entry.name, entry.chunks):
            if result.is_success():
                file_stats.records_parsed += 1
                context.counters.records_parsed += 1
                analyzer.add(result.value)
            else:
                file_stats.records_failed += 1
                context.counters.records_failed += 1
                context.recorder.record_result(result)
        context.counters.files_processed += 1
        analysis.files.append(file_stats)
        logger.info(
            f"Analyzed {entry.name}: {file_stats.records_parsed} parsed, {file_stats.records_failed} failed"
        )

    analysis.keys = analyzer.summary(top_n)
    return analysis
