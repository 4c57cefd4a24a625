"""Failed-records Report Writer.

Flushes a run's Failed-record entries to one timestamped plain-text file so that
rejected rows can be inspected and repaired offline.

The report is written on every terminal path of a run. Writing it never raises:
a failure here is logged and returned as a failure Result, so it cannot mask the
run's real outcome.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

from moneymatched.domain.failures import FailedRecord
from moneymatched.domain.ports import Result

logger = logging.getLogger(__name__)

SECTION_RULE = "=" * 80
ENTRY_RULE = "-" * 40


def _serialize_data(data) -> str:
    """Best-effort JSON rendering of a partially parsed record."""
    if data is None:
        return "N/A"
    try:
        return json.dumps(data, indent=2, default=str)
    except (TypeError, ValueError):
        return repr(data)


def render_failure_report(entries: Iterable[FailedRecord], generated_at: datetime) -> str:
    """Render entries in the report's plain-text layout."""
    entries = list(entries)
    lines = [
        f"Failed Records Report - {generated_at.isoformat()}",
        f"Total Failed Records: {len(entries)}",
        SECTION_RULE,
        "",
    ]
    for index, entry in enumerate(entries, start=1):
        lines.extend([
            f"Record {index}:",
            f"  File: {entry.file}",
            f"  Line: {entry.line if entry.line is not None else 'unknown'}",
            f"  Error: {entry.error}",
            f"  Data: {_serialize_data(entry.data)}",
            ENTRY_RULE,
            "",
        ])
    return "\n".join(lines)


def write_failure_report(
    entries: Iterable[FailedRecord],
    output_dir: Union[str, Path],
    now: Optional[datetime] = None,
) -> Result[Path]:
    """Write a failed-records report to `output_dir`.

    Parameters:
        entries: Failed-record entries in the order they were recorded
        output_dir: Directory for the report (created if missing)
        now: Report timestamp (default: current UTC time)

    Returns:
        Result[Path]: Path of the written report, or a failure describing why it
        could not be written
    """
    generated_at = now or datetime.now(timezone.utc)
    try:
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        stamp = generated_at.strftime("%Y-%m-%dT%H-%M-%S-%f")
        report_file = output_path / f"failed_records_{stamp}.txt"
        report_file.write_text(render_failure_report(entries, generated_at), encoding="utf-8")
        logger.info(f"Failed records report written to {report_file}")
        return Result.success_result(report_file)
    except Exception as e:
        logger.error(f"Failed to write failed records report to {output_dir}: {str(e)}", exc_info=True)
        return Result.failure_result(e, error_details={"output_dir": str(output_dir)})
