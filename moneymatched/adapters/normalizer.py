"""Tolerant CSV Normalizer.

Turns one raw CSV byte stream of unknown or inconsistent shape into records
conforming exactly to the canonical column schema, then re-serializes them as the
CSV text the PostgreSQL COPY command ingests.

The chain is pull-based and lazy end to end:

    byte chunks -> incremental decode -> physical lines -> repair rules
                -> csv tokenizer -> canonical projection -> Result per row
                -> CopyStream.read()

Security Impact:
    - A malformed row becomes a failure Result; it never aborts the file
    - Oversized fields are rejected by the tokenizer's field size limit

Memory Impact:
    - Holds at most one partial line, one record and one COPY read buffer
      at a time, regardless of file size
"""

import codecs
import csv
import logging
from typing import Iterable, Iterator, Optional, Sequence

from moneymatched.domain.failures import FailureRecorder
from moneymatched.domain.ports import RecordParseError, Result, SourceUnavailableError
from moneymatched.domain.repair_rules import REPAIR_RULES, RepairRule, repair_lines
from moneymatched.domain.schema import CANONICAL_COLUMNS, normalize_header

logger = logging.getLogger(__name__)

DEFAULT_MAX_FIELD_SIZE = 1024 * 1024


def quote_value(value: str) -> str:
    """Quote one COPY value: non-empty values are always quoted, empty values never are.

    With COPY's `NULL ''`, an unquoted empty value is NULL while `""` would be an
    empty string; staging keeps blanks as NULL.
    """
    if not value:
        return ""
    return '"' + value.replace('"', '""') + '"'


def format_copy_row(values: Iterable[str]) -> str:
    return ",".join(quote_value(v) for v in values) + "\n"


class TolerantCSVNormalizer:
    """Permissive CSV parser that projects every row onto the canonical columns.

    Key Features:
        - Pre-parse repair rules for known source corruption
        - Leading byte-order mark tolerated; header names trimmed and upper-cased
        - Short rows padded with empty strings; unknown columns dropped
        - Rows with more fields than the header become failures
        - Every row yields a Result; a bad row never stops the stream

    Parameters:
        columns: Output column order
        rules: Repair rules applied to each physical line before tokenizing
        encoding: Text encoding of the source files
        max_field_size: Largest single field the tokenizer accepts, in characters
    """

    def __init__(
        self,
        columns: Sequence[str] = CANONICAL_COLUMNS,
        rules: Sequence[RepairRule] = REPAIR_RULES,
        encoding: str = "utf-8",
        max_field_size: int = DEFAULT_MAX_FIELD_SIZE,
    ):
        self.columns = tuple(columns)
        self.rules = tuple(rules)
        # utf-8-sig drops a leading BOM and decodes the rest as utf-8
        self.encoding = "utf-8-sig" if codecs.lookup(encoding).name == "utf-8" else encoding
        self.max_field_size = max_field_size

    def decode_lines(self, chunks: Iterable[bytes]) -> Iterator[str]:
        """Incrementally decode byte chunks and yield physical lines (with their newline).

        Undecodable bytes are replaced rather than raised, so one bad byte costs at
        most one row.
        """
        decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        pending = ""
        for chunk in chunks:
            if not chunk:
                continue
            pending += decoder.decode(chunk)
            if "\n" not in pending:
                continue
            *complete, pending = pending.split("\n")
            for line in complete:
                yield line + "\n"
        pending += decoder.decode(b"", final=True)
        if pending:
            yield pending

    def normalize(self, source_name: str, chunks: Iterable[bytes]) -> Iterator[Result[dict]]:
        """Lazily yield one Result per data row of a CSV byte stream.

        Parameters:
            source_name: File name carried into failure details
            chunks: Raw bytes of the file

        Yields:
            Result[dict]: A canonical record (every column present, in order) on
            success; a RecordParseError failure carrying file, line and the
            partially parsed data otherwise
        """
        lines = repair_lines(self.decode_lines(chunks), self.rules)
        reader = csv.reader(lines, strict=False, skipinitialspace=False)

        header: Optional[list[str]] = None
        positions: list[tuple[int, str]] = []
        wanted = set(self.columns)
        row_number = 0

        while True:
            try:
                row = self._next_row(reader)
            except StopIteration:
                break
            except csv.Error as e:
                # The reader resets its state and resumes at the next line
                line = None
                if header is not None:
                    row_number += 1
                    line = row_number
                yield self._failure(
                    RecordParseError(f"CSV parse error: {e}", source=source_name, line=line),
                    source_name,
                    line,
                    None,
                )
                continue

            if not any(cell.strip() for cell in row):
                continue

            if header is None:
                header = [normalize_header(cell) for cell in row]
                positions = self._map_header(header, wanted)
                if not positions:
                    logger.warning(f"No known columns in header of {source_name}: {header}")
                continue

            row_number += 1
            try:
                if len(row) > len(header):
                    data = dict(zip(header, row))
                    data["_extra_fields"] = row[len(header):]
                    yield self._failure(
                        RecordParseError(
                            f"Row has {len(row)} fields, header has {len(header)}",
                            source=source_name,
                            line=row_number,
                            raw_data=data,
                        ),
                        source_name,
                        row_number,
                        data,
                    )
                    continue
                yield Result.success_result(self._project(row, positions))
            except Exception as e:
                yield self._failure(
                    RecordParseError(f"Normalization error: {e}", source=source_name, line=row_number),
                    source_name,
                    row_number,
                    dict(zip(header, row)),
                )

    def _next_row(self, reader) -> list[str]:
        """Tokenize one record under this normalizer's field size limit.

        The csv module keeps a single process-wide limit, so it is set around each
        read and restored before control returns to the caller.
        """
        previous = csv.field_size_limit(self.max_field_size)
        try:
            return next(reader)
        finally:
            csv.field_size_limit(previous)

    def _map_header(self, header: list[str], wanted: set) -> list[tuple[int, str]]:
        """Map canonical column names to their first position in the header."""
        seen = set()
        positions = []
        for index, name in enumerate(header):
            if name in wanted and name not in seen:
                positions.append((index, name))
                seen.add(name)
        return positions

    def _project(self, row: list[str], positions: list[tuple[int, str]]) -> dict:
        record = dict.fromkeys(self.columns, "")
        for index, name in positions:
            if index < len(row):
                record[name] = row[index].strip()
        return record

    @staticmethod
    def _failure(error: RecordParseError, source_name: str, line: Optional[int], data: Optional[dict]) -> Result[dict]:
        logger.debug(f"Rejected row {line} of {source_name}: {error}")
        return Result.failure_result(
            error,
            error_type="RecordParseError",
            error_details={"file": source_name, "line": line, "data": data},
        )


class CopyStream:
    """File-like view of normalized records in COPY CSV format.

    psycopg2's `copy_expert` pulls from `read(size)`; each call pulls only as many
    records from the normalizer as it needs, so the database sets the pace of the
    whole chain. The first line is the header row. Failure Results are diverted to
    the run's FailureRecorder as they pass.

    psycopg2 reports any exception raised by `read()` as a failed COPY, so a
    SourceUnavailableError from upstream is kept on `source_error` for the caller
    to tell a broken source apart from a rejected COPY.

    Parameters:
        results: Result stream from TolerantCSVNormalizer.normalize
        recorder: Run-scoped failure recorder
        columns: Column order of the output
    """

    def __init__(
        self,
        results: Iterable[Result[dict]],
        recorder: FailureRecorder,
        columns: Sequence[str] = CANONICAL_COLUMNS,
    ):
        self.recorder = recorder
        self.columns = tuple(columns)
        self.records_written = 0
        self.records_failed = 0
        self._lines = self._render(results)
        self._buffer = ""
        self._exhausted = False
        self.source_error: Optional[SourceUnavailableError] = None

    def _render(self, results: Iterable[Result[dict]]) -> Iterator[str]:
        yield ",".join(self.columns) + "\n"
        for result in results:
            if result.is_success():
                self.records_written += 1
                yield format_copy_row(result.value[column] for column in self.columns)
            else:
                self.records_failed += 1
                self.recorder.record_result(result)

    def _fill(self, size: int) -> None:
        pieces = [self._buffer]
        filled = len(self._buffer)
        while (size < 0 or filled < size) and not self._exhausted:
            try:
                line = next(self._lines)
            except StopIteration:
                self._exhausted = True
                break
            except SourceUnavailableError as e:
                self.source_error = e
                self._exhausted = True
                raise
            pieces.append(line)
            filled += len(line)
        self._buffer = "".join(pieces)

    def read(self, size: int = -1) -> str:
        if size is None:
            size = -1
        self._fill(size)
        if size < 0:
            data, self._buffer = self._buffer, ""
        else:
            data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def readline(self, size: int = -1) -> str:
        while "\n" not in self._buffer and not self._exhausted:
            self._fill(len(self._buffer) + 1)
        end = self._buffer.find("\n") + 1 or len(self._buffer)
        if 0 <= size < end:
            end = size
        line, self._buffer = self._buffer[:end], self._buffer[end:]
        return line
