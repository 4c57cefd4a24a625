"""Shared fixtures: an in-memory property store and in-memory archive sources.

The fake store mirrors the PostgreSQL adapter's observable behaviour closely
enough to exercise the orchestration end to end without a database: COPY
consumes the CSV text stream (an error raised while reading it surfaces as a
failed COPY, as it does through psycopg2), the transform applies the same owner-name
exclusion, key ordering and first-row-wins deduplication, and the transaction
context manager restores the previous final table on error.
"""

import csv
import io
import uuid
import zipfile
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

import pytest

from moneymatched.domain.models import ImportRunRecord, ImportStatus
from moneymatched.domain.ports import (
    ArchiveSourcePort,
    BulkCopyError,
    IndexBuildError,
    PropertyStorePort,
    SourceEntry,
    TransformError,
)


class FakePropertyStore(PropertyStorePort):
    """In-memory PropertyStorePort used by pipeline and CLI tests."""

    INDEX_NAMES = ["idx_cash", "idx_owner_tsv", "idx_holder_tsv"]

    def __init__(self):
        self.healthy = True
        self.staging: list[dict] = []
        self.final: list[dict] = []
        self.runs: dict[int, ImportRunRecord] = {}
        self.status_history: list[tuple[int, ImportStatus]] = []
        self.copy_failures: set[str] = set()
        self.fail_transform = False
        self.fail_indexes = False
        self.after_copy: Optional[Callable[[str], None]] = None
        self.calls: list[str] = []
        self.closed = False
        self._next_run_id = 1

    def check_connection_health(self) -> bool:
        self.calls.append("check_connection_health")
        return self.healthy

    def configure_session(self) -> None:
        self.calls.append("configure_session")

    def prepare_schema(self) -> None:
        self.calls.append("prepare_schema")

    def truncate_staging(self) -> None:
        self.calls.append("truncate_staging")
        self.staging.clear()

    def copy_into_staging(self, stream, source_name: str) -> int:
        self.calls.append(f"copy:{source_name}")
        try:
            text = stream.read()
        except Exception as e:
            # psycopg2 aborts the COPY and reports a read() error as a failed COPY
            raise BulkCopyError(f"COPY from stdin failed: error in .read() call: {e}", source=source_name) from e
        if source_name in self.copy_failures:
            raise BulkCopyError(f"invalid byte sequence in {source_name}", source=source_name)
        rows = list(csv.DictReader(io.StringIO(text)))
        self.staging.extend(rows)
        if self.after_copy is not None:
            self.after_copy(source_name)
        return len(rows)

    def count_staging(self) -> int:
        return len(self.staging)

    @contextmanager
    def transaction(self):
        snapshot = list(self.final)
        try:
            yield
        except BaseException:
            self.final = snapshot
            raise

    @staticmethod
    def _money(value: str) -> Decimal:
        try:
            return Decimal((value or "0").replace("$", "").replace(",", "")).quantize(Decimal("0.01"))
        except InvalidOperation:
            return Decimal("0.00")

    def rebuild_final_table(self) -> int:
        self.calls.append("rebuild_final_table")
        self.final = []
        if self.fail_transform:
            raise TransformError("duplicate key value violates unique constraint")
        candidates = [
            (index, row) for index, row in enumerate(self.staging)
            if (row.get("OWNER_NAME") or "").strip()
        ]
        candidates.sort(key=lambda item: (item[1].get("PROPERTY_ID") or "", item[1]["OWNER_NAME"], item[0]))
        seen = set()
        for _, row in candidates:
            key = (row.get("PROPERTY_ID") or "", row["OWNER_NAME"])
            if key in seen:
                continue
            seen.add(key)
            self.final.append({
                "id": (row.get("PROPERTY_ID") or "").strip() or str(uuid.uuid4()),
                "owner_name": row["OWNER_NAME"].strip(),
                "current_cash_balance": self._money(row.get("CURRENT_CASH_BALANCE", "")),
            })
        return len(self.final)

    def build_indexes(self) -> list[str]:
        self.calls.append("build_indexes")
        if self.fail_indexes:
            raise IndexBuildError("Failed to build index idx_owner_tsv: out of memory", index_name="idx_owner_tsv")
        return list(self.INDEX_NAMES)

    def create_import_run(self, source: str, status: ImportStatus) -> int:
        run_id = self._next_run_id
        self._next_run_id += 1
        self.runs[run_id] = ImportRunRecord(id=run_id, source_url=source, import_status=status)
        self.status_history.append((run_id, ImportStatus(status)))
        return run_id

    def update_import_run(self, run_id: int, **fields) -> None:
        if "import_status" in fields:
            fields["import_status"] = ImportStatus(fields["import_status"])
            self.status_history.append((run_id, fields["import_status"]))
        self.runs[run_id] = self.runs[run_id].model_copy(update=fields)

    def get_import_run(self, run_id: int) -> Optional[ImportRunRecord]:
        return self.runs.get(run_id)

    def list_import_runs(self, limit: int = 20) -> list[ImportRunRecord]:
        return [self.runs[k] for k in sorted(self.runs, reverse=True)][:limit]

    def close(self) -> None:
        self.closed = True


class InMemorySource(ArchiveSourcePort):
    """Archive source over a dict of file name -> bytes, chunked to exercise boundaries."""

    def __init__(self, files: dict, chunk_size: int = 7, name: str = "memory://test"):
        self.files = files
        self.chunk_size = chunk_size
        self.name = name

    def describe(self) -> str:
        return self.name

    def entries(self):
        for file_name, data in self.files.items():
            chunks = (data[i:i + self.chunk_size] for i in range(0, len(data), self.chunk_size))
            yield SourceEntry(name=file_name, chunks=chunks)


def build_zip(files: dict) -> bytes:
    """Build a ZIP archive in memory."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def fake_store():
    return FakePropertyStore()


@pytest.fixture
def make_source():
    def _make(files: dict, chunk_size: int = 7):
        return InMemorySource(files, chunk_size=chunk_size)
    return _make


@pytest.fixture
def zip_builder():
    return build_zip


@pytest.fixture
def scenario_csv() -> bytes:
    """Three rows: one exact duplicate and one without a property id."""
    return (
        b"PROPERTY_ID,OWNER_NAME,CURRENT_CASH_BALANCE\n"
        b"101,Alice,500.00\n"
        b"101,Alice,500.00\n"
        b",Bob,0\n"
    )
