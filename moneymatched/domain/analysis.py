"""Duplicate-key analysis over normalized records.

Used by the database-free `analyze` command to predict what the Stage-to-Final
transform will do: how many rows it will drop for a blank owner name, how many
(property id, owner name) duplicates it will collapse, and how many rows the
final table will hold.

Memory Impact:
    - Keeps one counter per distinct (property id, owner name) key
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Mapping


@dataclass
class FileAnalysis:
    """Per-file parse statistics."""
    name: str
    records_parsed: int = 0
    records_failed: int = 0


@dataclass
class KeyAnalysis:
    """Aggregate key statistics over every analyzed record."""
    total_rows: int = 0
    blank_owner_rows: int = 0
    duplicate_rows: int = 0
    distinct_keys: int = 0
    top_duplicates: list[tuple[tuple[str, str], int]] = field(default_factory=list)

    @property
    def projected_final_count(self) -> int:
        return self.distinct_keys


@dataclass
class SourceAnalysis:
    """Result of a database-free dry run over one source."""
    source: str
    files: list[FileAnalysis] = field(default_factory=list)
    keys: KeyAnalysis = field(default_factory=KeyAnalysis)

    @property
    def records_failed(self) -> int:
        return sum(f.records_failed for f in self.files)


class DuplicateKeyAnalyzer:
    """Counts rows per deduplication key, mirroring the transform's rules.

    Rows whose owner name is blank are excluded (they never reach the final table);
    every other row is keyed by its exact (PROPERTY_ID, OWNER_NAME) values.
    """

    def __init__(self) -> None:
        self._counts: Counter = Counter()
        self._total = 0
        self._blank_owner = 0

    def add(self, record: Mapping[str, str]) -> None:
        self._total += 1
        owner = (record.get("OWNER_NAME") or "").strip()
        if not owner:
            self._blank_owner += 1
            return
        self._counts[(record.get("PROPERTY_ID") or "", record.get("OWNER_NAME") or "")] += 1

    def summary(self, top_n: int = 5) -> KeyAnalysis:
        keyed_rows = sum(self._counts.values())
        duplicates = [(key, count) for key, count in self._counts.most_common(top_n) if count > 1]
        return KeyAnalysis(
            total_rows=self._total,
            blank_owner_rows=self._blank_owner,
            duplicate_rows=keyed_rows - len(self._counts),
            distinct_keys=len(self._counts),
            top_duplicates=duplicates,
        )
