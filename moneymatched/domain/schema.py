"""Canonical Column Schema for Unclaimed Property Records.

This module defines the fixed, ordered column list that every staged and final
unclaimed-property record conforms to, along with how each staging column maps
onto the typed final table.

Architecture:
    - Pure domain definitions with zero infrastructure dependencies
    - Column order matters: the bulk-copy protocol binds values positionally
    - Field kinds drive the type-coercion rules of the Stage-to-Final transform
"""

from dataclasses import dataclass
from enum import Enum


class FieldKind(str, Enum):
    """How a staging text column is coerced when copied into the final table."""
    KEY = "key"
    TEXT = "text"
    REQUIRED_TEXT = "required_text"
    NUMERIC = "numeric"
    INTEGER = "integer"
    OWNER_COUNT = "owner_count"


@dataclass(frozen=True)
class ColumnSpec:
    """One canonical column.

    Attributes:
        staging_name: Upper-case column name as published in the source CSV header
        final_name: Column name in the final structured table
        kind: Coercion rule applied by the Stage-to-Final transform
    """
    staging_name: str
    final_name: str
    kind: FieldKind


COLUMN_SPECS: tuple[ColumnSpec, ...] = (
    ColumnSpec("PROPERTY_ID", "id", FieldKind.KEY),
    ColumnSpec("PROPERTY_TYPE", "property_type", FieldKind.TEXT),
    ColumnSpec("CASH_REPORTED", "cash_reported", FieldKind.NUMERIC),
    ColumnSpec("SHARES_REPORTED", "shares_reported", FieldKind.NUMERIC),
    ColumnSpec("NAME_OF_SECURITIES_REPORTED", "name_of_securities_reported", FieldKind.TEXT),
    ColumnSpec("NO_OF_OWNERS", "number_of_owners", FieldKind.OWNER_COUNT),
    ColumnSpec("OWNER_NAME", "owner_name", FieldKind.REQUIRED_TEXT),
    ColumnSpec("OWNER_STREET_1", "owner_street_1", FieldKind.TEXT),
    ColumnSpec("OWNER_STREET_2", "owner_street_2", FieldKind.TEXT),
    ColumnSpec("OWNER_STREET_3", "owner_street_3", FieldKind.TEXT),
    ColumnSpec("OWNER_CITY", "owner_city", FieldKind.TEXT),
    ColumnSpec("OWNER_STATE", "owner_state", FieldKind.TEXT),
    ColumnSpec("OWNER_ZIP", "owner_zip", FieldKind.TEXT),
    ColumnSpec("OWNER_COUNTRY_CODE", "owner_country_code", FieldKind.TEXT),
    ColumnSpec("CURRENT_CASH_BALANCE", "current_cash_balance", FieldKind.NUMERIC),
    ColumnSpec("NUMBER_OF_PENDING_CLAIMS", "number_of_pending_claims", FieldKind.INTEGER),
    ColumnSpec("NUMBER_OF_PAID_CLAIMS", "number_of_paid_claims", FieldKind.INTEGER),
    ColumnSpec("HOLDER_NAME", "holder_name", FieldKind.REQUIRED_TEXT),
    ColumnSpec("HOLDER_STREET_1", "holder_street_1", FieldKind.TEXT),
    ColumnSpec("HOLDER_STREET_2", "holder_street_2", FieldKind.TEXT),
    ColumnSpec("HOLDER_STREET_3", "holder_street_3", FieldKind.TEXT),
    ColumnSpec("HOLDER_CITY", "holder_city", FieldKind.TEXT),
    ColumnSpec("HOLDER_STATE", "holder_state", FieldKind.TEXT),
    ColumnSpec("HOLDER_ZIP", "holder_zip", FieldKind.TEXT),
    ColumnSpec("CUSIP", "cusip", FieldKind.TEXT),
)

# Ordered canonical staging columns (bulk-copy column order)
CANONICAL_COLUMNS: tuple[str, ...] = tuple(spec.staging_name for spec in COLUMN_SPECS)

FINAL_COLUMNS: tuple[str, ...] = tuple(spec.final_name for spec in COLUMN_SPECS)

# Deduplication key of the final table, as staging column names
KEY_COLUMNS: tuple[str, str] = ("PROPERTY_ID", "OWNER_NAME")

STAGING_TABLE = "raw_unclaimed_properties"
FINAL_TABLE = "unclaimed_properties"
IMPORT_RUNS_TABLE = "data_imports"

TABULAR_EXTENSION = ".csv"


def normalize_header(name: object) -> str:
    """Normalize a CSV header cell for matching against the canonical columns.

    Strips a leading byte-order mark and surrounding whitespace, then upper-cases.
    """
    return str(name or "").lstrip("\ufeff").strip().upper()


def is_tabular_name(name: str) -> bool:
    """Return True if an archive entry or file name is a tabular data file."""
    return name.lower().endswith(TABULAR_EXTENSION)
