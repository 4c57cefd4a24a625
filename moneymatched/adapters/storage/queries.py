"""SQL text for the PostgreSQL storage adapter.

Every statement the pipeline issues is built here from the canonical column
schema, so the staging table, the COPY column list, the final table and the
Stage-to-Final projection can never drift apart.
"""

from moneymatched.domain.schema import (
    COLUMN_SPECS,
    FINAL_TABLE,
    IMPORT_RUNS_TABLE,
    KEY_COLUMNS,
    STAGING_TABLE,
    ColumnSpec,
    FieldKind,
)

# A numeric cell is cast only when it is a plain decimal after dropping "$" and ",",
# and only when it fits its column: DECIMAL(15,2) holds 13 integer digits, and a
# 13-digit value with more than two decimals could round up to 14. INTEGER is
# bounded at 9 digits. Anything else coerces to 0.
NUMERIC_PATTERN = r'^-?([0-9]{1,13}(\.[0-9]{1,2})?|[0-9]{1,12}\.[0-9]+)$'
INTEGER_PATTERN = r'^-?[0-9]{1,9}$'

FINAL_COLUMN_TYPES = {
    FieldKind.KEY: "TEXT",
    FieldKind.TEXT: "TEXT",
    FieldKind.REQUIRED_TEXT: "TEXT NOT NULL",
    FieldKind.NUMERIC: "DECIMAL(15,2)",
    FieldKind.INTEGER: "INTEGER",
    FieldKind.OWNER_COUNT: "TEXT DEFAULT '1'",
}


def _staging_column_list() -> str:
    return ", ".join(spec.staging_name for spec in COLUMN_SPECS)


def _final_column_list() -> str:
    return ", ".join(spec.final_name for spec in COLUMN_SPECS)


# ============================================================================
# Schema
# ============================================================================

CREATE_IMPORT_RUNS_TABLE = f"""
CREATE TABLE IF NOT EXISTS {IMPORT_RUNS_TABLE} (
    id SERIAL PRIMARY KEY,
    source_url TEXT NOT NULL,
    total_records INTEGER,
    successful_records INTEGER NOT NULL DEFAULT 0,
    failed_records INTEGER NOT NULL DEFAULT 0,
    import_status TEXT NOT NULL DEFAULT 'pending',
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

DROP_STAGING_TABLE = f"DROP TABLE IF EXISTS {STAGING_TABLE}"

CREATE_STAGING_TABLE = (
    f"CREATE UNLOGGED TABLE {STAGING_TABLE} (\n"
    + ",\n".join(f"    {spec.staging_name} TEXT" for spec in COLUMN_SPECS)
    + "\n)"
)

TRUNCATE_STAGING_TABLE = f"TRUNCATE TABLE {STAGING_TABLE}"

COUNT_STAGING = f"SELECT COUNT(*) FROM {STAGING_TABLE}"

DROP_FINAL_TABLE = f"DROP TABLE IF EXISTS {FINAL_TABLE}"

CREATE_FINAL_TABLE = (
    f"CREATE TABLE {FINAL_TABLE} (\n"
    + "".join(f"    {spec.final_name} {FINAL_COLUMN_TYPES[spec.kind]},\n" for spec in COLUMN_SPECS)
    + "    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),\n"
    + "    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),\n"
    + "    PRIMARY KEY (id, owner_name)\n"
    + ")"
)

COUNT_FINAL = f"SELECT COUNT(*) FROM {FINAL_TABLE}"

# ============================================================================
# Bulk copy
# ============================================================================

COPY_INTO_STAGING = (
    f"COPY {STAGING_TABLE} ({_staging_column_list()}) FROM STDIN "
    "WITH (FORMAT csv, HEADER true, QUOTE '\"', ESCAPE '\"', NULL '', DELIMITER ',')"
)

# ============================================================================
# Stage-to-Final transform
# ============================================================================


def _projection(spec: ColumnSpec) -> str:
    """SELECT expression coercing one staging column to its final type."""
    column = spec.staging_name
    if spec.kind is FieldKind.KEY:
        return f"COALESCE(NULLIF(btrim({column}), ''), gen_random_uuid()::text)"
    if spec.kind is FieldKind.REQUIRED_TEXT:
        return f"COALESCE(btrim({column}), '')"
    if spec.kind is FieldKind.NUMERIC:
        cleaned = f"regexp_replace(btrim(COALESCE({column}, '')), '[$,]', '', 'g')"
        return (
            f"(CASE WHEN {cleaned} ~ '{NUMERIC_PATTERN}' "
            f"THEN {cleaned}::numeric ELSE 0 END)::numeric(15,2)"
        )
    if spec.kind is FieldKind.INTEGER:
        cleaned = f"regexp_replace(btrim(COALESCE({column}, '')), ',', '', 'g')"
        return f"(CASE WHEN {cleaned} ~ '{INTEGER_PATTERN}' THEN {cleaned}::int ELSE 0 END)"
    if spec.kind is FieldKind.OWNER_COUNT:
        return f"COALESCE(NULLIF(btrim({column}), ''), '1')"
    return f"NULLIF(btrim({column}), '')"


def _dedup_key() -> str:
    return ", ".join(f"COALESCE({column}, '')" for column in KEY_COLUMNS)


INSERT_FINAL_FROM_STAGING = (
    f"INSERT INTO {FINAL_TABLE} ({_final_column_list()})\n"
    f"SELECT DISTINCT ON ({_dedup_key()})\n    "
    + ",\n    ".join(_projection(spec) for spec in COLUMN_SPECS)
    + f"\nFROM {STAGING_TABLE}\n"
    "WHERE btrim(COALESCE(OWNER_NAME, '')) <> ''\n"
    # ctid keeps the earliest staged row of each key
    f"ORDER BY {_dedup_key()}, ctid"
)

# ============================================================================
# Indexes
# ============================================================================

ANALYZE_FINAL = f"ANALYZE {FINAL_TABLE}"

# (name, definition) pairs built in order after the load
SEARCH_INDEXES: tuple[tuple[str, str], ...] = (
    (
        "idx_unclaimed_properties_current_cash_balance",
        f"CREATE INDEX CONCURRENTLY IF NOT EXISTS idx_unclaimed_properties_current_cash_balance "
        f"ON {FINAL_TABLE} (current_cash_balance)",
    ),
    (
        "idx_unclaimed_properties_owner_name_tsv",
        f"CREATE INDEX CONCURRENTLY IF NOT EXISTS idx_unclaimed_properties_owner_name_tsv "
        f"ON {FINAL_TABLE} USING gin (to_tsvector('english', owner_name))",
    ),
    (
        "idx_unclaimed_properties_holder_name_tsv",
        f"CREATE INDEX CONCURRENTLY IF NOT EXISTS idx_unclaimed_properties_holder_name_tsv "
        f"ON {FINAL_TABLE} USING gin (to_tsvector('english', holder_name))",
    ),
)

# ============================================================================
# Session
# ============================================================================

HEALTH_CHECK = "SELECT 1"
SET_WORK_MEM = "SET work_mem = %s"
SET_MAINTENANCE_WORK_MEM = "SET maintenance_work_mem = %s"
SET_WAL_COMPRESSION = "SET wal_compression = on"

# ============================================================================
# Import runs
# ============================================================================

IMPORT_RUN_COLUMNS = (
    "id",
    "source_url",
    "total_records",
    "successful_records",
    "failed_records",
    "import_status",
    "error_message",
    "created_at",
    "updated_at",
)

UPDATABLE_RUN_FIELDS = frozenset({
    "total_records",
    "successful_records",
    "failed_records",
    "import_status",
    "error_message",
})

INSERT_IMPORT_RUN = (
    f"INSERT INTO {IMPORT_RUNS_TABLE} (source_url, import_status) VALUES (%s, %s) RETURNING id"
)

SELECT_IMPORT_RUN = (
    f"SELECT {', '.join(IMPORT_RUN_COLUMNS)} FROM {IMPORT_RUNS_TABLE} WHERE id = %s"
)

LIST_IMPORT_RUNS = (
    f"SELECT {', '.join(IMPORT_RUN_COLUMNS)} FROM {IMPORT_RUNS_TABLE} "
    "ORDER BY created_at DESC, id DESC LIMIT %s"
)


def update_import_run(fields: list[str]) -> str:
    """UPDATE statement setting the given run columns (validated against UPDATABLE_RUN_FIELDS)."""
    unknown = set(fields) - UPDATABLE_RUN_FIELDS
    if unknown:
        raise ValueError(f"Unknown import run fields: {sorted(unknown)}")
    assignments = ", ".join(f"{name} = %s" for name in fields)
    return f"UPDATE {IMPORT_RUNS_TABLE} SET {assignments}, updated_at = NOW() WHERE id = %s"
