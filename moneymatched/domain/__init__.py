"""Domain layer for the MoneyMatched property import pipeline.

This module contains the canonical column schema, the run lifecycle and the
failure accounting. Nothing here talks to the network or the database.
"""

from .models import ImportRunRecord, ImportStatus, RunSummary
from .schema import CANONICAL_COLUMNS, COLUMN_SPECS, FINAL_COLUMNS

__all__ = [
    "CANONICAL_COLUMNS",
    "COLUMN_SPECS",
    "FINAL_COLUMNS",
    "ImportRunRecord",
    "ImportStatus",
    "RunSummary",
]
