"""Storage adapters for the property import pipeline.

This module contains storage adapters that implement the PropertyStorePort
interface for staging, transforming and indexing unclaimed-property records.
"""

from moneymatched.adapters.storage.postgresql_adapter import PostgreSQLAdapter

__all__ = ["PostgreSQLAdapter"]
