"""Storage adapters for Clinical Import.

This module contains the store adapters that implement the StorePort interface
for persisting reconciled patients, visits and observations.
"""

from clinical_import.adapters.storage.duckdb_store import DuckDBStore

__all__ = ["DuckDBStore"]
