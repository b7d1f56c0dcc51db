"""
Persistent Storage Module.

Provides SQLite-backed persistence for:
- Launches, bids and signed executor orders
- Clearing results (versioned, applied atomically)
- Settlement records and batch aggregates
"""

from onelaunch.core.storage.sqlite_adapter import SQLiteAdapter
from onelaunch.core.storage.storage_manager import StorageManager

__all__ = ["SQLiteAdapter", "StorageManager"]
