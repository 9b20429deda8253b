"""
Durable state for OpsGuard.

Classes:
    StateStore: Storage contract
    MemoryStateStore: In-process store
    SQLiteStateStore: SQLite-backed store surviving restarts
"""

from .state_store import StateStore, MemoryStateStore, SQLiteStateStore

__all__ = ["StateStore", "MemoryStateStore", "SQLiteStateStore"]
