"""Persistence layer for Pick Sync.

Re-exports the main public API: Database for connection management,
Repository for typed query operations.
"""

from Pick_Sync.data.database import Database
from Pick_Sync.data.repository import Repository

__all__ = ["Database", "Repository"]
