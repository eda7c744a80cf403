"""
Repository Layer Package.

Provides data-access abstractions over the local SQLite store.
Account and owned-record operations flow through ``UserStore``;
services never build SQL against ``users`` or the owned tables
themselves.

Usage:
    from fitguard.repositories.user_store import UserStore
"""

from fitguard.repositories.base_repository import BaseRepository
from fitguard.repositories.user_store import UserStore

__all__ = [
    "BaseRepository",
    "UserStore",
]
