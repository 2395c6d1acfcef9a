"""
CI Persistence module.

This module contains database implementation for the job tree store.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on ci_common for domain models and interfaces,
and is used by the webhook server and the admin CLI.
"""

from .sqlite_repository import SQLiteJobTreeRepository

__all__ = ["SQLiteJobTreeRepository"]
