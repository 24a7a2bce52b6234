"""Relational store access for the Tachyon operations tooling.

The store is reached through an explicitly owned ``Database`` handle built
from a ``DatabaseConfig``; nothing in this package holds a global connection.
"""

from .config import DatabaseConfig
from .connection import ConnectionError, Database, QueryError, execute_script, split_statements

__all__ = [
    "DatabaseConfig",
    "Database",
    "ConnectionError",
    "QueryError",
    "execute_script",
    "split_statements",
]
