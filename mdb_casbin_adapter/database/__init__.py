"""
Database layer for the policy adapters.

Provides client creation, connection validation, unique index management and
driver error translation.
"""

from .connection import (
    UNIQUE_INDEX_KEYS,
    create_async_client,
    create_client,
    ensure_unique_index,
    ensure_unique_index_async,
    resolve_database,
    verify_connection,
    verify_connection_async,
)
from .errors import (
    READ,
    WRITE,
    classify_error,
    is_duplicate_key,
    is_timeout,
    is_transaction_unsupported,
    translate_errors,
)

__all__ = [
    # Connection
    "UNIQUE_INDEX_KEYS",
    "create_client",
    "create_async_client",
    "verify_connection",
    "verify_connection_async",
    "resolve_database",
    "ensure_unique_index",
    "ensure_unique_index_async",
    # Errors
    "READ",
    "WRITE",
    "classify_error",
    "is_duplicate_key",
    "is_timeout",
    "is_transaction_unsupported",
    "translate_errors",
]
