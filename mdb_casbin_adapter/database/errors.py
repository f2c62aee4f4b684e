"""
Driver error classification.

Translates pymongo errors into adapter errors at the store boundary so that
callers never need to inspect driver error codes, and so the transaction
fallback is triggered by an explicit error kind rather than a magic number.

This module is part of MDB_CASBIN_ADAPTER.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Literal

from pymongo.errors import (
    BulkWriteError,
    ConfigurationError as DriverConfigurationError,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
)

from ..constants import ILLEGAL_OPERATION_CODE
from ..exceptions import (
    CasbinAdapterError,
    OperationTimeoutError,
    QueryError,
    TransactionUnsupportedError,
    WriteError,
)

logger = logging.getLogger(__name__)

OperationKind = Literal["read", "write"]

READ: OperationKind = "read"
WRITE: OperationKind = "write"


def is_transaction_unsupported(exc: BaseException) -> bool:
    """
    Check whether a driver error means the deployment cannot run transactions.

    Standalone servers reject transactions with IllegalOperation ("Transaction
    numbers are only allowed on a replica set member or mongos"); deployments
    without session support fail when the session is started.
    """
    if isinstance(exc, OperationFailure) and exc.code == ILLEGAL_OPERATION_CODE:
        return True
    if isinstance(exc, DriverConfigurationError):
        return "sessions are not supported" in str(exc).lower()
    return False


def is_timeout(exc: BaseException) -> bool:
    """Check whether a driver error was caused by an expired deadline."""
    return isinstance(exc, PyMongoError) and bool(getattr(exc, "timeout", False))


def is_duplicate_key(exc: BaseException) -> bool:
    """Check whether a driver error is a unique index violation."""
    if isinstance(exc, DuplicateKeyError):
        return True
    if isinstance(exc, BulkWriteError):
        write_errors = exc.details.get("writeErrors", [])
        return any(err.get("code") == 11000 for err in write_errors)
    return False


def classify_error(
    exc: PyMongoError,
    operation: str,
    kind: OperationKind = WRITE,
    timeout: float | None = None,
) -> CasbinAdapterError:
    """
    Map a driver error onto the adapter's error hierarchy.

    Args:
        exc: The driver error
        operation: Adapter operation that failed (for context)
        kind: Whether the failing call was a read or a write
        timeout: Configured per-operation timeout, reported on timeouts

    Returns:
        The adapter exception to raise (the caller chains exc as its cause)
    """
    context = {"operation": operation, "error_type": type(exc).__name__}

    if is_transaction_unsupported(exc):
        return TransactionUnsupportedError(
            f"Transactions are not supported by this deployment: {exc}", context=context
        )
    if is_timeout(exc):
        return OperationTimeoutError(
            f"{operation} exceeded its timeout: {exc}", timeout=timeout, context=context
        )
    if kind == READ:
        return QueryError(f"{operation} failed to read policy rules: {exc}", context=context)
    if is_duplicate_key(exc):
        context["duplicate"] = True
        return WriteError(f"{operation} failed: policy rule already exists", context=context)
    return WriteError(f"{operation} failed to write policy rules: {exc}", context=context)


@contextmanager
def translate_errors(
    operation: str,
    kind: OperationKind = WRITE,
    timeout: float | None = None,
) -> Iterator[None]:
    """
    Re-raise driver errors raised inside the block as adapter errors.

    Works around awaited calls too:

        with translate_errors("add_policy"):
            await collection.insert_one(doc)
    """
    try:
        yield
    except PyMongoError as exc:
        error = classify_error(exc, operation, kind, timeout)
        logger.debug(f"{operation}: {type(exc).__name__} translated to {type(error).__name__}")
        raise error from exc
