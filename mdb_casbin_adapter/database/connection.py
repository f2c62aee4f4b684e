"""
Connection management for the policy adapters.

Handles MongoDB client creation, connection validation, database resolution
and the unique index that keeps policy rules free of duplicates. Synchronous
helpers use pymongo; the *_async variants use motor.

This module is part of MDB_CASBIN_ADAPTER.
"""

import logging
import time
from typing import Any, NoReturn

import pymongo
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, MongoClient
from pymongo.errors import ConfigurationError, OperationFailure, PyMongoError

from ..constants import (
    APP_NAME,
    DEFAULT_DB_NAME,
    DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
    INDEX_OPTIONS_CONFLICT_CODE,
    RULE_FIELDS,
    UNIQUE_INDEX_NAME,
)
from ..exceptions import AdapterConnectionError, AdapterIndexError
from ..observability import get_logger as get_contextual_logger
from ..observability import record_operation, timed_operation

logger = logging.getLogger(__name__)
contextual_logger = get_contextual_logger(__name__)

UNIQUE_INDEX_KEYS: list[tuple[str, int]] = [(name, ASCENDING) for name in RULE_FIELDS]


def _client_options(server_selection_timeout_ms: int) -> dict[str, Any]:
    return {
        "serverSelectionTimeoutMS": server_selection_timeout_ms,
        "appname": APP_NAME,
        "retryWrites": True,
        "retryReads": True,
    }


def create_client(
    mongo_uri: str,
    server_selection_timeout_ms: int = DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
) -> MongoClient:
    """
    Create a pymongo client.

    The client connects lazily; call verify_connection() to fail fast.

    Raises:
        AdapterConnectionError: If the URI cannot be parsed
    """
    try:
        return MongoClient(mongo_uri, **_client_options(server_selection_timeout_ms))
    except (ConfigurationError, ValueError, TypeError) as e:
        raise AdapterConnectionError(
            f"Invalid MongoDB URI: {e}",
            mongo_uri=_redact(mongo_uri),
            context={"error_type": type(e).__name__},
        ) from e


def create_async_client(
    mongo_uri: str,
    server_selection_timeout_ms: int = DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
) -> AsyncIOMotorClient:
    """
    Create a motor client.

    Raises:
        AdapterConnectionError: If the URI cannot be parsed
    """
    try:
        return AsyncIOMotorClient(mongo_uri, **_client_options(server_selection_timeout_ms))
    except (ConfigurationError, ValueError, TypeError) as e:
        raise AdapterConnectionError(
            f"Invalid MongoDB URI: {e}",
            mongo_uri=_redact(mongo_uri),
            context={"error_type": type(e).__name__},
        ) from e


def verify_connection(client: MongoClient, timeout: float) -> None:
    """
    Ping the deployment.

    Raises:
        AdapterConnectionError: If the server cannot be reached within timeout
    """
    start_time = time.time()
    try:
        with pymongo.timeout(timeout):
            client.admin.command("ping")
    except PyMongoError as e:
        _connection_failed(e, start_time)
    record_operation("connect", (time.time() - start_time) * 1000, success=True)


async def verify_connection_async(client: AsyncIOMotorClient, timeout: float) -> None:
    """
    Ping the deployment through motor.

    Raises:
        AdapterConnectionError: If the server cannot be reached within timeout
    """
    start_time = time.time()
    try:
        with pymongo.timeout(timeout):
            await client.admin.command("ping")
    except PyMongoError as e:
        _connection_failed(e, start_time)
    record_operation("connect", (time.time() - start_time) * 1000, success=True)


def _connection_failed(error: PyMongoError, start_time: float) -> NoReturn:
    duration_ms = (time.time() - start_time) * 1000
    record_operation("connect", duration_ms, success=False)
    contextual_logger.critical(
        "MongoDB connection failed",
        extra={
            "error_type": type(error).__name__,
            "error": str(error),
            "duration_ms": round(duration_ms, 2),
        },
        exc_info=True,
    )
    raise AdapterConnectionError(
        f"Failed to connect to MongoDB: {error}",
        context={"error_type": type(error).__name__},
    ) from error


def resolve_database(client: Any, db_name: str | None = None) -> Any:
    """
    Pick the policy database.

    An explicit name wins, then the database named in the connection URI,
    then "casbin".
    """
    if db_name:
        return client[db_name]
    return client.get_default_database(default=DEFAULT_DB_NAME)


@timed_operation("ensure_index")
def ensure_unique_index(collection: Any, timeout: float) -> str:
    """
    Create the unique index over (ptype, v0..v5).

    Idempotent: an identical existing index is left alone by the server. A
    unique index over the same keys under another name (as created by other
    casbin MongoDB adapters) is accepted as is.

    Returns:
        The name of the unique index in place

    Raises:
        AdapterIndexError: If the index cannot be created
    """
    try:
        with pymongo.timeout(timeout):
            try:
                name = collection.create_index(
                    UNIQUE_INDEX_KEYS, unique=True, name=UNIQUE_INDEX_NAME
                )
            except OperationFailure as e:
                if e.code != INDEX_OPTIONS_CONFLICT_CODE:
                    raise
                name = _equivalent_index(collection.index_information(), e)
    except PyMongoError as e:
        raise _index_failed(collection, e) from e
    logger.debug(f"Unique index '{name}' ensured on '{collection.name}'")
    return name


@timed_operation("ensure_index")
async def ensure_unique_index_async(collection: Any, timeout: float) -> str:
    """
    Create the unique index over (ptype, v0..v5) through motor.

    Raises:
        AdapterIndexError: If the index cannot be created
    """
    try:
        with pymongo.timeout(timeout):
            try:
                name = await collection.create_index(
                    UNIQUE_INDEX_KEYS, unique=True, name=UNIQUE_INDEX_NAME
                )
            except OperationFailure as e:
                if e.code != INDEX_OPTIONS_CONFLICT_CODE:
                    raise
                name = _equivalent_index(await collection.index_information(), e)
    except PyMongoError as e:
        raise _index_failed(collection, e) from e
    logger.debug(f"Unique index '{name}' ensured on '{collection.name}'")
    return name


def _equivalent_index(index_info: dict[str, Any], conflict: OperationFailure) -> str:
    # Same key pattern and unique: the constraint already holds under another name
    for name, spec in index_info.items():
        keys = list(spec.get("key", []))
        if (
            spec.get("unique")
            and [field for field, _ in keys] == list(RULE_FIELDS)
            and all(direction == ASCENDING for _, direction in keys)
        ):
            logger.info(f"Using existing unique policy index '{name}'")
            return name
    raise conflict


def _index_failed(collection: Any, error: PyMongoError) -> AdapterIndexError:
    logger.error(
        f"Failed to create unique index '{UNIQUE_INDEX_NAME}' on '{collection.name}': {error}",
        exc_info=True,
    )
    return AdapterIndexError(
        f"Failed to create unique policy index: {error}",
        index_name=UNIQUE_INDEX_NAME,
        collection=collection.name,
        context={"error_type": type(error).__name__},
    )


def _redact(mongo_uri: str) -> str:
    # Drop credentials before the URI lands in logs or exception context
    scheme, sep, rest = mongo_uri.partition("://")
    if not sep or "@" not in rest:
        return mongo_uri
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
