"""
MDB_CASBIN_ADAPTER - MongoDB policy storage for casbin

Stores casbin policy rules in a MongoDB collection and implements the casbin
adapter contract, with filtered loading, batch changes and transactional
filtered updates.
"""

from .adapter import Adapter
from .async_adapter import AsyncAdapter
from .config import AdapterConfig
from .exceptions import (
    AdapterConnectionError,
    AdapterIndexError,
    CasbinAdapterError,
    ConfigurationError,
    FieldOverflowError,
    FilteredStateError,
    OperationTimeoutError,
    QueryError,
    TransactionUnsupportedError,
    WriteError,
)
from .rule import CasbinRule, Filter, build_selector

__version__ = "0.1.0"

__all__ = [
    # Adapters
    "Adapter",
    "AsyncAdapter",
    "AdapterConfig",
    # Rules
    "CasbinRule",
    "Filter",
    "build_selector",
    # Errors
    "CasbinAdapterError",
    "AdapterConnectionError",
    "AdapterIndexError",
    "QueryError",
    "WriteError",
    "FilteredStateError",
    "OperationTimeoutError",
    "TransactionUnsupportedError",
    "ConfigurationError",
    "FieldOverflowError",
]
