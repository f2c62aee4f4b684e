"""
Constants for MDB_CASBIN_ADAPTER.

This module contains all shared constants used across the codebase to avoid
magic numbers and improve maintainability.
"""

from typing import Final

# ============================================================================
# STORAGE LAYOUT CONSTANTS
# ============================================================================

DEFAULT_DB_NAME: Final[str] = "casbin"
"""Database used when neither the configuration nor the URI names one."""

DEFAULT_COLLECTION_NAME: Final[str] = "casbin_rule"
"""Default collection holding policy rule documents."""

PTYPE_FIELD: Final[str] = "ptype"
"""Document field holding the rule-type tag."""

VALUE_FIELDS: Final[tuple[str, ...]] = ("v0", "v1", "v2", "v3", "v4", "v5")
"""Positional value fields, in order."""

RULE_FIELDS: Final[tuple[str, ...]] = (PTYPE_FIELD, *VALUE_FIELDS)
"""All seven persisted fields of a policy rule document."""

MAX_RULE_FIELDS: Final[int] = len(VALUE_FIELDS)
"""Maximum number of positional values a rule can carry."""

UNIQUE_INDEX_NAME: Final[str] = "casbin_rule_unique"
"""Name of the compound unique index spanning all rule fields."""

SAVED_SECTIONS: Final[tuple[str, ...]] = ("p", "g")
"""Policy sections written by a full save."""

# ============================================================================
# DATABASE CONSTANTS
# ============================================================================

DEFAULT_MONGO_URI: Final[str] = "mongodb://localhost:27017"
"""Fallback MongoDB URI when none is configured."""

DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0
"""Default per-operation timeout (seconds)."""

DEFAULT_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 5000
"""Default server selection timeout in milliseconds."""

MIN_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 1000
"""Lowest accepted server selection timeout in milliseconds."""

APP_NAME: Final[str] = "MDB_CASBIN_ADAPTER"
"""Application name reported to the MongoDB server."""

# Server error code for IllegalOperation, raised when a transaction is started
# against a standalone server.
ILLEGAL_OPERATION_CODE: Final[int] = 20

# Server error code for IndexOptionsConflict, raised when an index with the same
# key pattern already exists under another name.
INDEX_OPTIONS_CONFLICT_CODE: Final[int] = 85

# ============================================================================
# VALIDATION CONSTANTS
# ============================================================================

MAX_COLLECTION_NAME_LENGTH: Final[int] = 255
"""Maximum length for MongoDB collection names."""

RESERVED_COLLECTION_PREFIX: Final[str] = "system."
"""MongoDB system collections cannot hold policy rules."""

# ============================================================================
# OBSERVABILITY CONSTANTS
# ============================================================================

METRIC_PREFIX: Final[str] = "casbin_adapter"
"""Prefix for every operation name recorded in the metrics collector."""
