"""
Custom exceptions for MDB_CASBIN_ADAPTER.

Every error raised by the adapter derives from CasbinAdapterError, which keeps
backward compatibility with RuntimeError so callers that catch RuntimeError
around enforcer calls keep working.
"""

from typing import Any, Dict, List, Optional


class CasbinAdapterError(RuntimeError):
    """
    Base exception for policy adapter errors.

    Attributes:
        message: Error message
        context: Optional dictionary with additional context (db_name,
                 collection, operation, etc.)
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            context: Optional dictionary with additional context information
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (context: {context_str})"
        return self.message


class AdapterConnectionError(CasbinAdapterError):
    """
    Raised when the MongoDB deployment cannot be reached or its address
    cannot be parsed.

    Attributes:
        message: Error message
        mongo_uri: MongoDB connection URI (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        mongo_uri: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if mongo_uri:
            context["mongo_uri"] = mongo_uri
        super().__init__(message, context=context)
        self.mongo_uri = mongo_uri


class AdapterIndexError(CasbinAdapterError):
    """
    Raised when the unique index over the rule fields cannot be created.

    Attributes:
        message: Error message
        index_name: Name of the index that failed (if available)
        collection: Target collection name (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        index_name: Optional[str] = None,
        collection: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if index_name:
            context["index_name"] = index_name
        if collection:
            context["collection"] = collection
        super().__init__(message, context=context)
        self.index_name = index_name
        self.collection = collection


class QueryError(CasbinAdapterError):
    """Raised when a read fails or a stored document cannot be decoded."""


class WriteError(CasbinAdapterError):
    """Raised when an insert, delete or replace fails, including duplicate rules."""


class FilteredStateError(CasbinAdapterError):
    """
    Raised when a full save is attempted after a filtered load.

    Saving only the filtered subset would wipe every rule that was not loaded.
    """


class OperationTimeoutError(CasbinAdapterError):
    """
    Raised when an operation exceeds the adapter's configured timeout.

    Attributes:
        message: Error message
        timeout: Timeout in seconds that was exceeded (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        timeout: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if timeout is not None:
            context["timeout"] = timeout
        super().__init__(message, context=context)
        self.timeout = timeout


class TransactionUnsupportedError(CasbinAdapterError):
    """
    Raised when the deployment cannot run multi-document transactions.

    Only used internally to trigger the non-transactional fallback of
    update_filtered_policies.
    """


class ConfigurationError(CasbinAdapterError):
    """
    Raised when configuration is invalid or missing.

    Attributes:
        message: Error message
        config_key: Configuration key that caused the error (if available)
        config_value: Configuration value that caused the error (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize the configuration error.

        Args:
            message: Error message
            config_key: Configuration key that caused the error (if available)
            config_value: Configuration value that caused the error (if available)
            context: Additional context information
        """
        context = context or {}
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value
        super().__init__(message, context=context)
        self.config_key = config_key
        self.config_value = config_value


class FieldOverflowError(ConfigurationError):
    """
    Raised when a rule or selector reaches past the six positional fields.

    Attributes:
        message: Error message
        fields: The offending values (if available)
        context: Additional context information
    """

    def __init__(
        self,
        message: str,
        fields: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if fields is not None:
            context["field_count"] = len(fields)
        super().__init__(message, context=context)
        self.fields = fields
