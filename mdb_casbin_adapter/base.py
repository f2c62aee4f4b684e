"""
Shared adapter behaviour.

Configuration resolution, rule encoding, the filtered-state guard and the
per-operation scope (timeout, error translation, metrics, logging) used by
both the pymongo Adapter and the motor AsyncAdapter.

This module is part of MDB_CASBIN_ADAPTER.
"""

import logging
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import pymongo

from .config import AdapterConfig
from .constants import SAVED_SECTIONS
from .database.errors import WRITE, OperationKind, translate_errors
from .exceptions import FilteredStateError
from .observability import ContextualLoggerAdapter, get_logger, log_operation, record_operation
from .policy_set import iter_policy_lines
from .rule import CasbinRule


class BaseAdapter:
    """
    State and helpers common to the synchronous and asynchronous adapters.

    Subclasses own the client and collection handles and implement the
    casbin adapter methods on top of _operation().
    """

    def __init__(
        self,
        mongo_uri: str | None = None,
        db_name: str | None = None,
        collection_name: str | None = None,
        *,
        timeout: float | None = None,
        filtered: bool | None = None,
        config: AdapterConfig | None = None,
    ):
        self.config = (config or AdapterConfig()).with_overrides(
            mongo_uri=mongo_uri,
            db_name=db_name,
            collection_name=collection_name,
            timeout=timeout,
            filtered=filtered,
        )
        self.config.validate()
        self._timeout = self.config.timeout
        self._filtered = self.config.filtered
        self._collection: Any = None
        self._logger: ContextualLoggerAdapter = get_logger(
            "mdb_casbin_adapter.adapter", collection=self.config.collection_name
        )

    @property
    def collection(self) -> Any:
        """The policy rule collection."""
        return self._collection

    @property
    def timeout(self) -> float:
        """Per-operation timeout in seconds."""
        return self._timeout

    def is_filtered(self) -> bool:
        """
        Return True if the last load was filtered.

        The enforcer skips its automatic load for filtered adapters, and a
        filtered adapter refuses full saves.
        """
        return self._filtered

    def _bind_collection(self, collection: Any) -> None:
        self._collection = collection
        self._logger = self._logger.bind(db_name=collection.database.name)

    def _ensure_save_allowed(self) -> None:
        if self._filtered:
            raise FilteredStateError(
                "Cannot save a filtered policy; load the full policy first",
                context={"collection": self.config.collection_name},
            )

    @staticmethod
    def _encode(ptype: str, rule: Sequence[str]) -> dict[str, str]:
        return CasbinRule.from_policy(ptype, rule).to_document()

    @classmethod
    def _encode_many(cls, ptype: str, rules: Iterable[Sequence[str]]) -> list[dict[str, str]]:
        return [cls._encode(ptype, rule) for rule in rules]

    @classmethod
    def _encode_model(cls, model: Any) -> list[dict[str, str]]:
        lines = iter_policy_lines(model, SAVED_SECTIONS)
        return [cls._encode(ptype, rule) for ptype, rule in lines]

    def _warn_transaction_fallback(self, operation: str, error: Exception) -> None:
        self._logger.warning(
            f"{operation}: transactions are not supported by this deployment; "
            "falling back to non-transactional read/delete/insert. A failure between "
            "steps can leave old and new rules inconsistent.",
            extra={"operation": operation, "error": str(error)},
        )

    @contextmanager
    def _operation(
        self, operation: str, kind: OperationKind = WRITE, **context: Any
    ) -> Iterator[None]:
        """
        Scope for one public adapter operation.

        Applies the configured timeout to every driver call in the block,
        translates driver errors, and records metrics and a log line whether
        the block succeeds or fails.
        """
        start_time = time.time()
        success = False
        try:
            with translate_errors(operation, kind, self._timeout), pymongo.timeout(self._timeout):
                yield
            success = True
        finally:
            duration_ms = (time.time() - start_time) * 1000
            record_operation(
                operation, duration_ms, success, collection=self.config.collection_name
            )
            log_operation(
                self._logger,
                operation,
                level=logging.DEBUG if success else logging.ERROR,
                success=success,
                duration_ms=duration_ms,
                **context,
            )
