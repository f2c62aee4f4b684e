"""
MongoDB Policy Adapter

Stores casbin policy rules in a MongoDB collection using pymongo. Implements
the casbin adapter contract (load, save, add, remove, update), filtered
loading, and filtered updates that run in a transaction when the deployment
supports one.

This module is part of MDB_CASBIN_ADAPTER.

Usage:
    import casbin
    from mdb_casbin_adapter import Adapter

    adapter = Adapter("mongodb://localhost:27017", db_name="authz")
    enforcer = casbin.Enforcer("rbac_model.conf", adapter)
    ...
    adapter.close()
"""

from collections.abc import Sequence
from typing import Any

from casbin.persist.adapter_filtered import FilteredAdapter
from casbin.persist.batch_adapter import BatchAdapter
from casbin.persist.update_adapter import UpdateAdapter
from pymongo import DeleteOne, MongoClient, ReplaceOne

from .base import BaseAdapter
from .config import AdapterConfig
from .database.connection import (
    create_client,
    ensure_unique_index,
    resolve_database,
    verify_connection,
)
from .database.errors import READ, translate_errors
from .exceptions import CasbinAdapterError, TransactionUnsupportedError
from .policy_set import load_policy_line
from .rule import CasbinRule, build_selector, filter_to_query


class Adapter(BaseAdapter, FilteredAdapter, BatchAdapter, UpdateAdapter):
    """
    Synchronous casbin adapter backed by a MongoDB collection.

    Every call blocks until the driver answers or the configured timeout
    expires. The adapter starts no threads of its own.

    Batch operations (add_policies, remove_policies, update_policies) are one
    ordered bulk call each: on failure the rules before the failing one stay
    applied and the rest are not attempted.
    """

    def __init__(
        self,
        mongo_uri: str | None = None,
        db_name: str | None = None,
        collection_name: str | None = None,
        *,
        client: MongoClient | None = None,
        timeout: float | None = None,
        filtered: bool | None = None,
        config: AdapterConfig | None = None,
    ):
        """
        Connect and prepare the policy collection.

        Args:
            mongo_uri: MongoDB connection URI (ignored when client is given)
            db_name: Database name; defaults to the URI's database, then "casbin"
            collection_name: Rule collection; defaults to "casbin_rule"
            client: Pre-built MongoClient; the adapter will not close it
            timeout: Per-operation timeout in seconds (default 30)
            filtered: Start in filtered mode, so the enforcer skips its initial load
            config: Base configuration; explicit arguments override it

        Raises:
            AdapterConnectionError: If the deployment cannot be reached or the URI is invalid
            AdapterIndexError: If the unique rule index cannot be created
            ConfigurationError: If the configuration is invalid
        """
        super().__init__(
            mongo_uri,
            db_name,
            collection_name,
            timeout=timeout,
            filtered=filtered,
            config=config,
        )
        self._owns_client = client is None
        self._client: MongoClient | None = (
            client
            if client is not None
            else create_client(self.config.mongo_uri, self.config.server_selection_timeout_ms)
        )
        try:
            verify_connection(self._client, self._timeout)
            database = resolve_database(self._client, self.config.db_name)
            self._bind_collection(database[self.config.collection_name])
            ensure_unique_index(self._collection, self._timeout)
        except CasbinAdapterError:
            self.close()
            raise
        self._logger.info(
            "Policy adapter ready",
            extra={"filtered": self._filtered, "owns_client": self._owns_client},
        )

    @property
    def client(self) -> MongoClient | None:
        """The MongoClient in use, or None once closed."""
        return self._client

    def __enter__(self) -> "Adapter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """
        Release the connection.

        Idempotent. A client passed in by the caller is left open.
        """
        client, self._client = self._client, None
        if client is None:
            return
        if self._owns_client:
            client.close()
            self._logger.info("MongoDB connection closed.")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_policy(self, model: Any) -> None:
        """Load every stored rule into the model."""
        self._filtered = False
        self._load(model, {}, "load_policy")

    def load_filtered_policy(self, model: Any, filter: Any) -> None:
        """
        Load only the rules matching filter.

        Args:
            model: casbin Model or mapping of sections to receive the rules
            filter: Filter, object with to_query(), or raw MongoDB selector;
                None loads everything

        Raises:
            QueryError: If the query fails or a stored document is malformed.
                Rules decoded before the failure stay in the model.
        """
        if filter is None:
            self.load_policy(model)
            return
        query = filter_to_query(filter)
        self._filtered = True
        self._load(model, query, "load_filtered_policy")

    def _load(self, model: Any, query: dict[str, Any], operation: str) -> None:
        loaded = 0
        with self._operation(operation, kind=READ, filtered=self._filtered):
            with self._collection.find(query) as cursor:
                for doc in cursor:
                    if load_policy_line(CasbinRule.from_document(doc), model):
                        loaded += 1
        self._logger.debug(f"Loaded {loaded} policy rules", extra={"filtered": self._filtered})

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def save_policy(self, model: Any) -> bool:
        """
        Replace every stored rule with the model's "p" and "g" rules.

        The collection is dropped and rewritten without a transaction; a
        failure part way leaves it partially populated.

        Raises:
            FilteredStateError: If the last load was filtered
        """
        self._ensure_save_allowed()
        docs = self._encode_model(model)
        with self._operation("save_policy", rules=len(docs)):
            self._collection.drop()
            ensure_unique_index(self._collection, self._timeout)
            if docs:
                self._collection.insert_many(docs, ordered=True)
        return True

    # ------------------------------------------------------------------
    # Incremental changes
    # ------------------------------------------------------------------

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        """
        Store one rule.

        Raises:
            WriteError: If the insert fails, including when the rule already exists
        """
        doc = self._encode(ptype, rule)
        with self._operation("add_policy", sec=sec, ptype=ptype):
            self._collection.insert_one(doc)
        return True

    def add_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> bool:
        """Store several rules in one ordered insert."""
        docs = self._encode_many(ptype, rules)
        if not docs:
            return True
        with self._operation("add_policies", sec=sec, ptype=ptype, rules=len(docs)):
            self._collection.insert_many(docs, ordered=True)
        return True

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        """Delete one rule. Removing a rule that is not stored succeeds."""
        doc = self._encode(ptype, rule)
        with self._operation("remove_policy", sec=sec, ptype=ptype):
            self._collection.delete_one(doc)
        return True

    def remove_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> bool:
        """Delete several rules in one ordered bulk write."""
        requests = [DeleteOne(doc) for doc in self._encode_many(ptype, rules)]
        if not requests:
            return True
        with self._operation("remove_policies", sec=sec, ptype=ptype, rules=len(requests)):
            self._collection.bulk_write(requests, ordered=True)
        return True

    def remove_filtered_policy(
        self, sec: str, ptype: str, field_index: int, *field_values: str
    ) -> bool:
        """
        Delete every rule matching the partial selector.

        Empty field values match anything. Zero matches is a success.
        """
        selector = build_selector(ptype, field_index, field_values)
        with self._operation("remove_filtered_policy", sec=sec, ptype=ptype):
            result = self._collection.delete_many(selector)
        self._logger.debug(f"Removed {result.deleted_count} policy rules", extra={"ptype": ptype})
        return True

    def update_policy(
        self, sec: str, ptype: str, old_rule: Sequence[str], new_rule: Sequence[str]
    ) -> bool:
        """Replace one stored rule. A missing old rule is a no-op."""
        old_doc = self._encode(ptype, old_rule)
        new_doc = self._encode(ptype, new_rule)
        with self._operation("update_policy", sec=sec, ptype=ptype):
            self._collection.replace_one(old_doc, new_doc)
        return True

    def update_policies(
        self,
        sec: str,
        ptype: str,
        old_rules: Sequence[Sequence[str]],
        new_rules: Sequence[Sequence[str]],
    ) -> bool:
        """
        Replace rules pairwise in one ordered bulk write.

        Raises:
            ValueError: If the two lists differ in length
        """
        if len(old_rules) != len(new_rules):
            raise ValueError(
                f"update_policies needs as many new rules as old ones "
                f"({len(old_rules)} != {len(new_rules)})"
            )
        requests = [
            ReplaceOne(self._encode(ptype, old), self._encode(ptype, new))
            for old, new in zip(old_rules, new_rules)
        ]
        if not requests:
            return True
        with self._operation("update_policies", sec=sec, ptype=ptype, rules=len(requests)):
            self._collection.bulk_write(requests, ordered=True)
        return True

    def update_filtered_policies(
        self,
        sec: str,
        ptype: str,
        new_rules: Sequence[Sequence[str]],
        field_index: int,
        *field_values: str,
    ) -> list[list[str]]:
        """
        Replace every rule matching the partial selector with new_rules.

        Runs read, delete and insert in one transaction. When the deployment
        cannot run transactions (standalone server) the same steps run
        without one and a warning is logged.

        Returns:
            The rules that were removed
        """
        selector = build_selector(ptype, field_index, field_values)
        new_docs = self._encode_many(ptype, new_rules)
        operation = "update_filtered_policies"
        with self._operation(operation, sec=sec, ptype=ptype, rules=len(new_docs)):
            try:
                removed = self._replace_filtered_in_transaction(selector, new_docs)
            except TransactionUnsupportedError as e:
                self._warn_transaction_fallback(operation, e)
                removed = self._replace_filtered(selector, new_docs)
        return [rule.policy for rule in removed]

    def _replace_filtered_in_transaction(
        self, selector: dict[str, str], new_docs: list[dict[str, str]]
    ) -> list[CasbinRule]:
        with translate_errors("update_filtered_policies", timeout=self._timeout):
            with self._client.start_session() as session:
                with session.start_transaction():
                    return self._replace_filtered(selector, new_docs, session=session)

    def _replace_filtered(
        self,
        selector: dict[str, str],
        new_docs: list[dict[str, str]],
        session: Any = None,
    ) -> list[CasbinRule]:
        with translate_errors("update_filtered_policies", READ, self._timeout):
            with self._collection.find(selector, session=session) as cursor:
                removed = [CasbinRule.from_document(doc) for doc in cursor]
        with translate_errors("update_filtered_policies", timeout=self._timeout):
            self._collection.delete_many(selector, session=session)
            if new_docs:
                self._collection.insert_many(new_docs, ordered=True, session=session)
        return removed
