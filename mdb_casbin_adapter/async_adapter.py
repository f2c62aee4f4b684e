"""
Async MongoDB Policy Adapter

The motor counterpart of Adapter, for casbin's AsyncEnforcer. Same storage
layout, same semantics; every operation is a coroutine.

This module is part of MDB_CASBIN_ADAPTER.

Usage:
    import casbin
    from mdb_casbin_adapter import AsyncAdapter

    adapter = await AsyncAdapter.create("mongodb://localhost:27017", db_name="authz")
    enforcer = casbin.AsyncEnforcer("rbac_model.conf", adapter)
    await enforcer.load_policy()
"""

from collections.abc import Sequence
from typing import Any

from casbin.persist.adapters.asyncio import (
    AsyncBatchAdapter,
    AsyncFilteredAdapter,
    AsyncUpdateAdapter,
)
from casbin.persist.adapters.asyncio import AsyncAdapter as CasbinAsyncAdapter
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import DeleteOne, ReplaceOne

from .base import BaseAdapter
from .config import AdapterConfig
from .database.connection import (
    create_async_client,
    ensure_unique_index_async,
    resolve_database,
    verify_connection_async,
)
from .database.errors import READ, translate_errors
from .exceptions import CasbinAdapterError, TransactionUnsupportedError
from .policy_set import load_policy_line
from .rule import CasbinRule, build_selector, filter_to_query


class AsyncAdapter(
    BaseAdapter,
    CasbinAsyncAdapter,
    AsyncFilteredAdapter,
    AsyncBatchAdapter,
    AsyncUpdateAdapter,
):
    """
    Asynchronous casbin adapter backed by a MongoDB collection via motor.

    Connecting is asynchronous, so the adapter must be opened before use:

        adapter = await AsyncAdapter.create(mongo_uri)
        # or
        adapter = AsyncAdapter(mongo_uri)
        await adapter.open()
    """

    def __init__(
        self,
        mongo_uri: str | None = None,
        db_name: str | None = None,
        collection_name: str | None = None,
        *,
        client: AsyncIOMotorClient | None = None,
        timeout: float | None = None,
        filtered: bool | None = None,
        config: AdapterConfig | None = None,
    ):
        """
        Resolve configuration and create the motor client.

        Takes the same arguments as Adapter. No I/O happens until open().
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
        self._client: AsyncIOMotorClient | None = (
            client
            if client is not None
            else create_async_client(
                self.config.mongo_uri, self.config.server_selection_timeout_ms
            )
        )
        database = resolve_database(self._client, self.config.db_name)
        self._bind_collection(database[self.config.collection_name])
        self._opened = False

    @classmethod
    async def create(cls, *args: Any, **kwargs: Any) -> "AsyncAdapter":
        """Construct and open an adapter in one step."""
        adapter = cls(*args, **kwargs)
        await adapter.open()
        return adapter

    async def open(self) -> None:
        """
        Verify the connection and ensure the unique rule index.

        Idempotent. On failure the adapter releases its client.

        Raises:
            AdapterConnectionError: If the deployment cannot be reached
            AdapterIndexError: If the unique rule index cannot be created
        """
        if self._opened:
            return
        if self._client is None:
            raise CasbinAdapterError("AsyncAdapter is closed and cannot be reopened")
        try:
            await verify_connection_async(self._client, self._timeout)
            await ensure_unique_index_async(self._collection, self._timeout)
        except CasbinAdapterError:
            self.close()
            raise
        self._opened = True
        self._logger.info(
            "Async policy adapter ready",
            extra={"filtered": self._filtered, "owns_client": self._owns_client},
        )

    @property
    def client(self) -> AsyncIOMotorClient | None:
        """The motor client in use, or None once closed."""
        return self._client

    async def __aenter__(self) -> "AsyncAdapter":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """
        Release the connection.

        Idempotent. A client passed in by the caller is left open.
        """
        client, self._client = self._client, None
        self._opened = False
        if client is None:
            return
        if self._owns_client:
            client.close()
            self._logger.info("MongoDB connection closed.")

    def _require_open(self) -> None:
        if not self._opened:
            raise CasbinAdapterError(
                "AsyncAdapter not opened. Await open() or use AsyncAdapter.create() first.",
                context={"collection": self.config.collection_name},
            )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_policy(self, model: Any) -> None:
        """Load every stored rule into the model."""
        self._require_open()
        self._filtered = False
        await self._load(model, {}, "load_policy")

    async def load_filtered_policy(self, model: Any, filter: Any) -> None:
        """
        Load only the rules matching filter; None loads everything.

        Raises:
            QueryError: If the query fails or a stored document is malformed
        """
        if filter is None:
            await self.load_policy(model)
            return
        self._require_open()
        query = filter_to_query(filter)
        self._filtered = True
        await self._load(model, query, "load_filtered_policy")

    async def _load(self, model: Any, query: dict[str, Any], operation: str) -> None:
        loaded = 0
        with self._operation(operation, kind=READ, filtered=self._filtered):
            cursor = self._collection.find(query)
            try:
                async for doc in cursor:
                    if load_policy_line(CasbinRule.from_document(doc), model):
                        loaded += 1
            finally:
                await cursor.close()
        self._logger.debug(f"Loaded {loaded} policy rules", extra={"filtered": self._filtered})

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def save_policy(self, model: Any) -> bool:
        """
        Replace every stored rule with the model's "p" and "g" rules.

        Raises:
            FilteredStateError: If the last load was filtered
        """
        self._require_open()
        self._ensure_save_allowed()
        docs = self._encode_model(model)
        with self._operation("save_policy", rules=len(docs)):
            await self._collection.drop()
            await ensure_unique_index_async(self._collection, self._timeout)
            if docs:
                await self._collection.insert_many(docs, ordered=True)
        return True

    # ------------------------------------------------------------------
    # Incremental changes
    # ------------------------------------------------------------------

    async def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        """
        Store one rule.

        Raises:
            WriteError: If the insert fails, including when the rule already exists
        """
        self._require_open()
        doc = self._encode(ptype, rule)
        with self._operation("add_policy", sec=sec, ptype=ptype):
            await self._collection.insert_one(doc)
        return True

    async def add_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> bool:
        """Store several rules in one ordered insert."""
        self._require_open()
        docs = self._encode_many(ptype, rules)
        if not docs:
            return True
        with self._operation("add_policies", sec=sec, ptype=ptype, rules=len(docs)):
            await self._collection.insert_many(docs, ordered=True)
        return True

    async def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        """Delete one rule. Removing a rule that is not stored succeeds."""
        self._require_open()
        doc = self._encode(ptype, rule)
        with self._operation("remove_policy", sec=sec, ptype=ptype):
            await self._collection.delete_one(doc)
        return True

    async def remove_policies(
        self, sec: str, ptype: str, rules: Sequence[Sequence[str]]
    ) -> bool:
        """Delete several rules in one ordered bulk write."""
        self._require_open()
        requests = [DeleteOne(doc) for doc in self._encode_many(ptype, rules)]
        if not requests:
            return True
        with self._operation("remove_policies", sec=sec, ptype=ptype, rules=len(requests)):
            await self._collection.bulk_write(requests, ordered=True)
        return True

    async def remove_filtered_policy(
        self, sec: str, ptype: str, field_index: int, *field_values: str
    ) -> bool:
        """Delete every rule matching the partial selector."""
        self._require_open()
        selector = build_selector(ptype, field_index, field_values)
        with self._operation("remove_filtered_policy", sec=sec, ptype=ptype):
            result = await self._collection.delete_many(selector)
        self._logger.debug(f"Removed {result.deleted_count} policy rules", extra={"ptype": ptype})
        return True

    async def update_policy(
        self, sec: str, ptype: str, old_rule: Sequence[str], new_rule: Sequence[str]
    ) -> bool:
        """Replace one stored rule. A missing old rule is a no-op."""
        self._require_open()
        old_doc = self._encode(ptype, old_rule)
        new_doc = self._encode(ptype, new_rule)
        with self._operation("update_policy", sec=sec, ptype=ptype):
            await self._collection.replace_one(old_doc, new_doc)
        return True

    async def update_policies(
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
        self._require_open()
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
            await self._collection.bulk_write(requests, ordered=True)
        return True

    async def update_filtered_policies(
        self,
        sec: str,
        ptype: str,
        new_rules: Sequence[Sequence[str]],
        field_index: int,
        *field_values: str,
    ) -> list[list[str]]:
        """
        Replace every rule matching the partial selector with new_rules,
        in a transaction when the deployment supports one.

        Returns:
            The rules that were removed
        """
        self._require_open()
        selector = build_selector(ptype, field_index, field_values)
        new_docs = self._encode_many(ptype, new_rules)
        operation = "update_filtered_policies"
        with self._operation(operation, sec=sec, ptype=ptype, rules=len(new_docs)):
            try:
                removed = await self._replace_filtered_in_transaction(selector, new_docs)
            except TransactionUnsupportedError as e:
                self._warn_transaction_fallback(operation, e)
                removed = await self._replace_filtered(selector, new_docs)
        return [rule.policy for rule in removed]

    async def _replace_filtered_in_transaction(
        self, selector: dict[str, str], new_docs: list[dict[str, str]]
    ) -> list[CasbinRule]:
        with translate_errors("update_filtered_policies", timeout=self._timeout):
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    return await self._replace_filtered(selector, new_docs, session=session)

    async def _replace_filtered(
        self,
        selector: dict[str, str],
        new_docs: list[dict[str, str]],
        session: Any = None,
    ) -> list[CasbinRule]:
        with translate_errors("update_filtered_policies", READ, self._timeout):
            cursor = self._collection.find(selector, session=session)
            try:
                removed = [CasbinRule.from_document(doc) async for doc in cursor]
            finally:
                await cursor.close()
        with translate_errors("update_filtered_policies", timeout=self._timeout):
            await self._collection.delete_many(selector, session=session)
            if new_docs:
                await self._collection.insert_many(new_docs, ordered=True, session=session)
        return removed
