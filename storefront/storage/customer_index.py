"""Per-customer denormalized order summaries.

The index is derived from the order store and never authoritative: it can be
rebuilt at any time with :func:`rebuild_customer_index`.
"""

import hashlib
import logging
from typing import Protocol

from pydantic import ValidationError

from storefront.models.domain import Order, OrderSummary, normalize_email
from storefront.services.concurrency import KeyedLocks
from storefront.storage.blob_store import BlobStore
from storefront.storage.order_store import OrderStore

INDEX_PREFIX = "index/customers/"
DEFAULT_RETENTION = 500

logger = logging.getLogger(__name__)


def customer_key(email: str | None) -> str | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode()).hexdigest()


class CustomerIndex(Protocol):
    async def upsert(self, customer_key: str, summary: OrderSummary) -> None: ...

    async def get(self, customer_key: str) -> list[OrderSummary]: ...

    async def remove(self, customer_key: str, ref: str) -> None: ...

    async def replace(self, customer_key: str, summaries: list[OrderSummary]) -> None: ...


def _ordered(entries: list[OrderSummary], retention: int) -> list[OrderSummary]:
    entries.sort(key=lambda entry: entry.created_at, reverse=True)
    return entries[:retention]


class BlobCustomerIndex:
    def __init__(self, blobs: BlobStore, retention: int = DEFAULT_RETENTION) -> None:
        self._blobs = blobs
        self.retention = retention
        self._locks = KeyedLocks()

    @staticmethod
    def _key(customer_key: str) -> str:
        return f"{INDEX_PREFIX}{customer_key}.json"

    async def get(self, customer_key: str) -> list[OrderSummary]:
        blob = await self._blobs.read(self._key(customer_key))
        if blob is None or not isinstance(blob.value, list):
            return []
        entries: list[OrderSummary] = []
        for entry in blob.value:
            try:
                entries.append(OrderSummary.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping malformed customer index entry in %s", self._key(customer_key))
        return entries

    async def _save(self, customer_key: str, entries: list[OrderSummary]) -> None:
        await self._blobs.write(
            self._key(customer_key),
            [entry.model_dump(mode="json") for entry in entries],
        )

    async def upsert(self, customer_key: str, summary: OrderSummary) -> None:
        async with self._locks.hold(customer_key):
            entries = [entry for entry in await self.get(customer_key) if entry.ref != summary.ref]
            entries.append(summary)
            await self._save(customer_key, _ordered(entries, self.retention))

    async def remove(self, customer_key: str, ref: str) -> None:
        async with self._locks.hold(customer_key):
            entries = await self.get(customer_key)
            remaining = [entry for entry in entries if entry.ref != ref]
            if len(remaining) != len(entries):
                await self._save(customer_key, remaining)

    async def replace(self, customer_key: str, summaries: list[OrderSummary]) -> None:
        async with self._locks.hold(customer_key):
            deduped = {summary.ref: summary for summary in summaries}
            await self._save(customer_key, _ordered(list(deduped.values()), self.retention))


async def rebuild_customer_index(
    store: OrderStore,
    index: CustomerIndex,
    email: str,
) -> list[OrderSummary]:
    key = customer_key(email)
    if key is None:
        return []

    normalized = normalize_email(email)
    orders: list[Order] = [
        order for order in await store.list() if normalize_email(order.customer_email) == normalized
    ]
    summaries = [OrderSummary.from_order(order) for order in orders]
    await index.replace(key, summaries)
    return await index.get(key)
