import logging
from datetime import datetime
from typing import Protocol

from pydantic import ValidationError

from storefront.models.domain import Order
from storefront.storage.blob_store import BlobStore

ORDERS_PREFIX = "orders/"

logger = logging.getLogger(__name__)


def order_key(ref: str, created_at: datetime) -> str:
    return f"{ORDERS_PREFIX}{created_at:%Y-%m}/{ref}.json"


def partition_prefix(month: datetime) -> str:
    return f"{ORDERS_PREFIX}{month:%Y-%m}/"


def _ref_from_key(key: str) -> str:
    return key.rsplit("/", 1)[-1].removesuffix(".json")


class OrderStore(Protocol):
    async def get(self, ref: str) -> Order | None: ...

    async def put(self, ref: str, order: Order, *, expected_version: int | None = None) -> Order: ...

    async def list(self, filter_prefix: str = ORDERS_PREFIX) -> list[Order]: ...

    async def delete(self, ref: str) -> None: ...


class BlobOrderStore:
    """Order records stored as ``orders/<YYYY-MM>/<ref>.json`` blobs."""

    def __init__(self, blobs: BlobStore) -> None:
        self._blobs = blobs
        self._keys: dict[str, str] = {}

    async def _key_for(self, ref: str) -> str | None:
        cached = self._keys.get(ref)
        if cached:
            return cached

        # A scan replaces the whole map; refs deleted elsewhere drop out.
        keys = await self._blobs.list_keys(ORDERS_PREFIX)
        self._keys = {_ref_from_key(key): key for key in keys}
        return self._keys.get(ref)

    async def get(self, ref: str) -> Order | None:
        key = await self._key_for(ref)
        if key is None:
            return None

        blob = await self._blobs.read(key)
        if blob is None:
            self._keys.pop(ref, None)
            return None

        order = Order.model_validate(blob.value)
        return order.model_copy(update={"version": blob.version})

    async def put(self, ref: str, order: Order, *, expected_version: int | None = None) -> Order:
        if order.ref != ref:
            raise ValueError(f"order ref {order.ref} does not match key ref {ref}")

        if expected_version == 0:
            key = order_key(ref, order.created_at)
        else:
            key = await self._key_for(ref) or order_key(ref, order.created_at)
        version = await self._blobs.write(
            key,
            order.model_dump(mode="json"),
            expected_version=expected_version,
        )
        self._keys[ref] = key
        return order.model_copy(update={"version": version})

    async def list(self, filter_prefix: str = ORDERS_PREFIX) -> list[Order]:
        orders: list[Order] = []
        for key in await self._blobs.list_keys(filter_prefix):
            blob = await self._blobs.read(key)
            if blob is None:
                continue
            try:
                order = Order.model_validate(blob.value)
            except ValidationError:
                logger.warning("Skipping malformed order record %s", key)
                continue
            self._keys[order.ref] = key
            orders.append(order.model_copy(update={"version": blob.version}))
        return orders

    async def delete(self, ref: str) -> None:
        key = await self._key_for(ref)
        if key is None:
            return
        await self._blobs.delete(key)
        self._keys.pop(ref, None)
