from typing import Protocol

from storefront.models.audit import AuditEvent
from storefront.storage.blob_store import BlobStore

AUDIT_PREFIX = "audit/"


def audit_key(event: AuditEvent) -> str:
    return f"{AUDIT_PREFIX}{event.created_at:%Y-%m-%d}/{event.id}.json"


class AuditLog(Protocol):
    async def record(self, event: AuditEvent) -> None: ...

    async def for_order(self, order_ref: str) -> list[AuditEvent]: ...


class InMemoryAuditLog:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def for_order(self, order_ref: str) -> list[AuditEvent]:
        return [event for event in self.events if event.order_ref == order_ref]


class BlobAuditLog:
    """Append-only audit trail, one blob per event partitioned by day."""

    def __init__(self, blobs: BlobStore) -> None:
        self.blobs = blobs

    async def record(self, event: AuditEvent) -> None:
        await self.blobs.write(audit_key(event), event.model_dump(mode="json"), expected_version=0)

    async def for_order(self, order_ref: str) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for key in await self.blobs.list_keys(AUDIT_PREFIX):
            blob = await self.blobs.read(key)
            if blob is None or blob.value.get("order_ref") != order_ref:
                continue
            events.append(AuditEvent.model_validate(blob.value))
        return sorted(events, key=lambda event: event.created_at)
