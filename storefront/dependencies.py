from dataclasses import dataclass
from datetime import timedelta

from storefront.config import admin_emails_list, expiry_window_s, settings
from storefront.integrations.notifications import (
    LoggingNotificationSink,
    LoggingOrderExporter,
    NotificationSink,
    OrderExporter,
)
from storefront.integrations.slip_verifier_client import SlipVerifier, get_slip_verifier
from storefront.services.audit_log import AuditLog, BlobAuditLog
from storefront.services.bulk_transition import BulkTransitionExecutor
from storefront.services.expiry_scheduler import ExpiryScheduler
from storefront.services.export_rows import build_export_rows
from storefront.services.payment_verifier import PaymentVerifierAdapter
from storefront.services.permissions import PermissionResolver
from storefront.services.reconciliation_engine import ReconciliationEngine
from storefront.services.side_effects import CoalescingExportScheduler, SideEffectDispatcher
from storefront.storage.blob_store import BlobStore, InMemoryBlobStore, SqlBlobStore
from storefront.storage.customer_index import BlobCustomerIndex
from storefront.storage.order_store import BlobOrderStore


@dataclass
class Container:
    blobs: BlobStore
    store: BlobOrderStore
    index: BlobCustomerIndex
    audit_log: AuditLog
    permissions: PermissionResolver
    dispatcher: SideEffectDispatcher
    export_scheduler: CoalescingExportScheduler
    engine: ReconciliationEngine
    expiry: ExpiryScheduler
    bulk: BulkTransitionExecutor


def get_blob_store() -> BlobStore:
    if settings.storage_backend == "memory":
        return InMemoryBlobStore()

    from storefront.db.session import SessionLocal, init_db

    init_db()
    return SqlBlobStore(SessionLocal)


def build_container(
    blobs: BlobStore | None = None,
    *,
    slip_verifier: SlipVerifier | None = None,
    notifier: NotificationSink | None = None,
    exporter: OrderExporter | None = None,
    audit_log: AuditLog | None = None,
) -> Container:
    blobs = blobs or get_blob_store()
    store = BlobOrderStore(blobs)
    index = BlobCustomerIndex(blobs, retention=settings.index_retention)
    audit_log = audit_log or BlobAuditLog(blobs)
    permissions = PermissionResolver(
        blobs,
        super_admin_email=settings.super_admin_email,
        static_admin_emails=admin_emails_list(),
    )
    dispatcher = SideEffectDispatcher()
    exporter = exporter or LoggingOrderExporter()

    async def run_export() -> None:
        await exporter.export(build_export_rows(await store.list()))

    export_scheduler = CoalescingExportScheduler(
        run_export,
        debounce_s=settings.export_debounce_s,
        min_interval_s=settings.export_min_interval_s,
    )
    engine = ReconciliationEngine(
        store=store,
        index=index,
        verifier=PaymentVerifierAdapter(
            slip_verifier or get_slip_verifier(),
            timeout_s=settings.verification_timeout_s,
        ),
        notifier=notifier or LoggingNotificationSink(),
        audit_log=audit_log,
        permissions=permissions,
        dispatcher=dispatcher,
        export_scheduler=export_scheduler,
        store_read_max_retries=settings.store_read_max_retries,
        store_read_backoff_s=settings.store_read_backoff_s,
    )
    return Container(
        blobs=blobs,
        store=store,
        index=index,
        audit_log=audit_log,
        permissions=permissions,
        dispatcher=dispatcher,
        export_scheduler=export_scheduler,
        engine=engine,
        expiry=ExpiryScheduler(
            engine,
            expiry_window=timedelta(seconds=expiry_window_s()),
            concurrency=settings.sweep_concurrency,
        ),
        bulk=BulkTransitionExecutor(engine, concurrency=settings.bulk_concurrency),
    )
