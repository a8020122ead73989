from storefront.storage.blob_store import BlobStore, InMemoryBlobStore, SqlBlobStore, StoredBlob
from storefront.storage.customer_index import BlobCustomerIndex, CustomerIndex, customer_key
from storefront.storage.order_store import BlobOrderStore, OrderStore

__all__ = [
    "BlobStore",
    "StoredBlob",
    "InMemoryBlobStore",
    "SqlBlobStore",
    "OrderStore",
    "BlobOrderStore",
    "CustomerIndex",
    "BlobCustomerIndex",
    "customer_key",
]
