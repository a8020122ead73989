# Import SQLAlchemy models so they register on Base.metadata
from storefront.models.blob_record import BlobRecord  # noqa: F401
