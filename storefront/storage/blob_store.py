"""Opaque key/value JSON blob storage.

Every record carries a monotonically increasing ``version`` so callers can
perform single-key compare-and-set writes. No multi-key transactions are
offered by either backend.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storefront.errors import VersionConflictError
from storefront.integrations.errors import BLOB_STORE, IntegrationUnavailableError
from storefront.models.blob_record import BlobRecord


@dataclass(frozen=True)
class StoredBlob:
    value: Any
    version: int


class BlobStore(Protocol):
    async def read(self, key: str) -> StoredBlob | None: ...

    async def write(self, key: str, value: Any, *, expected_version: int | None = None) -> int: ...

    async def list_keys(self, prefix: str) -> list[str]: ...

    async def delete(self, key: str) -> None: ...


class InMemoryBlobStore:
    def __init__(self) -> None:
        self._blobs: dict[str, StoredBlob] = {}

    async def read(self, key: str) -> StoredBlob | None:
        blob = self._blobs.get(key)
        if blob is None:
            return None
        return StoredBlob(value=copy.deepcopy(blob.value), version=blob.version)

    async def write(self, key: str, value: Any, *, expected_version: int | None = None) -> int:
        current = self._blobs.get(key)
        current_version = current.version if current else 0
        if expected_version is not None and expected_version != current_version:
            raise VersionConflictError(key, expected_version, current_version)

        new_version = current_version + 1
        self._blobs[key] = StoredBlob(value=copy.deepcopy(value), version=new_version)
        return new_version

    async def list_keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self._blobs if key.startswith(prefix))

    async def delete(self, key: str) -> None:
        self._blobs.pop(key, None)

    def reset(self) -> None:
        self._blobs.clear()


class SqlBlobStore:
    """Blob store on the ``blob_records`` table.

    SQLAlchemy sessions are synchronous, so each call runs in a worker thread
    to keep the event loop free for other orders.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def read(self, key: str) -> StoredBlob | None:
        return await asyncio.to_thread(self._read, key)

    async def write(self, key: str, value: Any, *, expected_version: int | None = None) -> int:
        return await asyncio.to_thread(self._write, key, value, expected_version)

    async def list_keys(self, prefix: str) -> list[str]:
        return await asyncio.to_thread(self._list_keys, prefix)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    def _read(self, key: str) -> StoredBlob | None:
        try:
            with self._session_factory() as db:
                record = db.get(BlobRecord, key)
                if record is None:
                    return None
                return StoredBlob(value=record.payload, version=record.version)
        except SQLAlchemyError as err:
            raise IntegrationUnavailableError(BLOB_STORE, str(err)) from err

    def _write(self, key: str, value: Any, expected_version: int | None) -> int:
        with self._session_factory() as db:
            try:
                if expected_version == 0:
                    db.add(BlobRecord(key=key, payload=value, version=1))
                    db.commit()
                    return 1

                if expected_version is not None:
                    result = db.execute(
                        update(BlobRecord)
                        .where(BlobRecord.key == key, BlobRecord.version == expected_version)
                        .values(payload=value, version=expected_version + 1)
                    )
                    if result.rowcount != 1:
                        db.rollback()
                        actual = db.scalar(select(BlobRecord.version).where(BlobRecord.key == key))
                        raise VersionConflictError(key, expected_version, actual)
                    db.commit()
                    return expected_version + 1

                record = db.get(BlobRecord, key)
                if record is None:
                    db.add(BlobRecord(key=key, payload=value, version=1))
                    db.commit()
                    return 1

                new_version = record.version + 1
                record.payload = value
                record.version = new_version
                db.commit()
                return new_version
            except IntegrityError as err:
                db.rollback()
                raise VersionConflictError(key, expected_version, None) from err
            except SQLAlchemyError as err:
                db.rollback()
                raise IntegrationUnavailableError(BLOB_STORE, str(err)) from err

    def _list_keys(self, prefix: str) -> list[str]:
        try:
            with self._session_factory() as db:
                keys = db.scalars(
                    select(BlobRecord.key)
                    .where(BlobRecord.key.startswith(prefix, autoescape=True))
                    .order_by(BlobRecord.key.asc())
                )
                return list(keys)
        except SQLAlchemyError as err:
            raise IntegrationUnavailableError(BLOB_STORE, str(err)) from err

    def _delete(self, key: str) -> None:
        with self._session_factory() as db:
            try:
                db.execute(delete(BlobRecord).where(BlobRecord.key == key))
                db.commit()
            except SQLAlchemyError as err:
                db.rollback()
                raise IntegrationUnavailableError(BLOB_STORE, str(err)) from err
