import copy
import json
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import httpx

from ..config import get_settings
from ..errors import (
    DocumentTooLarge,
    LocalQuotaExceeded,
    NotFound,
    StorageUnavailable,
    WriteFailed,
)


logger = logging.getLogger(__name__)


def strip_undefined(doc: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None; the stores reject undefined fields."""
    return {key: value for key, value in doc.items() if value is not None}


def document_size(doc: dict[str, Any]) -> int:
    """Size in bytes of a document as it is written to the store."""
    return len(json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


class DocumentStore(ABC):
    """
    Keyed document store with simple query-by-field support.

    Documents are plain dicts keyed by their "id". Each collection holds one
    kind of record (trips, expenses, ...).
    """

    def __init__(self, max_document_bytes: int):
        self.max_document_bytes = max_document_bytes

    def check_size(self, doc: dict[str, Any]) -> None:
        size = document_size(doc)
        if size > self.max_document_bytes:
            raise DocumentTooLarge(size, self.max_document_bytes)

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """Return the document, or None if it does not exist."""

    @abstractmethod
    async def query(self, collection: str, **filters: Any) -> list[dict]:
        """Return all documents whose fields equal every filter value."""

    @abstractmethod
    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        """Create or fully overwrite a document."""

    @abstractmethod
    async def patch(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict:
        """Update some fields of an existing document and return the result."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is not an error."""


class LocalDocumentStore(DocumentStore):
    """
    Device-local store kept in memory and optionally mirrored to a JSON file.

    Enforces the per-document limit and a total quota across all collections.
    """

    def __init__(
        self,
        path: str = "",
        max_document_bytes: int = 1_048_576,
        quota_bytes: int = 5 * 1024 * 1024,
    ):
        super().__init__(max_document_bytes)
        self.quota_bytes = quota_bytes
        self._path = Path(path) if path else None
        self._collections: dict[str, dict[str, dict]] = {}

        if self._path and self._path.exists():
            with self._path.open(encoding="utf-8") as f:
                self._collections = json.load(f)

    def used_bytes(self) -> int:
        return sum(
            document_size(doc)
            for docs in self._collections.values()
            for doc in docs.values()
        )

    def _flush(self) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("w", encoding="utf-8") as f:
                json.dump(self._collections, f, ensure_ascii=False)
        except OSError as e:
            raise WriteFailed(f"Could not write local store: {e}") from e

    def _store(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        self.check_size(doc)

        docs = self._collections.setdefault(collection, {})
        existing = docs.get(doc_id)
        projected = self.used_bytes() - (document_size(existing) if existing else 0) + document_size(doc)
        if projected > self.quota_bytes:
            raise LocalQuotaExceeded(
                f"Local storage is full ({projected} of {self.quota_bytes} bytes)"
            )

        docs[doc_id] = copy.deepcopy(doc)
        try:
            self._flush()
        except WriteFailed:
            # Keep memory in step with the file
            if existing is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = existing
            raise

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query(self, collection: str, **filters: Any) -> list[dict]:
        return [
            copy.deepcopy(doc)
            for doc in self._collections.get(collection, {}).values()
            if all(doc.get(field) == value for field, value in filters.items())
        ]

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        self._store(collection, doc_id, {**doc, "id": doc_id})

    async def patch(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict:
        existing = self._collections.get(collection, {}).get(doc_id)
        if existing is None:
            raise NotFound(f"{collection}/{doc_id} does not exist")
        updated = {**existing, **fields, "id": doc_id}
        self._store(collection, doc_id, updated)
        return copy.deepcopy(updated)

    async def delete(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection, {})
        removed = docs.pop(doc_id, None)
        if removed is None:
            return
        try:
            self._flush()
        except WriteFailed:
            docs[doc_id] = removed
            raise


class SupabaseDocumentStore(DocumentStore):
    """
    Remote store on Supabase's REST API.

    Each collection is a table with an `id` primary key and a `data` jsonb
    column holding the whole document, so an upsert replaces the document
    and queries filter on `data->>field`.
    """

    def __init__(self, url: str, service_key: str, max_document_bytes: int = 1_048_576):
        super().__init__(max_document_bytes)
        self.url = url.rstrip("/")
        self.service_key = service_key

    def get_headers(self) -> dict[str, str]:
        """Get headers for Supabase REST API calls."""
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }

    def table_url(self, collection: str) -> str:
        return f"{self.url}/rest/v1/{collection}"

    async def _select(self, collection: str, params: dict[str, str]) -> list[dict]:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    self.table_url(collection),
                    headers=self.get_headers(),
                    params={**params, "select": "data"},
                )
        except httpx.RequestError as e:
            logger.error(f"Supabase read from {collection} failed: {e}")
            raise StorageUnavailable(f"Could not reach the remote store: {e}") from e

        if response.status_code != 200:
            logger.error(f"Supabase read from {collection} returned {response.status_code}")
            raise StorageUnavailable(f"Remote store returned {response.status_code}")

        return [row["data"] for row in response.json()]

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        rows = await self._select(collection, {"id": f"eq.{doc_id}"})
        return rows[0] if rows else None

    async def query(self, collection: str, **filters: Any) -> list[dict]:
        params = {f"data->>{field}": f"eq.{value}" for field, value in filters.items()}
        return await self._select(collection, params)

    async def put(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        doc = {**doc, "id": doc_id}
        self.check_size(doc)

        try:
            async with httpx.AsyncClient() as client:
                # Upsert replaces the whole jsonb document
                response = await client.post(
                    self.table_url(collection),
                    headers={
                        **self.get_headers(),
                        "Prefer": "resolution=merge-duplicates,return=minimal",
                    },
                    json={"id": doc_id, "data": doc},
                )
        except httpx.RequestError as e:
            logger.error(f"Supabase write to {collection}/{doc_id} failed: {e}")
            raise WriteFailed(f"Could not reach the remote store: {e}") from e

        if response.status_code == 413:
            raise DocumentTooLarge(document_size(doc), self.max_document_bytes)
        if response.status_code not in (200, 201, 204):
            logger.error(f"Supabase write to {collection}/{doc_id} returned {response.status_code}")
            raise WriteFailed(f"Remote store returned {response.status_code}")

    async def patch(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict:
        existing = await self.get(collection, doc_id)
        if existing is None:
            raise NotFound(f"{collection}/{doc_id} does not exist")
        updated = {**existing, **fields}
        await self.put(collection, doc_id, updated)
        return updated

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.delete(
                    self.table_url(collection),
                    headers=self.get_headers(),
                    params={"id": f"eq.{doc_id}"},
                )
        except httpx.RequestError as e:
            logger.error(f"Supabase delete of {collection}/{doc_id} failed: {e}")
            raise WriteFailed(f"Could not reach the remote store: {e}") from e

        if response.status_code not in (200, 202, 204):
            raise WriteFailed(f"Remote store returned {response.status_code}")


@lru_cache
def get_local_store() -> LocalDocumentStore:
    """Device-local store for caches, usage counters and preferences."""
    settings = get_settings()
    return LocalDocumentStore(
        path=settings.local_store_path,
        max_document_bytes=settings.max_document_bytes,
        quota_bytes=settings.local_quota_bytes,
    )


@lru_cache
def get_document_store() -> DocumentStore:
    """Store for trips and expenses: Supabase when configured, else local."""
    settings = get_settings()

    if not settings.remote_store_configured:
        logger.warning("Supabase is not configured; trips and expenses use the local store")
        return get_local_store()

    return SupabaseDocumentStore(
        url=settings.supabase_url,
        service_key=settings.supabase_service_key,
        max_document_bytes=settings.max_document_bytes,
    )
