"""Tests for the document stores."""

import json
import pytest
from unittest.mock import patch, AsyncMock, MagicMock
import httpx

from bamboo_budget.errors import (
    DocumentTooLarge,
    LocalQuotaExceeded,
    NotFound,
    StorageUnavailable,
    WriteFailed,
)
from bamboo_budget.services.store import (
    LocalDocumentStore,
    SupabaseDocumentStore,
    document_size,
    strip_undefined,
)


def mock_async_client(mock_client_class, **methods):
    """Wire up a patched httpx.AsyncClient used as an async context manager."""
    mock_client = AsyncMock()
    for name, response in methods.items():
        if isinstance(response, Exception):
            setattr(mock_client, name, AsyncMock(side_effect=response))
        else:
            setattr(mock_client, name, AsyncMock(return_value=response))
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_class.return_value = mock_client
    return mock_client


class TestStripUndefined:
    """Tests for the serialization step that drops undefined fields."""

    def test_removes_none_values_only(self):
        doc = {"id": "e1", "receiptImage": None, "repaid": False, "budget": 0}
        assert strip_undefined(doc) == {"id": "e1", "repaid": False, "budget": 0}


class TestLocalDocumentStore:
    """Tests for the local fallback store."""

    @pytest.mark.asyncio
    async def test_put_get_query_delete(self, store):
        await store.put("trips", "t1", {"name": "Tokyo", "ownerId": "u1"})
        await store.put("trips", "t2", {"name": "Seoul", "ownerId": "u2"})

        assert await store.get("trips", "t1") == {"name": "Tokyo", "ownerId": "u1", "id": "t1"}
        assert [d["id"] for d in await store.query("trips", ownerId="u2")] == ["t2"]

        await store.delete("trips", "t1")
        assert await store.get("trips", "t1") is None

    @pytest.mark.asyncio
    async def test_delete_missing_is_not_an_error(self, store):
        await store.delete("trips", "nope")

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        await store.put("trips", "t1", {"tags": ["a"]})
        doc = await store.get("trips", "t1")
        doc["tags"].append("b")

        assert (await store.get("trips", "t1"))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_patch_updates_fields(self, store):
        await store.put("expenses", "e1", {"repaid": False, "storeName": "Cafe"})

        updated = await store.patch("expenses", "e1", {"repaid": True})

        assert updated == {"id": "e1", "repaid": True, "storeName": "Cafe"}

    @pytest.mark.asyncio
    async def test_patch_missing_raises_not_found(self, store):
        with pytest.raises(NotFound):
            await store.patch("expenses", "missing", {"repaid": True})

    @pytest.mark.asyncio
    async def test_document_size_limit(self, store):
        with pytest.raises(DocumentTooLarge) as exc_info:
            await store.put("expenses", "big", {"receiptImage": "x" * 5000})

        assert exc_info.value.limit == 4096
        assert await store.get("expenses", "big") is None

    @pytest.mark.asyncio
    async def test_quota_exceeded(self):
        small = LocalDocumentStore(max_document_bytes=1000, quota_bytes=300)
        await small.put("trips", "t1", {"name": "a" * 150})

        with pytest.raises(LocalQuotaExceeded):
            await small.put("trips", "t2", {"name": "b" * 200})

        assert await small.get("trips", "t2") is None

    @pytest.mark.asyncio
    async def test_overwrite_does_not_count_twice(self):
        small = LocalDocumentStore(max_document_bytes=1000, quota_bytes=300)
        await small.put("trips", "t1", {"name": "a" * 200})
        await small.put("trips", "t1", {"name": "b" * 200})

        assert (await small.get("trips", "t1"))["name"] == "b" * 200

    @pytest.mark.asyncio
    async def test_persists_to_file(self, tmp_path):
        path = tmp_path / "store.json"
        first = LocalDocumentStore(path=str(path))
        await first.put("rate_cache", "JPY", {"rate": 0.21, "date": "2024-01-01"})

        reopened = LocalDocumentStore(path=str(path))

        assert await reopened.get("rate_cache", "JPY") == {"rate": 0.21, "date": "2024-01-01", "id": "JPY"}
        assert json.loads(path.read_text(encoding="utf-8"))["rate_cache"]["JPY"]["rate"] == 0.21

    @pytest.mark.asyncio
    async def test_failed_file_write_keeps_nothing(self, tmp_path):
        unwritable = LocalDocumentStore(path=str(tmp_path / "missing" / "store.json"))

        with pytest.raises(WriteFailed):
            await unwritable.put("trips", "t1", {"name": "Tokyo"})

        assert await unwritable.get("trips", "t1") is None
        assert await unwritable.query("trips") == []

    @pytest.mark.asyncio
    async def test_failed_overwrite_restores_previous_document(self, store):
        await store.put("trips", "t1", {"name": "Tokyo"})

        with patch.object(store, "_flush", side_effect=WriteFailed("disk full")):
            with pytest.raises(WriteFailed):
                await store.put("trips", "t1", {"name": "Osaka"})
            with pytest.raises(WriteFailed):
                await store.patch("trips", "t1", {"name": "Kyoto"})

        assert (await store.get("trips", "t1"))["name"] == "Tokyo"

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_document(self, store):
        await store.put("trips", "t1", {"name": "Tokyo"})

        with patch.object(store, "_flush", side_effect=WriteFailed("disk full")):
            with pytest.raises(WriteFailed):
                await store.delete("trips", "t1")

        assert (await store.get("trips", "t1"))["name"] == "Tokyo"


class TestSupabaseDocumentStore:
    """Tests for the Supabase-backed store."""

    @pytest.fixture
    def remote(self):
        return SupabaseDocumentStore(
            url="https://test.supabase.co/",
            service_key="test-service-key",
            max_document_bytes=2048,
        )

    @pytest.mark.asyncio
    async def test_query_filters_on_document_fields(self, remote):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = [{"data": {"id": "t1", "ownerId": "u1"}}]

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class, get=mock_response)

            result = await remote.query("trips", ownerId="u1")

            assert result == [{"id": "t1", "ownerId": "u1"}]
            call = mock_client.get.call_args
            assert call.args[0] == "https://test.supabase.co/rest/v1/trips"
            assert call.kwargs["params"]["data->>ownerId"] == "eq.u1"
            assert call.kwargs["headers"]["apikey"] == "test-service-key"

    @pytest.mark.asyncio
    async def test_get_returns_none_when_missing(self, remote):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = []

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_async_client(mock_client_class, get=mock_response)

            assert await remote.get("trips", "nope") is None

    @pytest.mark.asyncio
    async def test_read_network_error_is_storage_unavailable(self, remote):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_async_client(mock_client_class, get=httpx.ConnectError("Connection refused"))

            with pytest.raises(StorageUnavailable):
                await remote.query("trips", ownerId="u1")

    @pytest.mark.asyncio
    async def test_read_error_status_is_storage_unavailable(self, remote):
        mock_response = MagicMock()
        mock_response.status_code = 500

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_async_client(mock_client_class, get=mock_response)

            with pytest.raises(StorageUnavailable):
                await remote.get("trips", "t1")

    @pytest.mark.asyncio
    async def test_put_upserts_whole_document(self, remote):
        mock_response = MagicMock()
        mock_response.status_code = 201

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class, post=mock_response)

            await remote.put("expenses", "e1", {"storeName": "Cafe"})

            call_kwargs = mock_client.post.call_args.kwargs
            assert call_kwargs["json"] == {"id": "e1", "data": {"storeName": "Cafe", "id": "e1"}}
            assert "resolution=merge-duplicates" in call_kwargs["headers"]["Prefer"]

    @pytest.mark.asyncio
    async def test_put_rejects_oversized_document_before_sending(self, remote):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class, post=MagicMock())

            with pytest.raises(DocumentTooLarge):
                await remote.put("expenses", "e1", {"receiptImage": "x" * 4000})

            mock_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_put_413_is_document_too_large(self, remote):
        mock_response = MagicMock()
        mock_response.status_code = 413

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_async_client(mock_client_class, post=mock_response)

            with pytest.raises(DocumentTooLarge):
                await remote.put("expenses", "e1", {"storeName": "Cafe"})

    @pytest.mark.asyncio
    async def test_put_failure_is_write_failed(self, remote):
        with patch("httpx.AsyncClient") as mock_client_class:
            mock_async_client(mock_client_class, post=httpx.ReadTimeout("timed out"))

            with pytest.raises(WriteFailed):
                await remote.put("expenses", "e1", {"storeName": "Cafe"})

    @pytest.mark.asyncio
    async def test_delete_by_id(self, remote):
        mock_response = MagicMock()
        mock_response.status_code = 204

        with patch("httpx.AsyncClient") as mock_client_class:
            mock_client = mock_async_client(mock_client_class, delete=mock_response)

            await remote.delete("expenses", "e1")

            assert mock_client.delete.call_args.kwargs["params"] == {"id": "eq.e1"}


def test_document_size_counts_utf8_bytes():
    assert document_size({"a": "é"}) == len('{"a":"é"}'.encode("utf-8"))
