"""Tests for the warehouse REST client and the target writers.

Requests are served by httpx.MockTransport; backoff is zero so retries
don't slow the suite down.
"""
import json
from datetime import datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from erpwms.sync.writers import CustomerBatchWriter, TargetWriter, UpsertWriter
from erpwms.warehouse.client import WarehouseClient, WarehouseError


def make_client(handler, max_retries=2) -> WarehouseClient:
    return WarehouseClient(
        "key-123",
        "AcmeClient",
        base_url="https://wms.example/api",
        max_retries=max_retries,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


# ─── WarehouseClient ──────────────────────────────────────────────────────────

class TestWarehouseClient:
    @pytest.mark.asyncio
    async def test_sends_auth_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": 17}])

        async with make_client(handler) as wms:
            assert await wms.get_client_id() == "17"
        assert seen[0].headers["ApiKey"] == "key-123"
        assert seen[0].headers["Client"] == "AcmeClient"
        assert seen[0].url.path == "/api/clients"

    @pytest.mark.asyncio
    async def test_client_id_from_envelope(self):
        async with make_client(lambda r: httpx.Response(200, json={"items": [{"id": "abc"}]})) as wms:
            assert await wms.get_client_id() == "abc"

    @pytest.mark.asyncio
    async def test_client_id_missing(self):
        async with make_client(lambda r: httpx.Response(200, json=[])) as wms:
            assert await wms.get_client_id() is None

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.method == "GET":
                assert request.url.params["Sku"] == "A100"
                return httpx.Response(200, json=[{"id": 5, "sku": "A100"}])
            return httpx.Response(200, json={"id": 5})

        async with make_client(handler) as wms:
            await wms.upsert("products", "Sku", "A100", {"sku": "A100"})
        assert calls == [("GET", "/api/products"), ("PUT", "/api/products/5")]

    @pytest.mark.asyncio
    async def test_upsert_creates_missing(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.method == "GET":
                return httpx.Response(404)
            assert json.loads(request.content) == {"CardCode": "V1"}
            return httpx.Response(201, json={"id": 9})

        async with make_client(handler) as wms:
            assert await wms.upsert("vendors", "CardCode", "V1", {"CardCode": "V1"}) == {"id": 9}
        assert calls == [("GET", "/api/vendors"), ("POST", "/api/vendors")]

    @pytest.mark.asyncio
    async def test_find_ignores_non_matching_rows(self):
        def handler(request):
            return httpx.Response(200, json=[{"id": 1, "CardCode": "OTHER"}])

        async with make_client(handler) as wms:
            assert await wms.exists("vendors", "CardCode", "V1") is False

    @pytest.mark.asyncio
    async def test_upsert_never_updates_unkeyed_row(self):
        sent = []

        def handler(request):
            sent.append((request.method, request.url.path))
            if request.method == "GET":
                return httpx.Response(200, json=[{"id": 99, "name": "Some other vendor"}])
            return httpx.Response(201, json={"id": 100})

        async with make_client(handler) as wms:
            assert await wms.upsert("vendors", "CardCode", "V2", {"CardCode": "V2"}) == {"id": 100}
        assert sent[-1][0] == "POST"
        assert all(method != "PUT" for method, _ in sent)

    @pytest.mark.asyncio
    async def test_find_matches_camel_case_key(self):
        def handler(request):
            return httpx.Response(200, json=[{"id": 1}, {"id": 2, "cardCode": "V1"}])

        async with make_client(handler) as wms:
            assert (await wms.find("vendors", "CardCode", "V1"))["id"] == 2

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=[{"id": 1}])

        async with make_client(handler, max_retries=2) as wms:
            assert await wms.get_client_id() == "1"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500, text="boom")

        async with make_client(handler, max_retries=1) as wms:
            with pytest.raises(WarehouseError) as exc_info:
                await wms.get_client_id()
        assert exc_info.value.status_code == 500
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(400, text="bad payload")

        async with make_client(handler) as wms:
            with pytest.raises(WarehouseError):
                await wms.upsert_customer_batch([{"CardCode": "C1"}])
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_are_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler, max_retries=0) as wms:
            with pytest.raises(WarehouseError):
                await wms.get_client_id()

    @pytest.mark.asyncio
    async def test_get_completed_and_mark_processed(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path, dict(request.url.params)))
            if request.method == "GET":
                return httpx.Response(200, json={"value": [{"ReceiptId": "R1"}]})
            return httpx.Response(204)

        async with make_client(handler) as wms:
            items = await wms.get_completed("goods-receipts", datetime(2024, 5, 1, 8, 30))
            await wms.mark_processed("goods-receipts", "R1")
        assert items == [{"ReceiptId": "R1"}]
        assert calls[0][1] == "/api/goods-receipts/completed"
        assert calls[0][2]["since"].startswith("2024-05-01")
        assert calls[1][:2] == ("PATCH", "/api/goods-receipts/R1/processed")


# ─── Writers ──────────────────────────────────────────────────────────────────

class TestUpsertWriter:
    @pytest.mark.asyncio
    async def test_write_uses_payload_key(self):
        wms = AsyncMock()
        writer = UpsertWriter(wms, "products", "Sku", payload_key="sku")
        assert await writer.write("ACME", {"sku": "A100"}) is True
        wms.upsert.assert_awaited_once_with("products", "Sku", "A100", {"sku": "A100"})

    @pytest.mark.asyncio
    async def test_batch_continues_after_failure(self):
        wms = AsyncMock()
        wms.upsert = AsyncMock(side_effect=[{}, WarehouseError("nope", 400), {}])
        writer = UpsertWriter(wms, "vendors", "CardCode")
        results = await writer.write_batch("ACME", [{"CardCode": c} for c in ("V1", "V2", "V3")])
        assert results == [True, False, True]
        assert wms.upsert.await_count == 3

    @pytest.mark.asyncio
    async def test_base_write_is_abstract(self):
        with pytest.raises(NotImplementedError):
            await TargetWriter().write("ACME", {})


class TestCustomerBatchWriter:
    @pytest.mark.asyncio
    async def test_one_request_per_batch(self):
        wms = AsyncMock()
        writer = CustomerBatchWriter(wms)
        items = [{"CardCode": "C1"}, {"CardCode": "C2"}]
        assert await writer.write_batch("ACME", items) == [True, True]
        wms.upsert_customer_batch.assert_awaited_once_with(items)

    @pytest.mark.asyncio
    async def test_batch_failure_fails_every_item(self):
        wms = AsyncMock()
        wms.upsert_customer_batch = AsyncMock(side_effect=WarehouseError("down", 500))
        assert await CustomerBatchWriter(wms).write_batch("ACME", [{}, {}]) == [False, False]

    @pytest.mark.asyncio
    async def test_empty_batch_makes_no_call(self):
        wms = AsyncMock()
        assert await CustomerBatchWriter(wms).write_batch("ACME", []) == []
        wms.upsert_customer_batch.assert_not_awaited()
