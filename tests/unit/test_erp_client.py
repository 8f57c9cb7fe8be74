"""Tests for the Service Layer client: session handling, retries, SQL paging."""
import json
from datetime import datetime, timedelta

import httpx
import pytest

from erpwms.erp.client import (
    QUERY_CODE_PREFIX,
    ServiceLayerClient,
    ServiceLayerError,
    SessionError,
    query_code,
)

BASE_URL = "https://sap.example:50000/b1s/v1"


class Clock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 8, 0)

    def __call__(self):
        return self.now


def make_client(handler, clock=None, max_retries=2) -> ServiceLayerClient:
    return ServiceLayerClient(
        BASE_URL,
        "SBO_ACME",
        "manager",
        "secret",
        max_retries=max_retries,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
        clock=clock or Clock(),
    )


def routes(table):
    """Handler dispatching on (method, path) with a per-request log."""
    log = []

    def handler(request):
        key = (request.method, request.url.path.replace("/b1s/v1/", "", 1))
        log.append(key)
        responder = table[key]
        return responder(request) if callable(responder) else responder

    handler.log = log
    return handler


LOGIN_OK = httpx.Response(200, json={"SessionId": "s-1", "SessionTimeout": 30})


# ─── Session ──────────────────────────────────────────────────────────────────

class TestSession:
    @pytest.mark.asyncio
    async def test_login_sends_credentials(self):
        bodies = []

        def login(request):
            bodies.append(json.loads(request.content))
            return LOGIN_OK

        handler = routes({("POST", "Login"): login})
        async with make_client(handler) as erp:
            await erp.login()
            assert erp.has_session
        assert bodies == [{"CompanyDB": "SBO_ACME", "UserName": "manager", "Password": "secret"}]

    @pytest.mark.asyncio
    async def test_login_rejected(self):
        handler = routes({("POST", "Login"): httpx.Response(401, text="bad credentials")})
        async with make_client(handler) as erp:
            with pytest.raises(SessionError):
                await erp.login()

    @pytest.mark.asyncio
    async def test_first_request_logs_in(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Items('A1')"): httpx.Response(200, json={"ItemCode": "A1"}),
        })
        async with make_client(handler) as erp:
            assert await erp.get("Items('A1')") == {"ItemCode": "A1"}
        assert handler.log == [("POST", "Login"), ("GET", "Items('A1')")]

    @pytest.mark.asyncio
    async def test_session_refreshed_when_old(self):
        clock = Clock()
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Items"): httpx.Response(200, json={"value": []}),
        })
        async with make_client(handler, clock=clock) as erp:
            await erp.get("Items")
            clock.now += timedelta(minutes=10)
            await erp.get("Items")
            clock.now += timedelta(minutes=26)
            await erp.get("Items")
        assert handler.log.count(("POST", "Login")) == 2

    @pytest.mark.asyncio
    async def test_401_triggers_relogin_and_retry(self):
        responses = iter([httpx.Response(401), httpx.Response(200, json={"value": [1]})])
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Items"): lambda r: next(responses),
        })
        async with make_client(handler) as erp:
            assert await erp.get("Items") == {"value": [1]}
        assert handler.log.count(("POST", "Login")) == 2


# ─── Retries ──────────────────────────────────────────────────────────────────

class TestRetries:
    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Items"): httpx.Response(502),
        })
        async with make_client(handler, max_retries=2) as erp:
            with pytest.raises(ServiceLayerError) as exc_info:
                await erp.get("Items")
        assert exc_info.value.status_code == 502
        assert handler.log.count(("GET", "Items")) == 3

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Items('X')"): httpx.Response(404, text="no such item"),
        })
        async with make_client(handler) as erp:
            with pytest.raises(ServiceLayerError) as exc_info:
                await erp.get("Items('X')")
        assert exc_info.value.status_code == 404
        assert handler.log.count(("GET", "Items('X')")) == 1

    @pytest.mark.asyncio
    async def test_post_returns_empty_dict_for_no_content(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("POST", "DeliveryNotes"): httpx.Response(204),
        })
        async with make_client(handler) as erp:
            assert await erp.post("DeliveryNotes", {"CardCode": "C1"}) == {}


# ─── SQL queries ──────────────────────────────────────────────────────────────

SQL = "SELECT CardCode FROM OCRD ORDER BY CardCode"


class TestSqlQueries:
    def test_query_code_is_stable(self):
        code = query_code(SQL)
        assert code == query_code(SQL)
        assert code.startswith(QUERY_CODE_PREFIX)
        assert len(code) == len(QUERY_CODE_PREFIX) + 8
        assert code != query_code(SQL + " DESC")

    @pytest.mark.asyncio
    async def test_registers_query_on_404_and_follows_next_link(self):
        code = query_code(SQL)
        list_path = f"SQLQueries('{code}')/List"
        list_responses = iter([
            httpx.Response(404),
            httpx.Response(200, json={
                "value": [{"CardCode": "C1"}],
                "odata.nextLink": f"/b1s/v1/{list_path}?$skip=1",
            }),
            httpx.Response(200, json={"value": [{"CardCode": "C2"}]}),
        ])
        registered = []

        def register(request):
            registered.append(json.loads(request.content))
            return httpx.Response(201, json={})

        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("POST", list_path): lambda r: next(list_responses),
            ("POST", "SQLQueries"): register,
        })
        async with make_client(handler) as erp:
            rows = await erp.execute_sql(SQL)

        assert rows == [{"CardCode": "C1"}, {"CardCode": "C2"}]
        assert registered[0]["SqlCode"] == code
        assert registered[0]["SqlText"] == SQL

    @pytest.mark.asyncio
    async def test_concurrent_registration_conflict_is_tolerated(self):
        code = query_code(SQL)
        list_path = f"SQLQueries('{code}')/List"
        list_responses = iter([httpx.Response(404), httpx.Response(200, json={"value": []})])
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("POST", list_path): lambda r: next(list_responses),
            ("POST", "SQLQueries"): httpx.Response(409),
        })
        async with make_client(handler) as erp:
            assert await erp.execute_sql(SQL) == []


# ─── Master data and attachments ──────────────────────────────────────────────

class TestItemGroups:
    @pytest.mark.asyncio
    async def test_maps_numbers_to_names(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "ItemGroups"): httpx.Response(200, json={"value": [
                {"Number": 100, "GroupName": "Items"},
                {"Number": 105, "GroupName": "Hardware"},
            ]}),
        })
        async with make_client(handler) as erp:
            assert await erp.get_item_groups() == {100: "Items", 105: "Hardware"}

    @pytest.mark.asyncio
    async def test_failure_returns_partial_mapping(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "ItemGroups"): httpx.Response(500),
        })
        async with make_client(handler, max_retries=0) as erp:
            assert await erp.get_item_groups() == {}


class TestAttachments:
    @pytest.mark.asyncio
    async def test_missing_attachment_is_none(self):
        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Attachments2(9)"): httpx.Response(404),
        })
        async with make_client(handler) as erp:
            assert await erp.get_attachment(9) is None

    @pytest.mark.asyncio
    async def test_download_by_file_path(self):
        seen = []

        def download(request):
            seen.append(request.url.params["filename"])
            return httpx.Response(200, content=b"\x89PNG")

        handler = routes({
            ("POST", "Login"): LOGIN_OK,
            ("GET", "Attachments2/$value"): download,
        })
        async with make_client(handler) as erp:
            assert await erp.download_attachment("C:\\att\\widget.png") == b"\x89PNG"
        assert seen == ["C:\\att\\widget.png"]

    @pytest.mark.asyncio
    async def test_download_empty_path_is_none(self):
        async with make_client(routes({})) as erp:
            assert await erp.download_attachment("") is None
