"""Tests for the paginated ERP source readers."""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import unquote

import pytest

from erpwms.erp.client import ServiceLayerError
from erpwms.sync.sources import ODataSource, SourceFetchError, SqlQuerySource
from erpwms.sync.stores import EPOCH


def _sql_erp(pages, fail_after=None):
    """ERP mock whose iter_sql_pages yields pages, optionally failing after N pages."""
    erp = MagicMock()
    erp.queries = []

    async def iter_sql_pages(sql):
        erp.queries.append(sql)
        for i, page in enumerate(pages):
            if fail_after is not None and i >= fail_after:
                raise ServiceLayerError("page failed", status_code=500)
            yield page

    erp.iter_sql_pages = iter_sql_pages
    return erp


# ─── SqlQuerySource ───────────────────────────────────────────────────────────

class TestSqlQueryBuild:
    def test_initial_sync_has_no_incremental_predicate(self):
        source = SqlQuerySource(MagicMock(), "SELECT * FROM OCRD WHERE CardType = 'C'", "CardCode")
        assert source.build_query(EPOCH) == "SELECT * FROM OCRD WHERE CardType = 'C' ORDER BY CardCode"

    def test_incremental_predicate_floors_to_day(self):
        source = SqlQuerySource(MagicMock(), "SELECT * FROM OCRD WHERE CardType = 'C'", "CardCode")
        query = source.build_query(datetime(2024, 5, 3, 14, 30))
        assert (
            "AND (UpdateDate >= '2024-05-03 00:00:00' OR CreateDate >= '2024-05-03 00:00:00')"
            in query
        )
        assert query.endswith("ORDER BY CardCode")

    def test_where_added_when_base_has_none(self):
        source = SqlQuerySource(MagicMock(), "SELECT * FROM OITM", "ItemCode")
        query = source.build_query(datetime(2024, 5, 3), until=datetime(2024, 5, 10))
        assert "FROM OITM WHERE (UpdateDate >=" in query
        assert "AND UpdateDate <= '2024-05-10 00:00:00'" in query


class TestSqlQueryFetch:
    @pytest.mark.asyncio
    async def test_concatenates_pages(self):
        erp = _sql_erp([[{"CardCode": "C1"}, {"CardCode": "C2"}], [{"CardCode": "C3"}]])
        result = await SqlQuerySource(erp, "SELECT * FROM OCRD", "CardCode").fetch("ACME", EPOCH)
        assert [r.as_str("CardCode") for r in result.records] == ["C1", "C2", "C3"]
        assert result.complete

    @pytest.mark.asyncio
    async def test_limit_truncates(self):
        erp = _sql_erp([[{"CardCode": "C1"}, {"CardCode": "C2"}], [{"CardCode": "C3"}]])
        result = await SqlQuerySource(erp, "SELECT * FROM OCRD", "CardCode").fetch(
            "ACME", EPOCH, limit=1
        )
        assert len(result) == 1
        assert result.complete

    @pytest.mark.asyncio
    async def test_first_page_failure_raises(self):
        erp = _sql_erp([[{"CardCode": "C1"}]], fail_after=0)
        with pytest.raises(SourceFetchError):
            await SqlQuerySource(erp, "SELECT * FROM OCRD", "CardCode").fetch("ACME", EPOCH)

    @pytest.mark.asyncio
    async def test_later_page_failure_returns_partial(self):
        erp = _sql_erp([[{"CardCode": "C1"}], [{"CardCode": "C2"}]], fail_after=1)
        result = await SqlQuerySource(erp, "SELECT * FROM OCRD", "CardCode").fetch("ACME", EPOCH)
        assert len(result) == 1
        assert result.complete is False


# ─── ODataSource ──────────────────────────────────────────────────────────────

def _page(start, count):
    return {"value": [{"ItemCode": f"A{i:03d}", "odata.etag": "x"} for i in range(start, start + count)]}


class TestODataSource:
    def test_filter_uses_datetime_literals(self):
        source = ODataSource(MagicMock(), "Items", ["ItemCode"], "ItemCode")
        odata_filter = source.build_filter(datetime(2024, 5, 3, 9, 0), datetime(2024, 5, 4))
        assert odata_filter == (
            "(UpdateDate ge datetime'2024-05-03T00:00:00' or CreateDate ge datetime'2024-05-03T00:00:00')"
            " and UpdateDate le datetime'2024-05-04T00:00:00'"
        )

    def test_no_filter_on_initial_sync(self):
        source = ODataSource(MagicMock(), "Items", ["ItemCode"], "ItemCode")
        assert source.build_filter(EPOCH) is None
        assert "$filter" not in source.page_path(0, None)

    def test_page_path(self):
        source = ODataSource(MagicMock(), "Items", ["ItemCode", "ItemName"], "ItemCode", page_size=20)
        path = source.page_path(40, "UpdateDate ge datetime'2024-05-03T00:00:00'")
        assert path.startswith("Items?$select=ItemCode,ItemName&$filter=")
        assert unquote(path).endswith("&$orderby=ItemCode&$skip=40&$top=20")

    @pytest.mark.asyncio
    async def test_pages_until_short_page_and_renames(self):
        erp = AsyncMock()
        erp.get = AsyncMock(side_effect=[_page(0, 20), _page(20, 5)])
        source = ODataSource(erp, "Items", ["ItemCode"], "ItemCode", field_map={"ItemCode": "Code"})
        result = await source.fetch("ACME", EPOCH)
        assert len(result) == 25
        assert result.records[0].as_str("Code") == "A000"
        assert "odata.etag" not in result.records[0]
        assert erp.get.await_count == 2
        assert "$skip=20" in erp.get.await_args_list[1].args[0]

    @pytest.mark.asyncio
    async def test_limit_stops_paging(self):
        erp = AsyncMock()
        erp.get = AsyncMock(side_effect=[_page(0, 20), _page(20, 20)])
        result = await ODataSource(erp, "Items", ["ItemCode"], "ItemCode").fetch("ACME", EPOCH, limit=10)
        assert len(result) == 10
        assert erp.get.await_count == 1

    @pytest.mark.asyncio
    async def test_first_page_failure_raises(self):
        erp = AsyncMock()
        erp.get = AsyncMock(side_effect=ServiceLayerError("down", status_code=503))
        with pytest.raises(SourceFetchError):
            await ODataSource(erp, "Items", ["ItemCode"], "ItemCode").fetch("ACME", EPOCH)

    @pytest.mark.asyncio
    async def test_later_page_failure_returns_partial(self):
        erp = AsyncMock()
        erp.get = AsyncMock(side_effect=[_page(0, 20), ServiceLayerError("down", status_code=503)])
        result = await ODataSource(erp, "Items", ["ItemCode"], "ItemCode").fetch("ACME", EPOCH)
        assert len(result) == 20
        assert result.complete is False
