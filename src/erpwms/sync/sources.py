"""
Source readers: paginated, filtered retrieval of candidate ERP rows.

Every reader is an object with

    async fetch(scope, since, until, limit) -> FetchResult

  since  lower time bound; EPOCH means "initial/full sync" (no predicate)
  until  optional upper bound for backfills
  limit  hard cap; the first `limit` rows in key order, never an error

Pagination is hidden from the caller. If a page after the first fails the
reader returns what it has with complete=False, and the job keeps the
watermark where it was. If nothing could be fetched at all it raises
SourceFetchError.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

from erpwms.erp.client import ServiceLayerError
from erpwms.sync.record import Record, format_sap_datetime
from erpwms.sync.stores import EPOCH

logger = logging.getLogger(__name__)

ODATA_PAGE_SIZE = 20  # Service Layer's default page cap


class SourceFetchError(RuntimeError):
    """Raised when candidates cannot be fetched at all."""


@dataclass
class FetchResult:
    records: List[Record] = field(default_factory=list)
    complete: bool = True

    def __len__(self) -> int:
        return len(self.records)


def _day_floor(value: datetime) -> datetime:
    # ERP UpdateDate/CreateDate columns carry no time of day
    return datetime(value.year, value.month, value.day)


class SqlQuerySource:
    """Rows from a SQL query run through the Service Layer SQLQueries endpoint."""

    def __init__(
        self,
        erp,
        base_query: str,
        order_by: str,
        *,
        update_field: Optional[str] = "UpdateDate",
        create_field: Optional[str] = "CreateDate",
    ):
        """
        Args:
            erp: ServiceLayerClient (or AsyncMock in tests).
            base_query: SELECT ... FROM ... WHERE <static conditions>.
            order_by: natural key column(s) for deterministic order.
            update_field / create_field: columns for the incremental
                predicate; None disables incremental filtering.
        """
        self.erp = erp
        self.base_query = base_query.strip()
        self.order_by = order_by
        self.update_field = update_field
        self.create_field = create_field

    def build_query(self, since: datetime, until: Optional[datetime] = None) -> str:
        conditions: List[str] = []
        if self.update_field and since > EPOCH:
            bound = format_sap_datetime(_day_floor(since))
            if self.create_field:
                conditions.append(
                    f"({self.update_field} >= '{bound}' OR {self.create_field} >= '{bound}')"
                )
            else:
                conditions.append(f"{self.update_field} >= '{bound}'")
        if self.update_field and until is not None:
            conditions.append(f"{self.update_field} <= '{format_sap_datetime(until)}'")

        query = self.base_query
        if conditions:
            joiner = " AND " if " where " in query.lower() else " WHERE "
            query += joiner + " AND ".join(conditions)
        return f"{query} ORDER BY {self.order_by}"

    async def fetch(
        self,
        scope: str,
        since: datetime,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> FetchResult:
        query = self.build_query(since, until)
        logger.debug("Fetching %s rows with: %s", scope, query)
        rows: List[Record] = []
        pages = 0
        try:
            async for page in self.erp.iter_sql_pages(query):
                pages += 1
                rows.extend(Record(row) for row in page)
                if limit is not None and len(rows) >= limit:
                    break
        except ServiceLayerError as exc:
            if pages == 0:
                raise SourceFetchError(f"SQL query failed: {exc}") from exc
            logger.warning("Returning partial results (%d rows) after error: %s", len(rows), exc)
            return FetchResult(records=rows[:limit] if limit is not None else rows, complete=False)
        return FetchResult(records=rows[:limit] if limit is not None else rows)


class ODataSource:
    """Rows from an OData entity set, paged with $skip/$top."""

    def __init__(
        self,
        erp,
        entity_set: str,
        select: Sequence[str],
        order_by: str,
        *,
        field_map: Optional[Dict[str, str]] = None,
        update_field: Optional[str] = "UpdateDate",
        create_field: Optional[str] = "CreateDate",
        page_size: int = ODATA_PAGE_SIZE,
    ):
        self.erp = erp
        self.entity_set = entity_set
        self.select = list(select)
        self.order_by = order_by
        self.field_map = field_map or {}
        self.update_field = update_field
        self.create_field = create_field
        self.page_size = page_size

    def build_filter(self, since: datetime, until: Optional[datetime] = None) -> Optional[str]:
        clauses: List[str] = []
        if self.update_field and since > EPOCH:
            bound = _day_floor(since).strftime("%Y-%m-%dT%H:%M:%S")
            if self.create_field:
                clauses.append(
                    f"({self.update_field} ge datetime'{bound}' or {self.create_field} ge datetime'{bound}')"
                )
            else:
                clauses.append(f"{self.update_field} ge datetime'{bound}'")
        if self.update_field and until is not None:
            clauses.append(f"{self.update_field} le datetime'{until.strftime('%Y-%m-%dT%H:%M:%S')}'")
        return " and ".join(clauses) or None

    def page_path(self, skip: int, odata_filter: Optional[str]) -> str:
        parts = [f"$select={','.join(self.select)}"]
        if odata_filter:
            parts.append(f"$filter={quote(odata_filter)}")
        parts.append(f"$orderby={self.order_by}")
        parts.append(f"$skip={skip}")
        parts.append(f"$top={self.page_size}")
        return f"{self.entity_set}?{'&'.join(parts)}"

    def _rename(self, row: Dict) -> Record:
        return Record({self.field_map.get(k, k): v for k, v in row.items() if not k.startswith("odata.")})

    async def fetch(
        self,
        scope: str,
        since: datetime,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> FetchResult:
        odata_filter = self.build_filter(since, until)
        rows: List[Record] = []
        skip = 0
        page_number = 0
        while True:
            page_number += 1
            path = self.page_path(skip, odata_filter)
            try:
                body = await self.erp.get(path)
            except ServiceLayerError as exc:
                if page_number == 1:
                    raise SourceFetchError(f"{self.entity_set} fetch failed: {exc}") from exc
                logger.warning(
                    "Returning partial %s results (%d rows) after page %d failed: %s",
                    self.entity_set, len(rows), page_number, exc,
                )
                return FetchResult(records=rows, complete=False)

            page = body.get("value", []) if isinstance(body, dict) else []
            rows.extend(self._rename(row) for row in page)
            logger.debug(
                "Fetched %d %s rows in page %d (total %d)",
                len(page), self.entity_set, page_number, len(rows),
            )
            if limit is not None and len(rows) >= limit:
                return FetchResult(records=rows[:limit])
            if len(page) < self.page_size:
                return FetchResult(records=rows)
            skip += self.page_size
