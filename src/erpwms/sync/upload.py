"""
UploadJob: pushes completed warehouse documents back into the ERP.

Flow for a single run:
  1. since = --from, else the latest successful upload_time, else
     now - lookback_days
  2. Poll the warehouse for items completed since then
  3. Per item: skip if already uploaded successfully; map; POST to the ERP;
     a response without DocEntry counts as a failure
  4. On success record Success with the ERP DocEntry, then mark the item
     processed in the warehouse (a failed mark is logged only; the upload
     status row already prevents a second submission)
  5. On failure record Failed with the message; the item stays eligible
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Type

from erpwms.erp.client import ServiceLayerError
from erpwms.models.sync import GoodsDeliveryUploadStatus, GoodsReceiptUploadStatus, UploadStatusBase
from erpwms.sync import mappers
from erpwms.sync.job import JobResult, RunOutcome, SyncOptions
from erpwms.sync.record import Record
from erpwms.sync.stores import UploadStatusStore
from erpwms.warehouse.client import WarehouseError

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 7


class UploadError(RuntimeError):
    """Raised when the ERP accepts a request but creates no document."""


@dataclass
class UploadDefinition:
    name: str
    resource: str  # warehouse resource polled for completed items
    id_field: str
    erp_endpoint: str
    status_table: Type[UploadStatusBase]
    mapper: Callable[..., Dict[str, Any]]


GOODS_RECEIPT_UPLOAD = UploadDefinition(
    name="GoodsReceiptUpload",
    resource="goods-receipts",
    id_field="ReceiptId",
    erp_endpoint="GoodsReceiptPOs",
    status_table=GoodsReceiptUploadStatus,
    mapper=mappers.map_goods_receipt,
)

GOODS_DELIVERY_UPLOAD = UploadDefinition(
    name="GoodsDeliveryUpload",
    resource="deliveries",
    id_field="DeliveryId",
    erp_endpoint="DeliveryNotes",
    status_table=GoodsDeliveryUploadStatus,
    mapper=mappers.map_delivery_note,
)


class UploadJob:
    """Generic warehouse → ERP upload flow."""

    def __init__(
        self,
        definition: UploadDefinition,
        engine,
        erp,
        wms,
        *,
        default_warehouse_code: str = "01",
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        clock=datetime.utcnow,
    ):
        self.definition = definition
        self.erp = erp
        self.wms = wms
        self.statuses = UploadStatusStore(engine, definition.status_table)
        self.default_warehouse_code = default_warehouse_code
        self.lookback_days = lookback_days
        self._clock = clock

    @property
    def name(self) -> str:
        return self.definition.name

    def since(self, scope: str, options: SyncOptions) -> datetime:
        if options.from_date is not None:
            return options.from_date
        last = self.statuses.last_success_time(scope)
        if last is not None:
            return last
        return self._clock() - timedelta(days=self.lookback_days)

    async def run(self, scope: str, options: Optional[SyncOptions] = None) -> JobResult:
        options = options or SyncOptions()
        d = self.definition
        result = JobResult(name=d.name)
        prefix = "[DRY RUN] " if options.dry_run else ""
        since = self.since(scope, options)
        logger.info("%sStarting %s for %s (since %s)", prefix, d.name, scope, since.isoformat())

        try:
            items = await self.wms.get_completed(d.resource, since)
        except WarehouseError as exc:
            logger.error("%s for %s could not poll the warehouse: %s", d.name, scope, exc)
            result.outcome = RunOutcome.FAILURE
            result.error_message = str(exc)
            return result

        if options.limit is not None:
            items = items[: options.limit]
        logger.info("Found %d completed %s for %s", len(items), d.resource, scope)

        for raw in items:
            try:
                await self._upload(scope, Record(raw), options, result)
            except Exception as exc:
                item_id = raw.get(d.id_field) if isinstance(raw, Mapping) else None
                logger.exception("Unexpected error uploading %s %s", d.name, item_id)
                if item_id and not options.dry_run:
                    self.statuses.record_failure(scope, str(item_id), str(exc))
                result.error_count += 1

        result.finalize()
        logger.info(
            "%s%s for %s finished: %s, uploaded=%d skipped=%d errors=%d",
            prefix, d.name, scope, result.outcome.value,
            result.records_processed, result.skipped, result.error_count,
        )
        return result

    async def _upload(self, scope: str, item: Record, options: SyncOptions, result: JobResult) -> None:
        d = self.definition
        item_id = item.as_str(d.id_field)
        if not item_id:
            logger.warning("%s item without %s skipped", d.name, d.id_field)
            result.error_count += 1
            return
        if self.statuses.is_uploaded(scope, item_id):
            logger.debug("%s %s already uploaded", d.name, item_id)
            result.skipped += 1
            return

        try:
            document = d.mapper(
                item, default_warehouse_code=self.default_warehouse_code, now=self._clock()
            )
        except mappers.MappingError as exc:
            logger.warning("%s %s cannot be mapped: %s", d.name, item_id, exc)
            if not options.dry_run:
                self.statuses.record_failure(scope, item_id, str(exc))
            result.error_count += 1
            return

        if options.dry_run:
            logger.info("[DRY RUN] Would post %s %s to %s", d.name, item_id, d.erp_endpoint)
            result.records_processed += 1
            return

        try:
            response = await self.erp.post(d.erp_endpoint, document)
            doc_entry = _doc_entry(response)
            if doc_entry is None:
                raise UploadError(f"No DocEntry in ERP response for {item_id}")
        except (ServiceLayerError, UploadError) as exc:
            logger.error("Failed to upload %s %s: %s", d.name, item_id, exc)
            self.statuses.record_failure(scope, item_id, str(exc))
            result.error_count += 1
            return

        self.statuses.record_success(scope, item_id, doc_entry)
        result.records_processed += 1
        logger.info("Uploaded %s %s as ERP DocEntry %s", d.name, item_id, doc_entry)

        try:
            await self.wms.mark_processed(d.resource, item_id)
        except WarehouseError as exc:
            logger.warning("Could not mark %s %s processed: %s", d.resource, item_id, exc)


def _doc_entry(response) -> Optional[int]:
    if not isinstance(response, Mapping):
        return None
    try:
        return int(response["DocEntry"])
    except (KeyError, TypeError, ValueError):
        return None
