"""
Job registry and the single entry point used by both the CLI and the
scheduler to run one named operation with an ExecutionHistory row around it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from erpwms.config import Company, Settings
from erpwms.models.sync import ExecutionStatus
from erpwms.sync import entities
from erpwms.sync.job import JobResult, RunOutcome, SyncJob, SyncOptions
from erpwms.sync.stores import ExecutionHistoryStore
from erpwms.sync.upload import GOODS_DELIVERY_UPLOAD, GOODS_RECEIPT_UPLOAD, UploadJob

logger = logging.getLogger(__name__)

JOB_NAMES = (
    "ProductSync",
    "CustomerSync",
    "VendorSync",
    "PurchaseOrderSync",
    "SalesOrderSync",
    "GoodsReceiptUpload",
    "GoodsDeliveryUpload",
)

UPLOAD_DEFINITIONS = {
    GOODS_RECEIPT_UPLOAD.name: GOODS_RECEIPT_UPLOAD,
    GOODS_DELIVERY_UPLOAD.name: GOODS_DELIVERY_UPLOAD,
}

_OUTCOME_STATUS = {
    RunOutcome.SUCCESS: ExecutionStatus.SUCCESS,
    RunOutcome.PARTIAL: ExecutionStatus.PARTIAL,
    RunOutcome.FAILURE: ExecutionStatus.FAILED,
}


class UnknownJobError(ValueError):
    """Raised for an operation name that is not in JOB_NAMES."""


@dataclass
class JobContext:
    """Everything a job needs for one company."""

    engine: Any
    company: Company
    erp: Any  # ServiceLayerClient
    wms: Any  # WarehouseClient
    settings: Settings
    assets: Any = None  # ProductImageSync / NullAssetSync
    clock: Callable[[], datetime] = datetime.utcnow

    @property
    def scope(self) -> str:
        return self.company.company_name


def canonical_name(name: str) -> Optional[str]:
    """Case-insensitive lookup in JOB_NAMES."""
    for job_name in JOB_NAMES:
        if job_name.lower() == (name or "").strip().lower():
            return job_name
    return None


def build_job(name: str, context: JobContext):
    """Instantiate the SyncJob or UploadJob registered under name.

    Raises:
        UnknownJobError: if name is not a known operation.
    """
    job_name = canonical_name(name)
    if job_name is None:
        raise UnknownJobError(f"Unknown operation {name!r}; expected one of {', '.join(JOB_NAMES)}")

    if job_name in UPLOAD_DEFINITIONS:
        return UploadJob(
            UPLOAD_DEFINITIONS[job_name],
            context.engine,
            context.erp,
            context.wms,
            default_warehouse_code=context.company.settings.default_warehouse_code,
            lookback_days=context.settings.upload_lookback_days,
            clock=context.clock,
        )

    entity_type = job_name[: -len("Sync")]
    factory = entities.ENTITY_DEFINITIONS[entity_type]
    if entity_type == "Product":
        definition = factory(context.erp, context.wms, assets=context.assets)
    else:
        definition = factory(context.erp, context.wms)
    return SyncJob(
        definition,
        context.engine,
        client_name=context.company.sap_b1.client_name,
        clock=context.clock,
    )


async def run_operation(
    context: JobContext,
    name: str,
    options: Optional[SyncOptions] = None,
    command_line: Optional[str] = None,
) -> JobResult:
    """
    Run one operation for the context's company and record it in
    ExecutionHistory.

    Unknown names and unexpected job exceptions come back as a FAILURE
    result; this never raises.
    """
    options = options or SyncOptions()
    history = ExecutionHistoryStore(context.engine)
    job_name = canonical_name(name) or name
    execution_id = history.start(context.scope, job_name, command_line)

    try:
        job = build_job(name, context)
        result = await job.run(context.scope, options)
    except UnknownJobError as exc:
        logger.error("%s", exc)
        result = JobResult(name=job_name, outcome=RunOutcome.FAILURE, error_count=1, error_message=str(exc))
    except Exception as exc:
        logger.exception("Operation %s crashed for %s", job_name, context.scope)
        result = JobResult(name=job_name, outcome=RunOutcome.FAILURE, error_count=1, error_message=str(exc))

    history.finish(
        execution_id,
        status=_OUTCOME_STATUS[result.outcome],
        records_processed=result.records_processed,
        error_count=result.error_count,
        error_message=result.error_message,
    )
    logger.info(
        "Operation %s completed for %s - Records: %d, Errors: %d",
        job_name, context.scope, result.records_processed, result.error_count,
    )
    return result
