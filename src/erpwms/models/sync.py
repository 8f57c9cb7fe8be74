"""Sync bookkeeping models: per-entity status, watermarks, uploads, history."""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class SyncStatusCode(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    DRY_RUN = "DryRun"


class UploadStatusCode(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


class ExecutionStatus(str, Enum):
    RUNNING = "Running"
    SUCCESS = "Success"
    PARTIAL = "Partial"
    FAILED = "Failed"


# ─── Per-entity sync status ───────────────────────────────────────────────────

class SyncStatusBase(SQLModel):
    """Last-known state of one entity in one scope (company).

    One row per (scope, entity_key). The fingerprint is the digest of the
    content that was last written to the warehouse; a row whose fingerprint
    matches the current content needs no remote write.
    """

    scope: str = Field(primary_key=True, max_length=50)
    entity_key: str = Field(primary_key=True, max_length=50)
    last_sync_time: Optional[datetime] = None
    fingerprint: Optional[str] = Field(default=None, max_length=64)
    status: str = Field(default=SyncStatusCode.PENDING.value, max_length=20)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    synced_to_target: bool = False
    last_remote_sync_time: Optional[datetime] = None

    # Attached binary asset (product images)
    image_url: Optional[str] = None
    image_hash: Optional[str] = Field(default=None, max_length=64)
    image_sync_time: Optional[datetime] = None


class ProductSyncStatus(SyncStatusBase, table=True):
    """Keyed by ItemCode."""


class CustomerSyncStatus(SyncStatusBase, table=True):
    """Keyed by CardCode (CardType = C)."""


class VendorSyncStatus(SyncStatusBase, table=True):
    """Keyed by CardCode (CardType = S)."""


class PurchaseOrderSyncStatus(SyncStatusBase, table=True):
    """Keyed by DocEntry; DocNum kept for humans."""

    doc_num: Optional[int] = None


class SalesOrderSyncStatus(SyncStatusBase, table=True):
    """Keyed by DocEntry; DocNum kept for humans."""

    doc_num: Optional[int] = None


# ─── Watermarks ───────────────────────────────────────────────────────────────

class SyncState(SQLModel, table=True):
    """Lower time-bound for the next incremental fetch of one entity type."""

    __table_args__ = (UniqueConstraint("scope", "entity_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    scope: str = Field(max_length=50, index=True)
    entity_type: str = Field(max_length=50)
    last_sync_time: datetime


# ─── Upload flows (warehouse → ERP) ───────────────────────────────────────────

class UploadStatusBase(SQLModel):
    """Outcome of pushing one completed warehouse document into the ERP.

    Once status is Success the item must never be submitted again.
    """

    scope: str = Field(primary_key=True, max_length=50)
    item_id: str = Field(primary_key=True, max_length=50)
    upload_time: datetime = Field(default_factory=datetime.utcnow)
    status: str = Field(max_length=20)
    error_message: Optional[str] = None
    remote_document_id: Optional[int] = None


class GoodsReceiptUploadStatus(UploadStatusBase, table=True):
    """Warehouse receipt id → ERP Goods Receipt PO DocEntry."""


class GoodsDeliveryUploadStatus(UploadStatusBase, table=True):
    """Warehouse delivery id → ERP Delivery Note DocEntry."""


# ─── Observability ────────────────────────────────────────────────────────────

class ExecutionHistory(SQLModel, table=True):
    """Records each job invocation for audit and debugging."""

    execution_id: str = Field(primary_key=True, max_length=36)
    scope: str = Field(max_length=50, index=True)
    operation: str = Field(max_length=50)
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    status: str = Field(default=ExecutionStatus.RUNNING.value, max_length=20)
    records_processed: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
    command_line: Optional[str] = None


class IntegrationLog(SQLModel, table=True):
    """Append-only operator-facing events (validation failures, db init)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    level: str = Field(max_length=20)
    scope: str = Field(max_length=50, index=True)
    operation: str = Field(max_length=50)
    message: str
    execution_id: Optional[str] = Field(default=None, max_length=36)
