"""
Durable sync bookkeeping on top of SQLModel.

  SyncStatusStore    per-entity fingerprint/status rows, one table per entity type
  WatermarkStore     per-(scope, entity type) lower bound for incremental fetches
  UploadStatusStore  per-(scope, foreign item id) outcome of upload flows
  ExecutionHistoryStore / log_integration_event   run audit trail

Every method opens its own short Session, so whatever was committed before
a job dies stays committed. Writes to one (scope, key) row rely on the
database's row-level transaction; no version column is used because a
single job owns each (scope, entity type) pair.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Type

from sqlalchemy import func
from sqlmodel import Session, select

from erpwms.models.sync import (
    ExecutionHistory,
    ExecutionStatus,
    IntegrationLog,
    SyncState,
    SyncStatusBase,
    UploadStatusBase,
    UploadStatusCode,
)

# "Never synced": every source timestamp is after this
EPOCH = datetime.min


@dataclass
class StatusStats:
    total: int
    synced: int
    last_remote_sync_time: Optional[datetime]


class SyncStatusStore:
    """Reads and writes one entity type's sync status table."""

    def __init__(self, engine, table: Type[SyncStatusBase]):
        self.engine = engine
        self.table = table

    def get(self, scope: str, key: str) -> Optional[SyncStatusBase]:
        with Session(self.engine) as s:
            return s.get(self.table, (scope, key))

    def upsert(self, record: SyncStatusBase) -> None:
        self.upsert_many([record])

    def upsert_many(self, records: Iterable[SyncStatusBase]) -> int:
        """Create or update rows in one transaction. Returns the row count."""
        count = 0
        with Session(self.engine) as s:
            for record in records:
                existing = s.get(self.table, (record.scope, record.entity_key))
                if existing is None:
                    s.add(self.table.model_validate(record.model_dump()))
                else:
                    for field, value in record.model_dump(exclude={"scope", "entity_key"}).items():
                        setattr(existing, field, value)
                    s.add(existing)
                count += 1
            s.commit()
        return count

    def stats(self, scope: str) -> StatusStats:
        """Totals for the end-of-run summary log line."""
        with Session(self.engine) as s:
            total = s.exec(
                select(func.count()).select_from(self.table).where(self.table.scope == scope)
            ).one()
            synced = s.exec(
                select(func.count()).select_from(self.table).where(
                    self.table.scope == scope, self.table.synced_to_target == True  # noqa: E712
                )
            ).one()
            last = s.exec(
                select(func.max(self.table.last_remote_sync_time)).where(self.table.scope == scope)
            ).one()
        return StatusStats(total=total, synced=synced, last_remote_sync_time=last)


class WatermarkStore:
    """Per-(scope, entity type) "last successful sync" cursor."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, scope: str, entity_type: str) -> datetime:
        with Session(self.engine) as s:
            state = s.exec(
                select(SyncState).where(
                    SyncState.scope == scope, SyncState.entity_type == entity_type
                )
            ).first()
        return state.last_sync_time if state else EPOCH

    def set(self, scope: str, entity_type: str, timestamp: datetime) -> datetime:
        """Advance the watermark; never moves it backwards. Returns the stored value."""
        with Session(self.engine) as s:
            state = s.exec(
                select(SyncState).where(
                    SyncState.scope == scope, SyncState.entity_type == entity_type
                )
            ).first()
            if state is None:
                state = SyncState(scope=scope, entity_type=entity_type, last_sync_time=timestamp)
            elif timestamp > state.last_sync_time:
                state.last_sync_time = timestamp
            s.add(state)
            s.commit()
            s.refresh(state)
            return state.last_sync_time


class UploadStatusStore:
    """Idempotency table for one upload flow."""

    def __init__(self, engine, table: Type[UploadStatusBase]):
        self.engine = engine
        self.table = table

    def get(self, scope: str, item_id: str) -> Optional[UploadStatusBase]:
        with Session(self.engine) as s:
            return s.get(self.table, (scope, item_id))

    def is_uploaded(self, scope: str, item_id: str) -> bool:
        existing = self.get(scope, item_id)
        return existing is not None and existing.status == UploadStatusCode.SUCCESS.value

    def record_success(self, scope: str, item_id: str, remote_document_id: int) -> None:
        self._write(scope, item_id, UploadStatusCode.SUCCESS, None, remote_document_id)

    def record_failure(self, scope: str, item_id: str, error_message: str) -> None:
        self._write(scope, item_id, UploadStatusCode.FAILED, error_message, None)

    def last_success_time(self, scope: str) -> Optional[datetime]:
        with Session(self.engine) as s:
            return s.exec(
                select(func.max(self.table.upload_time)).where(
                    self.table.scope == scope,
                    self.table.status == UploadStatusCode.SUCCESS.value,
                )
            ).one()

    def _write(
        self,
        scope: str,
        item_id: str,
        status: UploadStatusCode,
        error_message: Optional[str],
        remote_document_id: Optional[int],
    ) -> None:
        with Session(self.engine) as s:
            row = s.get(self.table, (scope, item_id))
            if row is None:
                row = self.table(scope=scope, item_id=item_id, status=status.value)
            row.upload_time = datetime.utcnow()
            row.status = status.value
            row.error_message = error_message
            if remote_document_id is not None:
                row.remote_document_id = remote_document_id
            s.add(row)
            s.commit()


class ExecutionHistoryStore:
    """Append-only log of job invocations."""

    def __init__(self, engine):
        self.engine = engine

    def start(self, scope: str, operation: str, command_line: Optional[str] = None) -> str:
        execution_id = str(uuid.uuid4())
        with Session(self.engine) as s:
            s.add(ExecutionHistory(
                execution_id=execution_id,
                scope=scope,
                operation=operation,
                start_time=datetime.utcnow(),
                status=ExecutionStatus.RUNNING.value,
                command_line=command_line,
            ))
            s.commit()
        return execution_id

    def finish(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        records_processed: int = 0,
        error_count: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with Session(self.engine) as s:
            row = s.get(ExecutionHistory, execution_id)
            row.status = status.value
            row.end_time = datetime.utcnow()
            row.records_processed = records_processed
            row.error_count = error_count
            row.error_message = error_message
            s.add(row)
            s.commit()


def log_integration_event(
    engine,
    *,
    scope: str,
    operation: str,
    message: str,
    level: str = "Warning",
    execution_id: Optional[str] = None,
) -> None:
    with Session(engine) as s:
        s.add(IntegrationLog(
            level=level,
            scope=scope,
            operation=operation,
            message=message,
            execution_id=execution_id,
        ))
        s.commit()
