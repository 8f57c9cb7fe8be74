"""
SyncJob: reconciles one entity type from the ERP into the warehouse.

Flow for a single run:
  1. Resolve the lower bound (force / Full mode → EPOCH, else --from, else
     the stored watermark)
  2. Fetch candidates through the entity's source reader
  3. Per candidate, independently:
       key → lines → fingerprint → compare with the stored status row
       → map → validate → image side channel → write (or record DryRun)
  4. Status rows are buffered and flushed every batch_size entities and
     once more in a finally block, so everything attempted is persisted
     even if the run dies
  5. Advance the watermark unless the run was a dry run, the fetch was
     incomplete or cut short by --limit, or a fatal error happened

Idempotency: an entity whose content fingerprint equals the stored one is
skipped without any remote write. A failed write keeps the previous
fingerprint, so the entity is picked up again next run.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type

from erpwms.models.sync import SyncStatusBase, SyncStatusCode
from erpwms.sync.fingerprint import fingerprint
from erpwms.sync.images import AssetState
from erpwms.sync.mappers import MappingError
from erpwms.sync.record import Record
from erpwms.sync.stores import EPOCH, SyncStatusStore, WatermarkStore, log_integration_event
from erpwms.sync.writers import TargetWriteError

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    SUCCESS = "AllSucceeded"
    PARTIAL = "PartialSuccess"
    FAILURE = "TotalFailure"


@dataclass
class SyncOptions:
    dry_run: bool = False
    limit: Optional[int] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    force: bool = False
    full_sync: bool = False  # schedule SyncMode "Full"
    batch_size: int = 50


@dataclass
class JobResult:
    name: str
    outcome: RunOutcome = RunOutcome.SUCCESS
    records_processed: int = 0
    error_count: int = 0
    unchanged: int = 0
    skipped: int = 0
    error_message: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return {RunOutcome.SUCCESS: 0, RunOutcome.FAILURE: 1, RunOutcome.PARTIAL: 2}[self.outcome]

    def finalize(self) -> "JobResult":
        """Derive the outcome from the counters (unless already FAILURE)."""
        if self.outcome is RunOutcome.FAILURE or not self.error_count:
            return self
        ok = self.records_processed + self.unchanged + self.skipped
        self.outcome = RunOutcome.PARTIAL if ok else RunOutcome.FAILURE
        return self


@dataclass
class MapContext:
    """Per-run values the mapper needs besides the row itself."""

    scope: str
    client_name: str = ""
    client_id: Optional[str] = None
    item_groups: Mapping[int, str] = field(default_factory=dict)
    image_url: Optional[str] = None


def default_timestamp(record: Record) -> Optional[datetime]:
    """Latest of UpdateDate / CreateDate."""
    stamps = [s for s in (record.as_datetime("UpdateDate"), record.as_datetime("CreateDate")) if s]
    return max(stamps) if stamps else None


def default_projection(record: Record, lines: List[Record]) -> Dict[str, Any]:
    return {"header": record.to_dict(), "lines": [line.to_dict() for line in lines]}


@dataclass
class EntityDefinition:
    """Everything that differs between entity types."""

    entity_type: str
    status_table: Type[SyncStatusBase]
    source: Any  # fetch(scope, since, until, limit) -> FetchResult
    key: Callable[[Record], str]
    mapper: Callable[[Record, List[Record], MapContext], Dict[str, Any]]
    writer: Any  # TargetWriter
    validator: Optional[Callable[[Dict[str, Any]], List[str]]] = None
    load_lines: Optional[Callable[[Record], Awaitable[List[Record]]]] = None
    projection: Callable[[Record, List[Record]], Any] = default_projection
    timestamp: Callable[[Record], Optional[datetime]] = default_timestamp
    assets: Any = None  # ProductImageSync / NullAssetSync
    prepare: Optional[Callable[[MapContext], Awaitable[MapContext]]] = None
    doc_num: Optional[Callable[[Record], Optional[int]]] = None


@dataclass
class _PendingWrite:
    key: str
    row: SyncStatusBase
    digest: str
    payload: Dict[str, Any]
    source_time: Optional[datetime]


class SyncJob:
    """Generic ERP → warehouse sync for one entity type."""

    def __init__(
        self,
        definition: EntityDefinition,
        engine,
        *,
        client_name: str = "",
        clock=datetime.utcnow,
    ):
        self.definition = definition
        self.engine = engine
        self.client_name = client_name
        self.statuses = SyncStatusStore(engine, definition.status_table)
        self.watermarks = WatermarkStore(engine)
        self._clock = clock

    @property
    def name(self) -> str:
        return self.definition.entity_type

    def lower_bound(self, scope: str, options: SyncOptions) -> datetime:
        if options.force or options.full_sync:
            return EPOCH
        if options.from_date is not None:
            return options.from_date
        return self.watermarks.get(scope, self.definition.entity_type)

    async def run(self, scope: str, options: Optional[SyncOptions] = None) -> JobResult:
        """
        Run one reconciliation pass.

        Never raises for per-entity problems; a failure before the entity
        loop (prepare, fetch) is reported as a FAILURE result.
        """
        options = options or SyncOptions()
        d = self.definition
        result = JobResult(name=self.name)
        started = self._clock()
        previous = self.watermarks.get(scope, d.entity_type)
        since = self.lower_bound(scope, options)
        prefix = "[DRY RUN] " if options.dry_run else ""
        logger.info(
            "%sStarting %s sync for %s (since %s)",
            prefix, d.entity_type, scope, "initial" if since == EPOCH else since.isoformat(),
        )

        try:
            context = MapContext(scope=scope, client_name=self.client_name)
            if d.prepare is not None:
                context = await d.prepare(context)
            fetched = await d.source.fetch(scope, since, options.to_date, options.limit)
        except Exception as exc:
            logger.exception("%s sync for %s failed before processing", d.entity_type, scope)
            result.outcome = RunOutcome.FAILURE
            result.error_message = str(exc)
            return result

        records = fetched.records
        # Rows past the limit are not in timestamp order, so a capped run
        # must not move the watermark past them
        limited = options.limit is not None and len(records) >= options.limit
        if options.limit is not None:
            records = records[: options.limit]
        if records:
            logger.info("Processing %d %s records for %s", len(records), d.entity_type, scope)
        else:
            logger.info("No %s records to sync for %s", d.entity_type, scope)

        tracker = _RunTracker()
        try:
            for record in records:
                await self._process(scope, record, context, options, result, tracker)
                if len(tracker.writes) >= options.batch_size:
                    await self._flush_writes(scope, result, tracker)
                if len(tracker.statuses) >= options.batch_size:
                    self._flush_statuses(tracker)
            await self._flush_writes(scope, result, tracker)
        finally:
            self._flush_statuses(tracker)

        if options.dry_run:
            logger.info("[DRY RUN] Watermark for %s not advanced", d.entity_type)
        elif not fetched.complete:
            logger.warning("%s fetch was incomplete; watermark not advanced", d.entity_type)
        elif limited:
            logger.info("%s run stopped at limit %d; watermark not advanced", d.entity_type, options.limit)
        else:
            self._advance_watermark(scope, previous, started, options, tracker)

        result.finalize()
        stats = self.statuses.stats(scope)
        logger.info(
            "%s%s sync for %s finished: %s, processed=%d unchanged=%d errors=%d "
            "(tracked=%d, synced=%d)",
            prefix, d.entity_type, scope, result.outcome.value, result.records_processed,
            result.unchanged, result.error_count, stats.total, stats.synced,
        )
        return result

    # ─── Per-entity steps ─────────────────────────────────────────────────────

    async def _process(self, scope, record, context, options, result, tracker) -> None:
        d = self.definition
        source_time = d.timestamp(record)
        tracker.observe(source_time)

        key = d.key(record)
        if not key:
            logger.warning("%s record without a key skipped: %r", d.entity_type, record)
            result.error_count += 1
            return

        try:
            lines = await d.load_lines(record) if d.load_lines is not None else []
            digest = fingerprint(d.projection(record, lines))
            existing = self.statuses.get(scope, key)
            if (
                existing is not None
                and existing.fingerprint == digest
                and existing.status != SyncStatusCode.DRY_RUN.value
            ):
                result.unchanged += 1
                return

            row = self._status_row(scope, key, record, existing)
            ctx = context
            if existing is not None:
                ctx = replace(context, image_url=existing.image_url)

            payload = d.mapper(record, lines, ctx)
            problems = d.validator(payload) if d.validator is not None else []
            # Images are only pushed for entities that are going to be written
            if not problems and d.assets is not None and not options.dry_run:
                asset = await d.assets.sync(scope, key, record, existing)
                self._apply_asset(row, asset)
                if asset.url != ctx.image_url:
                    payload = d.mapper(record, lines, replace(context, image_url=asset.url))
        except MappingError as exc:
            problems = [str(exc)]
        except Exception as exc:
            logger.exception("Failed to prepare %s %s", d.entity_type, key)
            result.error_count += 1
            tracker.fail(source_time)
            return

        if problems:
            message = f"{d.entity_type} {key} validation failed: {'; '.join(problems)}"
            logger.warning(message)
            log_integration_event(
                self.engine, scope=scope, operation=f"{d.entity_type}Sync.Validation", message=message
            )
            result.error_count += 1
            return

        if options.dry_run:
            logger.info("[DRY RUN] Would sync %s %s", d.entity_type, key)
            row.fingerprint = digest
            row.status = SyncStatusCode.DRY_RUN.value
            row.last_sync_time = self._clock()
            tracker.statuses.append(row)
            result.records_processed += 1
            return

        tracker.writes.append(_PendingWrite(key, row, digest, payload, source_time))

    def _status_row(self, scope: str, key: str, record: Record, existing) -> SyncStatusBase:
        table = self.definition.status_table
        if existing is not None:
            row = table.model_validate(existing.model_dump())
        else:
            row = table(scope=scope, entity_key=key, created_at=self._clock())
        if self.definition.doc_num is not None:
            row.doc_num = self.definition.doc_num(record)
        return row

    @staticmethod
    def _apply_asset(row: SyncStatusBase, asset: AssetState) -> None:
        row.image_url = asset.url
        row.image_hash = asset.hash
        row.image_sync_time = asset.synced_at

    async def _flush_writes(self, scope: str, result: JobResult, tracker: "_RunTracker") -> None:
        batch, tracker.writes = tracker.writes, []
        if not batch:
            return
        try:
            outcomes = await self.definition.writer.write_batch(scope, [w.payload for w in batch])
            if len(outcomes) != len(batch):
                raise TargetWriteError(
                    f"writer returned {len(outcomes)} results for {len(batch)} items"
                )
        except Exception:
            logger.exception("%s batch write failed for %s", self.definition.entity_type, scope)
            outcomes = [False] * len(batch)

        now = self._clock()
        for pending, ok in zip(batch, outcomes):
            row = pending.row
            row.last_sync_time = now
            if ok:
                row.fingerprint = pending.digest
                row.status = SyncStatusCode.SUCCESS.value
                row.synced_to_target = True
                row.last_remote_sync_time = now
                result.records_processed += 1
            else:
                # Keep the previous fingerprint so the entity is retried
                row.status = SyncStatusCode.FAILED.value
                result.error_count += 1
                tracker.fail(pending.source_time)
                logger.warning("Failed to sync %s %s", self.definition.entity_type, pending.key)
            tracker.statuses.append(row)

    def _flush_statuses(self, tracker: "_RunTracker") -> None:
        rows, tracker.statuses = tracker.statuses, []
        if rows:
            self.statuses.upsert_many(rows)

    def _advance_watermark(
        self,
        scope: str,
        previous: datetime,
        started: datetime,
        options: SyncOptions,
        tracker: "_RunTracker",
    ) -> None:
        candidate = started
        if tracker.max_seen is not None and tracker.max_seen > candidate:
            candidate = tracker.max_seen
        if options.to_date is not None and options.to_date < candidate:
            candidate = options.to_date
        if tracker.failed:
            # Leave failed rows inside the next incremental window
            if tracker.earliest_failure is None:
                candidate = previous
            elif tracker.earliest_failure < candidate:
                candidate = tracker.earliest_failure
        stored = self.watermarks.set(scope, self.definition.entity_type, max(previous, candidate))
        logger.info("Watermark for %s %s is now %s", scope, self.definition.entity_type, stored.isoformat())


class _RunTracker:
    """Mutable per-run bookkeeping for SyncJob."""

    def __init__(self):
        self.writes: List[_PendingWrite] = []
        self.statuses: List[SyncStatusBase] = []
        self.max_seen: Optional[datetime] = None
        self.failed = False
        self.earliest_failure: Optional[datetime] = None
        self._failure_without_time = False

    def observe(self, source_time: Optional[datetime]) -> None:
        if source_time is not None and (self.max_seen is None or source_time > self.max_seen):
            self.max_seen = source_time

    def fail(self, source_time: Optional[datetime]) -> None:
        if source_time is None:
            self._failure_without_time = True
            self.earliest_failure = None
        elif not self._failure_without_time and (
            self.earliest_failure is None or source_time < self.earliest_failure
        ):
            self.earliest_failure = source_time
        self.failed = True
