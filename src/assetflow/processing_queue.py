"""Durable processing queue for transcoding/compression work.

One open (PENDING or PROCESSING) item per asset. Enqueueing for an asset
that already has an open item overwrites it ("latest wins"). Claims are
compare-and-swap updates so two pollers never take the same item.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from assetflow.errors import InvalidStateError, NotFoundError, ValidationError
from assetflow.metadata import (
    AssetVersion,
    ProcessingQueueItem,
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_OPEN_STATUSES,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
)
from assetflow.settings import settings

logger = logging.getLogger(__name__)

PRIORITY_LOW = 0
PRIORITY_NORMAL = 50
PRIORITY_HIGH = 100
_PRIORITY_NAMES = {
    "low": PRIORITY_LOW,
    "normal": PRIORITY_NORMAL,
    "high": PRIORITY_HIGH,
}

STAGE_COMPRESS = "compress"
STAGE_STREAM = "stream"
STAGES = (STAGE_COMPRESS, STAGE_STREAM)
NEXT_STAGE = {STAGE_COMPRESS: STAGE_STREAM}

_MAX_ERROR_CHARS = 4000
_CLAIM_ROUNDS = 3


def _now_utc() -> datetime:
    return datetime.utcnow()


def normalize_priority(value: Any) -> int:
    """Accept an integer priority or one of LOW / NORMAL / HIGH."""
    if value is None or value == "":
        return PRIORITY_NORMAL
    if isinstance(value, bool):
        raise ValidationError("priority must be an integer or LOW/NORMAL/HIGH")
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text in _PRIORITY_NAMES:
        return _PRIORITY_NAMES[text]
    try:
        return int(text)
    except ValueError:
        raise ValidationError("priority must be an integer or LOW/NORMAL/HIGH")


def normalize_stage(value: Any) -> str:
    stage = str(value or STAGE_COMPRESS).strip().lower()
    if stage not in STAGES:
        raise ValidationError(f"stage must be one of {', '.join(STAGES)}")
    return stage


class ProcessingQueue:
    """Queue operations over ``processing_queue_items``.

    Like the other core components this flushes and leaves commit to the
    caller. Workers should commit right after ``claim_batch`` so the
    claim is visible before the slow work starts.
    """

    def __init__(self, db: Session, *, default_max_attempts: int | None = None):
        self.db = db
        self.default_max_attempts = int(default_max_attempts or settings.queue_max_attempts or 3)

    def _is_postgres(self) -> bool:
        bind = self.db.get_bind()
        return bool(bind is not None and bind.dialect.name == "postgresql")

    def _item_or_404(self, item_id: str) -> ProcessingQueueItem:
        item = self.db.query(ProcessingQueueItem).filter(ProcessingQueueItem.id == str(item_id)).first()
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found", reason="queue_item_not_found")
        return item

    def _open_item_for_asset(self, asset_id: str, *, lock: bool = False) -> ProcessingQueueItem | None:
        query = self.db.query(ProcessingQueueItem).filter(
            ProcessingQueueItem.asset_id == str(asset_id),
            ProcessingQueueItem.status.in_(QUEUE_OPEN_STATUSES),
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def _check_version_belongs(self, asset_id: str, version_id: str) -> None:
        version = self.db.query(AssetVersion).filter(AssetVersion.id == str(version_id)).first()
        if version is None or version.parent_asset_id != str(asset_id):
            raise NotFoundError(f"Version {version_id} not found for asset {asset_id}", reason="version_not_found")

    def _overwrite(
        self,
        item: ProcessingQueueItem,
        *,
        source_key: str,
        priority: int,
        stage: str,
        version_id: Optional[str],
        max_attempts: int,
    ) -> ProcessingQueueItem:
        previous_status = item.status
        item.source_key = source_key
        item.priority = priority
        item.stage = stage
        item.version_id = version_id
        item.max_attempts = max_attempts
        item.status = QUEUE_PENDING
        item.attempts = 0
        item.last_error = None
        item.started_at = None
        item.claimed_by = None
        self.db.flush()
        logger.info(
            "Queue item %s for asset %s superseded (was %s), now stage=%s source=%s",
            item.id,
            item.asset_id,
            previous_status,
            stage,
            source_key,
        )
        return item

    def enqueue(
        self,
        asset_id: str,
        source_key: str,
        priority: Any = PRIORITY_NORMAL,
        *,
        stage: str = STAGE_COMPRESS,
        version_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> ProcessingQueueItem:
        """Queue work for an asset, replacing any still-open item for it."""
        clean_key = str(source_key or "").strip()
        if not clean_key:
            raise ValidationError("source_key is required")
        resolved_priority = normalize_priority(priority)
        resolved_stage = normalize_stage(stage)
        resolved_max_attempts = max(1, int(max_attempts or self.default_max_attempts))
        if version_id:
            self._check_version_belongs(asset_id, version_id)

        existing = self._open_item_for_asset(asset_id, lock=True)
        if existing is not None:
            return self._overwrite(
                existing,
                source_key=clean_key,
                priority=resolved_priority,
                stage=resolved_stage,
                version_id=version_id,
                max_attempts=resolved_max_attempts,
            )

        item = ProcessingQueueItem(
            tenant_id=tenant_id,
            asset_id=str(asset_id),
            version_id=version_id,
            stage=resolved_stage,
            source_key=clean_key,
            status=QUEUE_PENDING,
            attempts=0,
            max_attempts=resolved_max_attempts,
            priority=resolved_priority,
        )
        if not self._is_postgres():
            # pysqlite SAVEPOINTs are unreliable; the partial unique index still rejects duplicates.
            self.db.add(item)
            self.db.flush()
            self._log_enqueued(item)
            return item
        try:
            with self.db.begin_nested():
                self.db.add(item)
                self.db.flush()
        except IntegrityError:
            # Another request inserted the open item first; fall back to overwrite.
            existing = self._open_item_for_asset(asset_id, lock=True)
            if existing is None:
                raise
            return self._overwrite(
                existing,
                source_key=clean_key,
                priority=resolved_priority,
                stage=resolved_stage,
                version_id=version_id,
                max_attempts=resolved_max_attempts,
            )
        self._log_enqueued(item)
        return item

    def _log_enqueued(self, item: ProcessingQueueItem) -> None:
        logger.info(
            "Queued asset %s stage=%s priority=%s item=%s",
            item.asset_id,
            item.stage,
            item.priority,
            item.id,
        )

    def _select_candidate_ids(self, limit: int, exclude: set[str]) -> list[str]:
        query = (
            self.db.query(ProcessingQueueItem.id)
            .filter(
                ProcessingQueueItem.status == QUEUE_PENDING,
                ProcessingQueueItem.attempts < ProcessingQueueItem.max_attempts,
            )
            .order_by(
                ProcessingQueueItem.priority.desc(),
                ProcessingQueueItem.created_at.asc(),
                ProcessingQueueItem.id.asc(),
            )
        )
        if exclude:
            query = query.filter(ProcessingQueueItem.id.notin_(list(exclude)))
        query = query.limit(limit)
        if self._is_postgres():
            query = query.with_for_update(skip_locked=True)
        return [str(row[0]) for row in query.all()]

    def _try_claim(self, item_id: str, *, worker_id: Optional[str], now: datetime) -> bool:
        result = self.db.execute(
            update(ProcessingQueueItem)
            .where(
                ProcessingQueueItem.id == item_id,
                ProcessingQueueItem.status == QUEUE_PENDING,
                ProcessingQueueItem.attempts < ProcessingQueueItem.max_attempts,
            )
            .values(
                status=QUEUE_PROCESSING,
                attempts=ProcessingQueueItem.attempts + 1,
                started_at=now,
                claimed_by=worker_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_batch(self, batch_size: int, *, worker_id: Optional[str] = None) -> list[ProcessingQueueItem]:
        """Claim up to ``batch_size`` pending items, highest priority then oldest first."""
        limit = max(0, int(batch_size or 0))
        if limit == 0:
            return []

        now = _now_utc()
        tried: set[str] = set()
        claimed_ids: list[str] = []
        for _ in range(_CLAIM_ROUNDS):
            wanted = limit - len(claimed_ids)
            if wanted <= 0:
                break
            candidates = self._select_candidate_ids(wanted, tried)
            if not candidates:
                break
            for item_id in candidates:
                tried.add(item_id)
                if self._try_claim(item_id, worker_id=worker_id, now=now):
                    claimed_ids.append(item_id)
                else:
                    logger.debug("Queue item %s claimed elsewhere, skipping", item_id)

        if not claimed_ids:
            return []

        items = (
            self.db.query(ProcessingQueueItem)
            .filter(ProcessingQueueItem.id.in_(claimed_ids))
            .populate_existing()
            .order_by(
                ProcessingQueueItem.priority.desc(),
                ProcessingQueueItem.created_at.asc(),
                ProcessingQueueItem.id.asc(),
            )
            .all()
        )
        logger.info("Claimed %s queue item(s) for worker=%s", len(items), worker_id or "-")
        return items

    def _processing_item_or_409(self, item_id: str, claimed_by: Optional[str]) -> ProcessingQueueItem:
        item = self._item_or_404(item_id)
        if item.status != QUEUE_PROCESSING:
            raise InvalidStateError(
                f"Queue item {item.id} is not processing (status={item.status})",
                reason="queue_item_not_processing",
            )
        if claimed_by is not None and (item.claimed_by or None) != claimed_by:
            raise InvalidStateError(
                f"Queue item {item.id} is claimed by a different worker",
                reason="queue_item_claimed_elsewhere",
            )
        return item

    def mark_complete(
        self,
        item_id: str,
        output_key: Optional[str],
        output_size: Optional[int],
        *,
        claimed_by: Optional[str] = None,
    ) -> ProcessingQueueItem:
        """Terminal success. Follow-up stages are queued by ``queue_next_stage``."""
        item = self._processing_item_or_409(item_id, claimed_by)
        item.status = QUEUE_COMPLETED
        item.completed_at = _now_utc()
        item.output_key = output_key
        item.output_size = int(output_size) if output_size is not None else None
        item.last_error = None
        self.db.flush()
        logger.info("Queue item %s completed (asset=%s stage=%s)", item.id, item.asset_id, item.stage)
        return item

    def queue_next_stage(self, item: ProcessingQueueItem) -> ProcessingQueueItem | None:
        """Queue the stage that follows a completed item, if the pipeline has one."""
        if item.status != QUEUE_COMPLETED:
            raise InvalidStateError(
                f"Queue item {item.id} is not completed",
                reason="queue_item_not_completed",
            )
        next_stage = NEXT_STAGE.get(str(item.stage or ""))
        if next_stage is None:
            return None
        return self.enqueue(
            item.asset_id,
            item.output_key or item.source_key,
            PRIORITY_HIGH,
            stage=next_stage,
            version_id=item.version_id,
            tenant_id=item.tenant_id,
        )

    def mark_failed(
        self,
        item_id: str,
        error_message: str,
        *,
        retryable: bool = True,
        claimed_by: Optional[str] = None,
    ) -> ProcessingQueueItem:
        """Return the item to PENDING, or FAILED once attempts are used up.

        There is no delay here: the next poll may pick the item up again,
        so backoff comes from the poll interval.
        """
        item = self._processing_item_or_409(item_id, claimed_by)
        item.last_error = str(error_message or "")[-_MAX_ERROR_CHARS:] or None
        item.claimed_by = None
        if not retryable or int(item.attempts or 0) >= int(item.max_attempts or 1):
            item.status = QUEUE_FAILED
            item.completed_at = _now_utc()
            logger.error(
                "Queue item %s failed after attempt %s/%s: %s",
                item.id,
                item.attempts,
                item.max_attempts,
                item.last_error,
            )
        else:
            item.status = QUEUE_PENDING
            item.started_at = None
            logger.warning(
                "Queue item %s failed (attempt %s/%s), will retry: %s",
                item.id,
                item.attempts,
                item.max_attempts,
                item.last_error,
            )
        self.db.flush()
        return item

    def retry_failed_items(self, *, tenant_id: Optional[str] = None) -> int:
        """Reset FAILED items that still have attempts left back to PENDING.

        Items that used every attempt are left alone; see ``requeue_item``.
        With ``tenant_id`` only that tenant's items are touched.
        """
        statement = update(ProcessingQueueItem).where(
            ProcessingQueueItem.status == QUEUE_FAILED,
            ProcessingQueueItem.attempts < ProcessingQueueItem.max_attempts,
        )
        if tenant_id:
            statement = statement.where(ProcessingQueueItem.tenant_id == str(tenant_id))
        result = self.db.execute(
            statement
            .values(
                status=QUEUE_PENDING,
                last_error=None,
                completed_at=None,
                started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        count = int(result.rowcount or 0)
        self.db.expire_all()
        logger.info("Retrying %s failed queue item(s)", count)
        return count

    def requeue_item(self, item_id: str) -> ProcessingQueueItem:
        """Manually revive one FAILED item with a fresh attempt budget."""
        item = self._item_or_404(item_id)
        if item.status != QUEUE_FAILED:
            raise InvalidStateError(
                f"Only failed items can be requeued (status={item.status})",
                reason="queue_item_not_failed",
            )
        if self._open_item_for_asset(item.asset_id) is not None:
            raise InvalidStateError(
                f"Asset {item.asset_id} already has an open queue item",
                reason="queue_item_open_for_asset",
            )
        item.status = QUEUE_PENDING
        item.attempts = 0
        item.last_error = None
        item.started_at = None
        item.completed_at = None
        self.db.flush()
        return item

    def get_item(self, item_id: str) -> ProcessingQueueItem:
        return self._item_or_404(item_id)

    def list_items(
        self,
        *,
        status: Optional[str] = None,
        asset_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[ProcessingQueueItem]:
        query = self.db.query(ProcessingQueueItem)
        if status:
            query = query.filter(ProcessingQueueItem.status == str(status).upper())
        if asset_id:
            query = query.filter(ProcessingQueueItem.asset_id == str(asset_id))
        if tenant_id:
            query = query.filter(ProcessingQueueItem.tenant_id == str(tenant_id))
        return (
            query.order_by(ProcessingQueueItem.created_at.desc())
            .limit(max(1, min(int(limit or 100), 1000)))
            .all()
        )

    def queue_stats(self, *, tenant_id: Optional[str] = None) -> dict[str, int]:
        query = self.db.query(ProcessingQueueItem.status, func.count(ProcessingQueueItem.id))
        if tenant_id:
            query = query.filter(ProcessingQueueItem.tenant_id == str(tenant_id))
        counts = {str(status): int(count) for status, count in query.group_by(ProcessingQueueItem.status).all()}
        return {
            "pending": counts.get(QUEUE_PENDING, 0),
            "processing": counts.get(QUEUE_PROCESSING, 0),
            "completed": counts.get(QUEUE_COMPLETED, 0),
            "failed": counts.get(QUEUE_FAILED, 0),
            "total": sum(counts.values()),
        }
