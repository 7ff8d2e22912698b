"""Background worker draining the processing queue."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from threading import Event, Thread
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from assetflow.database import SessionLocal
from assetflow.errors import AssetFlowError
from assetflow.metadata import Asset, ProcessingQueueItem, QUEUE_FAILED
from assetflow.notifications import NotificationDispatcher
from assetflow.processing_queue import ProcessingQueue
from assetflow.processors import Processor, ProcessingResult, default_processors
from assetflow.settings import settings
from assetflow.versions import VersionStore

logger = logging.getLogger(__name__)

_worker_thread: Optional[Thread] = None
_worker_stop_event: Optional[Event] = None


@dataclass
class ItemOutcome:
    id: str
    asset_id: str
    stage: str
    status: str
    error: Optional[str] = None
    next_item_id: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "stage": self.stage,
            "status": self.status,
            "error": self.error,
            "next_item_id": self.next_item_id,
        }


class UnknownStageError(RuntimeError):
    """Raised when no processor is registered for an item's stage."""


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _build_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _asset_title(db: Session, asset_id: str) -> str:
    asset = db.query(Asset).filter(Asset.id == asset_id).first()
    return asset.title if asset is not None else asset_id


def _record_success(
    db: Session,
    item: ProcessingQueueItem,
    result: ProcessingResult,
    *,
    worker_id: str,
) -> ItemOutcome:
    queue = ProcessingQueue(db)
    item_id, asset_id, stage, version_id = item.id, item.asset_id, item.stage, item.version_id
    try:
        completed = queue.mark_complete(item_id, result.output_key, result.output_size, claimed_by=worker_id)
        next_item = queue.queue_next_stage(completed)
        db.commit()
    except AssetFlowError as exc:
        # Superseded by a newer enqueue while we were working.
        db.rollback()
        logger.warning("Dropping result for queue item %s: %s", item_id, exc.message)
        return ItemOutcome(id=item_id, asset_id=asset_id, stage=stage, status="superseded", error=exc.message)

    if next_item is None and version_id:
        try:
            VersionStore(db).mark_version_ready(
                version_id,
                storage_key=result.output_key,
                playback_url=result.playback_url,
            )
            db.commit()
        except AssetFlowError as exc:
            db.rollback()
            logger.warning("Version %s not marked ready: %s", version_id, exc.message)

    return ItemOutcome(
        id=item_id,
        asset_id=asset_id,
        stage=stage,
        status="completed",
        next_item_id=next_item.id if next_item is not None else None,
    )


def _record_failure(
    db: Session,
    item_id: str,
    asset_id: str,
    stage: str,
    error: BaseException,
    *,
    worker_id: str,
    notifier: Optional[NotificationDispatcher],
) -> ItemOutcome:
    queue = ProcessingQueue(db)
    try:
        failed = queue.mark_failed(
            item_id,
            str(error) or error.__class__.__name__,
            retryable=not isinstance(error, UnknownStageError),
            claimed_by=worker_id,
        )
        asset_id, stage, version_id, status = failed.asset_id, failed.stage, failed.version_id, failed.status
        last_error = failed.last_error
        if status == QUEUE_FAILED and version_id:
            VersionStore(db).mark_version_failed(version_id, last_error or "")
        db.commit()
    except AssetFlowError as exc:
        db.rollback()
        logger.warning("Could not record failure for queue item %s: %s", item_id, exc.message)
        return ItemOutcome(id=item_id, asset_id=asset_id, stage=stage, status="superseded", error=exc.message)

    if status == QUEUE_FAILED and notifier is not None:
        notifier.processing_failed(_asset_title(db, asset_id), stage, last_error)
    return ItemOutcome(
        id=item_id,
        asset_id=asset_id,
        stage=stage,
        status="failed" if status == QUEUE_FAILED else "retrying",
        error=last_error,
    )


def process_queue_once(
    db: Session,
    *,
    batch_size: Optional[int] = None,
    processors: Optional[Mapping[str, Processor]] = None,
    worker_id: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> list[ItemOutcome]:
    """Claim one batch and run each item through its stage processor."""
    resolved_worker_id = worker_id or _build_worker_id()
    registry = processors if processors is not None else default_processors()
    queue = ProcessingQueue(db)

    claimed = queue.claim_batch(batch_size or settings.queue_batch_size, worker_id=resolved_worker_id)
    # Make the claims visible before the slow work starts.
    db.commit()

    outcomes: list[ItemOutcome] = []
    for item in claimed:
        item_id, asset_id, stage = item.id, item.asset_id, item.stage
        logger.info(
            "Processing queue item %s asset=%s stage=%s attempt=%s/%s",
            item_id,
            item.asset_id,
            item.stage,
            item.attempts,
            item.max_attempts,
        )
        try:
            processor = registry.get(item.stage)
            if processor is None:
                raise UnknownStageError(f"No processor registered for stage {item.stage}")
            if item.version_id:
                VersionStore(db).mark_version_processing(item.version_id)
                db.commit()
            result = processor(item)
        except Exception as exc:
            db.rollback()
            logger.exception("Queue item %s failed", item_id)
            outcomes.append(
                _record_failure(db, item_id, asset_id, stage, exc, worker_id=resolved_worker_id, notifier=notifier)
            )
            continue
        outcomes.append(_record_success(db, item, result, worker_id=resolved_worker_id))

    if outcomes:
        logger.info("Processed %s queue item(s)", len(outcomes))
    return outcomes


def _process_tick(*, batch_size: int, worker_id: str, notifier: NotificationDispatcher) -> int:
    db = SessionLocal()
    try:
        outcomes = process_queue_once(db, batch_size=batch_size, worker_id=worker_id, notifier=notifier)
        return len(outcomes)
    except Exception:
        db.rollback()
        logger.exception("Worker poll tick failed")
        return 0
    finally:
        db.close()


def run_loop(
    *,
    stop_event: Optional[Event] = None,
    once: bool = False,
    poll_seconds: Optional[float] = None,
    batch_size: Optional[int] = None,
) -> None:
    stop = stop_event or Event()
    worker_id = str(os.getenv("ASSETFLOW_WORKER_ID") or _build_worker_id())
    interval = float(poll_seconds if poll_seconds is not None else settings.worker_poll_seconds)
    resolved_batch_size = int(batch_size or settings.queue_batch_size)
    notifier = NotificationDispatcher()

    logger.info(
        "Queue worker started: worker_id=%s poll_seconds=%s batch_size=%s",
        worker_id,
        interval,
        resolved_batch_size,
    )
    while not stop.is_set():
        processed = _process_tick(batch_size=resolved_batch_size, worker_id=worker_id, notifier=notifier)
        if once:
            break
        if processed == 0:
            logger.debug("Worker idle: no pending queue items")
            stop.wait(max(0.1, interval))
    logger.info("Queue worker stopping: worker_id=%s", worker_id)


def start_background_worker_thread() -> None:
    global _worker_thread, _worker_stop_event
    if _worker_thread and _worker_thread.is_alive():
        return
    _worker_stop_event = Event()
    _worker_thread = Thread(
        target=run_loop,
        kwargs={
            "stop_event": _worker_stop_event,
            "once": False,
            "poll_seconds": settings.worker_poll_seconds,
            "batch_size": settings.queue_batch_size,
        },
        name="assetflow-queue-worker",
        daemon=True,
    )
    _worker_thread.start()
    logger.info("Started background queue worker thread")


def stop_background_worker_thread(timeout_seconds: float = 10.0) -> None:
    global _worker_thread, _worker_stop_event
    if _worker_stop_event:
        _worker_stop_event.set()
    if _worker_thread and _worker_thread.is_alive():
        _worker_thread.join(timeout=timeout_seconds)
    _worker_thread = None
    _worker_stop_event = None
    logger.info("Stopped background queue worker thread")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, str(os.getenv("ASSETFLOW_WORKER_LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_loop(
        once=_to_bool(os.getenv("ASSETFLOW_WORKER_ONCE")),
        poll_seconds=settings.worker_poll_seconds,
        batch_size=settings.queue_batch_size,
    )


if __name__ == "__main__":
    main()
