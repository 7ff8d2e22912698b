"""Processing queue endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from assetflow.database import get_db
from assetflow.dependencies import get_tenant, require_admin, require_cron_secret
from assetflow.errors import AssetFlowError
from assetflow.metadata import Asset, Employee, ProcessingQueueItem, QUEUE_OPEN_STATUSES, Tenant
from assetflow.models.requests import EnqueueRequest
from assetflow.notifications import get_dispatcher
from assetflow.processing_queue import ProcessingQueue
from assetflow.ratelimit import limiter
from assetflow.routers.http_errors import raise_http_error
from assetflow.settings import settings
from assetflow.worker import process_queue_once

router = APIRouter(prefix="/api/v1/queue", tags=["queue"])

_VALID_STATUSES = {"PENDING", "PROCESSING", "COMPLETED", "FAILED"}


def serialize_queue_item(item: ProcessingQueueItem) -> dict:
    return {
        "id": item.id,
        "tenant_id": item.tenant_id,
        "asset_id": item.asset_id,
        "version_id": item.version_id,
        "stage": item.stage,
        "source_key": item.source_key,
        "status": item.status,
        "attempts": item.attempts,
        "max_attempts": item.max_attempts,
        "priority": item.priority,
        "last_error": item.last_error,
        "output_key": item.output_key,
        "output_size": item.output_size,
        "claimed_by": item.claimed_by,
        "created_at": item.created_at,
        "started_at": item.started_at,
        "completed_at": item.completed_at,
    }


@router.post("", status_code=201)
async def enqueue_item(
    body: EnqueueRequest,
    tenant: Tenant = Depends(get_tenant),
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Queue processing for an asset; replaces any open item for the same asset."""
    asset = db.query(Asset).filter(Asset.id == body.asset_id, Asset.tenant_id == tenant.id).first()
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    try:
        item = ProcessingQueue(db).enqueue(
            asset.id,
            body.source_key,
            body.priority,
            stage=body.stage,
            version_id=body.version_id,
            tenant_id=tenant.id,
            max_attempts=body.max_attempts,
        )
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    db.refresh(item)
    return serialize_queue_item(item)


@router.get("/stats")
async def queue_stats(
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    return ProcessingQueue(db).queue_stats(tenant_id=tenant.id)


@router.get("/items")
async def list_queue_items(
    status: Optional[str] = None,
    asset_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    normalized_status = str(status or "").strip().upper() or None
    if normalized_status and normalized_status not in _VALID_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {sorted(_VALID_STATUSES)}")
    items = ProcessingQueue(db).list_items(
        status=normalized_status,
        asset_id=asset_id,
        tenant_id=tenant.id,
        limit=limit,
    )
    return {
        "items": [serialize_queue_item(item) for item in items],
        "count": len(items),
    }


@router.post("/retry-failed")
async def retry_failed_items(
    tenant: Tenant = Depends(get_tenant),
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Reset this tenant's failed items that still have attempts left."""
    count = ProcessingQueue(db).retry_failed_items(tenant_id=tenant.id)
    db.commit()
    return {"retried": count}


@router.post("/items/{item_id}/requeue")
async def requeue_item(
    item_id: str,
    tenant: Tenant = Depends(get_tenant),
    admin: Employee = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Give one exhausted item a fresh attempt budget."""
    queue = ProcessingQueue(db)
    try:
        item = queue.get_item(item_id)
        if item.tenant_id != tenant.id:
            raise HTTPException(status_code=404, detail="Queue item not found")
        item = queue.requeue_item(item.id)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    db.refresh(item)
    return serialize_queue_item(item)


@router.post("/process", dependencies=[Depends(require_cron_secret)])
@limiter.limit("30/minute")
async def process_queue(
    request: Request,
    batch_size: Optional[int] = Query(default=None, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Scheduler trigger: drain one batch of the queue in this request."""
    outcomes = await run_in_threadpool(
        process_queue_once,
        db,
        batch_size=batch_size or settings.queue_batch_size,
        notifier=get_dispatcher(),
    )
    return {
        "success": True,
        "processed": len(outcomes),
        "results": [outcome.as_dict() for outcome in outcomes],
        "open_items": db.query(ProcessingQueueItem).filter(
            ProcessingQueueItem.status.in_(QUEUE_OPEN_STATUSES)
        ).count(),
    }
