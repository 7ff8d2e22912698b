"""Asset version history endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from assetflow.database import get_db
from assetflow.dependencies import get_current_employee, get_tenant
from assetflow.errors import AssetFlowError
from assetflow.metadata import Asset, AssetVersion, Employee, Tenant
from assetflow.models.requests import CreateVersionRequest
from assetflow.processing_queue import ProcessingQueue, STAGE_COMPRESS
from assetflow.routers.http_errors import raise_http_error
from assetflow.routers.queue import serialize_queue_item
from assetflow.versions import VersionStore, format_bytes

router = APIRouter(prefix="/api/v1/assets/{asset_id}/versions", tags=["versions"])


def _asset_or_404(db: Session, tenant: Tenant, asset_id: str) -> Asset:
    asset = db.query(Asset).filter(Asset.id == asset_id, Asset.tenant_id == tenant.id).first()
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


def serialize_version(version: AssetVersion) -> dict:
    return {
        "id": version.id,
        "asset_id": version.parent_asset_id,
        "version_number": version.version_number,
        "storage_key": version.storage_key,
        "status": version.status,
        "is_active": bool(version.is_active),
        "note": version.note,
        "uploaded_by": version.uploaded_by,
        "file_size_bytes": int(version.file_size_bytes or 0),
        "file_size_formatted": format_bytes(version.file_size_bytes),
        "playback_url": version.playback_url,
        "last_error": version.last_error,
        "created_at": version.created_at,
    }


def _serialize_asset(asset: Asset) -> dict:
    return {
        "id": asset.id,
        "asset_type": asset.asset_type,
        "title": asset.title,
        "current_version": asset.current_version,
        "active_storage_key": asset.active_storage_key,
        "playback_url": asset.playback_url,
        "status": asset.status,
    }


@router.get("")
async def list_versions(
    asset_id: str,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    """List every version of an asset, newest first, with summary stats."""
    _asset_or_404(db, tenant, asset_id)
    store = VersionStore(db)
    try:
        versions = store.list_versions(asset_id)
        stats = store.version_stats(asset_id, versions)
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    return {
        "asset_id": asset_id,
        "versions": [serialize_version(version) for version in versions],
        "stats": stats,
    }


@router.post("", status_code=201)
async def create_version(
    asset_id: str,
    body: CreateVersionRequest,
    tenant: Tenant = Depends(get_tenant),
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    """Record an uploaded revision; queue compression when it needs processing."""
    asset = _asset_or_404(db, tenant, asset_id)
    store = VersionStore(db)
    queue_item = None
    try:
        version = store.create_version(
            asset.id,
            body.storage_key,
            body.note,
            employee.id,
            body.file_size_bytes,
            requires_processing=body.requires_processing,
        )
        if body.requires_processing:
            queue_item = ProcessingQueue(db).enqueue(
                asset.id,
                version.storage_key,
                body.priority,
                stage=STAGE_COMPRESS,
                version_id=version.id,
                tenant_id=tenant.id,
            )
        if body.activate:
            store.activate_version(asset.id, version.id)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)

    db.refresh(version)
    db.refresh(asset)
    return {
        "version": serialize_version(version),
        "asset": _serialize_asset(asset),
        "queue_item": serialize_queue_item(queue_item) if queue_item is not None else None,
    }


@router.get("/{version_id}")
async def get_version(
    asset_id: str,
    version_id: str,
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
):
    _asset_or_404(db, tenant, asset_id)
    try:
        version = VersionStore(db).get_version(asset_id, version_id)
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    return serialize_version(version)


@router.patch("/{version_id}/activate")
async def activate_version(
    asset_id: str,
    version_id: str,
    tenant: Tenant = Depends(get_tenant),
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    """Switch the asset to this version."""
    asset = _asset_or_404(db, tenant, asset_id)
    try:
        version = VersionStore(db).activate_version(asset.id, version_id)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    db.refresh(asset)
    return {
        "message": f"Version {version.version_number} activated",
        "version": serialize_version(version),
        "asset": _serialize_asset(asset),
    }


@router.delete("/{version_id}")
async def delete_version(
    asset_id: str,
    version_id: str,
    tenant: Tenant = Depends(get_tenant),
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    """Soft-delete a version. The active version cannot be deleted."""
    _asset_or_404(db, tenant, asset_id)
    store = VersionStore(db)
    try:
        version = store.get_version(asset_id, version_id)
        version = store.delete_version(version.id)
        db.commit()
    except AssetFlowError as exc:
        raise_http_error(db, exc)
    return {
        "message": f"Version {version.version_number} deleted",
        "version": serialize_version(version),
    }
