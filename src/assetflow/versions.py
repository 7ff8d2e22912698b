"""Version history for assets and the single-active-version invariant."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from assetflow.errors import InvalidStateError, NotFoundError, ValidationError
from assetflow.metadata import (
    Asset,
    AssetVersion,
    VERSION_DELETED,
    VERSION_FAILED,
    VERSION_PROCESSING,
    VERSION_READY,
    VERSION_UPLOADING,
)

logger = logging.getLogger(__name__)

_ASSET_STATUS_FOR_VERSION = {VERSION_READY: "ready", VERSION_FAILED: "error"}


def format_bytes(size: int | None) -> str:
    value = int(size or 0)
    if value <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    index = 0
    scaled = float(value)
    while scaled >= 1024 and index < len(units) - 1:
        scaled /= 1024
        index += 1
    return f"{round(scaled, 2):g} {units[index]}"


class VersionStore:
    """Append-only version history of assets.

    Methods flush but never commit; the caller owns the transaction, so
    ``activate_version`` lands as one unit with whatever else the caller
    writes before committing.
    """

    def __init__(self, db: Session):
        self.db = db

    def _asset_or_404(self, asset_id: str, *, lock: bool = False) -> Asset:
        query = self.db.query(Asset).filter(Asset.id == str(asset_id))
        if lock:
            query = query.with_for_update()
        asset = query.first()
        if asset is None:
            raise NotFoundError(f"Asset {asset_id} not found", reason="asset_not_found")
        return asset

    def _version_or_404(self, version_id: str) -> AssetVersion:
        version = self.db.query(AssetVersion).filter(AssetVersion.id == str(version_id)).first()
        if version is None:
            raise NotFoundError("version not found", reason="version_not_found")
        return version

    def _next_version_number(self, asset_id: str) -> int:
        # Soft-deleted rows stay in the max so numbers are never reused.
        current_max = (
            self.db.query(func.max(AssetVersion.version_number))
            .filter(AssetVersion.parent_asset_id == asset_id)
            .scalar()
        )
        return int(current_max or 0) + 1

    def create_version(
        self,
        asset_id: str,
        storage_key: str,
        note: Optional[str],
        uploader_id: Optional[str],
        file_size_bytes: int,
        *,
        requires_processing: bool = False,
    ) -> AssetVersion:
        """Record a newly uploaded revision as the next version number.

        The parent's ``current_version`` moves to the new number, but the
        version is not active (and not what the asset serves) until
        ``activate_version`` is called for it.
        """
        asset = self._asset_or_404(asset_id, lock=True)
        clean_key = str(storage_key or "").strip()
        if not clean_key:
            raise ValidationError("storage_key is required", reason="storage_key_missing")

        version_number = self._next_version_number(asset.id)
        version = AssetVersion(
            parent_asset_id=asset.id,
            version_number=version_number,
            storage_key=clean_key,
            status=VERSION_UPLOADING if requires_processing else VERSION_READY,
            is_active=False,
            note=note,
            uploaded_by=uploader_id,
            file_size_bytes=int(file_size_bytes or 0),
        )
        self.db.add(version)
        asset.current_version = version_number
        self.db.flush()
        logger.info(
            "Created version %s of asset %s (status=%s, size=%s)",
            version_number,
            asset.id,
            version.status,
            version.file_size_bytes,
        )
        return version

    def activate_version(self, asset_id: str, version_id: str) -> AssetVersion:
        """Make ``version_id`` the only active version and point the asset at it."""
        asset = self._asset_or_404(asset_id, lock=True)
        version = (
            self.db.query(AssetVersion)
            .filter(
                AssetVersion.id == str(version_id),
                AssetVersion.parent_asset_id == asset.id,
            )
            .first()
        )
        if version is None:
            raise NotFoundError("version not found", reason="version_not_found")
        if version.status == VERSION_DELETED:
            raise InvalidStateError("cannot activate a deleted version", reason="version_deleted")

        # Deactivate first so the partial unique index never sees two active rows.
        (
            self.db.query(AssetVersion)
            .filter(
                AssetVersion.parent_asset_id == asset.id,
                AssetVersion.is_active.is_(True),
            )
            .update({"is_active": False}, synchronize_session="fetch")
        )
        self.db.flush()

        version.is_active = True
        asset.active_storage_key = version.storage_key
        asset.playback_url = version.playback_url
        asset.status = _ASSET_STATUS_FOR_VERSION.get(version.status, "processing")
        self.db.flush()
        logger.info("Activated version %s of asset %s", version.version_number, asset.id)
        return version

    def delete_version(self, version_id: str) -> AssetVersion:
        """Soft-delete a version; the active version cannot be deleted."""
        version = self._version_or_404(version_id)
        if version.is_active:
            raise InvalidStateError(
                "cannot delete the currently active version",
                reason="version_active",
            )
        if version.status != VERSION_DELETED:
            version.status = VERSION_DELETED
            self.db.flush()
            logger.info(
                "Soft-deleted version %s of asset %s",
                version.version_number,
                version.parent_asset_id,
            )
        return version

    def list_versions(self, asset_id: str) -> list[AssetVersion]:
        """All versions of an asset, newest first."""
        asset = self._asset_or_404(asset_id)
        return (
            self.db.query(AssetVersion)
            .filter(AssetVersion.parent_asset_id == asset.id)
            .order_by(AssetVersion.version_number.desc())
            .all()
        )

    def get_version(self, asset_id: str, version_id: str) -> AssetVersion:
        version = self._version_or_404(version_id)
        if version.parent_asset_id != str(asset_id):
            raise NotFoundError("version not found", reason="version_not_found")
        return version

    def get_active_version(self, asset_id: str) -> AssetVersion | None:
        return (
            self.db.query(AssetVersion)
            .filter(
                AssetVersion.parent_asset_id == str(asset_id),
                AssetVersion.is_active.is_(True),
            )
            .first()
        )

    def mark_version_processing(self, version_id: str) -> AssetVersion:
        version = self._version_or_404(version_id)
        if version.status in {VERSION_UPLOADING, VERSION_FAILED}:
            version.status = VERSION_PROCESSING
            self.db.flush()
        return version

    def mark_version_ready(
        self,
        version_id: str,
        *,
        storage_key: Optional[str] = None,
        playback_url: Optional[str] = None,
    ) -> AssetVersion:
        """Record that processing finished; refresh the asset if this version is live."""
        version = self._version_or_404(version_id)
        if version.status == VERSION_DELETED:
            raise InvalidStateError("version was deleted during processing", reason="version_deleted")
        version.status = VERSION_READY
        version.last_error = None
        if storage_key:
            version.storage_key = storage_key
        if playback_url:
            version.playback_url = playback_url
        if version.is_active:
            asset = self._asset_or_404(version.parent_asset_id)
            asset.active_storage_key = version.storage_key
            asset.playback_url = version.playback_url
            asset.status = "ready"
        self.db.flush()
        return version

    def mark_version_failed(self, version_id: str, error: str) -> AssetVersion:
        version = self._version_or_404(version_id)
        if version.status == VERSION_DELETED:
            return version
        version.status = VERSION_FAILED
        version.last_error = str(error or "")[:2000] or None
        if version.is_active:
            asset = self._asset_or_404(version.parent_asset_id)
            asset.status = "error"
        self.db.flush()
        return version

    def version_stats(self, asset_id: str, versions: list[AssetVersion] | None = None) -> dict:
        rows = versions if versions is not None else self.list_versions(asset_id)
        by_status: dict[str, int] = {}
        total_size = 0
        active_number = None
        for row in rows:
            by_status[row.status] = by_status.get(row.status, 0) + 1
            total_size += int(row.file_size_bytes or 0)
            if row.is_active:
                active_number = row.version_number
        asset = self._asset_or_404(asset_id)
        return {
            "total_versions": len(rows),
            "current_version": asset.current_version,
            "active_version": active_number,
            "total_size": total_size,
            "total_size_formatted": format_bytes(total_size),
            "versions_by_status": by_status,
        }
