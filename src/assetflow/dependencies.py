"""Shared dependencies for FastAPI endpoints."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from assetflow.database import get_db
from assetflow.metadata import Employee, Tenant
from assetflow.settings import settings


def _resolve_tenant(db: Session, tenant_ref: str) -> Optional[Tenant]:
    """Resolve tenant by id or identifier."""
    ref = str(tenant_ref or "").strip()
    return db.query(Tenant).filter(or_(Tenant.id == ref, Tenant.identifier == ref)).first()


def get_tenant(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID"),
    db: Session = Depends(get_db),
) -> Tenant:
    """Extract and validate tenant from request headers.

    Raises:
        HTTPException 404: Tenant not found or inactive
    """
    tenant = _resolve_tenant(db, x_tenant_id)
    if tenant is None or not tenant.active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tenant {x_tenant_id} not found")
    return tenant


def get_current_employee(
    x_employee_id: str = Header(..., alias="X-Employee-ID"),
    tenant: Tenant = Depends(get_tenant),
    db: Session = Depends(get_db),
) -> Employee:
    """Identify the acting employee within the selected tenant."""
    employee = db.query(Employee).filter(
        Employee.id == str(x_employee_id).strip(),
        Employee.tenant_id == tenant.id,
    ).first()
    if employee is None or not employee.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown employee")
    return employee


def require_admin(employee: Employee = Depends(get_current_employee)) -> Employee:
    if not employee.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return employee


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """Guard scheduler-triggered endpoints with ``Authorization: Bearer <cron_secret>``."""
    expected = str(settings.cron_secret or "").strip()
    if not expected or authorization != f"Bearer {expected}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
