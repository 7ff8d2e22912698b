"""Tests for tenant, employee and scheduler request guards."""

import pytest
from fastapi import HTTPException

from assetflow.dependencies import get_current_employee, get_tenant, require_admin, require_cron_secret
from assetflow.settings import settings


def test_tenant_resolves_by_identifier_or_id(test_db, tenant):
    assert get_tenant(x_tenant_id="acme", db=test_db).id == tenant.id
    assert get_tenant(x_tenant_id=tenant.id, db=test_db).id == tenant.id


def test_inactive_tenant_is_hidden(test_db, tenant):
    tenant.active = False
    test_db.commit()

    with pytest.raises(HTTPException) as exc_info:
        get_tenant(x_tenant_id="acme", db=test_db)

    assert exc_info.value.status_code == 404


def test_employee_must_belong_to_tenant(test_db, tenant, make_employee):
    employee = make_employee("dana@example.com")

    assert get_current_employee(x_employee_id=employee.id, tenant=tenant, db=test_db).id == employee.id
    with pytest.raises(HTTPException) as exc_info:
        get_current_employee(x_employee_id="stranger", tenant=tenant, db=test_db)
    assert exc_info.value.status_code == 401


def test_require_admin(make_employee):
    admin = make_employee("boss@example.com", is_admin=True)
    member = make_employee("dana@example.com")

    assert require_admin(admin) is admin
    with pytest.raises(HTTPException) as exc_info:
        require_admin(member)
    assert exc_info.value.status_code == 403


def test_cron_secret(monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "tick-tock")

    require_cron_secret("Bearer tick-tock")
    with pytest.raises(HTTPException):
        require_cron_secret("Bearer wrong")
    with pytest.raises(HTTPException):
        require_cron_secret(None)


def test_cron_secret_unset_rejects_everything(monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)

    with pytest.raises(HTTPException):
        require_cron_secret("Bearer ")
