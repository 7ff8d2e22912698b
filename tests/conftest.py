"""Test configuration and fixtures."""

import os

# Settings and the engine are read at import time.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from assetflow.metadata import Asset, Base, Employee, Role, Tenant


@pytest.fixture
def test_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine)


@pytest.fixture
def test_db(session_factory):
    """Create test database."""
    session = session_factory()
    yield session
    session.close()


def create_tenant(db: Session, identifier: str = "acme") -> Tenant:
    tenant = Tenant(identifier=identifier, name=f"Tenant {identifier}")
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return tenant


def create_role(db: Session, tenant: Tenant, name: str) -> Role:
    role = Role(tenant_id=tenant.id, name=name)
    db.add(role)
    db.commit()
    db.refresh(role)
    return role


def create_employee(
    db: Session,
    tenant: Tenant,
    email: str,
    *,
    role: Role = None,
    is_admin: bool = False,
) -> Employee:
    employee = Employee(
        tenant_id=tenant.id,
        email=email,
        display_name=email.split("@")[0].title(),
        role_id=role.id if role is not None else None,
        is_admin=is_admin,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


def create_asset(db: Session, tenant: Tenant, title: str = "Launch teaser", asset_type: str = "VIDEO") -> Asset:
    asset = Asset(tenant_id=tenant.id, asset_type=asset_type, title=title)
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


@pytest.fixture
def tenant(test_db):
    return create_tenant(test_db)


@pytest.fixture
def asset(test_db, tenant):
    return create_asset(test_db, tenant)


@pytest.fixture
def make_role(test_db, tenant):
    def _make(name: str) -> Role:
        return create_role(test_db, tenant, name)

    return _make


@pytest.fixture
def make_employee(test_db, tenant):
    def _make(email: str, **kwargs) -> Employee:
        return create_employee(test_db, tenant, email, **kwargs)

    return _make


@pytest.fixture
def make_asset(test_db, tenant):
    def _make(title: str = "Launch teaser", asset_type: str = "VIDEO") -> Asset:
        return create_asset(test_db, tenant, title, asset_type)

    return _make


@pytest.fixture
def other_tenant(test_db):
    return create_tenant(test_db, "globex")


@pytest.fixture
def other_asset(test_db, other_tenant):
    return create_asset(test_db, other_tenant, "Globex promo")
