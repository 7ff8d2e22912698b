"""Fixtures for HTTP-level router tests."""

import pytest
from fastapi.testclient import TestClient

from assetflow.api import app
from assetflow.database import get_db
from assetflow.notifications import NotificationDispatcher, get_dispatcher


class RecordingDispatcher(NotificationDispatcher):
    """Formats messages like the real dispatcher but keeps them in memory."""

    def __init__(self):
        super().__init__(slack_webhook_url="", teams_webhook_url="")
        self.sent = []

    def send(self, title, text):
        self.sent.append((title, text))
        return True


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def client(session_factory, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(make_employee):
    return make_employee("admin@example.com", is_admin=True)


@pytest.fixture
def member(make_employee):
    return make_employee("member@example.com")


@pytest.fixture
def headers(tenant):
    def _headers(employee=None):
        values = {"X-Tenant-ID": tenant.identifier}
        if employee is not None:
            values["X-Employee-ID"] = employee.id
        return values

    return _headers
