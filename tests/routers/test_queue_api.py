"""HTTP tests for /api/v1/queue."""

import pytest

from assetflow import worker
from assetflow.metadata import QUEUE_FAILED, VERSION_UPLOADING
from assetflow.processing_queue import ProcessingQueue
from assetflow.processors import ProcessingResult
from assetflow.routers import queue as queue_router
from assetflow.settings import settings
from assetflow.versions import VersionStore


def _enqueue(client, h, asset, **extra):
    payload = {"asset_id": asset.id, "source_key": f"videos/{asset.id}/raw.mov"}
    payload.update(extra)
    return client.post("/api/v1/queue", json=payload, headers=h)


class TestEnqueue:
    def test_admin_can_enqueue(self, client, headers, admin, asset):
        response = _enqueue(client, headers(admin), asset, priority="LOW", max_attempts=5)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["priority"] == 0
        assert body["max_attempts"] == 5

    def test_members_cannot_enqueue(self, client, headers, member, asset):
        assert _enqueue(client, headers(member), asset).status_code == 403

    def test_bad_priority(self, client, headers, admin, asset):
        response = _enqueue(client, headers(admin), asset, priority="urgent")

        assert response.status_code == 400

    def test_unknown_stage(self, client, headers, admin, asset):
        assert _enqueue(client, headers(admin), asset, stage="thumbnail").status_code == 422

    def test_version_from_another_tenant_is_not_found(self, client, headers, admin, asset, other_asset, test_db):
        foreign = VersionStore(test_db).create_version(
            other_asset.id, "videos/g/v1.mov", None, None, 10, requires_processing=True
        )
        test_db.commit()

        response = _enqueue(client, headers(admin), asset, version_id=foreign.id)

        assert response.status_code == 404
        assert response.headers["X-Error-Reason"] == "version_not_found"
        test_db.refresh(foreign)
        assert foreign.status == VERSION_UPLOADING
        assert ProcessingQueue(test_db).list_items(asset_id=asset.id) == []


def test_stats_and_listing(client, headers, admin, make_asset):
    h = headers(admin)
    for title in ("one", "two"):
        _enqueue(client, h, make_asset(title))

    stats = client.get("/api/v1/queue/stats", headers=h).json()
    listing = client.get("/api/v1/queue/items", params={"status": "pending"}, headers=h).json()

    assert stats["pending"] == 2
    assert stats["total"] == 2
    assert listing["count"] == 2
    assert client.get("/api/v1/queue/items", params={"status": "stuck"}, headers=h).status_code == 400


def test_requeue_exhausted_item(client, headers, admin, asset, test_db):
    item_id = _enqueue(client, headers(admin), asset, max_attempts=1).json()["id"]
    queue = ProcessingQueue(test_db)
    [claimed] = queue.claim_batch(1)
    queue.mark_failed(claimed.id, "boom")
    test_db.commit()

    retried = client.post("/api/v1/queue/retry-failed", headers=headers(admin))
    response = client.post(f"/api/v1/queue/items/{item_id}/requeue", headers=headers(admin))

    assert retried.json() == {"retried": 0}
    assert response.status_code == 200
    assert response.json()["status"] == "PENDING"
    assert response.json()["attempts"] == 0


def test_retry_failed_stays_within_tenant(client, headers, admin, asset, tenant, other_asset, other_tenant, test_db):
    queue = ProcessingQueue(test_db)
    ours = queue.enqueue(asset.id, "videos/a/raw.mov", tenant_id=tenant.id)
    theirs = queue.enqueue(other_asset.id, "videos/g/raw.mov", tenant_id=other_tenant.id)
    for item in queue.claim_batch(2):
        queue.mark_failed(item.id, "boom", retryable=False)
    test_db.commit()

    response = client.post("/api/v1/queue/retry-failed", headers=headers(admin))

    assert response.json() == {"retried": 1}
    assert queue.get_item(ours.id).status == "PENDING"
    assert queue.get_item(theirs.id).status == QUEUE_FAILED


def test_requeue_pending_item_conflicts(client, headers, admin, asset):
    item_id = _enqueue(client, headers(admin), asset).json()["id"]

    response = client.post(f"/api/v1/queue/items/{item_id}/requeue", headers=headers(admin))

    assert response.status_code == 409
    assert response.headers["X-Error-Reason"] == "queue_item_not_failed"


class TestProcessEndpoint:
    @pytest.fixture(autouse=True)
    def cron_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", "tick-tock")

    def test_requires_secret(self, client):
        assert client.post("/api/v1/queue/process").status_code == 401
        assert client.post("/api/v1/queue/process", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_drains_one_batch(self, client, headers, admin, asset, notifier, monkeypatch):
        _enqueue(client, headers(admin), asset, stage="stream")

        def fake_stream(item):
            return ProcessingResult(output_key=item.source_key, playback_url="https://cdn.example/x.m3u8")

        monkeypatch.setattr(worker, "default_processors", lambda: {"stream": fake_stream})
        monkeypatch.setattr(queue_router, "get_dispatcher", lambda: notifier)

        response = client.post(
            "/api/v1/queue/process",
            params={"batch_size": 5},
            headers={"Authorization": "Bearer tick-tock"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] == 1
        assert body["results"][0]["status"] == "completed"
        assert body["open_items"] == 0
