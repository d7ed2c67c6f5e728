"""
Tests for the follow-up HTTP routes.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.features.follow_up.api.router import get_follow_up_service
from app.features.follow_up.domain.classifier import paginate
from app.features.follow_up.domain.models import (
    FollowUpBuckets,
    FollowUpContact,
    FollowUpResult,
    OptimisticActivity,
    SyncStatus,
)
from app.features.follow_up.services.follow_up_service import FollowUpServiceError
from app.main import app
from tests.conftest import NOW


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service, apply_auth_override):
    apply_auth_override(app)
    app.dependency_overrides[get_follow_up_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def result(make_contact):
    buckets = FollowUpBuckets(
        needs_approach=tuple(FollowUpContact(contact=make_contact(str(i))) for i in range(3)),
        stale_7_days=(
            FollowUpContact(contact=make_contact("b"), last_activity_at=NOW - timedelta(days=8)),
        ),
    )
    return FollowUpResult(buckets=buckets, available=True, calculated_at=NOW)


def _pending(sync_status=SyncStatus.PENDING):
    return OptimisticActivity(
        id="optimistic-1",
        user_id="user-123",
        contact_id="c1",
        type="call",
        timestamp=NOW,
        local_timestamp=NOW,
        sync_status=sync_status,
    )


def test_get_follow_ups(client, service, result):
    service.get_follow_ups = AsyncMock(return_value=result)

    response = client.get("/follow-ups", params={"page_size": 2})

    assert response.status_code == 200
    data = response.json()
    assert data["available"] is True
    assert data["counts"] == {
        "needs_approach": 3,
        "stale_3_days": 0,
        "stale_7_days": 1,
        "stale_30_days": 0,
    }
    assert [item["id"] for item in data["buckets"]["needs_approach"]["items"]] == ["0", "1"]
    assert data["buckets"]["needs_approach"]["total_pages"] == 2
    assert data["buckets"]["stale_7_days"]["items"][0]["last_activity_at"] is not None
    service.get_follow_ups.assert_awaited_once_with("user-123", [], force=False)


def test_get_follow_ups_passes_labels_and_force(client, service, result):
    service.get_follow_ups = AsyncMock(return_value=result)

    response = client.get("/follow-ups?labels=vip&labels=warm&force=true")

    assert response.status_code == 200
    service.get_follow_ups.assert_awaited_once_with("user-123", ["vip", "warm"], force=True)


def test_get_follow_ups_unavailable(client, service):
    service.get_follow_ups = AsyncMock(
        return_value=FollowUpResult.unavailable(["calculation_deferred"])
    )

    data = client.get("/follow-ups").json()

    assert data["available"] is False
    assert data["notices"] == ["calculation_deferred"]
    assert all(page["items"] == [] for page in data["buckets"].values())


def test_get_follow_ups_rejects_bad_page_size(client, service):
    response = client.get("/follow-ups", params={"page_size": 0})
    assert response.status_code == 422


def test_get_follow_ups_unexpected_error(client, service):
    service.get_follow_ups = AsyncMock(side_effect=RuntimeError("boom"))

    response = client.get("/follow-ups")

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to get follow-ups"


def test_get_bucket_page(client, service, result):
    items = result.buckets.needs_approach
    service.get_bucket_page = AsyncMock(return_value=(result, paginate(items, 2, 2)))

    response = client.get("/follow-ups/buckets/needs_approach", params={"page": 2, "page_size": 2})

    assert response.status_code == 200
    data = response.json()
    assert data["bucket"] == "needs_approach"
    assert [item["id"] for item in data["items"]] == ["2"]
    assert data["page"] == 2
    assert data["available"] is True


def test_get_unknown_bucket(client, service):
    service.get_bucket_page = AsyncMock(
        side_effect=FollowUpServiceError("Unknown bucket: nope", status_code=404)
    )

    response = client.get("/follow-ups/buckets/nope")

    assert response.status_code == 404


def test_refresh(client, service, result):
    service.refresh = AsyncMock(return_value=result)

    response = client.post("/follow-ups/refresh", json={"labels": ["vip"]})

    assert response.status_code == 200
    service.refresh.assert_awaited_once_with("user-123", ["vip"])


def test_refresh_without_body(client, service, result):
    service.refresh = AsyncMock(return_value=result)

    response = client.post("/follow-ups/refresh")

    assert response.status_code == 200
    service.refresh.assert_awaited_once_with("user-123", [])


def test_log_activity(client, service):
    service.record_activity = AsyncMock(return_value=_pending())

    response = client.post(
        "/follow-ups/contacts/c1/activities", json={"type": " call ", "details": "voicemail"}
    )

    assert response.status_code == 202
    assert response.json()["sync_status"] == "pending"
    user_id, contact_id, descriptor = service.record_activity.await_args.args
    assert (user_id, contact_id) == ("user-123", "c1")
    assert descriptor.type == "call"
    assert descriptor.details == "voicemail"


def test_log_activity_rejects_blank_type(client, service):
    service.record_activity = AsyncMock()

    response = client.post("/follow-ups/contacts/c1/activities", json={"type": "   "})

    assert response.status_code == 422
    service.record_activity.assert_not_awaited()


def test_pending_activities(client, service):
    service.pending_activities.return_value = [_pending(SyncStatus.FAILED)]
    service.overlay.counts.return_value = {"pending": 0, "succeeded": 0, "failed": 1}

    data = client.get("/follow-ups/activities/pending").json()

    assert data["activities"][0]["sync_status"] == "failed"
    assert data["counts"]["failed"] == 1


def test_status(client, service):
    service.status = AsyncMock(
        return_value={
            "calculation_status": "fresh",
            "last_calculated_at": NOW.isoformat(),
            "time_until_next_seconds": 3500.0,
            "progress": None,
            "cache": {"hits": 1, "misses": 1, "hit_rate": 0.5, "entries": 1},
            "pending_activities": {"pending": 0, "succeeded": 0, "failed": 0},
        }
    )

    data = client.get("/follow-ups/status").json()

    assert data["calculation_status"] == "fresh"
    assert data["cache"]["hit_rate"] == 0.5


def test_clear_cache(client, service):
    service.clear_cache = AsyncMock(return_value={"memory_entries": 2, "persisted_rows": 1})

    response = client.delete("/follow-ups/cache")

    assert response.status_code == 200
    assert response.json() == {"cleared": True, "memory_entries": 2, "persisted_rows": 1}


def test_requires_authentication(service):
    app.dependency_overrides[get_follow_up_service] = lambda: service
    try:
        response = TestClient(app).get("/follow-ups")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code in (401, 403)


def test_service_not_initialized(apply_auth_override):
    apply_auth_override(app)
    try:
        response = TestClient(app).get("/follow-ups")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
