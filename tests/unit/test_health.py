"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)

HEALTHY_DB = {
    "healthy": True,
    "service": "database_pool",
    "connection_time_ms": 1.2,
    "pool_stats": {"pool_size": 3, "pool_available": 3, "pool_utilization_percent": 0.0},
}


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"


def test_request_id_is_echoed():
    response = client.get("/healthz", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"

    generated = client.get("/healthz").headers["X-Request-ID"]
    assert generated


def test_readyz_endpoint_all_services_healthy():
    """Test readiness endpoint when all services are healthy."""
    with (
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    checks = data["checks"]
    assert checks["redis"]["ok"] is True
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_size"] == 3
    assert checks["configuration"]["ok"] is True


def test_readyz_endpoint_redis_unhealthy():
    """Test readiness endpoint when Redis is down."""
    with (
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=False)),
        patch("app.routes.health.db_health_check", AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_database_unhealthy():
    """Test readiness endpoint when the pool is not available."""
    with (
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)),
        patch(
            "app.routes.health.db_health_check",
            AsyncMock(return_value={"healthy": False, "error": "Pool not available"}),
        ),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "Pool not available"


def test_readyz_endpoint_database_check_raises():
    with (
        patch("app.routes.health.fast_redis.ping", AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", AsyncMock(side_effect=RuntimeError("boom"))),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "RuntimeError: boom"
    assert isinstance(data["checks"]["database"]["latency_ms"], (int, float))
