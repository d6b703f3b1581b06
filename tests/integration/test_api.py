"""
Integration tests for API endpoints using FastAPI TestClient.

Tests basic endpoints (root, health) that don't require external services.
"""

import uuid

from fastapi.testclient import TestClient


class TestRootEndpoint:
    """Tests for GET /."""

    def test_returns_api_info(self, client: TestClient):
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Toolspace Billing API"
        assert data["version"] == "1.0.0"
        assert "docs" in data


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_returns_healthy(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestRequestContextMiddleware:
    """Tests for X-Request-ID header injected by RequestContextMiddleware."""

    def test_request_id_header_present(self, client: TestClient):
        response = client.get("/health")
        assert "x-request-id" in response.headers

    def test_request_id_is_valid_uuid(self, client: TestClient):
        response = client.get("/health")
        # Should not raise ValueError
        uuid.UUID(response.headers["x-request-id"])

    def test_request_id_unique_per_request(self, client: TestClient):
        r1 = client.get("/health")
        r2 = client.get("/health")
        assert r1.headers["x-request-id"] != r2.headers["x-request-id"]

    def test_inbound_request_id_is_reused(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "req-from-proxy"})
        assert response.headers["x-request-id"] == "req-from-proxy"


class TestAuthProtection:
    """Billing endpoints other than the webhook require a bearer token."""

    def test_status_without_token_is_rejected(self, client: TestClient):
        response = client.get("/api/v1/billing/status")
        assert response.status_code in (401, 403)

    def test_checkout_without_token_is_rejected(self, client: TestClient):
        response = client.post("/api/v1/billing/checkout", json={"plan_id": "pro"})
        assert response.status_code in (401, 403)

    def test_health_endpoints_no_auth_required(self, client: TestClient):
        assert client.get("/health").status_code == 200
