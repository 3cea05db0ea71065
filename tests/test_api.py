"""
Tests for Portfolio Backend API endpoints.

Tests cover:
- Health check (reports, never gates)
- Connection diagnostics (/status)
- Gate-protected routes (503 on store failure, pass-through otherwise)
- Error handlers for store failures and unhandled exceptions
- Environment check endpoint
- CORS
"""

import socket

from fastapi import Depends
from fastapi.testclient import TestClient
from pymongo.errors import AutoReconnect

from conftest import FakeTransport, make_manager
from portfolio_backend.database import ConnectionManager
from portfolio_backend.gate import require_store
from portfolio_backend.main import create_app

PRODUCTION = {"app": {"environment": "production"}}


class TestHealthCheck:
    """Tests for the /health endpoint."""

    def test_health_before_any_connection(self, client):
        """Health check reports a disconnected store with 200."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "Portfolio Backend API is running!"
        assert data["timestamp"]
        assert data["environment"] == "development"
        assert data["store"] == {"status": "disconnected", "isConnected": False}

    def test_health_after_gated_request(self, client):
        client.get("/api/stats")

        response = client.get("/health")
        assert response.json()["store"] == {"status": "connected", "isConnected": True}

    def test_health_does_not_connect(self, client, transport):
        client.get("/health")
        assert transport.opened == 0

    def test_health_is_200_when_unconfigured(self, unconfigured_client):
        unconfigured_client.get("/api/stats")

        response = unconfigured_client.get("/health")
        assert response.status_code == 200
        assert response.json()["store"]["isConnected"] is False


class TestStatus:
    """Tests for the /status diagnostics endpoint."""

    def test_status_when_connected(self, client):
        client.get("/api/stats")

        response = client.get("/status")
        assert response.status_code == 200

        connection = response.json()["connection"]
        assert connection["status"]["state"] == "connected"
        assert connection["status"]["host"] == "mongodb+srv://cluster0.example.net"
        assert connection["ping"]["result"] == {"ok": 1.0}
        assert connection["ping"]["error"] is None

    def test_status_when_disconnected(self, client, transport):
        response = client.get("/status")
        assert response.status_code == 200

        ping = response.json()["connection"]["ping"]
        assert ping["result"] is None
        assert ping["error"] == "Store is disconnected"
        assert transport.opened == 0

    def test_status_assembly_failure_returns_500(self):
        class BrokenManager(ConnectionManager):
            def status(self):
                raise RuntimeError("status unavailable")

        manager = BrokenManager(FakeTransport(), settings_loader=lambda: None)
        with TestClient(create_app(manager), raise_server_exceptions=False) as client:
            response = client.get("/status")

        assert response.status_code == 500
        assert response.json()["message"] == "status unavailable"


class TestGatedRoutes:
    """Tests for routes behind the request gate."""

    def test_stats_connects_and_returns_store_stats(self, client, transport):
        response = client.get("/api/stats")
        assert response.status_code == 200
        assert response.json() == {
            "database": "portfolio",
            "collections": 3,
            "dataSize": 2048.0,
            "indexSize": 512.0,
        }
        assert transport.opened == 1

    def test_repeated_requests_reuse_connection(self, client, transport):
        for _ in range(5):
            assert client.get("/api/stats").status_code == 200
        assert transport.opened == 1

    def test_missing_configuration_returns_503(self, unconfigured_client):
        response = unconfigured_client.get("/api/stats")
        assert response.status_code == 503

        data = response.json()
        assert data["error"] == "Database connection failed"
        assert data["kind"] == "configuration_missing"
        assert "MONGODB_URI" in data["message"]
        assert data["timestamp"]

    def test_dns_failure_returns_503(self):
        manager = make_manager(FakeTransport(open_error=socket.gaierror(-2, "Name or service not known")))
        with TestClient(create_app(manager), raise_server_exceptions=False) as client:
            response = client.get("/api/stats")
            health = client.get("/health")

        assert response.status_code == 503
        assert response.json()["error"] == "Database connection failed"
        assert response.json()["kind"] == "dns_resolution_failure"
        assert health.json()["store"]["status"] == "disconnected"

    def test_production_hides_error_kind(self):
        manager = make_manager(FakeTransport(open_error=socket.gaierror(-2, "Name or service not known")))
        with TestClient(create_app(manager, PRODUCTION), raise_server_exceptions=False) as client:
            response = client.get("/api/stats")

        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "Database connection failed"
        assert "kind" not in data
        assert "Name or service not known" not in data["message"]

    def test_handler_is_not_invoked_when_gate_rejects(self):
        calls = []
        manager = ConnectionManager(FakeTransport(), settings_loader=lambda: None)
        app = create_app(manager)

        @app.get("/api/documents", dependencies=[Depends(require_store)])
        def list_documents():
            calls.append(1)
            return []

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/documents")

        assert response.status_code == 503
        assert calls == []

    def test_handler_errors_are_not_swallowed_by_gate(self, manager):
        app = create_app(manager)

        @app.get("/api/explode", dependencies=[Depends(require_store)])
        def explode():
            raise ValueError("bad document")

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/explode")

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"
        assert response.json()["message"] == "bad document"

    def test_unhandled_error_message_hidden_in_production(self, manager):
        app = create_app(manager, PRODUCTION)

        @app.get("/api/explode", dependencies=[Depends(require_store)])
        def explode():
            raise ValueError("bad document")

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/explode")

        assert response.status_code == 500
        assert response.json()["message"] == "Something went wrong"

    def test_store_failure_inside_handler_returns_503(self, manager):
        app = create_app(manager)

        @app.get("/api/flaky", dependencies=[Depends(require_store)])
        def flaky():
            raise AutoReconnect("connection pool paused")

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/api/flaky")

        assert response.status_code == 503
        assert response.json()["error"] == "Database connection error"
        assert response.json()["details"] == "connection pool paused"


class TestLifespan:
    """Tests for startup and shutdown of the store connection."""

    def test_shutdown_on_exit(self, manager, transport):
        app = create_app(manager)
        with TestClient(app) as client:
            client.get("/api/stats")

        assert manager.state == "disconnected"
        assert transport.clients[0].closed
        assert app.state.exit_code == 0

    def test_failed_shutdown_sets_exit_code(self):
        transport = FakeTransport(close_error=RuntimeError("close failed"))
        manager = make_manager(transport)
        app = create_app(manager)
        with TestClient(app) as client:
            client.get("/api/stats")

        assert manager.state == "disconnected"
        assert app.state.exit_code == 1

    def test_warm_start_connects_on_startup(self, manager, transport):
        app = create_app(manager, {"app": {"warm_start": True}})
        with TestClient(app) as client:
            assert transport.opened == 1
            assert client.get("/health").json()["store"]["isConnected"] is True

    def test_warm_start_failure_does_not_block_startup(self):
        manager = ConnectionManager(FakeTransport(), settings_loader=lambda: None)
        app = create_app(manager, {"app": {"warm_start": True}})
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200


class TestEnvironmentCheck:
    """Tests for the /api/test endpoint."""

    def test_reports_presence_only(self, client, monkeypatch):
        monkeypatch.setenv("MONGODB_URI", "mongodb://localhost:27017/portfolio")
        monkeypatch.setenv("JWT_SECRET", "not-a-real-secret")
        monkeypatch.delenv("CLOUDINARY_CLOUD_NAME", raising=False)

        response = client.get("/api/test")
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "Test endpoint working"
        assert data["envVars"]["hasMongoUri"] is True
        assert data["envVars"]["hasJwtSecret"] is True
        assert data["envVars"]["hasCloudinaryName"] is False
        assert "not-a-real-secret" not in response.text

    def test_is_not_gated(self, unconfigured_client):
        assert unconfigured_client.get("/api/test").status_code == 200


class TestCORS:
    """Tests for CORS configuration."""

    def test_local_dev_origin_allowed(self, client):
        response = client.get("/health", headers={"Origin": "http://localhost:5173"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_preview_deployment_origin_allowed(self, client):
        response = client.get("/health", headers={"Origin": "https://portfolio-git-main.vercel.app"})
        assert response.headers["access-control-allow-origin"] == "https://portfolio-git-main.vercel.app"

    def test_unknown_origin_not_allowed(self, client):
        response = client.get("/health", headers={"Origin": "https://evil.example.com"})
        assert "access-control-allow-origin" not in response.headers

    def test_preflight(self, client):
        response = client.options(
            "/health",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert response.status_code == 200
