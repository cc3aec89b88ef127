"""Tests for the API routes."""

import pytest
import redis
from fastapi.testclient import TestClient

from voice_jobs.api.app import create_app
from voice_jobs.api.dependencies import reset_dependencies, set_queue_manager
from voice_jobs.queue_manager import QueueManager


class TestAPIRoutes:
    """Tests for the API routes."""

    @pytest.fixture
    def manager(self):
        """Install a memory-backed queue manager."""
        queue_manager = QueueManager(backend_type="memory")
        set_queue_manager(queue_manager)
        yield queue_manager
        reset_dependencies()

    @pytest.fixture
    def client(self, manager):
        """Create a test client."""
        app = create_app()
        return TestClient(app)

    def test_root_endpoint(self, client):
        """Test the root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert "name" in data
        assert "version" in data
        assert "docs" in data

    def test_health_check(self, client):
        """Test the health check endpoint."""
        response = client.get("/api/v1/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["state"] == "running"
        assert data["checks"] == {"calls": True, "analytics": True, "integrations": True}
        assert "timestamp" in data

    def test_health_check_after_shutdown(self, client, manager):
        manager.shutdown()

        response = client.get("/api/v1/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["state"] == "closed"

    def test_submit_call_job(self, client):
        """Test submitting a call job."""
        response = client.post(
            "/api/v1/queues/calls",
            json={"callSid": "CA123", "action": "transcribe", "data": {"audioUrl": "https://x/a.mp3"}},
        )
        assert response.status_code == 202

        body = response.json()
        assert body["success"] is True
        assert body["data"]["jobId"].startswith("CA123-transcribe-")
        assert body["data"]["priority"] == 5
        assert "requestId" in body

    def test_submit_analytics_job(self, client):
        """Test submitting an analytics job."""
        response = client.post(
            "/api/v1/queues/analytics",
            json={"type": "daily_aggregation", "data": {"date": "2025-10-01"}},
        )
        assert response.status_code == 202
        assert response.json()["data"]["priority"] == 3
        assert response.json()["data"]["jobId"].startswith("analytics-daily_aggregation-")

    def test_submit_integration_job(self, client):
        """Test submitting an integration job with explicit priority."""
        response = client.post(
            "/api/v1/queues/integrations",
            json={"type": "webhook_delivery", "data": {"url": "https://hooks.example.com", "payload": {}}, "priority": 8},
        )
        assert response.status_code == 202
        assert response.json()["data"]["priority"] == 8

    def test_submit_invalid_type(self, client):
        """Test that an unknown job type is rejected."""
        response = client.post("/api/v1/queues/analytics", json={"type": "bogus", "data": {}})
        assert response.status_code == 400

        body = response.json()
        assert body["success"] is False
        assert "Invalid analytics type: bogus" in body["error"]

    def test_submit_invalid_priority(self, client):
        response = client.post(
            "/api/v1/queues/calls",
            json={"callSid": "CA123", "action": "transcribe", "data": {"audioUrl": "https://x"}, "priority": 42},
        )
        assert response.status_code == 400

    def test_submit_missing_field(self, client):
        """Test that malformed bodies are rejected by request validation."""
        response = client.post("/api/v1/queues/calls", json={"action": "transcribe"})
        assert response.status_code == 422

    def test_submit_store_unavailable(self, client, manager, monkeypatch):
        """Test that store failures map to 503."""

        def unavailable(job):
            raise redis.ConnectionError("Connection refused")

        monkeypatch.setattr(manager.registry.get("integrations"), "enqueue", unavailable)

        response = client.post(
            "/api/v1/queues/integrations",
            json={"type": "customer_sync", "data": {"customerId": "cus_1", "action": "create"}},
        )
        assert response.status_code == 503
        assert response.json()["error"] == "Connection refused"

    def test_submit_after_shutdown(self, client, manager):
        manager.shutdown()

        response = client.post("/api/v1/queues/analytics", json={"type": "daily_aggregation", "data": {"date": "2025-10-01"}})
        assert response.status_code == 503

    def test_queue_metrics(self, client):
        """Test reading queue metrics."""
        client.post(
            "/api/v1/queues/calls",
            json={"callSid": "CA123", "action": "transcribe", "data": {"audioUrl": "https://x/a.mp3"}},
        )
        client.post("/api/v1/queues/analytics", json={"type": "daily_aggregation", "data": {"date": "2025-10-01"}})

        response = client.get("/api/v1/queues/metrics")
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["totalJobsAdded"] == 2
        assert data["jobsAddedByType"] == {"transcribe": 1, "daily_aggregation": 1}
        assert data["currentQueueCounts"] == {"calls": 1, "analytics": 1, "integrations": 0}

    def test_queue_metrics_store_failure(self, client, manager, monkeypatch):
        def unavailable():
            raise redis.ConnectionError("Connection refused")

        monkeypatch.setattr(manager.registry.get("calls"), "count", unavailable)

        response = client.get("/api/v1/queues/metrics")
        assert response.status_code == 503
        assert response.json()["success"] is False

    def test_failed_jobs(self, client, manager):
        """Test listing jobs that exhausted their attempts."""
        result = manager.add_analytics_job("daily_aggregation", {"date": "2025-10-01"})
        queue = manager.registry.get("analytics")
        for _ in range(3):
            job = queue.claim("worker-1")
            queue.fail(job.id, "warehouse timeout", worker_id="worker-1")
            # Make the backoff due without waiting
            queue.get_job(job.id).delay_until = None
            queue.promote_delayed()

        response = client.get("/api/v1/queues/analytics/failed")
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["queueName"] == "analytics"
        assert [job["jobId"] for job in data["jobs"]] == [result["data"]["jobId"]]
        assert data["jobs"][0]["lastError"] == "warehouse timeout"

    def test_failed_jobs_unknown_queue(self, client):
        response = client.get("/api/v1/queues/billing/failed")
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_failed_jobs_limit_validated(self, client):
        response = client.get("/api/v1/queues/calls/failed", params={"limit": 0})
        assert response.status_code == 422

    def test_prometheus_endpoint(self, client):
        """Test the Prometheus scrape endpoint."""
        client.post("/api/v1/queues/analytics", json={"type": "daily_aggregation", "data": {"date": "2025-10-01"}})
        # Counters are applied by the aggregator thread; a snapshot flushes them
        client.get("/api/v1/queues/metrics")

        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "voice_jobs_added_total" in response.text
