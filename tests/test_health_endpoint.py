"""
Tests for the health check endpoint.
"""

import json


class TestHealthEndpoint:
    """Tests for GET /health endpoint."""

    def test_returns_200(self):
        """Health endpoint should return 200."""
        from api.health import handler

        result = handler({}, {})

        assert result["statusCode"] == 200

    def test_returns_healthy_status(self):
        """Health endpoint should be healthy with no circuits recorded."""
        from api.health import handler

        result = handler({}, {})
        body = json.loads(result["body"])

        assert body["status"] == "healthy"
        assert body["checks"]["circuits"] == {}
        assert body["checks"]["open_circuits"] == []

    def test_returns_version_and_timestamp(self):
        from api.health import handler

        body = json.loads(handler({}, {})["body"])

        assert body["version"] == "1.0.0"
        assert "timestamp" in body

    def test_returns_no_cache_header(self):
        """Health endpoint should not be cached."""
        from api.health import handler

        result = handler({}, {})

        assert result["headers"]["Content-Type"] == "application/json"
        assert result["headers"]["Cache-Control"] == "no-cache"

    def test_degraded_while_circuit_open(self):
        """An open circuit degrades health but still answers 200."""
        from api.health import handler
        from connectors.runtime import get_runtime

        breakers = get_runtime().breakers
        for _ in range(5):
            breakers.record_failure("linkedin-ads")
        breakers.record_success("ga4")

        result = handler({}, {})
        body = json.loads(result["body"])

        assert result["statusCode"] == 200
        assert body["status"] == "degraded"
        assert body["checks"]["open_circuits"] == ["linkedin-ads"]
        assert body["checks"]["circuits"]["ga4"]["state"] == "closed"

    def test_reports_memory_rate_limit_backend(self):
        from api.health import handler

        body = json.loads(handler({}, {})["body"])

        assert body["checks"]["rate_limit_backend"] == "memory"

    def test_reports_dynamodb_rate_limit_backend(self, monkeypatch):
        from api.health import handler

        monkeypatch.setenv("RATE_LIMIT_TABLE", "adgateway-rate-limits")
        body = json.loads(handler({}, {})["body"])

        assert body["checks"]["rate_limit_backend"] == "dynamodb"
