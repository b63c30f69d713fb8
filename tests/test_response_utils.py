"""
Tests for response utilities module.

Tests cover JSON serialization and response formatting helpers.
"""

import json
from decimal import Decimal

import pytest


class TestDecimalDefault:
    """Tests for decimal_default JSON serializer."""

    def test_whole_decimal_becomes_int(self):
        from gateway.response_utils import decimal_default

        assert decimal_default(Decimal("5")) == 5
        assert isinstance(decimal_default(Decimal("5")), int)

    def test_fractional_decimal_becomes_float(self):
        from gateway.response_utils import decimal_default

        assert decimal_default(Decimal("1.5")) == 1.5

    def test_other_types_raise(self):
        from gateway.response_utils import decimal_default

        with pytest.raises(TypeError):
            decimal_default(object())


class TestSuccessResponse:
    """Tests for success_response helper."""

    def test_default_status_and_headers(self):
        from gateway.response_utils import success_response

        result = success_response({"ok": True})

        assert result["statusCode"] == 200
        assert result["headers"]["Content-Type"] == "application/json"
        assert result["headers"]["Cache-Control"] == "no-cache"
        assert json.loads(result["body"]) == {"ok": True}

    def test_serializes_dynamodb_numbers(self):
        from gateway.response_utils import success_response

        result = success_response({"count": Decimal("3"), "ratio": Decimal("0.25")})

        assert json.loads(result["body"]) == {"count": 3, "ratio": 0.25}

    def test_extra_headers_merged(self):
        from gateway.response_utils import success_response

        result = success_response({}, 201, headers={"X-RateLimit-Remaining": "4"})

        assert result["statusCode"] == 201
        assert result["headers"]["X-RateLimit-Remaining"] == "4"
        assert result["headers"]["Content-Type"] == "application/json"


class TestErrorResponse:
    """Tests for error_response helper."""

    def test_error_envelope(self):
        from gateway.response_utils import error_response

        result = error_response(404, "unknown_circuit", "No circuit recorded for x")

        assert result["statusCode"] == 404
        assert json.loads(result["body"]) == {
            "error": {"code": "unknown_circuit", "message": "No circuit recorded for x"}
        }

    def test_error_headers(self):
        from gateway.response_utils import error_response

        result = error_response(429, "rate_limit_exceeded", "Slow down", headers={"Retry-After": "30"})

        assert result["headers"]["Retry-After"] == "30"
