"""
Health Check Endpoint - GET /health

Reports circuit breaker state for every outbound service this execution
context has called. No authentication required.
"""

import time
from datetime import datetime, timezone

from gateway.logging_utils import configure_structured_logging, log_api_request, set_request_id
from gateway.response_utils import success_response
from connectors.runtime import get_runtime

# Configure structured logging
logger = configure_structured_logging()

VERSION = "1.0.0"


def handler(event, context):
    """
    Lambda handler for health check.

    Returns:
        200 with status "healthy", or "degraded" while any circuit is not closed
    """
    start_time = time.time()

    # Set request ID for logging correlation
    set_request_id(event)

    runtime = get_runtime()
    circuits = runtime.breakers.status()
    open_circuits = sorted(name for name, info in circuits.items() if info["state"] != "closed")

    response = success_response(
        {
            "status": "degraded" if open_circuits else "healthy",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "circuits": circuits,
                "open_circuits": open_circuits,
                "rate_limit_backend": "dynamodb" if runtime.rate_limiter.distributed else "memory",
            },
        }
    )

    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, "GET", "/health", 200, latency_ms)

    return response
