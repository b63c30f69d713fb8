"""
Circuit Reset Endpoint - POST /ops/circuits/{service}/reset

Operator surface for clearing a stuck circuit after an upstream incident.
The route is IAM-authorized at API Gateway; the "all" service name resets
every circuit in this execution context.
"""

import time

from gateway.logging_utils import configure_structured_logging, log_api_request, set_request_id
from gateway.response_utils import error_response, success_response
from connectors.runtime import get_circuit_breaker_status, reset_circuit_breaker

logger = configure_structured_logging()


def handler(event, context):
    start_time = time.time()
    set_request_id(event)

    service = (event.get("pathParameters") or {}).get("service")
    path = f"/ops/circuits/{service}/reset"

    if not service:
        response = error_response(400, "missing_service", "Service name is required")
    elif service == "all":
        reset_circuit_breaker()
        logger.info("Reset all circuits via ops endpoint")
        response = success_response({"reset": "all", "circuits": get_circuit_breaker_status()})
    elif reset_circuit_breaker(service):
        logger.info(f"Reset circuit {service} via ops endpoint", extra={"service": service})
        response = success_response({"reset": service, "circuits": get_circuit_breaker_status()})
    else:
        response = error_response(404, "unknown_circuit", f"No circuit recorded for {service}")

    latency_ms = (time.time() - start_time) * 1000
    log_api_request(logger, "POST", path, response["statusCode"], latency_ms)
    return response
