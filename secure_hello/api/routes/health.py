from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter

router = APIRouter(tags=["Health"])

# Reference point for process uptime; set when the module is first imported
_PROCESS_STARTED = time.monotonic()


def process_uptime() -> float:
    """Seconds elapsed since the process imported the application."""

    return max(0.0, time.monotonic() - _PROCESS_STARTED)


@router.api_route("/health", methods=["GET", "HEAD"])
def health_check() -> dict:
    """Health check endpoint.

    Used by load balancers and process supervisors to verify the service is
    up. No dependencies are checked.

    Returns:
        dict: status, an ISO-8601 UTC timestamp and process uptime in seconds.
    """

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": process_uptime(),
    }
