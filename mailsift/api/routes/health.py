"""Health check route."""

import time
from typing import Any

from fastapi import APIRouter, status

from mailsift.core.resilience import model_api_circuit_breaker, supabase_circuit_breaker

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_VERSION = "1.0.0"


@router.get("", status_code=status.HTTP_200_OK)
async def health_check() -> dict[str, Any]:
    """Process liveness plus dependency circuit breaker states. No authentication required."""
    breakers = {cb.service_name: cb.state.value for cb in (model_api_circuit_breaker, supabase_circuit_breaker)}
    return {
        "status": "degraded" if any(state != "closed" for state in breakers.values()) else "healthy",
        "version": _VERSION,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "circuit_breakers": breakers,
    }
