"""Health check endpoint."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health", summary="Health check")
async def health(request: Request) -> Dict[str, Any]:
    """Report liveness, the last run time and circuit breaker states."""
    manager = getattr(request.app.state, "run_manager", None)

    breakers: Dict[str, str] = {}
    last_run_at = None
    if manager is not None:
        run_status = manager.get_status()
        breakers = run_status.circuit_breaker_state
        last_run_at = run_status.last_run_at

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "last_run_at": last_run_at,
        "services": {
            "pulsepoint": {"circuit_breaker": breakers.get("pulsepoint", "CLOSED")},
            "discord": {"circuit_breaker": breakers.get("discord", "CLOSED")},
        },
    }
