"""Run endpoints: manual trigger, status, and the latest processed incident id."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from relay.errors import RelayError, StoreError
from relay.models.tracking import RunStatus
from relay.services.run_manager import RunManager
from relay.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


class ResetIdRequest(BaseModel):
    id: Optional[str] = None


def _manager(request: Request) -> RunManager:
    manager = getattr(request.app.state, "run_manager", None)
    if manager is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Run manager not initialised")
    return manager


@router.post("/trigger", summary="Run a reconciliation now")
async def trigger_run(request: Request) -> Dict[str, Any]:
    """Execute one run immediately and return its summary.

    A run that fails before reconciliation starts (feed, decryption or
    snapshot load) answers 502 with the error.
    """
    manager = _manager(request)
    logger.info("manual_run_triggered")
    try:
        summary = await manager.run()
    except RelayError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"summary": summary.model_dump(), "status": manager.get_status().model_dump()}


@router.get("/status", response_model=RunStatus, summary="Latest run status")
async def run_status(request: Request) -> RunStatus:
    manager = getattr(request.app.state, "run_manager", None)
    if manager is None:
        return RunStatus()
    return manager.get_status()


@router.get("/latest-id", summary="Latest processed incident id")
async def latest_id(request: Request) -> Dict[str, str]:
    manager = _manager(request)
    try:
        value = await manager.latest_incident_id()
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"latestIncidentId": value}


@router.post("/reset-id", summary="Reset the latest processed incident id")
async def reset_id(request: Request, body: Optional[ResetIdRequest] = None) -> Dict[str, str]:
    manager = _manager(request)
    new_id = (body.id if body else None) or "0"
    try:
        await manager.reset_latest_incident_id(new_id)
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"message": f"Latest incident ID reset to {new_id}"}
