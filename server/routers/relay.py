"""Relay control routes."""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from constants import WORKER_STATUS_EXPLICIT_TIMEOUT, WORKER_STATUS_TIMEOUT
from core.container import container
from core.logging import get_logger
from services.relay import RelaySessionManager

logger = get_logger(__name__)
router = APIRouter(prefix="/relay", tags=["relay"])


def get_relay() -> RelaySessionManager:
    return container.relay_session()


class PairRequest(BaseModel):
    """Request model for pairing."""
    pair_code: Optional[str] = Field(default=None, description="Explicit 6-hex-char pair code; regenerated when omitted")


@router.get("/status")
async def relay_status(relay: RelaySessionManager = Depends(get_relay)):
    """Session status plus the relay worker's own view."""
    worker_status = await relay.fetch_worker_status(WORKER_STATUS_TIMEOUT)
    return {**relay.get_status(), "worker_status": worker_status}


@router.get("/worker-status")
async def relay_worker_status(relay: RelaySessionManager = Depends(get_relay)):
    return await relay.fetch_worker_status(WORKER_STATUS_EXPLICIT_TIMEOUT)


@router.post("/pair")
async def pair(
    request: Optional[PairRequest] = None,
    relay: RelaySessionManager = Depends(get_relay),
):
    """Set (or regenerate) the pair code and start the relay connection."""
    pair_code = request.pair_code if request else None
    if pair_code:
        if not await relay.set_pair_code(pair_code):
            logger.warning("[Relay API] Rejected pair code")
            return ORJSONResponse(
                status_code=400,
                content={"error": "Invalid pair_code (expected 6 hex chars)"},
            )
    else:
        await relay.regenerate_pair_code()

    started = await relay.start()
    logger.info("[Relay API] Pairing started", started=started)
    return {
        "success": started,
        "pair_code": relay.get_pair_code(),
        "status": relay.get_status(),
    }


@router.post("/regenerate-code")
async def regenerate_code(relay: RelaySessionManager = Depends(get_relay)):
    await relay.regenerate_pair_code()
    await relay.start()
    return {"pair_code": relay.get_pair_code(), "status": relay.get_status()}


@router.post("/stop")
async def stop(relay: RelaySessionManager = Depends(get_relay)):
    await relay.stop()
    return {"success": True, "status": relay.get_status()}
