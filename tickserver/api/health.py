"""Health endpoint: liveness only, no dependencies checked."""
from datetime import datetime, timezone

from fastapi import APIRouter

from tickserver.api.schemas import HealthOut
from tickserver.services.tick_service import iso_utc, process_uptime

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthOut)
async def health():
    return HealthOut(timestamp=iso_utc(datetime.now(timezone.utc)), uptime=process_uptime())
