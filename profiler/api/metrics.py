from __future__ import annotations

from fastapi import APIRouter, Request


router = APIRouter(prefix="/api", tags=["metrics"])


@router.get("/metrics")
async def metrics(request: Request) -> dict:
    telemetry = request.app.state.telemetry
    return {
        "service": telemetry.settings.service_name,
        "metrics": telemetry.meter.snapshot(),
    }
