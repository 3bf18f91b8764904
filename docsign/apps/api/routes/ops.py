from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from docsign.apps.api.deps import Principal, get_principal
from docsign.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from docsign.apps.api.response import success_response
from docsign.persistence.db import SessionLocal
from docsign.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_latency,
)


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_WINDOW_S = 3600


async def _check_db_health() -> bool:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as exc:
        logger.warning("ops_db_health_failed", exc_info=exc)
        return False


@router.get("/health")
async def ops_health(request: Request, principal: Principal = Depends(get_principal)) -> dict:
    db_ok = await _check_db_health()
    payload = {
        "status": "ok" if db_ok else "degraded",
        "api": "ok",
        "db": "ok" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return success_response(request=request, data=payload)


@router.get("/metrics")
async def ops_metrics(request: Request, principal: Principal = Depends(get_principal)) -> dict:
    # JSON metrics for dashboards; counters come from the in-process telemetry store.
    payload: dict[str, Any] = {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "latency_ms": request_latency(_WINDOW_S),
        "external_call_latency_ms": external_latency_by_integration(_WINDOW_S),
    }
    return success_response(request=request, data=payload)
