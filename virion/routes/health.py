from __future__ import annotations

import time
from typing import Optional, Tuple

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from virion.config import settings
from virion.models.database import ReferralLink, utcnow
from virion.services.database import async_session

router = APIRouter()


def utc_now_iso() -> str:
    return utcnow().isoformat()


async def check_database() -> Tuple[bool, Optional[float], Optional[str]]:
    start = time.perf_counter()
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        return False, (time.perf_counter() - start) * 1000, str(exc)
    return True, (time.perf_counter() - start) * 1000, None


async def count_links() -> Optional[int]:
    try:
        async with async_session() as session:
            return await session.scalar(select(func.count()).select_from(ReferralLink))
    except SQLAlchemyError:
        return None


def _latency(latency_ms: Optional[float]) -> Optional[float]:
    return round(latency_ms, 2) if latency_ms is not None else None


@router.get("/health/live")
async def liveness_check() -> dict:
    return {
        "status": "alive",
        "version": settings.api_version,
        "timestamp": utc_now_iso(),
    }


@router.get("/health/ready")
async def readiness_check():
    ok, latency_ms, _ = await check_database()
    payload = {
        "status": "ready" if ok else "not_ready",
        "version": settings.api_version,
        "timestamp": utc_now_iso(),
        "database": "ok" if ok else "error",
        "database_latency_ms": _latency(latency_ms),
    }
    if ok:
        return payload
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)


@router.get("/health")
async def health_check():
    """Always 200 so the container stays up; /health/ready is the strict probe."""
    ok, latency_ms, error = await check_database()
    payload = {
        "status": "ok" if ok else "degraded",
        "version": settings.api_version,
        "timestamp": utc_now_iso(),
        "database": "ok" if ok else "unavailable",
        "database_latency_ms": _latency(latency_ms),
    }
    if not ok:
        payload["database_error"] = error
    return payload


@router.get("/health/detailed")
async def detailed_health():
    ok, latency_ms, error = await check_database()
    payload = {
        "status": "ok" if ok else "error",
        "version": settings.api_version,
        "timestamp": utc_now_iso(),
        "checks": {
            "database": {
                "status": "ok" if ok else "error",
                "latency_ms": _latency(latency_ms),
                "error": error,
            },
            "referral_links": {"count": await count_links() if ok else None},
        },
    }
    if ok:
        return payload
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)
