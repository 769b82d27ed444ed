"""
Reconciliation API Endpoints
============================

Operator endpoints for triggering a reconciliation run and reading the
cross-platform daily report.
"""

import logging
from datetime import date

from fastapi import APIRouter, Query

from app.config import settings
from app.dependencies import ReconciliationServiceDep
from app.models.event import Platform
from app.schemas.common import BaseResponse
from app.schemas.reconciliation import DailyReport, TrendReport
from app.services.cache import CacheKeys, CacheManager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/runs", response_model=BaseResponse[dict])
async def run_reconciliation(
    service: ReconciliationServiceDep,
    result_date: date = Query(alias="date"),
    platform: Platform = Query(),
):
    """
    Reconcile one platform for one day.

    Re-running a day stores a new result version and invalidates the
    cached daily report.
    """
    result = await service.run(result_date, platform)
    await CacheManager.delete(CacheKeys.daily_report(result_date.isoformat()))

    return BaseResponse(
        data={
            "run_id": str(result.run_id),
            "version": result.version,
            "date": result.result_date.isoformat(),
            "platform": result.platform.value,
            "status": result.status.value,
            "match_rate": result.match_rate,
            "auto_resolution_rate": result.auto_resolution_rate,
            "matched": len(result.matched),
            "resolved": len(result.resolved),
            "unresolved": len(result.unresolved),
            "skipped_rows": len(result.skipped_rows),
            "severity": result.severity.severity.value if result.severity else None,
            "data_available": result.data_available,
            "errors": list(result.errors),
        },
        message="Reconciliation completed",
    )


@router.get("/reports/{report_date}", response_model=BaseResponse[DailyReport])
async def get_daily_report(
    report_date: date,
    service: ReconciliationServiceDep,
):
    """Cross-platform report built from the latest result per platform."""
    cache_key = CacheKeys.daily_report(report_date.isoformat())
    cached = await CacheManager.get(cache_key)
    if cached is not None:
        return BaseResponse(data=DailyReport.model_validate(cached))

    report = await service.build_daily_report(report_date)
    await CacheManager.set(
        cache_key,
        report.model_dump(mode="json"),
        ttl=settings.REPORT_CACHE_TTL_SECONDS,
    )
    return BaseResponse(data=report)


@router.get("/trends/{platform}", response_model=BaseResponse[TrendReport])
async def get_trend(
    platform: Platform,
    service: ReconciliationServiceDep,
    days: int = Query(default=30, ge=1, le=365),
):
    """Match-rate trend over the last ``days`` days."""
    return BaseResponse(data=await service.trend(platform, days))
