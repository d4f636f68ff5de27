"""
Commission admin endpoints (finance + partnerships team).

All routes require the X-Admin-Key header. Reports are read-only; the only
write is marking a batch of commissions as paid.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth import require_admin
from src.db.engine import get_session
from src.db.repository import as_utc
from src.errors import CommissionValidationError
from src.models.affiliate import (
    AffiliateMetrics,
    AttributionDay,
    CommissionDetailsPage,
    CommissionReport,
    CommissionSummary,
    DailyMetrics,
    DateRange,
    PartnerAnalytics,
    PartnerClicksPage,
    PaymentResult,
)
from src.services import reporting
from src.services.payments import mark_commissions_as_paid

router = APIRouter(
    prefix="/api/v1/admin/commissions",
    tags=["Commission Admin"],
    dependencies=[Depends(require_admin)],
)
logger = logging.getLogger(__name__)


class PaymentRequest(BaseModel):
    commission_ids: list[str] = Field(..., min_length=1)
    payment_reference: str = Field(..., min_length=1, max_length=100)
    payment_method: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)


def _date_range(start: Optional[datetime], end: Optional[datetime], default_days: int = 30) -> DateRange:
    """Explicit range, or the last ``default_days`` days."""
    end = as_utc(end) or datetime.now(timezone.utc)
    start = as_utc(start) or end - timedelta(days=default_days)
    try:
        return DateRange(start=start, end=end)
    except ValidationError:
        raise CommissionValidationError("end must not be before start")


@router.get("", response_model=list[CommissionSummary])
async def commission_summary(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    """Per-partner commission totals (paid vs pending)."""
    return await reporting.get_commission_summary(session, as_utc(start), as_utc(end))


@router.get("/report", response_model=CommissionReport)
async def commission_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    partner_id: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    period = _date_range(start, end)
    return await reporting.generate_commission_report(session, period.start, period.end, partner_id)


@router.get("/metrics", response_model=AffiliateMetrics)
async def affiliate_metrics(
    partner_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    """Funnel metrics; all time unless a start or end is given."""
    period = _date_range(start, end) if (start or end) else None
    return await reporting.get_affiliate_metrics(session, partner_id, period)


@router.get("/attribution", response_model=list[AttributionDay])
async def attribution_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    partner_id: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    return await reporting.get_attribution_report(session, _date_range(start, end), partner_id)


@router.get("/daily", response_model=list[DailyMetrics])
async def daily_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    return await reporting.get_daily_metrics(session, _date_range(start, end))


@router.get("/export", response_class=PlainTextResponse)
async def export_csv(
    kind: Literal["daily", "partners"] = "daily",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    period = _date_range(start, end)
    content = await reporting.export_performance_csv(session, period, kind)
    filename = f"affiliate-{kind}-{period.start:%Y%m%d}-{period.end:%Y%m%d}.csv"
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/partners/{partner_id}", response_model=CommissionDetailsPage)
async def partner_commissions(
    partner_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
):
    return await reporting.get_partner_commission_details(session, partner_id, page, limit)


@router.get("/partners/{partner_id}/clicks", response_model=PartnerClicksPage)
async def partner_clicks(
    partner_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    converted: Optional[bool] = None,
    session: AsyncSession = Depends(get_session),
):
    return await reporting.get_partner_clicks(
        session, partner_id, page, limit, as_utc(start), as_utc(end), converted
    )


@router.get("/partners/{partner_id}/analytics", response_model=PartnerAnalytics)
async def partner_analytics(
    partner_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    return await reporting.get_partner_analytics(session, partner_id, as_utc(start), as_utc(end))


@router.post("/payments", response_model=PaymentResult)
async def mark_paid(
    req: PaymentRequest,
    session: AsyncSession = Depends(get_session),
):
    """Mark commissions paid. Already-paid ids are skipped, never double-counted."""
    return await mark_commissions_as_paid(
        session,
        req.commission_ids,
        req.payment_reference,
        req.payment_method,
        req.notes,
    )
