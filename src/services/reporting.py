"""
Attribution and commission reporting (read-only).

All figures come straight from ``affiliate_clicks``:
- commission figures only count converted clicks with a positive commission,
  bounded by ``conversion_date``
- funnel figures (clicks, conversion rate, sources) are bounded by
  ``clicked_at``

Every function returns a complete aggregate or lets the database error
propagate; nothing here writes.
"""
from __future__ import annotations

import csv
import io
import logging
import math
from datetime import datetime, timedelta
from typing import Literal, Optional

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import PAYMENT_PAID, AffiliateClickRow
from src.db.repository import as_utc, row_to_click
from src.db.tables import PartnerRow, ProductRow, is_valid_id
from src.errors import CommissionValidationError, NotFoundError
from src.models.affiliate import (
    AffiliateMetrics,
    AttributionDay,
    CommissionDetail,
    CommissionDetailsPage,
    CommissionReport,
    CommissionSummary,
    DailyCommissions,
    DailyMetrics,
    DateRange,
    PartnerAnalytics,
    PartnerClicksPage,
    ReportSummary,
    SourceClicks,
    TopProduct,
)

logger = logging.getLogger(__name__)

ExportKind = Literal["daily", "partners"]

_click = AffiliateClickRow


def _money(value) -> float:
    return round(float(value or 0.0), 2)


def _rate(conversions: int, clicks: int) -> float:
    return round(conversions / clicks * 100, 2) if clicks else 0.0


def _day(value) -> str:
    # SQLite returns 'YYYY-MM-DD' strings, PostgreSQL returns date objects
    return str(value)


def _validate_partner_id(partner_id: str) -> None:
    if not is_valid_id(partner_id):
        raise CommissionValidationError("Invalid partner ID")


def _validate_page(page: int, limit: int) -> None:
    if page < 1 or limit < 1:
        raise CommissionValidationError("page and limit must be positive")


def _earned_filters(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    partner_id: Optional[str] = None,
) -> list:
    """Converted clicks with a positive commission, by conversion date."""
    filters = [_click.converted.is_(True), _click.commission_amount > 0]
    if start_date is not None:
        filters.append(_click.conversion_date >= start_date)
    if end_date is not None:
        filters.append(_click.conversion_date <= end_date)
    if partner_id is not None:
        filters.append(_click.partner_id == partner_id)
    return filters


def _click_filters(
    date_range: Optional[DateRange] = None,
    partner_id: Optional[str] = None,
) -> list:
    filters = []
    if date_range is not None:
        filters.append(_click.clicked_at >= date_range.start)
        filters.append(_click.clicked_at <= date_range.end)
    if partner_id is not None:
        filters.append(_click.partner_id == partner_id)
    return filters


_paid_amount = func.sum(
    case((_click.payment_status == PAYMENT_PAID, _click.commission_amount), else_=0.0)
)
_pending_amount = func.sum(
    case((_click.payment_status != PAYMENT_PAID, _click.commission_amount), else_=0.0)
)
_converted_count = func.sum(case((_click.converted.is_(True), 1), else_=0))
_converted_amount = func.sum(
    case((_click.converted.is_(True), func.coalesce(_click.commission_amount, 0.0)), else_=0.0)
)


# ── Commission summaries ─────────────────────────────────────────────────────

async def get_commission_summary(
    session: AsyncSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> list[CommissionSummary]:
    """Per-partner commission totals, highest earner first."""
    total = func.sum(_click.commission_amount)
    stmt = (
        select(
            _click.partner_id,
            PartnerRow.name,
            total.label("total"),
            _paid_amount.label("paid"),
            _pending_amount.label("pending"),
            func.count(_click.id).label("conversions"),
            func.max(_click.payment_date).label("last_payment"),
        )
        .join(PartnerRow, PartnerRow.id == _click.partner_id)
        .where(*_earned_filters(start_date, end_date))
        .group_by(_click.partner_id, PartnerRow.name)
        .order_by(total.desc(), _click.partner_id)
    )
    result = await session.execute(stmt)

    summaries = []
    for partner_id, name, total_amount, paid, pending, conversions, last_payment in result.all():
        summaries.append(CommissionSummary(
            partner_id=partner_id,
            partner_name=name,
            total_commission=_money(total_amount),
            paid_commission=_money(paid),
            pending_commission=_money(pending),
            conversions=conversions,
            average_commission=_money(total_amount / conversions) if conversions else 0.0,
            last_payment_date=as_utc(last_payment),
        ))
    return summaries


async def get_partner_commission_details(
    session: AsyncSession,
    partner_id: str,
    page: int = 1,
    limit: int = 50,
) -> CommissionDetailsPage:
    """Paginated commission lines for one partner, newest conversion first."""
    _validate_partner_id(partner_id)
    _validate_page(page, limit)
    filters = _earned_filters(partner_id=partner_id)

    total = (await session.execute(
        select(func.count(_click.id)).where(*filters)
    )).scalar_one()

    rows = (await session.execute(
        select(_click)
        .where(*filters)
        .order_by(_click.conversion_date.desc(), _click.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()

    return CommissionDetailsPage(
        commissions=[
            CommissionDetail(
                click_id=row.id,
                tracking_id=row.tracking_id,
                partner_id=row.partner_id,
                product_id=row.product_id,
                user_id=row.user_id,
                commission_amount=_money(row.commission_amount),
                conversion_date=as_utc(row.conversion_date),
                payment_status=row.payment_status,
                payment_reference=row.payment_reference,
            )
            for row in rows
        ],
        total=total,
        total_pages=math.ceil(total / limit),
        page=page,
        limit=limit,
    )


async def generate_commission_report(
    session: AsyncSession,
    start_date: datetime,
    end_date: datetime,
    partner_id: Optional[str] = None,
) -> CommissionReport:
    """Summary, per-partner and per-day commission report for a period.

    The partner breakdown is left empty when the report is for one partner.
    """
    if partner_id is not None:
        _validate_partner_id(partner_id)
    filters = _earned_filters(start_date, end_date, partner_id)

    count, amount, paid, pending = (await session.execute(
        select(
            func.count(_click.id),
            func.sum(_click.commission_amount),
            _paid_amount,
            _pending_amount,
        ).where(*filters)
    )).one()

    day = func.date(_click.conversion_date)
    daily = (await session.execute(
        select(day.label("day"), func.count(_click.id), func.sum(_click.commission_amount))
        .where(*filters)
        .group_by(day)
        .order_by(day)
    )).all()

    partner_breakdown: list[CommissionSummary] = []
    if partner_id is None:
        partner_breakdown = await get_commission_summary(session, start_date, end_date)

    return CommissionReport(
        summary=ReportSummary(
            total_commissions=count,
            total_amount=_money(amount),
            paid_amount=_money(paid),
            pending_amount=_money(pending),
            average_commission=_money(amount / count) if count else 0.0,
        ),
        partner_breakdown=partner_breakdown,
        daily_breakdown=[
            DailyCommissions(date=_day(d), commissions=c, amount=_money(a))
            for d, c, a in daily
        ],
    )


# ── Funnel metrics ───────────────────────────────────────────────────────────

async def get_affiliate_metrics(
    session: AsyncSession,
    partner_id: Optional[str] = None,
    date_range: Optional[DateRange] = None,
) -> AffiliateMetrics:
    if partner_id is not None:
        _validate_partner_id(partner_id)
    filters = _click_filters(date_range, partner_id)

    clicks, conversions, commissions = (await session.execute(
        select(func.count(_click.id), _converted_count, _converted_amount).where(*filters)
    )).one()
    clicks = clicks or 0
    conversions = conversions or 0
    commissions = _money(commissions)

    conv_count = func.count(_click.id)
    top = (await session.execute(
        select(_click.product_id, ProductRow.name, conv_count.label("conversions"))
        .outerjoin(ProductRow, ProductRow.id == _click.product_id)
        .where(*filters, _click.converted.is_(True))
        .group_by(_click.product_id, ProductRow.name)
        .order_by(conv_count.desc(), _click.product_id)
        .limit(5)
    )).all()

    return AffiliateMetrics(
        total_clicks=clicks,
        total_conversions=conversions,
        conversion_rate=_rate(conversions, clicks),
        total_commissions=commissions,
        average_commission=_money(commissions / conversions) if conversions else 0.0,
        top_products=[
            TopProduct(product_id=pid, product_name=name, conversions=n)
            for pid, name, n in top
        ],
    )


async def get_attribution_report(
    session: AsyncSession,
    date_range: DateRange,
    partner_id: Optional[str] = None,
) -> list[AttributionDay]:
    """Per-day clicks/conversions/commissions with the top 5 UTM sources."""
    if partner_id is not None:
        _validate_partner_id(partner_id)

    day = func.date(_click.clicked_at)
    rows = (await session.execute(
        select(
            day.label("day"),
            _click.utm_source,
            func.count(_click.id),
            _converted_count,
            _converted_amount,
        )
        .where(*_click_filters(date_range, partner_id))
        .group_by(day, _click.utm_source)
    )).all()

    days: dict[str, dict] = {}
    for d, source, clicks, conversions, commissions in rows:
        entry = days.setdefault(_day(d), {"clicks": 0, "conversions": 0, "commissions": 0.0, "sources": {}})
        entry["clicks"] += clicks
        entry["conversions"] += conversions or 0
        entry["commissions"] += commissions or 0.0
        key = source or "direct"
        entry["sources"][key] = entry["sources"].get(key, 0) + clicks

    report = []
    for d in sorted(days):
        entry = days[d]
        sources = sorted(entry["sources"].items(), key=lambda s: (-s[1], s[0]))[:5]
        report.append(AttributionDay(
            date=d,
            clicks=entry["clicks"],
            conversions=entry["conversions"],
            commissions=_money(entry["commissions"]),
            top_sources=[SourceClicks(source=s, clicks=n) for s, n in sources],
        ))
    return report


async def get_daily_metrics(session: AsyncSession, date_range: DateRange) -> list[DailyMetrics]:
    """Per-day funnel metrics, one entry per calendar day (zero-filled)."""
    day = func.date(_click.clicked_at)
    rows = (await session.execute(
        select(day.label("day"), func.count(_click.id), _converted_count, _converted_amount)
        .where(*_click_filters(date_range))
        .group_by(day)
    )).all()
    by_day = {_day(d): (clicks, conversions or 0, commission) for d, clicks, conversions, commission in rows}

    metrics = []
    current = date_range.start.date()
    while current <= date_range.end.date():
        key = current.isoformat()
        clicks, conversions, commission = by_day.get(key, (0, 0, 0.0))
        metrics.append(DailyMetrics(
            date=key,
            clicks=clicks,
            conversions=conversions,
            commission=_money(commission),
            conversion_rate=_rate(conversions, clicks),
        ))
        current += timedelta(days=1)
    return metrics


# ── Partner drill-down ───────────────────────────────────────────────────────

async def _require_partner(session: AsyncSession, partner_id: str) -> PartnerRow:
    _validate_partner_id(partner_id)
    partner = await session.get(PartnerRow, partner_id)
    if partner is None:
        raise NotFoundError("Partner not found")
    return partner


async def get_partner_clicks(
    session: AsyncSession,
    partner_id: str,
    page: int = 1,
    limit: int = 20,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    converted: Optional[bool] = None,
) -> PartnerClicksPage:
    """Paginated raw clicks for one partner, newest first."""
    await _require_partner(session, partner_id)
    _validate_page(page, limit)

    filters = [_click.partner_id == partner_id]
    if start_date is not None:
        filters.append(_click.clicked_at >= start_date)
    if end_date is not None:
        filters.append(_click.clicked_at <= end_date)
    if converted is not None:
        filters.append(_click.converted.is_(converted))

    total = (await session.execute(select(func.count(_click.id)).where(*filters))).scalar_one()
    rows = (await session.execute(
        select(_click)
        .where(and_(*filters))
        .order_by(_click.clicked_at.desc(), _click.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .execution_options(populate_existing=True)
    )).scalars().all()

    return PartnerClicksPage(
        clicks=[row_to_click(row) for row in rows],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit),
    )


async def get_partner_analytics(
    session: AsyncSession,
    partner_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> PartnerAnalytics:
    """Funnel totals for one partner plus mean click-to-conversion time."""
    partner = await _require_partner(session, partner_id)

    filters = [_click.partner_id == partner_id]
    if start_date is not None:
        filters.append(_click.clicked_at >= start_date)
    if end_date is not None:
        filters.append(_click.clicked_at <= end_date)

    clicks, conversions, commission = (await session.execute(
        select(func.count(_click.id), _converted_count, _converted_amount).where(*filters)
    )).one()
    conversions = conversions or 0

    # Datetime subtraction differs between SQLite and PostgreSQL; done here instead
    pairs = (await session.execute(
        select(_click.clicked_at, _click.conversion_date)
        .where(*filters, _click.converted.is_(True), _click.conversion_date.is_not(None))
    )).all()
    deltas = [(as_utc(conv) - as_utc(clicked)).total_seconds() for clicked, conv in pairs]

    return PartnerAnalytics(
        partner_id=partner.id,
        partner_name=partner.name,
        total_clicks=clicks,
        total_conversions=conversions,
        conversion_rate=_rate(conversions, clicks),
        total_commission=_money(commission),
        avg_time_to_conversion_seconds=round(sum(deltas) / len(deltas), 1) if deltas else None,
    )


# ── CSV export ───────────────────────────────────────────────────────────────

async def _partner_performance(session: AsyncSession, date_range: DateRange) -> list[dict]:
    commission = _converted_amount.label("commission")
    rows = (await session.execute(
        select(
            _click.partner_id,
            PartnerRow.name,
            PartnerRow.partner_type,
            func.count(_click.id),
            _converted_count,
            commission,
        )
        .join(PartnerRow, PartnerRow.id == _click.partner_id)
        .where(*_click_filters(date_range))
        .group_by(_click.partner_id, PartnerRow.name, PartnerRow.partner_type)
        .order_by(commission.desc(), _click.partner_id)
    )).all()

    performance = []
    for partner_id, name, partner_type, clicks, conversions, total in rows:
        conversions = conversions or 0
        performance.append({
            "partner_id": partner_id,
            "partner_name": name,
            "partner_type": partner_type,
            "clicks": clicks,
            "conversions": conversions,
            "conversion_rate": _rate(conversions, clicks),
            "commission": _money(total),
            "average_commission": _money(total / conversions) if conversions else 0.0,
        })
    return performance


async def export_performance_csv(
    session: AsyncSession,
    date_range: DateRange,
    kind: ExportKind = "daily",
) -> str:
    """Daily or per-partner performance as CSV text (amounts in INR)."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")

    if kind == "daily":
        writer.writerow([
            "Date", "Total Clicks", "Total Conversions",
            "Conversion Rate (%)", "Total Commission (INR)",
        ])
        for day in await get_daily_metrics(session, date_range):
            writer.writerow([
                day.date, day.clicks, day.conversions,
                f"{day.conversion_rate:.2f}", f"{day.commission:.2f}",
            ])
    elif kind == "partners":
        writer.writerow([
            "Partner ID", "Partner Name", "Partner Type", "Total Clicks",
            "Total Conversions", "Conversion Rate (%)",
            "Total Commission (INR)", "Average Commission (INR)",
        ])
        for p in await _partner_performance(session, date_range):
            writer.writerow([
                p["partner_id"], p["partner_name"], p["partner_type"], p["clicks"],
                p["conversions"], f"{p['conversion_rate']:.2f}",
                f"{p['commission']:.2f}", f"{p['average_commission']:.2f}",
            ])
    else:
        raise CommissionValidationError(f"Unknown export type: {kind}")

    logger.info("Exported %s performance CSV for %s..%s", kind, date_range.start, date_range.end)
    return buf.getvalue()
