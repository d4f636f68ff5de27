"""
Conversion recording: clicks become commissions exactly once.

Two inputs can convert a click:
- the platform's own application flow (``track_application``)
- the partner's conversion webhook (``handle_conversion_webhook``), but only
  for the partner's approval event

Both go through a single ``UPDATE ... WHERE converted = false``. Whoever wins
the race sets the commission; everyone else gets ``status="duplicate"`` and
nothing changes, so partner retries are harmless.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import AffiliateClickRow
from src.db.repository import PartnerDirectory, as_utc
from src.errors import ConflictError, InvalidPartnerError, NotFoundError
from src.middleware.metrics import metrics
from src.models.affiliate import (
    APPROVAL_EVENTS,
    ApplicationData,
    ConversionResult,
    ConversionWebhook,
)
from src.services.commission import calculate_commission
from src.services.partner_notify import build_event, notify_partner

logger = logging.getLogger(__name__)


async def _convert_once(
    session: AsyncSession,
    tracking_id: str,
    commission_amount: float,
    metadata: dict[str, Any],
    now: datetime,
) -> bool:
    """Guarded converted=false -> true transition. True if this call won."""
    result = await session.execute(
        update(AffiliateClickRow)
        .where(
            AffiliateClickRow.tracking_id == tracking_id,
            AffiliateClickRow.converted.is_(False),
        )
        .values(
            converted=True,
            conversion_date=now,
            commission_amount=commission_amount,
            extra=metadata,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


def _duplicate(click: AffiliateClickRow) -> ConversionResult:
    metrics.incr("duplicate_conversion", click.partner_id)
    logger.info(
        "Duplicate conversion ignored: tracking_id=%s", click.tracking_id,
        extra={"tracking_id": click.tracking_id, "partner_id": click.partner_id},
    )
    return ConversionResult(
        tracking_id=click.tracking_id,
        status="duplicate",
        converted=True,
        commission_amount=click.commission_amount,
        conversion_date=as_utc(click.conversion_date),
    )


async def track_application(
    session: AsyncSession,
    tracking_id: str,
    application_data: ApplicationData,
) -> ConversionResult:
    """Convert a click from the platform's own application submission."""
    directory = PartnerDirectory(session)
    click = await directory.find_click(tracking_id)
    if click is None:
        raise NotFoundError("Tracking record not found")
    if click.converted:
        return _duplicate(click)

    calculation = await calculate_commission(
        session, click.partner_id, click.product_id, application_data.base_amount
    )
    commission_amount = calculation.commission_amount if calculation else 0.0

    now = datetime.now(timezone.utc)
    metadata = dict(click.extra or {})
    metadata["application"] = application_data.model_dump(mode="json", exclude_none=True)

    if not await _convert_once(session, tracking_id, commission_amount, metadata, now):
        await session.refresh(click)
        return _duplicate(click)

    metrics.incr("conversion", click.partner_id)
    logger.info(
        "Application converted: tracking_id=%s partner=%s commission=%.2f",
        tracking_id, click.partner_id, commission_amount,
        extra={"tracking_id": tracking_id, "partner_id": click.partner_id},
    )

    partner = await directory.find_partner(click.partner_id)
    if partner is not None and partner.is_active:
        notify_partner(
            partner,
            build_event("application_submitted", tracking_id, click.product_id, click.user_id),
        )

    return ConversionResult(
        tracking_id=tracking_id,
        status="converted",
        converted=True,
        commission_amount=commission_amount,
        conversion_date=now,
    )


EVENT_WRITE_ATTEMPTS = 3


async def _append_event(
    session: AsyncSession,
    click: AffiliateClickRow,
    event: dict[str, Any],
) -> None:
    """Append to the click's event log without clobbering a concurrent write.

    The write is guarded on ``updated_at``; if another writer touched the row
    since it was read, the row is re-read and the append retried.
    """
    for _ in range(EVENT_WRITE_ATTEMPTS):
        seen = click.updated_at
        metadata = dict(click.extra or {})
        metadata["events"] = list(metadata.get("events", [])) + [event]
        result = await session.execute(
            update(AffiliateClickRow)
            .where(
                AffiliateClickRow.id == click.id,
                AffiliateClickRow.updated_at.is_(None) if seen is None
                else AffiliateClickRow.updated_at == seen,
            )
            .values(extra=metadata, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount == 1:
            return
        await session.refresh(click)
    raise ConflictError(
        "Click was updated concurrently, retry the event",
        details={"tracking_id": click.tracking_id},
    )


def _within_window(click: AffiliateClickRow, window_days: Optional[int], now: datetime) -> bool:
    clicked_at = as_utc(click.clicked_at)
    return now - clicked_at <= timedelta(days=window_days or 30)


async def handle_conversion_webhook(
    session: AsyncSession,
    partner_id: str,
    conversion_data: ConversionWebhook,
) -> ConversionResult:
    """Apply a partner's conversion callback.

    Only the partner's approval event (per vertical, see ``APPROVAL_EVENTS``)
    earns a commission. Other events are appended to the click's event log.
    The commission base is the amount from our own application record;
    ``conversionValue`` is used only when no such amount was captured.
    """
    directory = PartnerDirectory(session)
    partner = await directory.find_partner(partner_id)
    if partner is None or not partner.is_active:
        raise InvalidPartnerError("Invalid partner")

    tracking_id = conversion_data.tracking_id
    click = await directory.find_click(tracking_id)
    if click is None:
        raise NotFoundError("Tracking record not found")
    if click.partner_id != partner.id:
        logger.warning(
            "Webhook from partner %s for click owned by %s", partner.id, click.partner_id,
            extra={"tracking_id": tracking_id, "partner_id": partner.id},
        )
        raise InvalidPartnerError("Tracking record belongs to another partner")

    now = datetime.now(timezone.utc)
    event = {
        "type": conversion_data.conversion_type,
        "received_at": now.isoformat(),
    }
    if conversion_data.conversion_value is not None:
        event["value"] = conversion_data.conversion_value
    if conversion_data.metadata:
        event["metadata"] = conversion_data.metadata

    if conversion_data.conversion_type != APPROVAL_EVENTS.get(partner.partner_type):
        await _append_event(session, click, event)
        logger.info(
            "Partner event recorded: tracking_id=%s type=%s",
            tracking_id, conversion_data.conversion_type,
            extra={"tracking_id": tracking_id, "partner_id": partner.id},
        )
        return ConversionResult(
            tracking_id=tracking_id,
            status="recorded",
            converted=bool(click.converted),
            commission_amount=click.commission_amount,
            conversion_date=as_utc(click.conversion_date),
        )

    if click.converted:
        return _duplicate(click)

    metadata = dict(click.extra or {})
    metadata["events"] = list(metadata.get("events", [])) + [event]

    application = ApplicationData.model_validate(metadata.get("application", {}))
    base_amount = application.base_amount
    if not application.has_base_amount and conversion_data.conversion_value is not None:
        base_amount = conversion_data.conversion_value
        logger.info(
            "No application amount on record for %s, using partner-reported value %.2f",
            tracking_id, base_amount,
            extra={"tracking_id": tracking_id, "partner_id": partner.id},
        )
    calculation = await calculate_commission(session, partner.id, click.product_id, base_amount)
    commission_amount = calculation.commission_amount if calculation else 0.0
    metadata["within_attribution_window"] = _within_window(
        click, partner.attribution_window_days, now
    )

    if not await _convert_once(session, tracking_id, commission_amount, metadata, now):
        await session.refresh(click)
        return _duplicate(click)

    metrics.incr("conversion", partner.id)
    logger.info(
        "Partner conversion: tracking_id=%s partner=%s commission=%.2f reported_value=%s",
        tracking_id, partner.id, commission_amount, conversion_data.conversion_value,
        extra={"tracking_id": tracking_id, "partner_id": partner.id},
    )
    return ConversionResult(
        tracking_id=tracking_id,
        status="converted",
        converted=True,
        commission_amount=commission_amount,
        conversion_date=now,
    )
