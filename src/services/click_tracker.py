"""
Click tracking: every outbound application link gets a fresh tracking ID.

Flow:
  User taps "Apply" on a loan/card/broker product →
  POST /api/v1/affiliate/links →
  click row persisted, partner told about the click (best effort) →
  client redirected to the partner's application URL with ?ref=<tracking_id>

The tracking ID is the only key partners send back to us when an
application converts.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import PAYMENT_PENDING, AffiliateClickRow
from src.db.repository import PartnerDirectory, row_to_click
from src.errors import NotFoundError, PartnerInactiveError
from src.middleware.metrics import metrics
from src.models.affiliate import ClickContext, ClickRecord, TrackingLink
from src.services.partner_notify import build_event, notify_partner

logger = logging.getLogger(__name__)

_PREFIXES = {"loan": "ln", "credit_card": "cc", "broker": "bk"}
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_tracking_id(partner_type: str) -> str:
    """``<prefix>_<ms timestamp base36>_<12 hex>``, e.g. ``cc_m1x2y3z4_9f8e7d6c5b4a``."""
    prefix = _PREFIXES.get(partner_type, "af")
    return f"{prefix}_{_base36(int(time.time() * 1000))}_{secrets.token_hex(6)}"


def generate_session_id() -> str:
    return f"sess_{_base36(int(time.time() * 1000))}_{secrets.token_hex(4)}"


def build_tracking_url(
    application_url: str,
    tracking_id: str,
    partner_id: str,
    utm_params: Optional[dict[str, str]] = None,
) -> str:
    """Append ref/partner/UTM params to the partner URL, keeping its own query."""
    parts = urlsplit(application_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append(("ref", tracking_id))
    query.append(("partner", partner_id))
    for key, value in (utm_params or {}).items():
        if key.startswith("utm_") and value:
            query.append((key, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


async def generate_tracking_link(
    session: AsyncSession,
    product_id: str,
    user_id: Optional[str] = None,
    utm_params: Optional[dict[str, str]] = None,
    context: Optional[ClickContext] = None,
) -> TrackingLink:
    """Record a click on a product's application link and return the redirect URL."""
    found = await PartnerDirectory(session).find_product_with_partner(product_id)
    if found is None or not found[0].is_active:
        raise NotFoundError("Product not found")
    product, partner = found
    if partner is None or not partner.is_active:
        raise PartnerInactiveError("Partner not found or inactive")

    context = context or ClickContext()
    utm_params = utm_params or {}
    tracking_id = generate_tracking_id(partner.partner_type)

    click = AffiliateClickRow(
        tracking_id=tracking_id,
        partner_id=partner.id,
        product_id=product.id,
        user_id=user_id,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        referrer=context.referrer,
        session_id=context.session_id or generate_session_id(),
        utm_source=utm_params.get("utm_source"),
        utm_medium=utm_params.get("utm_medium"),
        utm_campaign=utm_params.get("utm_campaign"),
        converted=False,
        payment_status=PAYMENT_PENDING,
        extra={},
    )
    session.add(click)
    await session.commit()

    metrics.incr("click", partner.id)
    logger.info(
        "Affiliate click: tracking_id=%s partner=%s product=%s",
        tracking_id, partner.id, product.id,
        extra={"tracking_id": tracking_id, "partner_id": partner.id},
    )

    notify_partner(partner, build_event("click_generated", tracking_id, product.id, user_id))

    return TrackingLink(
        tracking_url=build_tracking_url(product.application_url, tracking_id, partner.id, utm_params),
        tracking_id=tracking_id,
    )


async def get_click_by_tracking_id(session: AsyncSession, tracking_id: str) -> ClickRecord:
    row = await PartnerDirectory(session).find_click(tracking_id)
    if row is None:
        raise NotFoundError("Tracking record not found")
    return row_to_click(row)
