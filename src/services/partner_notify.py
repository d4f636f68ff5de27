"""
Best-effort partner event notifications.

When a click is generated or an application is submitted we tell the partner
(POST {apiEndpoint}/webhook/events). The call runs as a detached asyncio task
with a short fixed timeout, is never retried, and its failure is only logged:
click tracking and conversion recording must succeed even when the partner
is down.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from config.settings import settings
from src.db.tables import PartnerRow
from src.errors import PartnerNotificationError
from src.middleware.metrics import metrics
from src.models.affiliate import PartnerAPIResponse, PartnerEvent

logger = logging.getLogger(__name__)

EVENTS_PATH = "/webhook/events"

# Strong references to in-flight notifications (asyncio only keeps weak ones)
_pending: set[asyncio.Task] = set()


def build_event(
    event: str,
    tracking_id: str,
    product_id: str,
    user_id: Optional[str] = None,
) -> PartnerEvent:
    return PartnerEvent(
        event=event,
        tracking_id=tracking_id,
        product_id=product_id,
        user_id=user_id,
        timestamp=datetime.now(timezone.utc),
    )


async def send_partner_event(
    partner: PartnerRow,
    event: PartnerEvent,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PartnerAPIResponse:
    """POST one event to the partner and validate the reply.

    Raises PartnerNotificationError on network errors, timeouts, non-2xx
    responses and replies that are not a JSON object.
    """
    if not partner.api_endpoint:
        raise PartnerNotificationError(f"Partner {partner.id} has no API endpoint")
    url = f"{partner.api_endpoint.rstrip('/')}{EVENTS_PATH}"
    headers = {
        "Authorization": f"Bearer {settings.PARTNER_API_KEY}",
        "User-Agent": settings.PARTNER_USER_AGENT,
    }

    try:
        async with httpx.AsyncClient(
            timeout=settings.PARTNER_NOTIFY_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            resp = await client.post(url, json=event.wire(), headers=headers)
    except httpx.HTTPError as exc:
        raise PartnerNotificationError(f"Partner endpoint unreachable: {exc!r}") from exc

    data: Optional[dict] = None
    if resp.content:
        try:
            body = resp.json()
        except ValueError as exc:
            raise PartnerNotificationError(
                f"Partner returned non-JSON response (HTTP {resp.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise PartnerNotificationError("Partner response is not a JSON object")
        data = body

    if not resp.is_success:
        message = (data or {}).get("message") or (data or {}).get("error")
        raise PartnerNotificationError(
            f"Partner rejected event: HTTP {resp.status_code} {message or ''}".strip()
        )

    return PartnerAPIResponse(success=True, status_code=resp.status_code, data=data)


async def _deliver(partner: PartnerRow, event: PartnerEvent) -> None:
    partner_id = partner.id
    try:
        await send_partner_event(partner, event)
    except PartnerNotificationError as exc:
        metrics.incr("notification_failed", partner_id)
        logger.warning(
            "Partner notification failed: partner=%s event=%s tracking_id=%s: %s",
            partner_id, event.event, event.tracking_id, exc.message,
        )
    except Exception:
        metrics.incr("notification_failed", partner_id)
        logger.exception(
            "Unexpected error notifying partner=%s event=%s", partner_id, event.event
        )
    else:
        logger.info(
            "Partner notified: partner=%s event=%s tracking_id=%s",
            partner_id, event.event, event.tracking_id,
        )


def notify_partner(partner: PartnerRow, event: PartnerEvent) -> Optional[asyncio.Task]:
    """Fire-and-forget notification. Returns the scheduled task, or None if skipped."""
    if not partner.api_endpoint or not settings.PARTNER_NOTIFICATIONS_ENABLED:
        return None
    task = asyncio.create_task(_deliver(partner, event))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_notifications(timeout: Optional[float] = None) -> None:
    """Wait for in-flight notifications (shutdown, tests)."""
    if _pending:
        await asyncio.wait(list(_pending), timeout=timeout)
