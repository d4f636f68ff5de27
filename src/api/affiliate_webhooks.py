"""
Affiliate conversion webhook endpoint.

Partners POST here when an application moves forward on their side
(submitted, approved, account opened, first transaction). The partner's
approval event converts the click and books the commission; everything else
is appended to the click's event log.

Retries are safe: a repeated approval answers 200 with ``status="duplicate"``.
"""
from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import get_session
from src.models.affiliate import ConversionResult, ConversionWebhook
from src.services.conversions import handle_conversion_webhook

router = APIRouter(prefix="/api/v1/webhooks/affiliate", tags=["Affiliate Webhooks"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Affiliate-Signature"


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify the HMAC-SHA256 hex signature of the raw request body."""
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


@router.post("/{partner_id}", response_model=ConversionResult)
async def partner_conversion_webhook(
    partner_id: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Receive a conversion callback from one partner.

    Body (camelCase, as partners send it):
    {
        "trackingId": "cc_m1x2y3z4_9f8e7d6c5b4a",
        "conversionType": "card_approved",
        "conversionValue": 150000,
        "metadata": {"applicationId": "APP-1"}
    }
    """
    body = await request.body()

    if settings.AFFILIATE_WEBHOOK_SECRET:
        signature = request.headers.get(SIGNATURE_HEADER, "")
        if not verify_webhook_signature(body, signature, settings.AFFILIATE_WEBHOOK_SECRET):
            logger.warning("Invalid webhook signature from partner %s", partner_id)
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        webhook = ConversionWebhook.model_validate_json(body)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(loc) for loc in err["loc"]) or "body", "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.info("Rejected webhook payload from partner %s: %s", partner_id, errors)
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    return await handle_conversion_webhook(session, partner_id, webhook)
