"""
Commission payouts.

Finance marks a batch of converted clicks as paid after settling with the
partner. The batch is one guarded bulk UPDATE: already-paid, unconverted and
zero-commission rows are skipped, so re-submitting a batch pays nothing twice.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import PAYMENT_PAID, AffiliateClickRow
from src.db.tables import is_valid_id
from src.errors import CommissionValidationError
from src.middleware.metrics import metrics
from src.models.affiliate import PaymentResult

logger = logging.getLogger(__name__)


async def mark_commissions_as_paid(
    session: AsyncSession,
    commission_ids: list[str],
    payment_reference: str,
    payment_method: str,
    notes: Optional[str] = None,
) -> PaymentResult:
    if not commission_ids:
        raise CommissionValidationError("No commission ids given")
    invalid = [cid for cid in commission_ids if not is_valid_id(cid)]
    if invalid:
        raise CommissionValidationError(
            "Invalid commission ids", details={"invalid_ids": invalid}
        )
    if not payment_reference or not payment_reference.strip():
        raise CommissionValidationError("Payment reference is required")
    if not payment_method or not payment_method.strip():
        raise CommissionValidationError("Payment method is required")

    ids = list(dict.fromkeys(commission_ids))
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(AffiliateClickRow)
        .where(
            AffiliateClickRow.id.in_(ids),
            AffiliateClickRow.converted.is_(True),
            AffiliateClickRow.payment_status != PAYMENT_PAID,
            AffiliateClickRow.commission_amount > 0,
        )
        .values(
            payment_status=PAYMENT_PAID,
            payment_reference=payment_reference.strip(),
            payment_method=payment_method.strip(),
            payment_date=now,
            payment_notes=notes,
            updated_at=now,
        )
        .returning(AffiliateClickRow.id, AffiliateClickRow.commission_amount)
        .execution_options(synchronize_session=False)
    )
    paid = result.all()
    await session.commit()

    total = round(sum(amount or 0.0 for _, amount in paid), 2)
    metrics.incr("commission_paid", amount=len(paid))
    metrics.add_paid_amount(total)
    logger.info(
        "Commissions paid: requested=%d updated=%d total=%.2f reference=%s",
        len(ids), len(paid), total, payment_reference,
    )

    return PaymentResult(
        success=True,
        updated_count=len(paid),
        total_amount=total,
        commission_ids=[row_id for row_id, _ in paid],
    )
