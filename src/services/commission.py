"""
Commission calculation.

Fixed partners pay a flat amount per approved conversion; percentage partners
pay a share of the application's base amount (loan amount, card limit or
initial deposit). Amounts are in INR, rounded half-up to paise.
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.db.repository import PartnerDirectory, commission_structure
from src.models.affiliate import CommissionCalculation, CommissionStructure

logger = logging.getLogger(__name__)

_PAISE = Decimal("0.01")


def _round_money(value: Decimal) -> float:
    return float(value.quantize(_PAISE, rounding=ROUND_HALF_UP))


def compute_commission(structure: CommissionStructure, base_amount: float) -> float:
    """Pure commission arithmetic. Negative base amounts count as zero."""
    if structure.type == "fixed":
        return _round_money(Decimal(str(structure.amount)))

    base = max(Decimal(str(base_amount or 0)), Decimal("0"))
    return _round_money(base * Decimal(str(structure.amount)) / Decimal("100"))


async def calculate_commission(
    session: AsyncSession,
    partner_id: str,
    product_id: str,
    base_amount: float = 0.0,
) -> Optional[CommissionCalculation]:
    """Commission owed for one conversion. ``None`` if the partner is unknown."""
    partner = await PartnerDirectory(session).find_partner(partner_id)
    if partner is None:
        logger.warning("Commission requested for unknown partner %s", partner_id)
        return None

    structure = commission_structure(partner)
    amount = compute_commission(structure, base_amount)

    return CommissionCalculation(
        base_amount=max(base_amount or 0.0, 0.0),
        commission_amount=amount,
        commission_rate=structure.amount if structure.type == "percentage" else None,
        commission_type=structure.type,
        partner_id=partner_id,
        product_id=product_id,
    )
