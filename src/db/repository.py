"""Partner/product directory lookups + click row conversion."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.affiliate_tables import AffiliateClickRow
from src.db.tables import PartnerRow, ProductRow, is_valid_id
from src.models.affiliate import ClickRecord, CommissionStructure


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def commission_structure(partner: PartnerRow) -> CommissionStructure:
    """Validate a partner's flattened commission columns."""
    return CommissionStructure(
        type=partner.commission_type,
        amount=partner.commission_amount,
        currency=partner.currency or "INR",
        conditions=partner.commission_conditions or [],
    )


def row_to_click(row: AffiliateClickRow) -> ClickRecord:
    """Convert a DB row to a Pydantic ClickRecord."""
    return ClickRecord(
        id=row.id,
        tracking_id=row.tracking_id,
        partner_id=row.partner_id,
        product_id=row.product_id,
        user_id=row.user_id,
        clicked_at=as_utc(row.clicked_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        referrer=row.referrer,
        session_id=row.session_id,
        utm_source=row.utm_source,
        utm_medium=row.utm_medium,
        utm_campaign=row.utm_campaign,
        converted=row.converted,
        conversion_date=as_utc(row.conversion_date),
        commission_amount=row.commission_amount,
        payment_status=row.payment_status,
        payment_reference=row.payment_reference,
        payment_method=row.payment_method,
        payment_date=as_utc(row.payment_date),
        metadata=row.extra or {},
    )


class PartnerDirectory:
    """Read-only view of the partner/product directory."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_partner(self, partner_id: str) -> Optional[PartnerRow]:
        if not is_valid_id(partner_id):
            return None
        return await self.session.get(PartnerRow, partner_id)

    async def find_product_with_partner(
        self, product_id: str
    ) -> Optional[tuple[ProductRow, Optional[PartnerRow]]]:
        """Return ``(product, partner)``; ``None`` if the product does not exist."""
        if not is_valid_id(product_id):
            return None
        result = await self.session.execute(
            select(ProductRow, PartnerRow)
            .outerjoin(PartnerRow, PartnerRow.id == ProductRow.partner_id)
            .where(ProductRow.id == product_id)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def find_click(self, tracking_id: str) -> Optional[AffiliateClickRow]:
        result = await self.session.execute(
            select(AffiliateClickRow).where(AffiliateClickRow.tracking_id == tracking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
