"""
Database table for affiliate click tracking, conversion and commission payout.

One row per outbound click. The row moves forward only:
clicked -> converted -> paid. Rows are never deleted (audit/reporting).
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Float, DateTime, Boolean, ForeignKey, Index, JSON

from src.db.tables import Base, new_id

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"


class AffiliateClickRow(Base):
    """Records every outbound application click and what became of it."""
    __tablename__ = "affiliate_clicks"

    id = Column(String(36), primary_key=True, default=new_id)  # commission id for payouts
    tracking_id = Column(String(50), unique=True, nullable=False, index=True)
    partner_id = Column(String(36), ForeignKey("affiliate_partners.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("affiliate_products.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    clicked_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    # Click context (immutable)
    ip_address = Column(String(45), nullable=False)  # IPv6 support
    user_agent = Column(String(500), nullable=False)
    referrer = Column(String(500), nullable=True)
    session_id = Column(String(100), nullable=True, index=True)
    utm_source = Column(String(100), nullable=True, index=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)

    # Conversion (set once, by a guarded UPDATE ... WHERE converted = false)
    converted = Column(Boolean, nullable=False, default=False, index=True)
    conversion_date = Column(DateTime(timezone=True), nullable=True, index=True)
    commission_amount = Column(Float, nullable=True)
    extra = Column("metadata", JSON, default=dict)  # application data, webhook events

    # Payout (set once, by a guarded UPDATE ... WHERE payment_status != 'paid')
    payment_status = Column(String(10), nullable=False, default=PAYMENT_PENDING, index=True)
    payment_reference = Column(String(100), nullable=True)
    payment_method = Column(String(50), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    payment_notes = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Composite indexes for reporting queries
    __table_args__ = (
        Index("idx_clicks_partner_clicked", "partner_id", "clicked_at"),
        Index("idx_clicks_product_clicked", "product_id", "clicked_at"),
        Index("idx_clicks_converted_date", "converted", "conversion_date"),
        Index("idx_clicks_utm", "utm_source", "utm_medium", "utm_campaign"),
    )
