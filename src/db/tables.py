"""SQLAlchemy ORM base + partner/product directory tables.

The directory is owned by the surrounding platform (partner and product CRUD);
the attribution core only reads it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Float, Integer, Boolean, DateTime, JSON, ForeignKey, Index
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


def is_valid_id(value: object) -> bool:
    """True if ``value`` is a well-formed UUID string (row primary key format)."""
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class PartnerRow(Base):
    __tablename__ = "affiliate_partners"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False, index=True)
    partner_type = Column(String(20), nullable=False, index=True)  # loan, credit_card, broker
    api_endpoint = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Commission structure (flattened)
    commission_type = Column(String(20), nullable=False)  # fixed | percentage
    commission_amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    commission_conditions = Column(JSON, default=list)  # list[str]

    # Tracking config
    conversion_goals = Column(JSON, default=list)  # list[str]
    attribution_window_days = Column(Integer, nullable=False, default=30)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    products = relationship("ProductRow", back_populates="partner")

    __table_args__ = (
        Index("ix_partners_active_type", "is_active", "partner_type"),
    )


class ProductRow(Base):
    __tablename__ = "affiliate_products"

    id = Column(String(36), primary_key=True, default=new_id)
    partner_id = Column(String(36), ForeignKey("affiliate_partners.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    product_type = Column(String(20), nullable=False)  # loan, credit_card, broker
    application_url = Column(String(2000), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    partner = relationship("PartnerRow", back_populates="products")
