"""Pydantic models for the affiliate attribution core.

Partner-facing payloads (inbound conversion webhooks, outbound event
notifications) use the camelCase wire format partners integrate against;
everything the platform consumes is snake_case.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CommissionType = Literal["fixed", "percentage"]
PartnerType = Literal["loan", "credit_card", "broker"]
PaymentStatus = Literal["pending", "paid"]
ConversionType = Literal[
    "application_submitted",
    "account_opened",
    "first_transaction",
    "loan_approved",
    "card_approved",
]

# The partner event that earns a commission, per vertical
APPROVAL_EVENTS: dict[str, str] = {
    "loan": "loan_approved",
    "credit_card": "card_approved",
    "broker": "account_opened",
}

TRACKING_ID_PATTERN = r"^[a-zA-Z0-9_-]{10,50}$"


# ── Directory boundary ───────────────────────────────────────────────────────

class CommissionStructure(BaseModel):
    """Partner commission configuration, validated when read from the directory."""
    type: CommissionType
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    currency: Literal["INR"] = "INR"
    conditions: list[str] = Field(default_factory=list)


# ── Inbound payloads ─────────────────────────────────────────────────────────

class ConversionWebhook(BaseModel):
    """Partner → platform conversion callback."""
    model_config = ConfigDict(populate_by_name=True)

    tracking_id: str = Field(..., alias="trackingId", pattern=TRACKING_ID_PATTERN)
    conversion_type: ConversionType = Field(..., alias="conversionType")
    conversion_value: Optional[float] = Field(None, alias="conversionValue", ge=0, allow_inf_nan=False)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ApplicationData(BaseModel):
    """Data captured by the platform's own application flow.

    The commission base is the first of requested amount (loans), requested
    limit (cards) or initial deposit (brokers) that is present.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    requested_amount: Optional[float] = Field(None, alias="requestedAmount", ge=0)
    requested_limit: Optional[float] = Field(None, alias="requestedLimit", ge=0)
    initial_deposit: Optional[float] = Field(None, alias="initialDeposit", ge=0)
    status: Optional[str] = None

    @property
    def has_base_amount(self) -> bool:
        return any(
            value is not None
            for value in (self.requested_amount, self.requested_limit, self.initial_deposit)
        )

    @property
    def base_amount(self) -> float:
        for value in (self.requested_amount, self.requested_limit, self.initial_deposit):
            if value is not None:
                return value
        return 0.0


class ClickContext(BaseModel):
    """Request metadata captured with a click."""
    ip_address: str = Field("0.0.0.0", max_length=45)
    user_agent: str = Field("unknown", max_length=500)
    referrer: Optional[str] = Field(None, max_length=500)
    session_id: Optional[str] = Field(None, max_length=100)


# ── Outbound partner calls ───────────────────────────────────────────────────

class PartnerEvent(BaseModel):
    """Platform → partner event notification body."""
    model_config = ConfigDict(populate_by_name=True)

    event: str
    tracking_id: str = Field(..., alias="trackingId")
    product_id: str = Field(..., alias="productId")
    user_id: Optional[str] = Field(None, alias="userId")
    timestamp: datetime

    def wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PartnerAPIResponse(BaseModel):
    """Normalised partner reply. Anything else is treated as a failed call."""
    success: bool
    status_code: int
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


# ── Results ──────────────────────────────────────────────────────────────────

class DateRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        # query strings often omit the offset; treat those as UTC
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class TrackingLink(BaseModel):
    tracking_url: str
    tracking_id: str


class CommissionCalculation(BaseModel):
    base_amount: float
    commission_amount: float
    commission_rate: Optional[float] = None
    commission_type: CommissionType
    partner_id: str
    product_id: str


class ConversionResult(BaseModel):
    tracking_id: str
    status: Literal["converted", "duplicate", "recorded"]
    converted: bool
    commission_amount: Optional[float] = None
    conversion_date: Optional[datetime] = None


class PaymentResult(BaseModel):
    success: bool
    updated_count: int
    total_amount: float
    commission_ids: list[str] = Field(default_factory=list)


class ClickRecord(BaseModel):
    id: str
    tracking_id: str
    partner_id: str
    product_id: str
    user_id: Optional[str] = None
    clicked_at: datetime
    ip_address: str
    user_agent: str
    referrer: Optional[str] = None
    session_id: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    converted: bool
    conversion_date: Optional[datetime] = None
    commission_amount: Optional[float] = None
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CommissionSummary(BaseModel):
    partner_id: str
    partner_name: Optional[str] = None
    total_commission: float
    paid_commission: float
    pending_commission: float
    conversions: int
    average_commission: float
    last_payment_date: Optional[datetime] = None


class CommissionDetail(BaseModel):
    click_id: str
    tracking_id: str
    partner_id: str
    product_id: str
    user_id: Optional[str] = None
    commission_amount: float
    conversion_date: Optional[datetime] = None
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None


class CommissionDetailsPage(BaseModel):
    commissions: list[CommissionDetail]
    total: int
    total_pages: int
    page: int
    limit: int


class ReportSummary(BaseModel):
    total_commissions: int
    total_amount: float
    paid_amount: float
    pending_amount: float
    average_commission: float


class DailyCommissions(BaseModel):
    date: str
    commissions: int
    amount: float


class CommissionReport(BaseModel):
    summary: ReportSummary
    partner_breakdown: list[CommissionSummary]
    daily_breakdown: list[DailyCommissions]


class TopProduct(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    conversions: int


class AffiliateMetrics(BaseModel):
    total_clicks: int
    total_conversions: int
    conversion_rate: float
    total_commissions: float
    average_commission: float
    top_products: list[TopProduct]


class SourceClicks(BaseModel):
    source: str
    clicks: int


class AttributionDay(BaseModel):
    date: str
    clicks: int
    conversions: int
    commissions: float
    top_sources: list[SourceClicks]


class DailyMetrics(BaseModel):
    date: str
    clicks: int
    conversions: int
    commission: float
    conversion_rate: float


class PartnerClicksPage(BaseModel):
    clicks: list[ClickRecord]
    total: int
    page: int
    limit: int
    pages: int


class PartnerAnalytics(BaseModel):
    partner_id: str
    partner_name: str
    total_clicks: int
    total_conversions: int
    conversion_rate: float
    total_commission: float
    avg_time_to_conversion_seconds: Optional[float] = None
