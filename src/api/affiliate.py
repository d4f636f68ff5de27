"""
Affiliate tracking endpoints used by the platform's product pages.

- POST /api/v1/affiliate/links               — record a click, get the redirect URL
- GET  /api/v1/affiliate/clicks/{id}         — look up a click by tracking ID
- POST /api/v1/affiliate/applications        — convert a click from our own apply flow
- POST /api/v1/affiliate/commission/calculate — preview a commission
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import get_session
from src.errors import NotFoundError
from src.models.affiliate import (
    TRACKING_ID_PATTERN,
    ApplicationData,
    ClickContext,
    ClickRecord,
    CommissionCalculation,
    ConversionResult,
    TrackingLink,
)
from src.services.click_tracker import generate_tracking_link, get_click_by_tracking_id
from src.services.commission import calculate_commission
from src.services.conversions import track_application

router = APIRouter(prefix="/api/v1/affiliate", tags=["Affiliate"])
logger = logging.getLogger(__name__)


class LinkRequest(BaseModel):
    product_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = Field(None, max_length=100)
    utm_source: Optional[str] = Field(None, max_length=100)
    utm_medium: Optional[str] = Field(None, max_length=100)
    utm_campaign: Optional[str] = Field(None, max_length=100)
    utm_params: dict[str, str] = Field(default_factory=dict)  # any other utm_* keys

    def utm(self) -> dict[str, str]:
        params = {k: v for k, v in self.utm_params.items() if k.startswith("utm_")}
        for key in ("utm_source", "utm_medium", "utm_campaign"):
            value = getattr(self, key)
            if value:
                params[key] = value
        return params


class ApplicationRequest(BaseModel):
    tracking_id: str = Field(..., pattern=TRACKING_ID_PATTERN)
    application_data: ApplicationData = Field(default_factory=ApplicationData)


class CommissionRequest(BaseModel):
    partner_id: str
    product_id: str
    base_amount: float = Field(0.0, ge=0, allow_inf_nan=False)


def _client_context(request: Request, session_id: Optional[str]) -> ClickContext:
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else (
        request.client.host if request.client else None
    )
    return ClickContext(
        ip_address=(ip or "0.0.0.0")[:45],
        user_agent=(request.headers.get("user-agent") or "unknown")[:500],
        referrer=(request.headers.get("referer") or None),
        session_id=session_id,
    )


@router.post("/links", response_model=TrackingLink, status_code=201)
async def create_tracking_link(
    req: LinkRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Record a click on a product's Apply button and return the partner URL."""
    return await generate_tracking_link(
        session,
        req.product_id,
        user_id=req.user_id,
        utm_params=req.utm(),
        context=_client_context(request, req.session_id),
    )


@router.get("/clicks/{tracking_id}", response_model=ClickRecord)
async def get_click(tracking_id: str, session: AsyncSession = Depends(get_session)):
    return await get_click_by_tracking_id(session, tracking_id)


@router.post("/applications", response_model=ConversionResult)
async def submit_application(
    req: ApplicationRequest,
    session: AsyncSession = Depends(get_session),
):
    """Record an application submitted through our own flow.

    Re-submitting for an already converted click returns ``status="duplicate"``.
    """
    return await track_application(session, req.tracking_id, req.application_data)


@router.post("/commission/calculate", response_model=CommissionCalculation)
async def preview_commission(
    req: CommissionRequest,
    session: AsyncSession = Depends(get_session),
):
    calculation = await calculate_commission(
        session, req.partner_id, req.product_id, req.base_amount
    )
    if calculation is None:
        raise NotFoundError("Partner not found")
    return calculation
