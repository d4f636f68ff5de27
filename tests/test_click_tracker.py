"""Tests for click tracking and tracking-link generation."""
import re
from urllib.parse import parse_qs, urlsplit

import pytest

from src.errors import NotFoundError, PartnerInactiveError
from src.middleware.metrics import metrics
from src.models.affiliate import TRACKING_ID_PATTERN, ClickContext
from src.services.click_tracker import (
    build_tracking_url,
    generate_tracking_id,
    generate_tracking_link,
    get_click_by_tracking_id,
)


class TestTrackingId:
    def test_prefix_per_vertical(self):
        assert generate_tracking_id("loan").startswith("ln_")
        assert generate_tracking_id("credit_card").startswith("cc_")
        assert generate_tracking_id("broker").startswith("bk_")

    def test_matches_webhook_pattern(self):
        for vertical in ("loan", "credit_card", "broker"):
            assert re.match(TRACKING_ID_PATTERN, generate_tracking_id(vertical))

    def test_unique(self):
        assert len({generate_tracking_id("loan") for _ in range(500)}) == 500


class TestBuildTrackingUrl:
    def test_appends_ref_and_partner(self):
        url = build_tracking_url("https://bank.example/apply", "cc_abc_123", "p-1")
        query = parse_qs(urlsplit(url).query)
        assert query["ref"] == ["cc_abc_123"]
        assert query["partner"] == ["p-1"]

    def test_preserves_existing_query(self):
        url = build_tracking_url("https://bank.example/apply?src=iv&lang=en", "cc_abc_123", "p-1")
        query = parse_qs(urlsplit(url).query)
        assert query["src"] == ["iv"]
        assert query["lang"] == ["en"]
        assert query["ref"] == ["cc_abc_123"]

    def test_utm_params_passed_through(self):
        url = build_tracking_url(
            "https://bank.example/apply", "cc_abc_123", "p-1",
            {"utm_source": "google", "utm_campaign": "diwali sale", "utm_content": "hero", "other": "x"},
        )
        query = parse_qs(urlsplit(url).query)
        assert query["utm_source"] == ["google"]
        assert query["utm_campaign"] == ["diwali sale"]
        assert query["utm_content"] == ["hero"]
        assert "other" not in query


@pytest.mark.asyncio
async def test_generate_link_persists_click(session, ids):
    link = await generate_tracking_link(
        session, ids.card_product, user_id="user-42",
        utm_params={"utm_source": "google", "utm_medium": "cpc"},
        context=ClickContext(ip_address="198.51.100.4", user_agent="Mozilla/5.0", referrer="https://iv.example/cards"),
    )
    assert link.tracking_id.startswith("cc_")
    assert link.tracking_url.startswith("https://cards.hdfc.example/apply?")
    assert f"ref={link.tracking_id}" in link.tracking_url

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.partner_id == ids.card_partner
    assert click.product_id == ids.card_product
    assert click.user_id == "user-42"
    assert click.ip_address == "198.51.100.4"
    assert click.referrer == "https://iv.example/cards"
    assert click.utm_source == "google"
    assert click.utm_medium == "cpc"
    assert click.converted is False
    assert click.payment_status == "pending"
    assert click.commission_amount is None


@pytest.mark.asyncio
async def test_generate_link_default_context(session, ids):
    link = await generate_tracking_link(session, ids.loan_product)
    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.ip_address == "0.0.0.0"
    assert click.user_agent == "unknown"
    assert click.session_id.startswith("sess_")


@pytest.mark.asyncio
async def test_each_click_gets_fresh_tracking_id(session, ids):
    first = await generate_tracking_link(session, ids.card_product)
    second = await generate_tracking_link(session, ids.card_product)
    assert first.tracking_id != second.tracking_id


@pytest.mark.asyncio
async def test_unknown_product(session):
    with pytest.raises(NotFoundError, match="Product not found"):
        await generate_tracking_link(session, "99999999-9999-4999-8999-999999999999")


@pytest.mark.asyncio
async def test_malformed_product_id(session):
    with pytest.raises(NotFoundError):
        await generate_tracking_link(session, "not-a-uuid")


@pytest.mark.asyncio
async def test_inactive_product(session, ids):
    with pytest.raises(NotFoundError, match="Product not found"):
        await generate_tracking_link(session, ids.disabled_product)


@pytest.mark.asyncio
async def test_inactive_partner(session, ids):
    with pytest.raises(PartnerInactiveError, match="Partner not found or inactive"):
        await generate_tracking_link(session, ids.orphan_product)


@pytest.mark.asyncio
async def test_click_counted_in_metrics(session, ids):
    await generate_tracking_link(session, ids.card_product)
    assert metrics.events[("click", ids.card_partner)] == 1


@pytest.mark.asyncio
async def test_unknown_tracking_id(session):
    with pytest.raises(NotFoundError, match="Tracking record not found"):
        await get_click_by_tracking_id(session, "cc_missing_000000")
