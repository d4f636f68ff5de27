"""Tests for conversion recording: applications and partner webhooks."""
import pytest

from src.db.repository import PartnerDirectory
from src.errors import InvalidPartnerError, NotFoundError
from src.middleware.metrics import metrics
from src.models.affiliate import ApplicationData, ConversionWebhook
from src.services.click_tracker import generate_tracking_link, get_click_by_tracking_id
from src.services.conversions import _append_event, handle_conversion_webhook, track_application
from src.services.payments import mark_commissions_as_paid


def _webhook(tracking_id: str, conversion_type: str, **kw) -> ConversionWebhook:
    return ConversionWebhook(trackingId=tracking_id, conversionType=conversion_type, **kw)


# ── Platform application flow ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_application_converts_fixed_partner(session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    result = await track_application(
        session, link.tracking_id, ApplicationData(requestedLimit=150000, status="submitted"),
    )
    assert result.status == "converted"
    assert result.converted is True
    assert result.commission_amount == 500.0

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.converted is True
    assert click.commission_amount == 500.0
    assert click.conversion_date is not None
    assert click.metadata["application"]["requested_limit"] == 150000


@pytest.mark.asyncio
async def test_application_percentage_partner_uses_requested_amount(session, ids):
    link = await generate_tracking_link(session, ids.loan_product)
    result = await track_application(
        session, link.tracking_id, ApplicationData(requestedAmount=400000),
    )
    assert result.commission_amount == 10000.0


@pytest.mark.asyncio
async def test_application_without_amount_uses_zero_base(session, ids):
    link = await generate_tracking_link(session, ids.loan_product)
    result = await track_application(session, link.tracking_id, ApplicationData())
    assert result.status == "converted"
    assert result.commission_amount == 0.0


@pytest.mark.asyncio
async def test_application_keeps_unknown_fields(session, ids):
    link = await generate_tracking_link(session, ids.broker_product)
    data = ApplicationData.model_validate({"initialDeposit": 10000, "panVerified": True})
    await track_application(session, link.tracking_id, data)
    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.metadata["application"]["panVerified"] is True


@pytest.mark.asyncio
async def test_repeat_application_is_duplicate(session, ids):
    link = await generate_tracking_link(session, ids.loan_product)
    first = await track_application(session, link.tracking_id, ApplicationData(requestedAmount=100000))
    second = await track_application(session, link.tracking_id, ApplicationData(requestedAmount=900000))

    assert first.status == "converted"
    assert second.status == "duplicate"
    assert second.commission_amount == first.commission_amount == 2500.0
    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.commission_amount == 2500.0
    assert metrics.events[("duplicate_conversion", ids.loan_partner)] == 1


@pytest.mark.asyncio
async def test_application_unknown_tracking_id(session):
    with pytest.raises(NotFoundError, match="Tracking record not found"):
        await track_application(session, "cc_unknown_0000", ApplicationData())


@pytest.mark.asyncio
async def test_guarded_update_wins_only_once(session, ids):
    """A second writer racing past the converted check still cannot convert."""
    from datetime import datetime, timezone
    from src.services.conversions import _convert_once

    link = await generate_tracking_link(session, ids.card_product)
    now = datetime.now(timezone.utc)
    assert await _convert_once(session, link.tracking_id, 500.0, {}, now) is True
    assert await _convert_once(session, link.tracking_id, 999.0, {}, now) is False

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.commission_amount == 500.0


# ── Partner webhooks ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approval_webhook_converts_click(session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    result = await handle_conversion_webhook(
        session, ids.card_partner,
        _webhook(link.tracking_id, "card_approved", conversionValue=150000, metadata={"applicationId": "APP-1"}),
    )
    assert result.status == "converted"
    assert result.commission_amount == 500.0

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.converted is True
    assert click.metadata["within_attribution_window"] is True
    assert click.metadata["events"][0]["type"] == "card_approved"
    assert click.metadata["events"][0]["metadata"] == {"applicationId": "APP-1"}
    assert metrics.events[("conversion", ids.card_partner)] == 1


@pytest.mark.asyncio
async def test_approval_without_application_uses_reported_value(session, ids):
    link = await generate_tracking_link(session, ids.loan_product)
    result = await handle_conversion_webhook(
        session, ids.loan_partner,
        _webhook(link.tracking_id, "loan_approved", conversionValue=100000),
    )
    assert result.status == "converted"
    assert result.commission_amount == 2500.0

    # a late application from our own flow cannot re-book it
    late = await track_application(session, link.tracking_id, ApplicationData(requestedAmount=400000))
    assert late.status == "duplicate"
    assert late.commission_amount == 2500.0

    click = await get_click_by_tracking_id(session, link.tracking_id)
    paid = await mark_commissions_as_paid(session, [click.id], "UTR-2026-014", "neft")
    assert paid.updated_count == 1
    assert paid.total_amount == 2500.0


@pytest.mark.asyncio
async def test_approval_without_any_amount_books_zero(session, ids):
    link = await generate_tracking_link(session, ids.loan_product)
    result = await handle_conversion_webhook(
        session, ids.loan_partner, _webhook(link.tracking_id, "loan_approved"),
    )
    assert result.commission_amount == 0.0


@pytest.mark.asyncio
async def test_repeated_approval_is_duplicate(session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    payload = _webhook(link.tracking_id, "card_approved")
    first = await handle_conversion_webhook(session, ids.card_partner, payload)
    second = await handle_conversion_webhook(session, ids.card_partner, payload)
    assert first.status == "converted"
    assert second.status == "duplicate"
    assert second.commission_amount == 500.0
    assert second.conversion_date == first.conversion_date

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.commission_amount == 500.0
    assert click.conversion_date == first.conversion_date


@pytest.mark.asyncio
async def test_approval_after_application_is_duplicate(session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    await track_application(session, link.tracking_id, ApplicationData(requestedLimit=100000))
    result = await handle_conversion_webhook(
        session, ids.card_partner, _webhook(link.tracking_id, "card_approved"),
    )
    assert result.status == "duplicate"
    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.commission_amount == 500.0


@pytest.mark.asyncio
async def test_non_approval_event_only_recorded(session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    result = await handle_conversion_webhook(
        session, ids.card_partner, _webhook(link.tracking_id, "application_submitted"),
    )
    assert result.status == "recorded"
    assert result.converted is False

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.converted is False
    assert click.commission_amount is None
    assert [e["type"] for e in click.metadata["events"]] == ["application_submitted"]


@pytest.mark.asyncio
async def test_other_verticals_approval_event_not_approval(session, ids):
    """loan_approved means nothing for a card partner."""
    link = await generate_tracking_link(session, ids.card_product)
    result = await handle_conversion_webhook(
        session, ids.card_partner, _webhook(link.tracking_id, "loan_approved"),
    )
    assert result.status == "recorded"


@pytest.mark.asyncio
async def test_events_accumulate(session, ids):
    link = await generate_tracking_link(session, ids.broker_product)
    await handle_conversion_webhook(session, ids.broker_partner, _webhook(link.tracking_id, "application_submitted"))
    await handle_conversion_webhook(session, ids.broker_partner, _webhook(link.tracking_id, "account_opened"))
    await handle_conversion_webhook(session, ids.broker_partner, _webhook(link.tracking_id, "first_transaction"))

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.converted is True
    assert click.commission_amount == 300.0
    assert [e["type"] for e in click.metadata["events"]] == [
        "application_submitted", "account_opened", "first_transaction",
    ]


@pytest.mark.asyncio
async def test_event_append_rereads_after_concurrent_write(session, other_session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    stale = await PartnerDirectory(session).find_click(link.tracking_id)

    await handle_conversion_webhook(
        other_session, ids.card_partner, _webhook(link.tracking_id, "application_submitted"),
    )
    await _append_event(session, stale, {"type": "first_transaction", "received_at": "2026-10-17T09:30:00+00:00"})

    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert [e["type"] for e in click.metadata["events"]] == ["application_submitted", "first_transaction"]
    assert click.converted is False


@pytest.mark.asyncio
async def test_webhook_from_foreign_partner(session, ids):
    link = await generate_tracking_link(session, ids.card_product)
    with pytest.raises(InvalidPartnerError):
        await handle_conversion_webhook(
            session, ids.loan_partner, _webhook(link.tracking_id, "loan_approved"),
        )
    click = await get_click_by_tracking_id(session, link.tracking_id)
    assert click.converted is False


@pytest.mark.asyncio
async def test_webhook_from_inactive_partner(session, ids):
    with pytest.raises(InvalidPartnerError):
        await handle_conversion_webhook(
            session, ids.inactive_partner, _webhook("bk_whatever_0000", "account_opened"),
        )


@pytest.mark.asyncio
async def test_webhook_from_unknown_partner(session):
    with pytest.raises(InvalidPartnerError):
        await handle_conversion_webhook(
            session, "not-a-partner", _webhook("cc_whatever_0000", "card_approved"),
        )


@pytest.mark.asyncio
async def test_webhook_unknown_tracking_id(session, ids):
    with pytest.raises(NotFoundError):
        await handle_conversion_webhook(
            session, ids.card_partner, _webhook("cc_missing_00000", "card_approved"),
        )


class TestWebhookPayload:
    def test_rejects_unknown_conversion_type(self):
        with pytest.raises(ValueError):
            _webhook("cc_abcdefghij", "refund_issued")

    def test_rejects_negative_value(self):
        with pytest.raises(ValueError):
            _webhook("cc_abcdefghij", "card_approved", conversionValue=-5)

    def test_rejects_non_finite_value(self):
        with pytest.raises(ValueError):
            _webhook("cc_abcdefghij", "card_approved", conversionValue=float("inf"))

    def test_rejects_malformed_tracking_id(self):
        with pytest.raises(ValueError):
            _webhook("bad id!", "card_approved")
