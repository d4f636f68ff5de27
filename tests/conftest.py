"""Shared test fixtures — single test DB for all test modules."""
from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.tables import Base
from src.db.engine import get_session

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from src.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

import src.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine

from config.settings import settings  # noqa: E402
from src.db.affiliate_tables import AffiliateClickRow  # noqa: E402
from src.db.tables import PartnerRow, ProductRow  # noqa: E402
from src.middleware.metrics import metrics  # noqa: E402
from src.services.partner_notify import drain_notifications  # noqa: E402

ADMIN_KEY = "test-admin-key"

IDS = SimpleNamespace(
    card_partner="11111111-1111-4111-8111-111111111111",     # fixed ₹500, credit_card
    loan_partner="22222222-2222-4222-8222-222222222222",     # 2.5%, loan
    inactive_partner="33333333-3333-4333-8333-333333333333",  # broker, inactive
    broker_partner="44444444-4444-4444-8444-444444444444",   # fixed ₹300, broker
    card_product="aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa",
    loan_product="bbbbbbbb-bbbb-4bbb-8bbb-bbbbbbbbbbbb",
    orphan_product="cccccccc-cccc-4ccc-8ccc-cccccccccccc",   # belongs to inactive partner
    disabled_product="dddddddd-dddd-4ddd-8ddd-dddddddddddd",  # inactive product, active partner
    broker_product="eeeeeeee-eeee-4eee-8eee-eeeeeeeeeeee",
)


@pytest.fixture
def ids():
    return IDS


@pytest_asyncio.fixture
async def session():
    """Session for calling services directly."""
    async with TestSession() as s:
        yield s


@pytest_asyncio.fixture
async def other_session():
    """A second, independent session (a concurrent writer)."""
    async with TestSession() as s:
        yield s


@pytest.fixture(autouse=True)
def _quiet_partners(monkeypatch):
    """No outbound partner calls unless a test turns them on."""
    monkeypatch.setattr(settings, "PARTNER_NOTIFICATIONS_ENABLED", False)
    monkeypatch.setattr(settings, "AFFILIATE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after. Seeds the partner directory."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSession() as s:
        s.add_all([
            PartnerRow(
                id=IDS.card_partner, name="HDFC Bank Cards", partner_type="credit_card",
                api_endpoint="https://partners.hdfc.example/api",
                commission_type="fixed", commission_amount=500.0,
                conversion_goals=["card_approved"], attribution_window_days=30,
            ),
            PartnerRow(
                id=IDS.loan_partner, name="Lendo Personal Loans", partner_type="loan",
                api_endpoint="https://api.lendo.example",
                commission_type="percentage", commission_amount=2.5,
                conversion_goals=["loan_approved"], attribution_window_days=45,
            ),
            PartnerRow(
                id=IDS.inactive_partner, name="Dormant Broker", partner_type="broker",
                commission_type="fixed", commission_amount=200.0, is_active=False,
            ),
            PartnerRow(
                id=IDS.broker_partner, name="Zerodha", partner_type="broker",
                commission_type="fixed", commission_amount=300.0,
            ),
        ])
        await s.flush()
        s.add_all([
            ProductRow(
                id=IDS.card_product, partner_id=IDS.card_partner, name="Regalia Gold",
                product_type="credit_card", application_url="https://cards.hdfc.example/apply?src=iv",
            ),
            ProductRow(
                id=IDS.loan_product, partner_id=IDS.loan_partner, name="Lendo Flexi Loan",
                product_type="loan", application_url="https://lendo.example/apply",
            ),
            ProductRow(
                id=IDS.orphan_product, partner_id=IDS.inactive_partner, name="Dormant Demat",
                product_type="broker", application_url="https://dormant.example/open",
            ),
            ProductRow(
                id=IDS.disabled_product, partner_id=IDS.card_partner, name="Retired Card",
                product_type="credit_card", application_url="https://cards.hdfc.example/old",
                is_active=False,
            ),
            ProductRow(
                id=IDS.broker_product, partner_id=IDS.broker_partner, name="Zerodha Demat",
                product_type="broker", application_url="https://zerodha.example/open",
            ),
        ])
        await s.commit()

    metrics.reset()

    yield

    await drain_notifications(timeout=5)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def make_click():
    """Insert a click row directly (reporting tests need exact dates)."""
    counter = {"n": 0}

    async def _make(
        partner_id: str = IDS.card_partner,
        product_id: str = IDS.card_product,
        clicked_at: datetime | None = None,
        converted: bool = False,
        commission_amount: float | None = None,
        conversion_date: datetime | None = None,
        utm_source: str | None = None,
        payment_status: str = "pending",
        **extra,
    ) -> AffiliateClickRow:
        counter["n"] += 1
        clicked_at = clicked_at or datetime.now(timezone.utc)
        row = AffiliateClickRow(
            tracking_id=f"test_{counter['n']:06d}_click",
            partner_id=partner_id,
            product_id=product_id,
            clicked_at=clicked_at,
            ip_address="203.0.113.7",
            user_agent="pytest",
            utm_source=utm_source,
            converted=converted,
            commission_amount=commission_amount,
            conversion_date=conversion_date or (clicked_at if converted else None),
            payment_status=payment_status,
            extra={},
            **extra,
        )
        async with TestSession() as s:
            s.add(row)
            await s.commit()
        return row

    return _make


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}
