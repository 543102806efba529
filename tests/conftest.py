# tests/conftest.py
import os

# Settings are read at import time, so the test environment goes in first
os.environ["DATABASE_URL_OVERRIDE"] = "sqlite://"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["MERCADOPAGO_WEBHOOK_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["JOB_LEAD_NOTIFICATION_DELAY_SECONDS"] = "0"

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from storefront.core.timeutils import utcnow
from storefront.db.session import Base, engine_options
from storefront.jobs.queue import RedisJobQueue
from storefront.models import (  # noqa: F401 - registers every table on Base.metadata
    Commission, DiscountCode, DiscountCodeSettlement, Influencer, InfluencerPayment, Lead, Order, OrderItem, Payment,
)
from storefront.models.status import AmountType, CodeType, OrderStatus, PaymentStatus
from storefront.schemas.jobs import JOB_DISCOUNT_CODE_SCAN, JOB_DISCOUNT_CODE_SETTLE, JOB_LEAD_NOTIFICATION


# --- Database ---
# A file database rather than :memory: so several threads can hit the same data
@pytest.fixture
def engine(tmp_path):
    url = f"sqlite:///{tmp_path / 'test.db'}"
    engine = create_engine(url, **engine_options(url))
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# --- Queue ---
@pytest.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def job_queue(redis) -> RedisJobQueue:
    queue = RedisJobQueue(redis, retry_limit=2, retry_delay=0)
    for name in (JOB_DISCOUNT_CODE_SCAN, JOB_DISCOUNT_CODE_SETTLE, JOB_LEAD_NOTIFICATION):
        await queue.create_queue(name)
    return queue


# --- Test data ---
class Factory:
    """Builds committed rows with sensible defaults."""

    def __init__(self, db: Session):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def influencer(self, **fields) -> Influencer:
        defaults = dict(name="Ana Influencer", email="ana@example.com", payment_method="transfer", cvu="0000003100")
        defaults.update(fields)
        return self._save(Influencer(**defaults))

    def discount_code(self, **fields) -> DiscountCode:
        now = utcnow()
        defaults = dict(
            code="SAVE10",
            code_type=CodeType.LEAD_RESERVATION,
            discount_type=AmountType.PERCENTAGE,
            discount_value=Decimal("10"),
            used_count=0,
            is_active=True,
            valid_from=now - timedelta(days=1),
            valid_until=now + timedelta(days=1),
        )
        defaults.update(fields)
        return self._save(DiscountCode(**defaults))

    def influencer_code(self, influencer: Influencer, **fields) -> DiscountCode:
        defaults = dict(
            code="ANA15",
            code_type=CodeType.INFLUENCER,
            influencer_id=influencer.id,
            discount_value=Decimal("15"),
            commission_type=AmountType.PERCENTAGE,
            commission_value=Decimal("10"),
        )
        defaults.update(fields)
        return self.discount_code(**defaults)

    def lead(self, **fields) -> Lead:
        defaults = dict(email="lead@example.com", name="Luz")
        defaults.update(fields)
        return self._save(Lead(**defaults))

    def order(self, subtotal="100.00", discount="0.00", with_placeholder_payment=True, **fields) -> Order:
        subtotal, discount = Decimal(subtotal), Decimal(discount)
        defaults = dict(
            subtotal=subtotal, discount=discount, total=subtotal - discount,
            currency="ARS", status=OrderStatus.PENDING,
        )
        defaults.update(fields)
        order = self._save(Order(**defaults))
        self.db.add(OrderItem(
            order_id=order.id, product_id="sku-1", product_name="Harness", quantity=1, unit_price=subtotal,
        ))
        if with_placeholder_payment:
            self.db.add(Payment(order_id=order.id, status=PaymentStatus.PENDING, amount=order.total))
        self.db.commit()
        self.db.refresh(order)
        return order

    def commission(self, order: Order, discount_code: DiscountCode, amount="5.00", **fields) -> Commission:
        defaults = dict(
            influencer_id=discount_code.influencer_id,
            order_id=order.id,
            discount_code_id=discount_code.id,
            order_total=order.total,
            discount_amount=order.discount,
            commission_amount=Decimal(amount),
        )
        defaults.update(fields)
        return self._save(Commission(**defaults))


@pytest.fixture
def factory(db_session) -> Factory:
    return Factory(db_session)


# --- HTTP ---
@pytest.fixture
def payment_gateway() -> MagicMock:
    gateway = MagicMock()
    gateway.get_payment = AsyncMock()
    return gateway


@pytest.fixture
async def client(session_factory, job_queue, payment_gateway):
    from storefront.dependencies import get_db, get_job_queue, get_payment_gateway, get_session_factory
    from storefront.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
