import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from qrpay.config import Settings
from qrpay.db.init_db import create_engine, create_session_factory, initialize_database
from qrpay.mocks.order_store import InMemoryOrderStore
from qrpay.services.order_store import OrderStoreError
from qrpay.services.payment_qr_service import PaymentQrEngine
from qrpay.services.signature_service import QrSigner

TEST_SECRET = "test-secret"
TEST_JWT_SECRET = "test-jwt-secret"
USER_ID = "user-abc"
OTHER_USER_ID = "user-xyz"


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FlakyOrderStore(InMemoryOrderStore):
    """Fails mark_order_paid a number of times before succeeding."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.settle_calls = 0

    async def mark_order_paid(self, order_id, settlement_ref):
        self.settle_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OrderStoreError("order database unavailable")
        await super().mark_order_paid(order_id, settlement_ref)


class SlowOrderStore(InMemoryOrderStore):
    """Delays mark_order_paid and counts calls."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.settle_calls = 0

    async def mark_order_paid(self, order_id, settlement_ref):
        self.settle_calls += 1
        await asyncio.sleep(self.delay)
        await super().mark_order_paid(order_id, settlement_ref)


class BrokenOrderStore(InMemoryOrderStore):
    """mark_order_paid fails with an error outside the OrderStoreError family."""

    def __init__(self):
        super().__init__()
        self.settle_calls = 0

    async def mark_order_paid(self, order_id, settlement_ref):
        self.settle_calls += 1
        raise ConnectionError("order db connection reset")


class RacingOrderStore(InMemoryOrderStore):
    """Runs a hook after settling, e.g. another worker recording the outcome first."""

    def __init__(self):
        super().__init__()
        self.after_settle = None

    async def mark_order_paid(self, order_id, settlement_ref):
        await super().mark_order_paid(order_id, settlement_ref)
        if self.after_settle is not None:
            await self.after_settle(settlement_ref)


class GatedOrderStore(InMemoryOrderStore):
    """Blocks mark_order_paid until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def mark_order_paid(self, order_id, settlement_ref):
        self.entered.set()
        await self.release.wait()
        await super().mark_order_paid(order_id, settlement_ref)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        payment_hmac_secret=TEST_SECRET,
        jwt_secret=TEST_JWT_SECRET,
        database_path=str(tmp_path / "qrpay_test.db"),
        settlement_timeout_seconds=0.5,
        demo_mode=True,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0))


@pytest.fixture
def signer():
    return QrSigner(TEST_SECRET)


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
async def session_factory(settings):
    db_engine = create_engine(settings.database_path)
    await initialize_database(db_engine)
    yield create_session_factory(db_engine)
    await db_engine.dispose()


@pytest.fixture
def make_engine(session_factory, signer, settings, clock):
    def _make(order_store, render_images=False):
        return PaymentQrEngine(
            session_factory=session_factory,
            signer=signer,
            order_store=order_store,
            settings=settings,
            clock=clock,
            render_images=render_images,
        )
    return _make


@pytest.fixture
def engine(make_engine, order_store):
    return make_engine(order_store)


async def create_order(store, order_id="O1", amount="100.00", currency="USD", user_id=USER_ID):
    return await store.create_order(
        user_id,
        [{"product_id": "p-1", "name": "Widget", "price": Decimal(amount), "quantity": 1}],
        currency=currency,
        order_id=order_id,
    )


@pytest.fixture
async def order(order_store):
    return await create_order(order_store)
