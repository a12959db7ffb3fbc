import hashlib
import hmac
import json
import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.pool import StaticPool

from crm_webhook.config import Settings
from crm_webhook.database import create_engine, init_db, make_session_factory

SECRET = "whsec_test_secret"


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_entity(**overrides):
    entity = {
        "id": "pay_1",
        "entity": "payment",
        "amount": 9900,
        "currency": "INR",
        "status": "captured",
        "order_id": "order_1",
        "method": "upi",
        "email": "asha@example.com",
        "contact": "+919900000000",
        "notes": {"name": "Asha", "city": "Pune"},
        "created_at": 1735689600,
        "captured_at": 1735689660,
    }
    entity.update(overrides)
    return entity


def make_notification(event="payment.captured", **entity_overrides):
    return {
        "entity": "event",
        "account_id": "acc_test",
        "event": event,
        "contains": ["payment"],
        "payload": {"payment": {"entity": make_entity(**entity_overrides)}},
        "created_at": 1735689661,
    }


def encode(notification) -> bytes:
    return json.dumps(notification).encode("utf-8")


async def count_rows(session_factory, model, payment_id=None) -> int:
    stmt = select(func.count()).select_from(model)
    if payment_id is not None:
        stmt = stmt.where(model.payment_id == payment_id)
    async with session_factory() as session:
        return (await session.execute(stmt)).scalar_one()


@pytest.fixture
def settings():
    return Settings(
        webhook_secret=SECRET,
        database_url="sqlite+aiosqlite:///:memory:",
        db_timeout=2.0,
        shutdown_drain_timeout=2.0,
    )


@pytest_asyncio.fixture
async def engine(settings):
    """In-memory SQLite with a single shared connection so every session sees the same tables."""
    engine = create_engine(settings, poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)
