import asyncio
import dataclasses
import logging
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch
import httpx
import pytest
from sqlalchemy.pool import StaticPool

from crm_webhook.config import AckPolicy
from crm_webhook.database import make_session_factory
from crm_webhook.main import create_app
from crm_webhook.models import CrmMicroPayment, CrmPayment, CrmStandardPayment
from crm_webhook.persistence import PersistenceError
from conftest import count_rows, encode, make_notification, sign


@asynccontextmanager
async def running_app(settings):
    """Start the app with its lifespan and hand back a client plus the app."""
    app = create_app(settings, poolclass=StaticPool)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client, app


async def deliver(client, notification, signature=True):
    body = notification if isinstance(notification, bytes) else encode(notification)
    headers = {"Content-Type": "application/json"}
    if signature is True:
        headers["X-Razorpay-Signature"] = sign(body)
    elif signature:
        headers["X-Razorpay-Signature"] = signature
    return await client.post("/razorpay-webhook", content=body, headers=headers)


async def totals(app):
    factory = make_session_factory(app.state.engine)
    return (
        await count_rows(factory, CrmPayment),
        await count_rows(factory, CrmMicroPayment),
        await count_rows(factory, CrmStandardPayment),
    )


@pytest.mark.asyncio
async def test_scenario_a_captured_payment_stored_in_primary_and_micro(settings):
    async with running_app(settings) as (client, app):
        response = await deliver(client, make_notification())
        await app.state.worker.join()

        assert response.status_code == 200
        assert response.text == "OK"
        assert await totals(app) == (1, 1, 0)

        factory = make_session_factory(app.state.engine)
        async with factory() as session:
            stored = await session.get(CrmPayment, "pay_1")
        assert stored.email == "asha@example.com"
        assert stored.phone == "+919900000000"
        assert stored.customer_name == "Asha"
        assert stored.city == "Pune"
        assert stored.event == "payment.captured"
        assert stored.status == "captured"


@pytest.mark.asyncio
async def test_scenario_b_redelivery_adds_no_rows(settings):
    async with running_app(settings) as (client, app):
        first = await deliver(client, make_notification())
        await app.state.worker.join()
        second = await deliver(client, make_notification())
        await app.state.worker.join()

        assert first.status_code == 200
        assert second.status_code == 200
        assert await totals(app) == (1, 1, 0)


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_store_one_row(settings):
    """
    Five copies of one notification arrive at once; the unique key lets exactly one through.
    """
    async with running_app(settings) as (client, app):
        responses = await asyncio.gather(*(deliver(client, make_notification()) for _ in range(5)))
        await app.state.worker.join()

        assert [r.status_code for r in responses] == [200] * 5
        assert await totals(app) == (1, 1, 0)


@pytest.mark.asyncio
async def test_scenario_c_failed_payment_acknowledged_not_stored(settings):
    async with running_app(settings) as (client, app):
        response = await deliver(client, make_notification(event="payment.failed", status="failed"))
        await app.state.worker.join()

        assert response.status_code == 200
        assert await totals(app) == (0, 0, 0)


@pytest.mark.asyncio
async def test_millisecond_timestamp_acknowledged_and_skipped(settings, caplog):
    sync_settings = dataclasses.replace(settings, ack_policy=AckPolicy.SYNC)
    notification = make_notification(event="payment.failed", status="failed", created_at=10**13)
    async with running_app(sync_settings) as (client, app):
        with caplog.at_level(logging.WARNING, logger="crm_webhook.consumer"):
            response = await deliver(client, notification)

        assert response.status_code == 200
        assert await totals(app) == (0, 0, 0)
    assert "unusable" in caplog.text


@pytest.mark.asyncio
async def test_scenario_d_unrecognised_event_skipped_without_error(settings, caplog):
    caplog.set_level(logging.INFO)
    async with running_app(settings) as (client, app):
        response = await deliver(client, make_notification(event="refund.created"))
        await app.state.worker.join()

        assert response.status_code == 200
        assert await totals(app) == (0, 0, 0)

    assert "ignored event=refund.created" in caplog.text
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


@pytest.mark.asyncio
async def test_scenario_e_missing_signature_rejected(settings):
    async with running_app(settings) as (client, app):
        with patch("crm_webhook.main.parse_envelope") as mock_parse:
            response = await deliver(client, make_notification(), signature=None)

        assert response.status_code == 400
        assert response.text == "Invalid signature"
        mock_parse.assert_not_called()
        assert app.state.worker.pending == 0
        assert await totals(app) == (0, 0, 0)


@pytest.mark.asyncio
async def test_wrong_signature_rejected(settings):
    async with running_app(settings) as (client, app):
        body = encode(make_notification())
        response = await deliver(client, body, signature=sign(body, secret="someone_else"))

        assert response.status_code == 400
        assert await totals(app) == (0, 0, 0)


@pytest.mark.asyncio
async def test_non_canonical_body_verified_as_received(settings):
    raw = (
        b'{ "event":"payment.captured" ,\n "payload" : { "payment": {"entity": '
        b'{"id":"pay_ws","amount":50000,"status":"captured","currency":"INR"} } } }'
    )
    async with running_app(settings) as (client, app):
        response = await deliver(client, raw)
        await app.state.worker.join()

        assert response.status_code == 200
        assert await totals(app) == (1, 0, 1)


@pytest.mark.asyncio
async def test_malformed_json_with_valid_signature_acknowledged(settings):
    async with running_app(settings) as (client, app):
        response = await deliver(client, b"{not json")

        assert response.status_code == 200
        assert app.state.worker.pending == 0
        assert await totals(app) == (0, 0, 0)


@pytest.mark.asyncio
async def test_deferred_policy_hides_storage_failure(settings, caplog):
    async with running_app(settings) as (client, app):
        persister = app.state.pipeline.persister
        failure = PersistenceError("pay_1", "crm_payments", "connection refused")
        with patch.object(persister, "insert", AsyncMock(side_effect=failure)):
            response = await deliver(client, make_notification())
            await app.state.worker.join()

        assert response.status_code == 200

    assert "persistence failure payment_id=pay_1" in caplog.text


@pytest.mark.asyncio
async def test_sync_policy_reports_storage_failure(settings):
    sync_settings = dataclasses.replace(settings, ack_policy=AckPolicy.SYNC)
    async with running_app(sync_settings) as (client, app):
        persister = app.state.pipeline.persister
        failure = PersistenceError("pay_1", "crm_payments", "connection refused")
        with patch.object(persister, "insert", AsyncMock(side_effect=failure)):
            response = await deliver(client, make_notification())

        assert response.status_code == 500
        assert app.state.worker.pending == 0


@pytest.mark.asyncio
async def test_sync_policy_stores_before_responding(settings):
    sync_settings = dataclasses.replace(settings, ack_policy=AckPolicy.SYNC)
    async with running_app(sync_settings) as (client, app):
        response = await deliver(client, make_notification(amount=150000))

        assert response.status_code == 200
        assert await totals(app) == (1, 0, 1)


@pytest.mark.asyncio
async def test_authorized_stored_when_configured(settings):
    wider = dataclasses.replace(settings, ack_policy=AckPolicy.SYNC, qualifying_statuses=("captured", "authorized"))
    async with running_app(wider) as (client, app):
        await deliver(client, make_notification(event="payment.authorized", status="authorized"))

        assert await totals(app) == (1, 1, 0)


@pytest.mark.asyncio
async def test_liveness_endpoints(settings):
    async with running_app(settings) as (client, app):
        for path in ("/", "/razorpay-webhook"):
            response = await client.get(path)
            assert response.status_code == 200
            assert "Razorpay Webhook Active" in response.text


@pytest.mark.asyncio
async def test_db_probe(settings):
    async with running_app(settings) as (client, app):
        response = await client.get("/db-test")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_shutdown_drains_background_work(settings):
    async with running_app(settings) as (client, app):
        await deliver(client, make_notification())
        worker = app.state.worker
    # lifespan exit has drained the worker
    assert worker.pending == 0
