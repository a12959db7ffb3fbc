import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo
from pydantic import ValidationError

from crm_webhook.forwarding import CrmForwarder
from crm_webhook.persistence import PaymentPersister, PersistOutcome, PersistenceError
from crm_webhook.schemas import NotificationEnvelope, PaymentRecord, StoredRow
from crm_webhook.slabs import SlabClassifier

logger = logging.getLogger(__name__)

PAYMENT_EVENTS = frozenset({
    "payment.created",
    "payment.authorized",
    "payment.captured",
    "payment.failed",
})


class Outcome(enum.Enum):
    IGNORED_EVENT = "ignored_event"
    NO_PAYMENT = "no_payment"
    SKIPPED_STATUS = "skipped_status"
    STORED = "stored"
    DUPLICATE = "duplicate"


@dataclass
class IngestResult:
    outcome: Outcome
    event: str
    payment_id: Optional[str] = None
    persisted: Optional[PersistOutcome] = None


def is_payment_event(event: str) -> bool:
    return event in PAYMENT_EVENTS


def parse_envelope(raw_body: bytes) -> Optional[NotificationEnvelope]:
    """Parse the already-verified raw body; ``None`` means malformed."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Malformed webhook body, skipping: %s", e)
        return None
    if not isinstance(data, dict):
        logger.warning("Webhook body is a JSON %s, not an object; skipping", type(data).__name__)
        return None
    try:
        return NotificationEnvelope.model_validate(data)
    except ValidationError as e:
        logger.warning("Webhook envelope has unexpected shape, skipping: %s", e)
        return None


def extract_payment(envelope: NotificationEnvelope, default_currency: str = "INR") -> Optional[PaymentRecord]:
    entity = envelope.payment_entity
    if not entity:
        return None
    try:
        return PaymentRecord.from_entity(entity, default_currency=default_currency)
    except ValidationError as e:
        logger.warning("Payment entity unusable for event %s, skipping: %s", envelope.event, e)
        return None


def _log_payment(payment: PaymentRecord, tz: ZoneInfo):
    ts = payment.created_at or payment.captured_at
    moment = datetime.fromtimestamp(ts, tz=timezone.utc) if ts else datetime.now(timezone.utc)
    stamp = moment.astimezone(tz).strftime("%d/%m/%Y, %H:%M:%S")
    logger.info(
        "[%s] payment=%s status=%s amount=%s %s email=%s phone=%s name=%s city=%s",
        stamp,
        payment.id,
        payment.status,
        payment.amount_major,
        payment.currency,
        payment.email or "N/A",
        payment.phone or "N/A",
        payment.customer_name or "N/A",
        payment.city or "N/A",
    )


class WebhookPipeline:
    """Everything that happens to a notification after its signature checks out."""

    def __init__(
        self,
        persister: PaymentPersister,
        classifier: SlabClassifier,
        qualifying_statuses: Iterable[str] = ("captured",),
        forwarder: Optional[CrmForwarder] = None,
        default_currency: str = "INR",
        display_timezone: str = "Asia/Kolkata",
    ):
        self.persister = persister
        self.classifier = classifier
        self.qualifying_statuses = frozenset(qualifying_statuses)
        self.forwarder = forwarder
        self.default_currency = default_currency
        self.tz = ZoneInfo(display_timezone)

    async def process(self, envelope: NotificationEnvelope) -> IngestResult:
        """Filter, extract, classify and store; raises PersistenceError if the primary write fails."""
        event = envelope.event
        if not is_payment_event(event):
            logger.info("ignored event=%s (skipped)", event or "<missing>")
            return IngestResult(Outcome.IGNORED_EVENT, event)

        payment = extract_payment(envelope, self.default_currency)
        if payment is None:
            logger.info("no payment entity in event=%s (skipped)", event)
            return IngestResult(Outcome.NO_PAYMENT, event)

        _log_payment(payment, self.tz)

        if payment.status not in self.qualifying_statuses:
            logger.info("skipped status=%s payment_id=%s event=%s", payment.status, payment.id, event)
            return IngestResult(Outcome.SKIPPED_STATUS, event, payment.id)

        slab = self.classifier.classify(payment.amount, payment.status, self.qualifying_statuses)
        row = StoredRow.from_payment(payment, event)
        persisted = await self.persister.persist(row, slab)

        if not persisted.primary_inserted:
            return IngestResult(Outcome.DUPLICATE, event, payment.id, persisted)

        if self.forwarder is not None:
            await self.forwarder.forward(row)
        return IngestResult(Outcome.STORED, event, payment.id, persisted)

    async def process_detached(self, envelope: NotificationEnvelope) -> Optional[IngestResult]:
        """Variant for background use: storage failures are logged, never raised."""
        try:
            return await self.process(envelope)
        except PersistenceError as e:
            logger.error(
                "persistence failure payment_id=%s table=%s event=%s: %s",
                e.payment_id, e.table, envelope.event, e.reason,
                exc_info=e,
            )
            return None
