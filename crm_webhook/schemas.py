import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentWrapper(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entity: Optional[Dict[str, Any]] = None


class EnvelopePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment: Optional[PaymentWrapper] = None


class NotificationEnvelope(BaseModel):
    """Top-level Razorpay webhook body: ``{"event": ..., "payload": {"payment": {"entity": {...}}}}``."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    event: str = ""
    payload: Optional[EnvelopePayload] = None

    @field_validator("event", mode="before")
    @classmethod
    def coerce_event(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @property
    def payment_entity(self) -> Optional[Dict[str, Any]]:
        if self.payload is None or self.payload.payment is None:
            return None
        return self.payload.payment.entity


# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_EPOCH_SECONDS = 253402300799


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class PaymentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    order_id: Optional[str] = None
    status: str = ""
    amount: int  # minor units (paise)
    currency: str = "INR"
    email: str = ""
    phone: str = ""
    customer_name: str = ""
    city: str = ""
    method: str = ""
    created_at: Optional[int] = None
    captured_at: Optional[int] = None

    @field_validator("created_at", "captured_at")
    @classmethod
    def epoch_in_range(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 0 <= v <= MAX_EPOCH_SECONDS:
            raise ValueError(f"timestamp {v} is not epoch seconds")
        return v

    @classmethod
    def from_entity(cls, entity: Dict[str, Any], default_currency: str = "INR") -> "PaymentRecord":
        """Apply every optional-field default in one place.

        Razorpay puts the phone number under ``contact`` and free-form customer
        data under ``notes``; ``notes`` may be a map, an empty list, or absent.
        """
        notes = entity.get("notes")
        if not isinstance(notes, dict):
            notes = {}

        return cls(
            id=entity.get("id"),
            order_id=entity.get("order_id") or None,
            status=_text(entity.get("status")).lower(),
            amount=entity.get("amount"),
            currency=entity.get("currency") or default_currency,
            email=_text(entity.get("email")),
            phone=_text(entity.get("contact")),
            customer_name=_text(notes.get("name")),
            city=_text(notes.get("city")),
            method=_text(entity.get("method")),
            created_at=entity.get("created_at"),
            captured_at=entity.get("captured_at"),
        )

    @property
    def amount_major(self) -> Decimal:
        return (Decimal(self.amount) / Decimal(100)).quantize(Decimal("0.01"))

    def paid_at(self, now: Optional[float] = None) -> datetime:
        if self.captured_at:
            ts = self.captured_at
        elif self.created_at:
            ts = self.created_at
        else:
            ts = time.time() if now is None else now
        return datetime.fromtimestamp(ts, tz=timezone.utc)


class StoredRow(BaseModel):
    """The projection written to ``crm_payments`` and the slab tables."""

    payment_id: str
    order_id: Optional[str] = None
    email: str = ""
    phone: str = ""
    customer_name: str = ""
    city: str = ""
    amount: Decimal
    currency: str
    status: str
    event: str
    method: str = ""
    paid_at: datetime

    @classmethod
    def from_payment(cls, payment: PaymentRecord, event: str) -> "StoredRow":
        return cls(
            payment_id=payment.id,
            order_id=payment.order_id,
            email=payment.email,
            phone=payment.phone,
            customer_name=payment.customer_name,
            city=payment.city,
            amount=payment.amount_major,
            currency=payment.currency,
            status=payment.status,
            event=event,
            method=payment.method,
            paid_at=payment.paid_at(),
        )
