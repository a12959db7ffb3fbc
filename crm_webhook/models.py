from sqlalchemy import Column, String, Numeric, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CrmPaymentColumns:
    """Columns shared by the primary table and every slab table."""

    payment_id = Column(String(64), primary_key=True, index=True)  # natural key, duplicates are no-ops
    order_id = Column(String(64), nullable=True)
    email = Column(String(255), nullable=False, default="")
    phone = Column(String(32), nullable=False, default="")
    customer_name = Column(String(255), nullable=False, default="")
    city = Column(String(128), nullable=False, default="")
    amount = Column(Numeric(12, 2), nullable=False)  # major units
    currency = Column(String(8), nullable=False)
    status = Column(String(32), nullable=False)
    event = Column(String(64), nullable=False)
    method = Column(String(32), nullable=False, default="")
    paid_at = Column(DateTime(timezone=True), nullable=False)


class CrmPayment(CrmPaymentColumns, Base):
    __tablename__ = "crm_payments"


class CrmMicroPayment(CrmPaymentColumns, Base):
    __tablename__ = "crm_99"


class CrmStandardPayment(CrmPaymentColumns, Base):
    __tablename__ = "crm_1500"


TABLES = {
    model.__tablename__: model
    for model in (CrmPayment, CrmMicroPayment, CrmStandardPayment)
}
