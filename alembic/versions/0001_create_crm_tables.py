"""create crm payment tables

Revision ID: 0001
Revises:
Create Date: 2026-01-12

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

TABLES = ("crm_payments", "crm_99", "crm_1500")


def upgrade() -> None:
    for table in TABLES:
        op.create_table(
            table,
            sa.Column("payment_id", sa.String(64), primary_key=True),
            sa.Column("order_id", sa.String(64), nullable=True),
            sa.Column("email", sa.String(255), nullable=False, server_default=""),
            sa.Column("phone", sa.String(32), nullable=False, server_default=""),
            sa.Column("customer_name", sa.String(255), nullable=False, server_default=""),
            sa.Column("city", sa.String(128), nullable=False, server_default=""),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("currency", sa.String(8), nullable=False),
            sa.Column("status", sa.String(32), nullable=False),
            sa.Column("event", sa.String(64), nullable=False),
            sa.Column("method", sa.String(32), nullable=False, server_default=""),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(f"ix_{table}_payment_id", table, ["payment_id"])


def downgrade() -> None:
    for table in reversed(TABLES):
        op.drop_index(f"ix_{table}_payment_id", table_name=table)
        op.drop_table(table)
