"""create sales order request table

Revision ID: 202610010004
Revises: 202610010003
Create Date: 2026-10-17 10:05:00
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010004"
down_revision: str | None = "202610010003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_sales_order_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("request_no", sa.String(length=32), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("project_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("customer_id", sa.Uuid(), nullable=True),
        sa.Column("customer_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("requested_by", sa.String(length=128), nullable=False),
        sa.Column("requested_by_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("estimate_number", sa.String(length=64), nullable=False),
        sa.Column("estimate_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("po_number", sa.String(length=64), nullable=False),
        sa.Column("po_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("po_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_approval"),
        sa.Column("sales_order_entry_id", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["crm_project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_no"),
    )


def downgrade() -> None:
    op.drop_table("crm_sales_order_request")
