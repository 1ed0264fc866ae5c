"""initial procurement schema

Revision ID: 3f1c2a9b7d10
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c2a9b7d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QTY = sa.Numeric(14, 3)
MONEY = sa.Numeric(14, 2)

ROLE = sa.Enum("admin", "staff", name="role")
ORDER_STATUS = sa.Enum("draft", "submitted", "confirmed", "completed", "cancelled", name="order_status")


def upgrade() -> None:
    # --- master data
    op.create_table(
        "branches",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "departments",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("branch_id", sa.BigInteger(), sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.UniqueConstraint("branch_id", "name", name="uq_department_branch_name"),
    )
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("role", ROLE, nullable=False, server_default="staff"),
        sa.Column("branch_id", sa.BigInteger(), sa.ForeignKey("branches.id", ondelete="RESTRICT")),
        sa.Column("department_id", sa.BigInteger(), sa.ForeignKey("departments.id", ondelete="RESTRICT")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "units",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("abbreviation", sa.String(16)),
    )
    op.create_table(
        "product_groups",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit_id", sa.BigInteger(), sa.ForeignKey("units.id", ondelete="SET NULL")),
        sa.Column("product_group_id", sa.BigInteger(), sa.ForeignKey("product_groups.id", ondelete="SET NULL")),
        sa.Column("default_price", MONEY),
        sa.Column("purchase_sort_order", sa.Integer()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # --- order day gate
    op.create_table(
        "order_day_status",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("branch_id", sa.BigInteger(), sa.ForeignKey("branches.id", ondelete="CASCADE")),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_date", "branch_id", name="uq_order_day_status_date_branch"),
    )
    # NULLs are distinct in the constraint above; one global row per date
    op.create_index(
        "uq_order_day_status_global",
        "order_day_status",
        ["order_date"],
        unique=True,
        postgresql_where=sa.text("branch_id IS NULL"),
        sqlite_where=sa.text("branch_id IS NULL"),
    )

    # --- orders
    op.create_table(
        "orders",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("branch_id", sa.BigInteger(), sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "department_id", sa.BigInteger(), sa.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("status", ORDER_STATUS, nullable=False, server_default="draft"),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column(
            "transferred_from_branch_id", sa.BigInteger(), sa.ForeignKey("branches.id", ondelete="SET NULL")
        ),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_date_status", "orders", ["order_date", "status"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("requested_price", MONEY),
        sa.Column("notes", sa.Text()),
        sa.Column("actual_price", MONEY),
        sa.Column("actual_quantity", QTY),
        sa.Column("is_purchased", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("purchase_reason", sa.String(255)),
        sa.Column("received_quantity", QTY),
        sa.Column("is_received", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("received_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("order_id", "product_id", name="uq_order_item_product"),
        sa.CheckConstraint("quantity >= 0", name="ck_order_item_qty_nonneg"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product", "order_items", ["product_id"])

    op.create_table(
        "manual_receiving_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("receive_date", sa.Date(), nullable=False),
        sa.Column("branch_id", sa.BigInteger(), sa.ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "department_id", sa.BigInteger(), sa.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("received_quantity", QTY, nullable=False),
        sa.Column("receive_notes", sa.String(255), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("received_quantity > 0", name="ck_manual_receiving_qty_pos"),
    )
    op.create_index("ix_manual_receiving_branch_date", "manual_receiving_items", ["branch_id", "receive_date"])


def downgrade() -> None:
    op.drop_index("ix_manual_receiving_branch_date", table_name="manual_receiving_items")
    op.drop_table("manual_receiving_items")
    op.drop_index("ix_order_items_product", table_name="order_items")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_date_status", table_name="orders")
    op.drop_table("orders")
    op.drop_index("uq_order_day_status_global", table_name="order_day_status")
    op.drop_table("order_day_status")
    op.drop_table("products")
    op.drop_table("product_groups")
    op.drop_table("units")
    op.drop_table("users")
    op.drop_table("departments")
    op.drop_table("branches")
    ORDER_STATUS.drop(op.get_bind(), checkfirst=True)
    ROLE.drop(op.get_bind(), checkfirst=True)
