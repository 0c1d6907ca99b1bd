"""reconciliation tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

payment_status = sa.Enum(
    "pending", "paid", "failed", "refund_initiated", "refund_completed", name="payment_status"
)
refund_status = sa.Enum("pending", "initiated", "processed", "failed", name="refund_status")
return_status = sa.Enum(
    "pending", "approved", "rejected", "refund_initiated", "refund_completed", name="return_status"
)
inventory_change_type = sa.Enum("STOCK_IN", "STOCK_OUT", "ADJUSTMENT", name="inventory_change_type")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_number", sa.String(), nullable=True),
        sa.Column("razorpay_order_id", sa.String(), nullable=True),
        sa.Column("razorpay_payment_id", sa.String(), nullable=True),
        sa.Column("payment_status", payment_status, nullable=False, server_default="pending"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("payment_error", sa.Text(), nullable=True),
        sa.Column("payment_details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"])
    op.create_index("ix_orders_razorpay_order_id", "orders", ["razorpay_order_id"], unique=True)
    op.create_index("ix_orders_razorpay_payment_id", "orders", ["razorpay_payment_id"], unique=True)

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("product_variant_id", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Float(), nullable=False, server_default="0"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "inventory",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("variant_id", sa.String(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "product_id", "variant_id",
            name="uq_inventory_product_variant",
            postgresql_nulls_not_distinct=True,
        ),
        sa.CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
    )
    op.create_index("ix_inventory_product_id", "inventory", ["product_id"])

    op.create_table(
        "inventory_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("inventory_id", sa.String(), sa.ForeignKey("inventory.id"), nullable=False),
        sa.Column("previous_quantity", sa.Integer(), nullable=False),
        sa.Column("new_quantity", sa.Integer(), nullable=False),
        sa.Column("change_type", inventory_change_type, nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_inventory_history_inventory_id", "inventory_history", ["inventory_id"])

    op.create_table(
        "return_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("status", return_status, nullable=False, server_default="pending"),
        sa.Column("original_order_amount", sa.Float(), nullable=True),
        sa.Column("final_refund_amount", sa.Float(), nullable=True),
        sa.Column("razorpay_refund_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_return_requests_order_id", "return_requests", ["order_id"])

    op.create_table(
        "return_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("return_request_id", sa.String(), sa.ForeignKey("return_requests.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_return_status_history_return_request_id", "return_status_history", ["return_request_id"]
    )

    op.create_table(
        "razorpay_refund_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("transaction_number", sa.String(), nullable=False, unique=True),
        sa.Column("return_request_id", sa.String(), sa.ForeignKey("return_requests.id"), nullable=False),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("razorpay_payment_id", sa.String(), nullable=False),
        sa.Column("razorpay_refund_id", sa.String(), nullable=True),
        sa.Column("refund_amount", sa.Float(), nullable=False),
        sa.Column("original_amount", sa.Float(), nullable=False),
        sa.Column("deduction_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", refund_status, nullable=False, server_default="pending"),
        sa.Column("razorpay_status", sa.String(), nullable=True),
        sa.Column("razorpay_speed", sa.String(), nullable=True),
        sa.Column("razorpay_response", sa.JSON(), nullable=True),
        sa.Column("initiated_at", sa.DateTime(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column(
            "retry_of_id", sa.String(), sa.ForeignKey("razorpay_refund_transactions.id"), nullable=True
        ),
        sa.Column("notes", sa.JSON(), nullable=True),
        sa.Column("initiated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_razorpay_refund_transactions_return_request_id",
        "razorpay_refund_transactions", ["return_request_id"],
    )
    op.create_index(
        "ix_razorpay_refund_transactions_order_id", "razorpay_refund_transactions", ["order_id"]
    )
    op.create_index(
        "ix_razorpay_refund_transactions_razorpay_refund_id",
        "razorpay_refund_transactions", ["razorpay_refund_id"], unique=True,
    )


def downgrade() -> None:
    op.drop_table("razorpay_refund_transactions")
    op.drop_table("return_status_history")
    op.drop_table("return_requests")
    op.drop_table("inventory_history")
    op.drop_table("inventory")
    op.drop_table("order_items")
    op.drop_table("orders")
    for enum_type in (inventory_change_type, return_status, refund_status, payment_status):
        enum_type.drop(op.get_bind(), checkfirst=True)
