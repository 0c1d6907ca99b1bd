import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from reconciliation_service.database import Base


def new_id() -> str:
    return str(uuid4())


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"


class RefundStatus(enum.Enum):
    PENDING = "pending"
    INITIATED = "initiated"
    PROCESSED = "processed"
    FAILED = "failed"


class ReturnStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"


class InventoryChangeType(enum.Enum):
    STOCK_IN = "STOCK_IN"
    STOCK_OUT = "STOCK_OUT"
    ADJUSTMENT = "ADJUSTMENT"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    order_number = Column(String, index=True, nullable=True)
    razorpay_order_id = Column(String, unique=True, index=True, nullable=True)
    # unique: a payment id can only ever belong to one order
    razorpay_payment_id = Column(String, unique=True, index=True, nullable=True)
    payment_status = Column(
        Enum(PaymentStatus, name="payment_status", values_callable=_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    status = Column(String, default="pending", nullable=False)
    total_amount = Column(Float, nullable=False, default=0.0)
    payment_error = Column(Text, nullable=True)
    payment_details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String, nullable=False)
    product_variant_id = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False, default=0.0)


class Inventory(Base):
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint(
            "product_id", "variant_id",
            name="uq_inventory_product_variant",
            postgresql_nulls_not_distinct=True,
        ),
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
    )

    id = Column(String, primary_key=True, default=new_id)
    product_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class InventoryHistory(Base):
    __tablename__ = "inventory_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    inventory_id = Column(String, ForeignKey("inventory.id"), index=True, nullable=False)
    previous_quantity = Column(Integer, nullable=False)
    new_quantity = Column(Integer, nullable=False)
    change_type = Column(
        Enum(InventoryChangeType, name="inventory_change_type", values_callable=_values),
        nullable=False,
    )
    reason = Column(Text, nullable=True)
    created_by = Column(String, nullable=True)  # None means system generated
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ReturnRequest(Base):
    __tablename__ = "return_requests"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    status = Column(
        Enum(ReturnStatus, name="return_status", values_callable=_values),
        default=ReturnStatus.PENDING,
        nullable=False,
    )
    original_order_amount = Column(Float, nullable=True)
    final_refund_amount = Column(Float, nullable=True)
    razorpay_refund_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ReturnStatusHistory(Base):
    __tablename__ = "return_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    return_request_id = Column(String, ForeignKey("return_requests.id"), index=True, nullable=False)
    status = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RefundTransaction(Base):
    __tablename__ = "razorpay_refund_transactions"

    id = Column(String, primary_key=True, default=new_id)
    transaction_number = Column(String, unique=True, nullable=False)
    return_request_id = Column(String, ForeignKey("return_requests.id"), index=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    razorpay_payment_id = Column(String, nullable=False)
    razorpay_refund_id = Column(String, unique=True, index=True, nullable=True)
    refund_amount = Column(Float, nullable=False)
    original_amount = Column(Float, nullable=False)
    deduction_amount = Column(Float, nullable=False, default=0.0)
    status = Column(
        Enum(RefundStatus, name="refund_status", values_callable=_values),
        default=RefundStatus.PENDING,
        nullable=False,
    )
    razorpay_status = Column(String, nullable=True)
    razorpay_speed = Column(String, nullable=True)
    razorpay_response = Column(JSON, nullable=True)
    initiated_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)
    retry_of_id = Column(String, ForeignKey("razorpay_refund_transactions.id"), nullable=True)
    notes = Column(JSON, nullable=True)
    initiated_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
