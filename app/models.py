"""
SQLAlchemy Database Models

Business orders plus the Telebirr payment ledger:
- Gateway orders keyed by the gateway correlation id
- Append-only log of verified gateway notifications
- Durable retry queue for failed reconciliations

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.sql import func

from app.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    """Business order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class GatewayFlow(str, enum.Enum):
    """Telebirr integration flavour."""
    B2B = "b2b"
    C2B = "c2b"


class GatewayOrderStatus(str, enum.Enum):
    """
    Gateway payment state.

    pending -> completed | failed, completed -> refunded.
    """
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RetryTaskStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    DEAD_LETTER = "dead_letter"


class Order(Base):
    """
    Business order, as far as the payment core needs it.

    The full order lifecycle (items, kitchen, delivery) belongs to the
    surrounding application; the gateway only reads the order and moves
    its status through OrderService.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(20), nullable=True, index=True)

    total_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    payment_status = Column(String(20), default="pending")
    payment_reference = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<Order #{self.id} - {self.customer_name} - {self.status.value}>"


class GatewayOrder(Base):
    """
    A payment created at Telebirr for a business order.

    correlation_id is the prepay_id (B2B) or out_trade_no (C2B). It is
    assigned once at creation and never rewritten.
    """
    __tablename__ = "gateway_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    flow = Column(Enum(GatewayFlow), nullable=False, index=True)

    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    correlation_id = Column(String(128), nullable=False, unique=True, index=True)
    merchant_order_id = Column(String(128), nullable=False)
    trade_no = Column(String(128), nullable=True)

    # =========================================================================
    # AMOUNT
    # =========================================================================
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ETB")
    refunded_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)

    # =========================================================================
    # REQUEST DETAILS
    # =========================================================================
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    timeout_express = Column(String(10), nullable=False, default="30m")
    checkout_url = Column(Text, nullable=True)
    return_url = Column(Text, nullable=True)

    status = Column(
        Enum(GatewayOrderStatus),
        default=GatewayOrderStatus.PENDING,
        nullable=False,
        index=True
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<GatewayOrder {self.correlation_id} - {self.flow.value} - {self.status.value}>"


class GatewayNotification(Base):
    """
    Every authenticated callback that referenced a known gateway order.

    Rows are inserted once and never updated; this table is the audit
    trail of what the gateway told us, whether or not reconciliation
    succeeded.
    """
    __tablename__ = "gateway_notifications"

    id = Column(String(36), primary_key=True, default=_uuid)
    flow = Column(Enum(GatewayFlow), nullable=False)
    correlation_id = Column(String(128), nullable=False, index=True)

    trade_no = Column(String(128), nullable=True)
    trade_status = Column(String(64), nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    gmt_payment = Column(DateTime(timezone=True), nullable=True)
    passback_params = Column(Text, nullable=True)

    signature = Column(Text, nullable=True)
    sign_type = Column(String(16), nullable=True)
    processed = Column(Boolean, default=False, nullable=False)
    payload = Column(JSON, nullable=False)

    received_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<GatewayNotification {self.correlation_id} - {self.trade_status}>"


class RetryTask(Base):
    """
    A verified callback whose reconciliation failed and must be re-applied.

    next_attempt_at is persisted so a worker restart mid-backoff loses
    nothing. Tasks are never deleted: exhausted ones become dead letters.
    """
    __tablename__ = "retry_tasks"

    id = Column(String(36), primary_key=True, default=_uuid)
    flow = Column(Enum(GatewayFlow), nullable=False)
    payload = Column(JSON, nullable=False)

    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(
        Enum(RetryTaskStatus),
        default=RetryTaskStatus.PENDING,
        nullable=False,
        index=True
    )
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<RetryTask {self.id} - attempt {self.attempt_count} - {self.status.value}>"
