"""
Gateway order state machine.

Telebirr reports trades in its own vocabulary; this module maps that onto
GatewayOrderStatus and decides which transitions are allowed:

    pending   -> completed | failed
    completed -> refunded

Anything else, including re-applying the current state, is a no-op.
"""

import logging
from typing import Optional

from app.models import GatewayOrderStatus, OrderStatus

logger = logging.getLogger(__name__)

TRADE_SUCCESS = "TRADE_SUCCESS"
TRADE_CLOSED = "TRADE_CLOSED"
WAIT_BUYER_PAY = "WAIT_BUYER_PAY"
TRADE_REFUNDED = "TRADE_REFUNDED"

TRADE_STATUS_MAP = {
    TRADE_SUCCESS: GatewayOrderStatus.COMPLETED,
    TRADE_CLOSED: GatewayOrderStatus.FAILED,
    WAIT_BUYER_PAY: GatewayOrderStatus.PENDING,
}

ALLOWED_TRANSITIONS = {
    GatewayOrderStatus.PENDING: {GatewayOrderStatus.COMPLETED, GatewayOrderStatus.FAILED},
    GatewayOrderStatus.COMPLETED: {GatewayOrderStatus.REFUNDED},
    GatewayOrderStatus.FAILED: set(),
    GatewayOrderStatus.REFUNDED: set(),
}

# Business order status that accompanies each gateway status
BUSINESS_STATUS_MAP = {
    GatewayOrderStatus.PENDING: OrderStatus.PAYMENT_PENDING,
    GatewayOrderStatus.COMPLETED: OrderStatus.PAID,
    GatewayOrderStatus.FAILED: OrderStatus.CANCELLED,
    GatewayOrderStatus.REFUNDED: OrderStatus.REFUNDED,
}

# Reverse mapping, used when answering trade queries from the local ledger
LEDGER_TRADE_STATUS = {
    GatewayOrderStatus.PENDING: WAIT_BUYER_PAY,
    GatewayOrderStatus.COMPLETED: TRADE_SUCCESS,
    GatewayOrderStatus.FAILED: TRADE_CLOSED,
    GatewayOrderStatus.REFUNDED: TRADE_REFUNDED,
}


def is_known_trade_status(trade_status: Optional[str]) -> bool:
    return trade_status in TRADE_STATUS_MAP


def map_trade_status(trade_status: Optional[str]) -> GatewayOrderStatus:
    """
    Translate a gateway trade status.

    Unrecognised values are treated as not-yet-final (pending) and logged
    so operators can spot new gateway vocabulary.
    """
    status = TRADE_STATUS_MAP.get(trade_status or "")
    if status is None:
        logger.warning(f"Unknown trade status {trade_status!r}, treating as pending")
        return GatewayOrderStatus.PENDING
    return status


def can_transition(current: GatewayOrderStatus, target: GatewayOrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def business_status_for(status: GatewayOrderStatus) -> OrderStatus:
    return BUSINESS_STATUS_MAP[status]
