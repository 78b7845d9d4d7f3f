"""
Pydantic Schemas for Request/Response Validation

Covers the Telebirr payment API:
- Payment creation (B2B / C2B)
- Status queries and per-order listings
- Refunds
- Retry queue administration

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class CreatePaymentRequest(BaseModel):
    """Request schema for creating a Telebirr payment for an order."""
    order_id: int = Field(..., ge=1, examples=[42])
    amount: Decimal = Field(..., examples=["100.50"])
    subject: str = Field(..., min_length=1, max_length=255, examples=["Lunch"])
    body: Optional[str] = Field(None, max_length=1000, examples=["Table 4, two mains"])

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Amount must be greater than 0")
        if v.as_tuple().exponent < -2:
            raise ValueError("Amount supports at most two decimal places")
        return v


class RefundRequest(BaseModel):
    """Request to refund a completed payment."""
    correlation_id: str = Field(..., min_length=1)
    refund_amount: Decimal = Field(..., gt=0)
    refund_reason: Optional[str] = Field(None, max_length=500)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class CreatePaymentResponse(BaseModel):
    """Response after the gateway accepted a payment."""
    correlation_id: str
    merchant_order_id: str
    checkout_url: Optional[str]
    trade_no: Optional[str] = None
    status: str
    message: str = "Redirect the customer to checkout_url"


class PaymentStatusResponse(BaseModel):
    """Status of a single gateway payment."""
    correlation_id: str
    flow: str
    order_id: int
    merchant_order_id: str
    trade_no: Optional[str]
    status: str
    amount: Decimal
    currency: str
    refunded_amount: Optional[Decimal] = None
    checkout_url: Optional[str]
    return_url: Optional[str] = None
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_gateway_order(cls, gateway_order) -> "PaymentStatusResponse":
        return cls(
            correlation_id=gateway_order.correlation_id,
            flow=gateway_order.flow.value,
            order_id=gateway_order.order_id,
            merchant_order_id=gateway_order.merchant_order_id,
            trade_no=gateway_order.trade_no,
            status=gateway_order.status.value,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            refunded_amount=gateway_order.refunded_amount,
            checkout_url=gateway_order.checkout_url,
            return_url=gateway_order.return_url,
            created_at=gateway_order.created_at,
            updated_at=gateway_order.updated_at,
        )


class OrderPaymentsResponse(BaseModel):
    """All gateway payments created for a business order."""
    order_id: int
    count: int
    payments: List[PaymentStatusResponse]


class RefundResponse(BaseModel):
    correlation_id: str
    refund_amount: Decimal
    status: str
    message: str = "Refund processed successfully"


class TradeQueryResponse(BaseModel):
    """Live (or ledger fallback) view of a C2B trade."""
    out_trade_no: str
    trade_no: Optional[str] = None
    trade_status: str
    total_amount: Optional[str] = None
    subject: Optional[str] = None
    gmt_create: Optional[str] = None
    gmt_payment: Optional[str] = None
    source: str = "gateway"


class RetryTaskResponse(BaseModel):
    """Retry queue entry, for operators."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    flow: str
    attempt_count: int
    next_attempt_at: datetime
    status: str
    last_error: Optional[str]
    payload: dict
    created_at: Optional[datetime]

    @field_validator("flow", "status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    error_category: Optional[str] = None
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    gateway_b2b: str
    gateway_c2b: str
    alert_service: str
    timestamp: datetime
