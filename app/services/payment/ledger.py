"""
Gateway Order Ledger

Persistence for Telebirr payments:
    - gateway orders, keyed by the gateway correlation id
    - the append-only log of verified notifications
    - the status query surface used by the rest of the application
    - refunds of completed payments

Each public method opens its own short transaction. Callers never hold a
ledger transaction across network I/O.
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    TransientStorageError,
)
from app.database import async_session_maker
from app.models import (
    GatewayFlow,
    GatewayNotification,
    GatewayOrder,
    GatewayOrderStatus,
)
from app.schemas import PaymentStatusResponse
from app.services.orders import OrderService, SQLOrderService
from app.services.payment.state import business_status_for, can_transition

logger = logging.getLogger(__name__)

GMT_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning(f"Unparsable amount {value!r} in notification")
        return None


def parse_gmt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, GMT_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        logger.warning(f"Unparsable gmt_payment {value!r} in notification")
        return None


class GatewayLedger:
    """
    Gateway order records and notification log.

    Attributes:
        session_factory: Creates the sessions used for every operation
        order_service: Business order collaborator (refunds only)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        order_service: Optional[OrderService] = None,
    ):
        self.session_factory = session_factory
        self.order_service = order_service or SQLOrderService()

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def record_order(
        self,
        *,
        flow: GatewayFlow,
        order_id: int,
        correlation_id: str,
        merchant_order_id: str,
        amount: Decimal,
        currency: str,
        subject: str,
        body: Optional[str],
        timeout_express: str,
        checkout_url: Optional[str],
        trade_no: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> GatewayOrder:
        """Persist a freshly created gateway order in `pending`."""
        gateway_order = GatewayOrder(
            flow=flow,
            order_id=order_id,
            correlation_id=correlation_id,
            merchant_order_id=merchant_order_id,
            trade_no=trade_no,
            amount=amount,
            currency=currency,
            subject=subject,
            body=body,
            timeout_express=timeout_express,
            checkout_url=checkout_url,
            return_url=return_url,
            status=GatewayOrderStatus.PENDING,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(gateway_order)
                await session.refresh(gateway_order)
        except IntegrityError as e:
            logger.error(f"Gateway order {correlation_id} could not be recorded: {e}")
            raise TransientStorageError(
                f"Gateway order {correlation_id} already recorded", detail=str(e.orig)
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Gateway order {correlation_id} could not be recorded: {e}")
            raise TransientStorageError("Failed to record gateway order", detail=str(e)) from e

        logger.info(
            f"Recorded {flow.value} gateway order {correlation_id} "
            f"for order #{order_id} ({amount} {currency})"
        )
        return gateway_order

    async def find(
        self,
        correlation_id: str,
        flow: Optional[GatewayFlow] = None,
    ) -> Optional[GatewayOrder]:
        query = select(GatewayOrder).where(GatewayOrder.correlation_id == correlation_id)
        if flow is not None:
            query = query.where(GatewayOrder.flow == flow)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get(
        self,
        correlation_id: str,
        flow: Optional[GatewayFlow] = None,
    ) -> GatewayOrder:
        gateway_order = await self.find(correlation_id, flow)
        if gateway_order is None:
            raise NotFoundError(f"Payment {correlation_id} not found")
        return gateway_order

    async def get_status(self, correlation_id: str) -> PaymentStatusResponse:
        """Status, amount, checkout URL and timestamps of one payment."""
        gateway_order = await self.get(correlation_id)
        return PaymentStatusResponse.from_gateway_order(gateway_order)

    async def list_by_business_order(self, order_id: int) -> list[GatewayOrder]:
        """Every gateway order created for a business order, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(GatewayOrder)
                .where(GatewayOrder.order_id == order_id)
                .order_by(GatewayOrder.created_at.asc())
            )
            return list(result.scalars().all())

    @staticmethod
    async def lock(
        session: AsyncSession,
        correlation_id: str,
    ) -> Optional[GatewayOrder]:
        """SELECT ... FOR UPDATE inside the caller's transaction."""
        result = await session.execute(
            select(GatewayOrder)
            .where(GatewayOrder.correlation_id == correlation_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    async def append_notification(
        self,
        flow: GatewayFlow,
        correlation_id: str,
        payload: Mapping[str, str],
    ) -> GatewayNotification:
        """
        Record an authenticated callback.

        Always inserts, even for retransmissions, so the log shows every
        delivery the gateway made.
        """
        notification = GatewayNotification(
            flow=flow,
            correlation_id=correlation_id,
            trade_no=payload.get("trade_no") or None,
            trade_status=payload.get("trade_status") or "",
            amount=parse_amount(payload.get("total_amount")),
            currency=payload.get("currency") or None,
            gmt_payment=parse_gmt(payload.get("gmt_payment")),
            passback_params=payload.get("passback_params") or None,
            signature=payload.get("sign"),
            sign_type=payload.get("sign_type"),
            processed=False,
            payload=dict(payload),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(notification)
        except SQLAlchemyError as e:
            raise TransientStorageError("Failed to record notification", detail=str(e)) from e
        return notification

    async def list_notifications(self, correlation_id: str) -> list[GatewayNotification]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GatewayNotification)
                .where(GatewayNotification.correlation_id == correlation_id)
                .order_by(GatewayNotification.received_at.asc())
            )
            return list(result.scalars().all())

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def refund(
        self,
        correlation_id: str,
        amount: Decimal,
        reason: Optional[str] = None,
    ) -> GatewayOrder:
        """
        Mark a completed payment as refunded.

        The gateway order and its business order move together.

        Raises:
            NotFoundError: Unknown correlation id
            InvalidTransitionError: Payment not completed, or amount out of range
        """
        if amount <= 0:
            raise InvalidTransitionError("Refund amount must be greater than 0")

        async with self.session_factory() as session:
            async with session.begin():
                gateway_order = await self.lock(session, correlation_id)
                if gateway_order is None:
                    raise NotFoundError(f"Payment {correlation_id} not found")

                if not can_transition(gateway_order.status, GatewayOrderStatus.REFUNDED):
                    raise InvalidTransitionError(
                        "Only completed payments can be refunded",
                        detail=f"status={gateway_order.status.value}",
                    )
                if amount > gateway_order.amount:
                    raise InvalidTransitionError(
                        "Refund amount exceeds payment amount",
                        detail=f"amount={gateway_order.amount}",
                    )

                gateway_order.status = GatewayOrderStatus.REFUNDED
                gateway_order.refunded_amount = amount
                gateway_order.refund_reason = reason
                await self.order_service.update_order_status(
                    session,
                    gateway_order.order_id,
                    business_status_for(GatewayOrderStatus.REFUNDED),
                )
            await session.refresh(gateway_order)

        logger.info(f"Payment {correlation_id} refunded ({amount})")
        return gateway_order
