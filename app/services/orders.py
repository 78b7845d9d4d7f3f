"""
Business Order Service

The payment core touches business orders through exactly two operations:
reading an order and moving its status. Both take the caller's session so
the status change joins whatever transaction the caller has open (the
reconciliation transaction in particular).

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models import Order, OrderStatus

logger = logging.getLogger(__name__)


class OrderService(ABC):
    """Collaborator interface consumed by the payment core."""

    @abstractmethod
    async def get_order(self, session: AsyncSession, order_id: int) -> Order:
        """Return the order or raise NotFoundError."""
        pass

    @abstractmethod
    async def update_order_status(
        self,
        session: AsyncSession,
        order_id: int,
        status: OrderStatus,
    ) -> Order:
        """Set the order status inside the caller's transaction."""
        pass


class SQLOrderService(OrderService):
    """OrderService backed by the `orders` table."""

    async def get_order(self, session: AsyncSession, order_id: int) -> Order:
        result = await session.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found")
        return order

    async def update_order_status(
        self,
        session: AsyncSession,
        order_id: int,
        status: OrderStatus,
    ) -> Order:
        result = await session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found")

        previous = order.status
        order.status = status
        order.payment_status = status.value
        await session.flush()

        logger.info(f"Order #{order_id}: {previous.value} -> {status.value}")
        return order
