"""Small helpers shared by the test modules."""

from datetime import datetime

from sqlalchemy import select

from app.models import GatewayNotification, GatewayOrder, Order


def naive(value: datetime) -> datetime:
    """SQLite hands datetimes back without tzinfo; everything here is UTC."""
    return value.replace(tzinfo=None)


async def load_order(session_factory, order_id: int) -> Order:
    async with session_factory() as session:
        return await session.get(Order, order_id)


async def load_gateway_order(session_factory, correlation_id: str) -> GatewayOrder:
    async with session_factory() as session:
        result = await session.execute(
            select(GatewayOrder).where(GatewayOrder.correlation_id == correlation_id)
        )
        return result.scalar_one()


async def count_notifications(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(GatewayNotification))
        return len(result.scalars().all())
