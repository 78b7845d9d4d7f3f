"""
Tests for the gateway order state machine.
"""

import logging

import pytest

from app.models import GatewayOrderStatus, OrderStatus
from app.services.payment.state import (
    business_status_for,
    can_transition,
    map_trade_status,
)


@pytest.mark.parametrize(
    "trade_status, expected",
    [
        ("TRADE_SUCCESS", GatewayOrderStatus.COMPLETED),
        ("TRADE_CLOSED", GatewayOrderStatus.FAILED),
        ("WAIT_BUYER_PAY", GatewayOrderStatus.PENDING),
    ],
)
def test_known_trade_statuses(trade_status, expected):
    assert map_trade_status(trade_status) == expected


def test_unknown_trade_status_is_pending_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="app.services.payment.state"):
        assert map_trade_status("TRADE_FROZEN") == GatewayOrderStatus.PENDING
        assert map_trade_status(None) == GatewayOrderStatus.PENDING
    assert "Unknown trade status 'TRADE_FROZEN'" in caplog.text


def test_allowed_transitions():
    assert can_transition(GatewayOrderStatus.PENDING, GatewayOrderStatus.COMPLETED)
    assert can_transition(GatewayOrderStatus.PENDING, GatewayOrderStatus.FAILED)
    assert can_transition(GatewayOrderStatus.COMPLETED, GatewayOrderStatus.REFUNDED)


def test_disallowed_transitions():
    assert not can_transition(GatewayOrderStatus.COMPLETED, GatewayOrderStatus.FAILED)
    assert not can_transition(GatewayOrderStatus.COMPLETED, GatewayOrderStatus.PENDING)
    assert not can_transition(GatewayOrderStatus.FAILED, GatewayOrderStatus.COMPLETED)
    assert not can_transition(GatewayOrderStatus.PENDING, GatewayOrderStatus.REFUNDED)
    assert not can_transition(GatewayOrderStatus.PENDING, GatewayOrderStatus.PENDING)


def test_business_status_mapping():
    assert business_status_for(GatewayOrderStatus.COMPLETED) == OrderStatus.PAID
    assert business_status_for(GatewayOrderStatus.FAILED) == OrderStatus.CANCELLED
    assert business_status_for(GatewayOrderStatus.REFUNDED) == OrderStatus.REFUNDED
