"""
Mock Telebirr Gateway Client

Stands in for both Telebirr flows without making network calls.
Used in development mode (ENV_MODE=development) to:
    - Exercise the full create -> callback -> reconcile loop locally
    - Develop without gateway credentials or connectivity

Behavior:
    - Optional simulated latency
    - Telebirr-shaped ids (prepay ids for B2B, REST_C2B_ trade numbers for C2B)
    - Checkout URLs signed with the same signer as the real clients; there
      is no hosted pay page, so they point at the payment status endpoint
      (GET /api/v1/payments/telebirr/status/{correlation_id})
    - Trade queries answered from the local ledger

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import random
import uuid
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode

from app.core.config import Settings
from app.models import GatewayFlow
from app.services.payment.base import (
    BaseGatewayClient,
    GatewayOrderResult,
    TradeQueryResult,
)
from app.services.payment.ledger import GatewayLedger
from app.services.payment.signing import RequestSigner
from app.services.payment.state import LEDGER_TRADE_STATUS

logger = logging.getLogger(__name__)

MOCK_GMT_FORMAT = "%Y-%m-%d %H:%M:%S"
STATUS_PATH = "/api/v1/payments/telebirr/status"


class MockGatewayClient(BaseGatewayClient):
    """
    Mock implementation of a Telebirr gateway client.

    Attributes:
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> client = MockGatewayClient(GatewayFlow.B2B, signer, ledger)
        >>> gateway_order = await client.create_order(42, Decimal("100.50"), "Lunch")
        >>> gateway_order.correlation_id
        'mock_prepay_3f2a...'
    """

    def __init__(
        self,
        flow: GatewayFlow,
        signer: RequestSigner,
        ledger: GatewayLedger,
        settings: Optional[Settings] = None,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        super().__init__(signer, ledger, settings)
        self._flow = flow
        self.merchant_prefix = "REST_C2B" if flow == GatewayFlow.C2B else "REST"
        self.min_latency = min_latency
        self.max_latency = max_latency

        logger.info(
            f"MockGatewayClient initialized "
            f"(flow={flow.value}, latency={min_latency}-{max_latency}s)"
        )

    @property
    def flow(self) -> GatewayFlow:
        return self._flow

    @property
    def provider_name(self) -> str:
        return f"mock-{self._flow.value}"

    async def _simulate_latency(self) -> None:
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _checkout_url(self, path: str, query: dict[str, str]) -> str:
        if self.signer.can_sign:
            query = self.signer.sign_params(query)
        return f"{self.settings.app_base_url}{path}?{urlencode(query)}"

    async def _request_order(
        self,
        order_id: int,
        amount: Decimal,
        subject: str,
        body: Optional[str],
    ) -> GatewayOrderResult:
        await self._simulate_latency()
        merchant_order_id = self.new_merchant_order_id(order_id)

        if self._flow == GatewayFlow.B2B:
            prepay_id = f"mock_prepay_{uuid.uuid4().hex[:24]}"
            checkout_url = self._checkout_url(f"{STATUS_PATH}/{prepay_id}", {
                "prepay_id": prepay_id,
                "merch_order_id": merchant_order_id,
                "appid": self.settings.telebirr_app_id or "mock-app",
                "nonce": uuid.uuid4().hex,
                "timestamp": self.gateway_timestamp(),
            })
            logger.debug(f"Mock: prepay {prepay_id} for order #{order_id}")
            return GatewayOrderResult(
                correlation_id=prepay_id,
                merchant_order_id=merchant_order_id,
                checkout_url=checkout_url,
            )

        trade_no = f"mock_trade_{uuid.uuid4().hex[:24]}"
        checkout_url = self._checkout_url(f"{STATUS_PATH}/{merchant_order_id}", {
            "out_trade_no": merchant_order_id,
            "total_amount": self.format_amount(amount),
        })
        logger.debug(f"Mock: H5 trade {merchant_order_id} for order #{order_id}")
        return GatewayOrderResult(
            correlation_id=merchant_order_id,
            merchant_order_id=merchant_order_id,
            checkout_url=checkout_url,
            trade_no=trade_no,
        )

    async def query_trade(self, correlation_id: str) -> TradeQueryResult:
        """Answer from the ledger, as the gateway would after our callbacks."""
        await self._simulate_latency()
        gateway_order = await self.ledger.get(correlation_id, self._flow)
        return TradeQueryResult(
            trade_no=gateway_order.trade_no,
            trade_status=LEDGER_TRADE_STATUS[gateway_order.status],
            total_amount=self.format_amount(gateway_order.amount),
            subject=gateway_order.subject,
            gmt_create=(
                gateway_order.created_at.strftime(MOCK_GMT_FORMAT)
                if gateway_order.created_at else None
            ),
        )

    async def health_check(self) -> bool:
        return True
