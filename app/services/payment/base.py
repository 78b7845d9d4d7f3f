"""
Gateway Client Abstract Base Class

Defines the contract shared by every Telebirr integration (B2B, C2B and the
development mock). Subclasses only build and send the provider-specific
request; the base class validates the amount, times the call and records
the resulting gateway order in the ledger before returning it.

Design Pattern: Template Method
    - create_order() is fixed: validate -> _request_order() -> persist
    - providers differ only in envelope, endpoint and response parsing

Order creation is NOT retried here. Repeating it may create a second
gateway order, so retrying is left to the caller.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import GatewayError
from app.models import GatewayFlow, GatewayOrder
from app.services.payment.ledger import GatewayLedger
from app.services.payment.signing import RequestSigner

logger = logging.getLogger(__name__)


@dataclass
class GatewayOrderResult:
    """
    What the gateway returned for an accepted order.

    Attributes:
        correlation_id: prepay_id (B2B) or out_trade_no (C2B)
        merchant_order_id: Our own id for the gateway order
        checkout_url: Where the customer completes the payment
        trade_no: Gateway transaction id, when returned synchronously
        response_time_ms: Time spent talking to the gateway
        raw: Decoded provider response, for debugging
    """
    correlation_id: str
    merchant_order_id: str
    checkout_url: Optional[str]
    trade_no: Optional[str] = None
    response_time_ms: float = 0.0
    raw: dict = field(default_factory=dict)


@dataclass
class TradeQueryResult:
    """Gateway view of a trade."""
    trade_no: Optional[str]
    trade_status: str
    total_amount: Optional[str] = None
    subject: Optional[str] = None
    gmt_create: Optional[str] = None
    gmt_payment: Optional[str] = None


class BaseGatewayClient(ABC):
    """
    Abstract base class for Telebirr gateway clients.

    Attributes:
        signer: Signs outbound requests with the merchant key
        ledger: Where accepted orders are recorded
        settings: Application settings
    """

    merchant_prefix = "REST"

    def __init__(
        self,
        signer: RequestSigner,
        ledger: GatewayLedger,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.signer = signer
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._http_client = http_client

    @property
    @abstractmethod
    def flow(self) -> GatewayFlow:
        """Which Telebirr flow this client speaks."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g. "telebirr-b2b", "mock-c2b")."""
        pass

    @property
    def return_url(self) -> Optional[str]:
        """Where the customer lands after checkout, stored with the order."""
        if self.flow == GatewayFlow.B2B:
            return self.settings.telebirr_b2b_return_url
        return self.settings.telebirr_c2b_return_url

    # =========================================================================
    # HELPERS
    # =========================================================================

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.telebirr_http_timeout
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def new_merchant_order_id(self, seed: Any) -> str:
        """
        Seed plus a millisecond timestamp plus a short random suffix.

        The suffix keeps two requests for the same seed within the same
        millisecond distinct.
        """
        millis = time.time_ns() // 1_000_000
        return f"{self.merchant_prefix}_{seed}_{millis}_{uuid.uuid4().hex[:4]}"

    def format_amount(self, amount: Decimal) -> str:
        return str(amount.quantize(self.settings.amount_quantum, rounding=ROUND_HALF_UP))

    @staticmethod
    def gateway_timestamp() -> str:
        return str(int(time.time()))

    async def _post(
        self,
        url: str,
        *,
        json: Optional[dict] = None,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
        auth: Optional[tuple[str, str]] = None,
    ) -> dict:
        """
        One POST to the gateway, decoded as JSON.

        Transport failures, non-2xx responses and unparsable bodies all
        surface as GatewayError.
        """
        try:
            response = await self.http.post(url, json=json, data=data, headers=headers, auth=auth)
        except httpx.TimeoutException as e:
            logger.error(f"{self.provider_name}: timeout calling {url}")
            raise GatewayError("Gateway request timed out", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.error(f"{self.provider_name}: transport error calling {url} - {e}")
            raise GatewayError("Gateway temporarily unavailable", detail=str(e)) from e

        if response.status_code >= 400:
            logger.error(
                f"{self.provider_name}: HTTP {response.status_code} from {url}"
            )
            raise GatewayError(
                f"Gateway returned HTTP {response.status_code}",
                detail=response.text[:500],
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError("Gateway returned an unparsable response", detail=response.text[:500]) from e
        if not isinstance(payload, dict):
            raise GatewayError("Gateway returned an unexpected response shape")
        return payload

    # =========================================================================
    # ORDER CREATION
    # =========================================================================

    async def create_order(
        self,
        order_id: int,
        amount: Decimal,
        subject: str,
        body: Optional[str] = None,
    ) -> GatewayOrder:
        """
        Create a payment at the gateway and record it as pending.

        The ledger row is written before returning, so the correlation id
        survives even if the caller's HTTP response is lost.

        Raises:
            ValueError: Non-positive amount
            GatewayError: Gateway rejected the request or was unreachable
            TransientStorageError: Order accepted but could not be recorded
        """
        amount = Decimal(str(amount)).quantize(
            self.settings.amount_quantum, rounding=ROUND_HALF_UP
        )
        if amount <= 0:
            raise ValueError("Amount must be greater than 0")

        start_time = datetime.now()
        logger.info(
            f"{self.provider_name}: creating payment for order #{order_id} "
            f"({amount} {self.settings.telebirr_currency})"
        )

        result = await self._request_order(order_id, amount, subject, body)
        result.response_time_ms = (datetime.now() - start_time).total_seconds() * 1000

        logger.info(
            f"{self.provider_name}: gateway accepted {result.correlation_id} "
            f"in {result.response_time_ms:.0f}ms"
        )

        return await self.ledger.record_order(
            flow=self.flow,
            order_id=order_id,
            correlation_id=result.correlation_id,
            merchant_order_id=result.merchant_order_id,
            amount=amount,
            currency=self.settings.telebirr_currency,
            subject=subject,
            body=body,
            timeout_express=self.settings.telebirr_timeout_express,
            checkout_url=result.checkout_url,
            trade_no=result.trade_no,
            return_url=self.return_url,
        )

    @abstractmethod
    async def _request_order(
        self,
        order_id: int,
        amount: Decimal,
        subject: str,
        body: Optional[str],
    ) -> GatewayOrderResult:
        """Build, sign and send the provider request; parse the response."""
        pass

    async def query_trade(self, correlation_id: str) -> TradeQueryResult:
        """Ask the gateway for the live state of a trade."""
        raise GatewayError(f"{self.provider_name} does not support trade queries")

    async def health_check(self) -> bool:
        """
        Verify the client is usable.

        Real clients only check local prerequisites; Telebirr exposes no
        side-effect free ping.
        """
        return self.signer.can_sign
