"""
Telebirr B2B (web checkout) Client

Flow:
    1. Obtain a bearer token (client-credentials, cached)
    2. POST a signed prepaid order -> prepay_id
    3. Build the signed web-checkout URL for the customer

The prepay_id is the correlation id: B2B callbacks carry it back.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode

import httpx

from app.core.config import Settings
from app.core.exceptions import GatewayError
from app.models import GatewayFlow
from app.services.payment.base import BaseGatewayClient, GatewayOrderResult
from app.services.payment.ledger import GatewayLedger
from app.services.payment.signing import RequestSigner
from app.services.payment.tokens import AccessToken, AccessTokenCache

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"


class TelebirrB2BClient(BaseGatewayClient):
    """
    Real Telebirr B2B integration.

    Attributes:
        token_cache: Bearer token holder, renewed shortly before expiry
    """

    def __init__(
        self,
        signer: RequestSigner,
        ledger: GatewayLedger,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[AccessTokenCache] = None,
    ):
        super().__init__(signer, ledger, settings, http_client)
        self.token_cache = token_cache or AccessTokenCache(
            refresh_skew=timedelta(seconds=self.settings.telebirr_token_refresh_skew)
        )
        logger.info("TelebirrB2BClient initialized")

    @property
    def flow(self) -> GatewayFlow:
        return GatewayFlow.B2B

    @property
    def provider_name(self) -> str:
        return "telebirr-b2b"

    # =========================================================================
    # TOKEN
    # =========================================================================

    async def _acquire_token(self) -> AccessToken:
        """Client-credentials exchange against the token endpoint."""
        payload = await self._post(
            self.settings.telebirr_b2b_token_url,
            data={"grant_type": "client_credentials"},
            auth=(self.settings.telebirr_app_id or "", self.settings.telebirr_app_secret or ""),
        )

        access_token = payload.get("access_token")
        if not access_token:
            raise GatewayError(
                "Token endpoint returned no access_token",
                detail=str(payload.get("msg") or payload.get("error") or ""),
            )
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0

        return AccessToken(
            access_token=access_token,
            expires_at=self.token_cache.now() + timedelta(seconds=expires_in),
            token_type=payload.get("token_type") or "Bearer",
        )

    async def get_token(self) -> AccessToken:
        return await self.token_cache.get(self._acquire_token)

    # =========================================================================
    # ORDER
    # =========================================================================

    async def _request_order(
        self,
        order_id: int,
        amount: Decimal,
        subject: str,
        body: Optional[str],
    ) -> GatewayOrderResult:
        token = await self.get_token()

        merch_order_id = self.new_merchant_order_id(order_id)
        params = {
            "appid": self.settings.telebirr_app_id,
            "merch_order_id": merch_order_id,
            "total_amount": self.format_amount(amount),
            "subject": subject,
            "body": body,
            "notify_url": self.settings.b2b_notify_url,
            "return_url": self.return_url,
            "timeout_express": self.settings.telebirr_timeout_express,
            "nonce": uuid.uuid4().hex,
            "timestamp": self.gateway_timestamp(),
        }
        request = self.signer.sign_params(
            {k: v for k, v in params.items() if v is not None}
        )

        payload = await self._post(
            self.settings.telebirr_b2b_order_url,
            json=request,
            headers={"Authorization": token.authorization_header},
        )

        code = str(payload.get("code", ""))
        if code != SUCCESS_CODE:
            logger.error(
                f"Telebirr B2B rejected order #{order_id}: "
                f"code={code} msg={payload.get('msg')}"
            )
            raise GatewayError(
                f"Telebirr order creation failed: {payload.get('msg') or 'unknown error'}",
                code=code,
            )

        prepay_id = payload.get("prepay_id")
        if not prepay_id:
            raise GatewayError("Telebirr accepted the order but returned no prepay_id", code=code)

        return GatewayOrderResult(
            correlation_id=prepay_id,
            merchant_order_id=merch_order_id,
            checkout_url=self.build_checkout_url(prepay_id, merch_order_id),
            raw=payload,
        )

    def build_checkout_url(self, prepay_id: str, merch_order_id: str) -> str:
        """Web-checkout URL carrying a freshly signed query string."""
        query = self.signer.sign_params({
            "prepay_id": prepay_id,
            "merch_order_id": merch_order_id,
            "appid": self.settings.telebirr_app_id or "",
            "nonce": uuid.uuid4().hex,
            "timestamp": self.gateway_timestamp(),
        })
        return f"{self.settings.telebirr_b2b_checkout_url}?{urlencode(query)}"
