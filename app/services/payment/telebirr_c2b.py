"""
Telebirr C2B (H5) Client

Every call is a form-encoded envelope posted to the gateway:

    appid, method, format, charset, sign_type, sign, timestamp,
    version, notify_url, biz_content (JSON)

Our out_trade_no is the correlation id; H5 callbacks carry it back
together with the passback_params we attach at creation.

Author: Khalil Bannouri
Version: 4.0.0
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from app.core.exceptions import GatewayError
from app.models import GatewayFlow
from app.services.payment.base import (
    BaseGatewayClient,
    GatewayOrderResult,
    TradeQueryResult,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = "10000"
METHOD_H5PAY = "telebirr.payment.h5pay"
METHOD_QUERY = "telebirr.payment.query"
ENVELOPE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class TelebirrC2BClient(BaseGatewayClient):
    """Real Telebirr H5 (customer-to-business) integration."""

    merchant_prefix = "REST_C2B"

    @property
    def flow(self) -> GatewayFlow:
        return GatewayFlow.C2B

    @property
    def provider_name(self) -> str:
        return "telebirr-c2b"

    def _envelope(
        self,
        method: str,
        biz_content: dict,
        notify_url: Optional[str] = None,
    ) -> dict[str, str]:
        """Signed form fields for one gateway call."""
        fields = {
            "appid": self.settings.telebirr_app_id or "",
            "method": method,
            "format": "JSON",
            "charset": "utf-8",
            "timestamp": datetime.now().strftime(ENVELOPE_TIMESTAMP_FORMAT),
            "version": "1.0",
            "biz_content": json.dumps(biz_content, separators=(",", ":"), ensure_ascii=False),
        }
        if notify_url:
            fields["notify_url"] = notify_url
        return self.signer.sign_params(fields)

    def _check(self, payload: dict, action: str) -> None:
        code = str(payload.get("code", ""))
        if code == SUCCESS_CODE:
            return
        message = payload.get("sub_msg") or payload.get("msg") or "unknown error"
        logger.error(
            f"Telebirr C2B {action} failed: code={code} "
            f"sub_code={payload.get('sub_code')} msg={message}"
        )
        raise GatewayError(f"Telebirr {action} failed: {message}", code=code)

    async def _request_order(
        self,
        order_id: int,
        amount: Decimal,
        subject: str,
        body: Optional[str],
    ) -> GatewayOrderResult:
        out_trade_no = self.new_merchant_order_id(order_id)
        biz_content = {
            "out_trade_no": out_trade_no,
            "subject": subject,
            "total_amount": self.format_amount(amount),
            "timeout_express": self.settings.telebirr_timeout_express,
            "passback_params": f"order_id={order_id}",
        }
        if body:
            biz_content["body"] = body

        payload = await self._post(
            self.settings.telebirr_c2b_unified_order_url,
            data=self._envelope(METHOD_H5PAY, biz_content, self.settings.c2b_notify_url),
        )
        self._check(payload, "H5 payment creation")

        h5_pay_url = payload.get("h5_pay_url")
        if not h5_pay_url:
            raise GatewayError("Telebirr accepted the payment but returned no h5_pay_url")

        return GatewayOrderResult(
            correlation_id=out_trade_no,
            merchant_order_id=out_trade_no,
            checkout_url=h5_pay_url,
            trade_no=payload.get("trade_no") or None,
            raw=payload,
        )

    async def query_trade(self, correlation_id: str) -> TradeQueryResult:
        """
        Live trade state from the gateway.

        Raises:
            GatewayError: Transport failure or non-success code
        """
        payload = await self._post(
            self.settings.c2b_query_url,
            data=self._envelope(METHOD_QUERY, {"out_trade_no": correlation_id}),
        )
        self._check(payload, "trade query")

        return TradeQueryResult(
            trade_no=payload.get("trade_no") or None,
            trade_status=payload.get("trade_status") or "",
            total_amount=payload.get("total_amount"),
            subject=payload.get("subject"),
            gmt_create=payload.get("gmt_create"),
            gmt_payment=payload.get("gmt_payment"),
        )
