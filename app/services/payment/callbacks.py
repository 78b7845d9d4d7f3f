"""
Telebirr Callback Processor

Handles the asynchronous notifications Telebirr posts once a customer
has paid (or abandoned) a checkout:

    1. verify the RSA signature           -> AuthenticationError, nothing stored
    2. find the payment by correlation id -> NotFoundError + operator alert
    3. append the notification to the log
    4. reconcile: map the trade status and move the gateway order and the
       business order together, under row locks, in one transaction
    5. if step 4 fails, park the callback in the retry queue

Steps 1-2 are terminal for a delivery. Once they pass the gateway gets its
"success" answer, whether step 4 applied or was queued.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qsl

from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    AuthenticationError,
    NotFoundError,
    PaymentGatewayError,
)
from app.models import GatewayFlow, GatewayOrder, GatewayOrderStatus
from app.services.notifications import BaseNotificationService, get_notification_service
from app.services.orders import OrderService
from app.services.payment.ledger import GatewayLedger, parse_amount
from app.services.payment.retry_queue import RetryQueue
from app.services.payment.signing import RequestSigner
from app.services.payment.state import (
    business_status_for,
    can_transition,
    map_trade_status,
)

logger = logging.getLogger(__name__)

CORRELATION_KEYS = {
    GatewayFlow.B2B: "prepay_id",
    GatewayFlow.C2B: "out_trade_no",
}
GENERIC_CORRELATION_KEY = "correlation_id"


def correlation_id_of(flow: GatewayFlow, payload: Mapping[str, Any]) -> Optional[str]:
    """The flow-specific id, falling back to a generic `correlation_id`."""
    return payload.get(CORRELATION_KEYS[flow]) or payload.get(GENERIC_CORRELATION_KEY) or None


def parse_passback(passback_params: Optional[str]) -> dict[str, str]:
    """`order_id=42&table=4` -> {"order_id": "42", "table": "4"}"""
    if not passback_params:
        return {}
    return dict(parse_qsl(passback_params, keep_blank_values=True))


@dataclass
class CallbackOutcome:
    """What happened to one callback delivery."""
    correlation_id: str
    previous_status: GatewayOrderStatus
    status: GatewayOrderStatus
    applied: bool
    queued: bool = False
    retry_task_id: Optional[str] = None


class CallbackProcessor:
    """
    Verifies and applies gateway callbacks.

    Attributes:
        signer: Verifies callback signatures with the gateway public key
        ledger: Gateway order and notification storage
        retry_queue: Where callbacks that failed to reconcile are parked
        order_service: Business order collaborator, joined to the
            reconciliation transaction
    """

    def __init__(
        self,
        signer: RequestSigner,
        ledger: GatewayLedger,
        retry_queue: RetryQueue,
        order_service: Optional[OrderService] = None,
        alerts: Optional[BaseNotificationService] = None,
    ):
        self.signer = signer
        self.ledger = ledger
        self.retry_queue = retry_queue
        self.order_service = order_service or ledger.order_service
        self._alerts = alerts

    @property
    def alerts(self) -> BaseNotificationService:
        if self._alerts is None:
            self._alerts = get_notification_service()
        return self._alerts

    async def process(self, flow: GatewayFlow, payload: Mapping[str, Any]) -> CallbackOutcome:
        """
        Handle one callback delivery.

        Raises:
            AuthenticationError: Signature missing or invalid
            NotFoundError: No payment matches the correlation id
            TransientStorageError: The notification could not be logged, or
                reconciliation failed and the retry task could not be stored
        """
        params = {key: str(value) for key, value in payload.items()}

        if not self.signer.verify(params, params.get("sign")):
            logger.warning(
                f"Rejected {flow.value} callback with invalid signature "
                f"(correlation id {correlation_id_of(flow, params)!r})"
            )
            raise AuthenticationError("Invalid notification signature")

        correlation_id = correlation_id_of(flow, params)
        gateway_order = await self.ledger.find(correlation_id, flow) if correlation_id else None
        if gateway_order is None:
            logger.error(f"Authenticated {flow.value} callback for unknown payment {correlation_id!r}")
            await self.alerts.send_operator_alert(
                "Telebirr callback for unknown payment",
                f"A signed {flow.value} callback referenced correlation id "
                f"{correlation_id!r}, which is not in the ledger.",
            )
            raise NotFoundError(f"Payment {correlation_id} not found")

        # Without the notification row the delivery is not acknowledged; the
        # TransientStorageError (503) makes the gateway redeliver.
        await self.ledger.append_notification(flow, correlation_id, params)

        try:
            return await self.reconcile(flow, params)
        except (PaymentGatewayError, SQLAlchemyError) as e:
            logger.exception(f"Reconciliation of {correlation_id} failed, queueing retry")
            task = await self.retry_queue.enqueue(flow, params, error=f"{type(e).__name__}: {e}")
            return CallbackOutcome(
                correlation_id=correlation_id,
                previous_status=gateway_order.status,
                status=gateway_order.status,
                applied=False,
                queued=True,
                retry_task_id=task.id,
            )

    async def reconcile(self, flow: GatewayFlow, payload: Mapping[str, Any]) -> CallbackOutcome:
        """
        Apply a verified callback to the ledger and the business order.

        Idempotent: replays and transitions the state machine does not
        allow leave both rows untouched. Used directly by the retry worker.
        """
        correlation_id = correlation_id_of(flow, payload)
        if not correlation_id:
            raise NotFoundError("Callback carries no correlation id")
        target = map_trade_status(payload.get("trade_status"))

        async with self.ledger.session_factory() as session:
            async with session.begin():
                gateway_order = await GatewayLedger.lock(session, correlation_id)
                if gateway_order is None:
                    raise NotFoundError(f"Payment {correlation_id} not found")

                self._check_consistency(flow, gateway_order, payload)

                trade_no = payload.get("trade_no")
                if trade_no and not gateway_order.trade_no:
                    gateway_order.trade_no = trade_no

                previous = gateway_order.status
                if previous == target:
                    logger.info(f"Payment {correlation_id} already {target.value}, nothing to do")
                    applied = False
                elif not can_transition(previous, target):
                    logger.info(
                        f"Ignoring {previous.value} -> {target.value} for payment {correlation_id}"
                    )
                    applied = False
                else:
                    gateway_order.status = target
                    await self.order_service.update_order_status(
                        session, gateway_order.order_id, business_status_for(target)
                    )
                    applied = True

        if applied:
            logger.info(f"Payment {correlation_id}: {previous.value} -> {target.value}")
        return CallbackOutcome(
            correlation_id=correlation_id,
            previous_status=previous,
            status=target if applied else previous,
            applied=applied,
        )

    @staticmethod
    def _check_consistency(
        flow: GatewayFlow,
        gateway_order: GatewayOrder,
        payload: Mapping[str, Any],
    ) -> None:
        """Log, but do not reject, callbacks that disagree with the ledger."""
        amount = parse_amount(payload.get("total_amount"))
        if amount is not None and amount != gateway_order.amount:
            logger.warning(
                f"Amount mismatch for {gateway_order.correlation_id}: "
                f"callback {amount}, ledger {gateway_order.amount}"
            )

        if flow == GatewayFlow.C2B:
            passback_order_id = parse_passback(payload.get("passback_params")).get("order_id")
            if passback_order_id and passback_order_id != str(gateway_order.order_id):
                logger.warning(
                    f"passback_params order_id {passback_order_id} does not match "
                    f"order #{gateway_order.order_id} for {gateway_order.correlation_id}; "
                    f"keeping the ledger's order"
                )
