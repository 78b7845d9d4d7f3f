"""
Payment Service Factory

Single entry point for the Telebirr payment core. The rest of the
application never constructs clients, signers or processors directly.

Usage:
    from app.services.payment import get_gateway_client, get_callback_processor

    client = get_gateway_client(GatewayFlow.C2B)
    gateway_order = await client.create_order(42, Decimal("100.50"), "Lunch")

    outcome = await get_callback_processor().process(GatewayFlow.C2B, form)

Environment Switching:
    - ENV_MODE=development -> MockGatewayClient (no API calls); an ephemeral
      key pair is generated when no keys are configured
    - ENV_MODE=staging     -> TelebirrB2BClient / TelebirrC2BClient (test endpoints)
    - ENV_MODE=production  -> TelebirrB2BClient / TelebirrC2BClient (live endpoints)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.core.exceptions import ConfigurationError
from app.models import GatewayFlow
from app.services.payment.base import (
    BaseGatewayClient,
    GatewayOrderResult,
    TradeQueryResult,
)
from app.services.payment.callbacks import CallbackOutcome, CallbackProcessor
from app.services.payment.ledger import GatewayLedger
from app.services.payment.mock import MockGatewayClient
from app.services.payment.retry_queue import RetryQueue, RetryRunSummary
from app.services.payment.signing import RequestSigner
from app.services.payment.telebirr_b2b import TelebirrB2BClient
from app.services.payment.telebirr_c2b import TelebirrC2BClient

logger = logging.getLogger(__name__)


@lru_cache()
def get_signer() -> RequestSigner:
    """
    Signer loaded from the configured key material.

    Raises:
        ConfigurationError: Keys missing outside development, or unparsable
    """
    settings = get_settings()

    if settings.telebirr_private_key or settings.telebirr_public_key:
        return RequestSigner(
            private_key_pem=settings.telebirr_private_key,
            public_key_pem=settings.telebirr_public_key,
        )

    if settings.is_development:
        logger.warning("No Telebirr keys configured, using an ephemeral development key pair")
        return RequestSigner.ephemeral()

    raise ConfigurationError(
        "Telebirr key material is not configured",
        detail="Set TELEBIRR_PRIVATE_KEY and TELEBIRR_PUBLIC_KEY",
    )


@lru_cache()
def get_ledger() -> GatewayLedger:
    return GatewayLedger()


@lru_cache()
def get_retry_queue() -> RetryQueue:
    return RetryQueue()


@lru_cache()
def get_gateway_client(flow: GatewayFlow) -> BaseGatewayClient:
    """
    Get the configured client for a Telebirr flow.

    The instance is cached so the B2B access token is shared by every
    request in the process.
    """
    settings = get_settings()
    signer = get_signer()
    ledger = get_ledger()

    if settings.is_development:
        logger.info(f"Gateway Client ({flow.value}): Using MockGatewayClient (development mode)")
        return MockGatewayClient(flow, signer, ledger, min_latency=0.1, max_latency=0.3)

    logger.info(
        f"Gateway Client ({flow.value}): Using Telebirr {flow.value.upper()} "
        f"({settings.env_mode.value} mode)"
    )
    if flow == GatewayFlow.B2B:
        return TelebirrB2BClient(signer, ledger)
    return TelebirrC2BClient(signer, ledger)


@lru_cache()
def get_callback_processor() -> CallbackProcessor:
    return CallbackProcessor(get_signer(), get_ledger(), get_retry_queue())


def reset_payment_services() -> None:
    """
    Clear every cached payment component.

    Useful for testing or when configuration changes at runtime.
    """
    for factory in (
        get_signer,
        get_ledger,
        get_retry_queue,
        get_gateway_client,
        get_callback_processor,
    ):
        factory.cache_clear()
    logger.debug("Payment service caches cleared")


__all__ = [
    "get_signer",
    "get_ledger",
    "get_retry_queue",
    "get_gateway_client",
    "get_callback_processor",
    "reset_payment_services",
    "BaseGatewayClient",
    "GatewayOrderResult",
    "TradeQueryResult",
    "CallbackOutcome",
    "CallbackProcessor",
    "GatewayLedger",
    "MockGatewayClient",
    "RetryQueue",
    "RetryRunSummary",
    "RequestSigner",
    "TelebirrB2BClient",
    "TelebirrC2BClient",
]
