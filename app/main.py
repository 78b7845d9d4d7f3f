"""
FastAPI Application Entry Point

Restaurant Payments - Telebirr Gateway Core
Supports both Mock services (development) and the real Telebirr
B2B / H5 (C2B) gateway (staging, production).

Endpoints (prefix /api/v1/payments/telebirr):
    - POST /{flow}/create: Create a gateway payment for an order
    - POST /{flow}/notify: Gateway callback (form encoded)
    - GET /status/{correlation_id}: Payment status
    - GET /orders/{order_id}: Payments of a business order
    - POST /refund: Refund a completed payment
    - GET /c2b/query/{out_trade_no}: Live C2B trade query
    - GET /retry-tasks/dead-letter: Dead-lettered reconciliations
    - POST /retry-tasks/{task_id}/requeue: Requeue a retry task
    - GET /health: System health check

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import redis
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from app.core.config import get_settings, setup_logging
from app.core.exceptions import GatewayError, PaymentGatewayError
from app.database import engine, get_db, init_db
from app.models import GatewayFlow
from app.schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    ErrorResponse,
    HealthResponse,
    OrderPaymentsResponse,
    PaymentStatusResponse,
    RefundRequest,
    RefundResponse,
    RetryTaskResponse,
    TradeQueryResponse,
)
from app.services.notifications import BaseNotificationService, get_notification_service
from app.services.orders import OrderService, SQLOrderService
from app.services.payment import (
    BaseGatewayClient,
    CallbackProcessor,
    GatewayLedger,
    RetryQueue,
    get_callback_processor,
    get_gateway_client,
    get_ledger,
    get_retry_queue,
    get_signer,
)
from app.services.payment.state import LEDGER_TRADE_STATUS

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

NOTIFY_ACK = "success"


# =============================================================================
# DEPENDENCIES
# =============================================================================

def provide_gateway_client(flow: GatewayFlow) -> BaseGatewayClient:
    return get_gateway_client(flow)


def provide_c2b_client() -> BaseGatewayClient:
    return get_gateway_client(GatewayFlow.C2B)


def provide_callback_processor() -> CallbackProcessor:
    return get_callback_processor()


def provide_ledger() -> GatewayLedger:
    return get_ledger()


def provide_retry_queue() -> RetryQueue:
    return get_retry_queue()


def provide_order_service() -> OrderService:
    return SQLOrderService()


def provide_alert_service() -> BaseNotificationService:
    return get_notification_service()


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.

    Key material is parsed before the app accepts traffic; a bad key
    stops startup with ConfigurationError.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    signer = get_signer()
    logger.info(f"✅ Key material loaded (sign={signer.can_sign}, verify={signer.can_verify})")

    await init_db()
    logger.info("✅ Database initialized")

    for flow in GatewayFlow:
        logger.info(f"✅ Gateway {flow.value}: {get_gateway_client(flow).provider_name}")
    logger.info(f"✅ Alert Service: {get_notification_service().provider_name}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    for flow in GatewayFlow:
        await get_gateway_client(flow).aclose()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Telebirr payment gateway core for the restaurant backend: request "
        "signing, callback verification, idempotent reconciliation and retries."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix="/api/v1/payments/telebirr", tags=["Telebirr Payments"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


async def _check_redis() -> str:
    def ping() -> None:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        try:
            r.ping()
        finally:
            r.close()

    try:
        await asyncio.to_thread(ping)
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return f"unhealthy: {e}"
    return "healthy"


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    alerts: BaseNotificationService = Depends(provide_alert_service),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {e}"
        logger.error(f"Database health check failed: {e}")

    redis_status = await _check_redis()

    # Check gateway clients
    gateway_status = {}
    for flow in GatewayFlow:
        client = get_gateway_client(flow)
        healthy = await client.health_check()
        gateway_status[flow] = f"{client.provider_name}: {'healthy' if healthy else 'unhealthy'}"

    alert_status = "healthy" if await alerts.health_check() else "unhealthy"

    statuses = [db_status, redis_status, alert_status] + [
        s.split(": ", 1)[1] for s in gateway_status.values()
    ]
    overall = "operational" if all(s == "healthy" for s in statuses) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        gateway_b2b=gateway_status[GatewayFlow.B2B],
        gateway_c2b=gateway_status[GatewayFlow.C2B],
        alert_service=alert_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@router.post(
    "/{flow}/create",
    response_model=CreatePaymentResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Create Telebirr Payment",
)
async def create_payment(
    flow: GatewayFlow,
    request: CreatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    order_service: OrderService = Depends(provide_order_service),
    client: BaseGatewayClient = Depends(provide_gateway_client),
) -> CreatePaymentResponse:
    """
    Create a payment at the gateway for an existing business order.

    The customer is redirected to the returned checkout_url; the outcome
    arrives later through /{flow}/notify.
    """
    # Order check runs in its own short transaction; the gateway call
    # below must not hold one open.
    async with db.begin():
        await order_service.get_order(db, request.order_id)

    gateway_order = await client.create_order(
        order_id=request.order_id,
        amount=request.amount,
        subject=request.subject,
        body=request.body,
    )

    return CreatePaymentResponse(
        correlation_id=gateway_order.correlation_id,
        merchant_order_id=gateway_order.merchant_order_id,
        checkout_url=gateway_order.checkout_url,
        trade_no=gateway_order.trade_no,
        status=gateway_order.status.value,
    )


@router.post(
    "/{flow}/notify",
    response_class=PlainTextResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Telebirr Callback",
)
async def payment_notify(
    flow: GatewayFlow,
    request: Request,
    processor: CallbackProcessor = Depends(provide_callback_processor),
) -> PlainTextResponse:
    """
    Asynchronous payment notification from Telebirr.

    Answers `success` once the callback is authenticated and matched,
    whether it was applied immediately or queued for retry.
    """
    form = await request.form()
    payload = {key: value for key, value in form.items() if isinstance(value, str)}

    logger.info(f"Telebirr {flow.value} callback received: {payload.get('trade_status', 'unknown')}")
    outcome = await processor.process(flow, payload)

    if outcome.queued:
        logger.warning(
            f"Callback for {outcome.correlation_id} queued as retry task {outcome.retry_task_id}"
        )
    return PlainTextResponse(NOTIFY_ACK)


@router.get(
    "/status/{correlation_id}",
    response_model=PaymentStatusResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Payment Status",
)
async def payment_status(
    correlation_id: str,
    ledger: GatewayLedger = Depends(provide_ledger),
) -> PaymentStatusResponse:
    return await ledger.get_status(correlation_id)


@router.get(
    "/orders/{order_id}",
    response_model=OrderPaymentsResponse,
    summary="Payments of an Order",
)
async def order_payments(
    order_id: int,
    ledger: GatewayLedger = Depends(provide_ledger),
) -> OrderPaymentsResponse:
    gateway_orders = await ledger.list_by_business_order(order_id)
    return OrderPaymentsResponse(
        order_id=order_id,
        count=len(gateway_orders),
        payments=[PaymentStatusResponse.from_gateway_order(g) for g in gateway_orders],
    )


@router.post(
    "/refund",
    response_model=RefundResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Refund Payment",
)
async def refund_payment(
    request: RefundRequest,
    ledger: GatewayLedger = Depends(provide_ledger),
) -> RefundResponse:
    gateway_order = await ledger.refund(
        request.correlation_id,
        request.refund_amount,
        request.refund_reason,
    )
    return RefundResponse(
        correlation_id=gateway_order.correlation_id,
        refund_amount=gateway_order.refunded_amount,
        status=gateway_order.status.value,
    )


@router.get(
    "/c2b/query/{out_trade_no}",
    response_model=TradeQueryResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Query C2B Trade",
)
async def query_c2b_trade(
    out_trade_no: str,
    client: BaseGatewayClient = Depends(provide_c2b_client),
    ledger: GatewayLedger = Depends(provide_ledger),
) -> TradeQueryResponse:
    """
    Live trade state from Telebirr, falling back to the local ledger
    when the gateway cannot be queried.
    """
    try:
        trade = await client.query_trade(out_trade_no)
    except GatewayError as e:
        logger.warning(f"Trade query for {out_trade_no} failed ({e.message}), answering from ledger")
        gateway_order = await ledger.get(out_trade_no, GatewayFlow.C2B)
        return TradeQueryResponse(
            out_trade_no=out_trade_no,
            trade_no=gateway_order.trade_no,
            trade_status=LEDGER_TRADE_STATUS[gateway_order.status],
            total_amount=str(gateway_order.amount),
            subject=gateway_order.subject,
            source="ledger",
        )

    return TradeQueryResponse(
        out_trade_no=out_trade_no,
        trade_no=trade.trade_no,
        trade_status=trade.trade_status,
        total_amount=trade.total_amount,
        subject=trade.subject,
        gmt_create=trade.gmt_create,
        gmt_payment=trade.gmt_payment,
    )


# =============================================================================
# RETRY QUEUE (OPERATORS)
# =============================================================================

@router.get(
    "/retry-tasks/dead-letter",
    response_model=list[RetryTaskResponse],
    summary="List Dead-Lettered Reconciliations",
)
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=500),
    queue: RetryQueue = Depends(provide_retry_queue),
) -> list[RetryTaskResponse]:
    tasks = await queue.list_dead_letters(limit)
    return [RetryTaskResponse.model_validate(t) for t in tasks]


@router.post(
    "/retry-tasks/{task_id}/requeue",
    response_model=RetryTaskResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Requeue Retry Task",
)
async def requeue_retry_task(
    task_id: str,
    queue: RetryQueue = Depends(provide_retry_queue),
) -> RetryTaskResponse:
    task = await queue.requeue(task_id)
    return RetryTaskResponse.model_validate(task)


app.include_router(router)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _error_body(error: str, category: str, detail: Any = None) -> dict:
    return ErrorResponse(error=error, error_category=category, detail=detail).model_dump()


@app.exception_handler(PaymentGatewayError)
async def payment_error_handler(request: Request, exc: PaymentGatewayError) -> JSONResponse:
    """Map the payment error taxonomy onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error(f"{exc.category} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.category} on {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.message, exc.category, exc.detail),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content=_error_body("Validation Error", "ValidationError", errors),
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=_error_body("Invalid Request", "ValidationError", str(exc)),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
