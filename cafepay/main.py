import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from time import perf_counter
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cafepay.config import Settings, settings as default_settings
from cafepay.errors import InternalError, PaymentError
from cafepay.logging_config import REQUEST_ID_CTX, configure_logging
from cafepay.metrics import create_order_latency, metrics_asgi_app, order_errors, orders_created
from cafepay.schemas import ErrorOut, OrderCreate, OrderCreated, OrderDetail, OrderStatusOut
from cafepay.services.ledger import OrderLedger
from cafepay.services.orders import OrderFactory
from cafepay.services.settlement import BakongClient, SettlementPort

logger = logging.getLogger("cafepay.api")

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_ledger(request: Request) -> OrderLedger:
    return request.app.state.ledger


def get_factory(request: Request) -> OrderFactory:
    return request.app.state.factory


@router.get("/")
def root():
    return {"service": "cafepay", "docs": "/docs"}


@router.get("/healthz")
def healthz(ledger: OrderLedger = Depends(get_ledger)):
    return {
        "ok": True,
        "orders": len(ledger),
        "settlement": "enabled" if ledger.settlement is not None else "disabled",
    }


@router.post("/create-order", response_model=OrderCreated, tags=["orders"],
             responses={400: {"model": ErrorOut}, 409: {"model": ErrorOut}, 500: {"model": ErrorOut}})
def create_order(
    payload: OrderCreate,
    settings: Settings = Depends(get_settings),
    factory: OrderFactory = Depends(get_factory),
    ledger: OrderLedger = Depends(get_ledger),
):
    start = perf_counter()
    try:
        created = factory.create_order(payload.amount, payload.currency, settings.merchant_identity())
        ledger.register(created.order)
    finally:
        create_order_latency.observe(perf_counter() - start)

    order = created.order
    orders_created.labels(order.currency).inc()
    return OrderCreated(
        order_id=order.id,
        amount=float(order.amount),
        currency=order.currency,
        fingerprint=order.fingerprint,
        qr_image=created.qr_image,
        expires_at=order.expires_at,
    )


@router.get("/order/{order_id}/status", response_model=OrderStatusOut,
            response_model_exclude_none=True, tags=["orders"],
            responses={404: {"model": ErrorOut}, 502: {"model": ErrorOut}})
def order_status(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    result = ledger.get_status(order_id)
    return OrderStatusOut(
        status=result.status,
        amount=float(result.amount),
        currency=result.currency,
        note=result.note,
    )


@router.get("/order/{order_id}", response_model=OrderDetail, tags=["orders"],
            responses={404: {"model": ErrorOut}})
def get_order(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    order = ledger.get(order_id)
    return OrderDetail(
        order_id=order.id,
        amount=float(order.amount),
        currency=order.currency,
        fingerprint=order.fingerprint,
        status=order.status,
        created_at=order.created_at,
        expires_at=order.expires_at,
        paid_at=order.paid_at,
    )


async def _payment_error(request: Request, exc: PaymentError):
    order_errors.labels(exc.code).inc()
    if exc.status_code >= 500:
        logger.error("request failed", extra={"error_code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _validation_error(request: Request, exc: RequestValidationError):
    order_errors.labels("INVALID_REQUEST").inc()
    return JSONResponse(status_code=400, content={"ok": False, "error": "Invalid request body"})


async def _unhandled_error(request: Request, exc: Exception):
    err = InternalError()
    order_errors.labels(err.code).inc()
    logger.exception("unhandled error", extra={"path": request.url.path})
    return JSONResponse(status_code=err.status_code, content=err.to_body())


def create_app(
    settings: Optional[Settings] = None,
    settlement: Optional[SettlementPort] = None,
    factory: Optional[OrderFactory] = None,
) -> FastAPI:
    """Build the application with one ledger per app instance.

    ``settlement`` overrides the Bakong client; when omitted a client is
    created only if a usable BAKONG_TOKEN is configured, otherwise status
    checks run in degraded mode.
    """
    settings = settings or default_settings
    configure_logging(settings.log_level)

    if settlement is None and settings.settlement_enabled:
        settlement = BakongClient(
            settings.bakong_base_url,
            settings.bakong_token,
            timeout=settings.settlement_timeout_secs,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.merchant_identity().account_id:
            logger.warning("BAKONG_ACCOUNT_ID is not set; order creation will fail")
        logger.info(
            "cafepay starting",
            extra={"settlement": settlement is not None, "default_currency": settings.default_currency},
        )
        yield

    app = FastAPI(title="CafePay KHQR", lifespan=lifespan)
    app.state.settings = settings
    app.state.ledger = OrderLedger(settlement=settlement, retention_secs=settings.order_retention_secs)
    app.state.factory = factory or OrderFactory(
        default_currency=settings.default_currency,
        order_prefix=settings.order_prefix,
        ttl=timedelta(seconds=settings.payment_ttl_secs),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = REQUEST_ID_CTX.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            logger.info("request handled", extra={"path": request.url.path, "method": request.method})
            REQUEST_ID_CTX.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    app.add_exception_handler(PaymentError, _payment_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unhandled_error)

    app.include_router(router)
    app.mount("/metrics", metrics_asgi_app)
    return app


app = create_app()
