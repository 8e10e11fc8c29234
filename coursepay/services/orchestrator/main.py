"""HTTP surface for course purchases, the 3DS callback and reconciliation."""

import asyncio
import math
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request

from coursepay.common.config import settings
from coursepay.common.db import SessionLocal
from coursepay.common.logging import configure_logging, logger, trace_id_ctx
from coursepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from coursepay.common.startup import log_startup_config
from coursepay.common.tracing import instrument_app, setup_tracing
from coursepay.services.catalog.schemas import Course
from coursepay.services.catalog.service import CatalogLookup
from coursepay.services.gateway.schemas import GatewayConfig
from coursepay.services.gateway.service import GatewayClient
from coursepay.services.ledger.service import Ledger
from coursepay.services.orchestrator.schemas import (
    CoursePurchaseRequest,
    CoursePurchaseResponse,
    ExpireStaleResponse,
    PaymentView,
    ThreeDSCallback,
)
from coursepay.services.orchestrator.service import PurchaseOrchestrator

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "GATEWAY_BASE_URL",
        "GATEWAY_API_KEY",
        "GATEWAY_SECRET_KEY",
        "GATEWAY_CALLBACK_URL",
        "CATALOG_URL",
        "STALE_PAYMENT_MAX_AGE_SECONDS",
    ],
)
service = PurchaseOrchestrator(
    ledger=Ledger(SessionLocal),
    catalog=CatalogLookup.from_settings(settings),
    gateway=GatewayClient(GatewayConfig.from_settings(settings)),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the success-event outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(service.ledger.outbox_publisher())
    yield
    publisher_task.cancel()
    await service.ledger.kafka.close()
    service.gateway.close()
    service.catalog.close()


app = FastAPI(title="Course Payment Service", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _trace_id(x_trace_id: str | None) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


@app.post("/api/payment/course-purchase/direct", response_model=CoursePurchaseResponse)
def purchase_direct(req: CoursePurchaseRequest, x_trace_id: str | None = Header(default=None)):
    """Charge the card without 3DS and enroll on success.

    Business outcomes are carried by the `status` tag, not the HTTP code.
    """

    return service.purchase_direct(req, _trace_id(x_trace_id))


@app.post("/api/payment/course-purchase/3ds/initialize", response_model=CoursePurchaseResponse)
def purchase_3ds_initialize(req: CoursePurchaseRequest, x_trace_id: str | None = Header(default=None)):
    """Start a 3DS purchase; `REQUIRES_3DS` carries the challenge markup."""

    return service.purchase_3ds_initiate(req, _trace_id(x_trace_id))


@app.post("/api/payment/3ds/callback", response_model=CoursePurchaseResponse)
async def threeds_callback(request: Request, x_trace_id: str | None = Header(default=None)):
    """Gateway re-entry after the buyer finishes the 3DS challenge.

    The gateway may send its parameters as a form body, a query string or both.
    """

    params = dict(request.query_params)
    form = await request.form()
    params.update({key: value for key, value in form.items() if isinstance(value, str)})
    callback = ThreeDSCallback.model_validate(params)
    logger.info(
        "threeds_callback_received conversation_id=%s status=%s",
        callback.conversation_id,
        callback.status,
    )
    trace_id = _trace_id(x_trace_id)
    # The orchestrator and its gateway client are blocking.
    return await asyncio.to_thread(service.purchase_3ds_callback, callback, trace_id)


@app.get("/api/payment/course-purchase/check")
def check_purchase(user_id: int = Query(gt=0), course_id: int = Query(gt=0)) -> bool:
    """True when the user holds an ACTIVE enrollment for the course."""

    return service.is_purchased(user_id, course_id)


@app.get("/api/payment/course-purchase/user/{user_id}", response_model=list[Course])
def purchased_courses(user_id: int):
    return service.purchased_courses(user_id)


@app.get("/payments/{payment_id}", response_model=PaymentView)
def get_payment(payment_id: str):
    """Fetch current status for one payment."""

    payment = service.get_payment(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="payment not found")
    return PaymentView.model_validate(payment)


@app.post("/internal/payments/expire-stale", response_model=ExpireStaleResponse)
def expire_stale(
    max_age_seconds: int | None = Query(default=None, ge=math.ceil(settings.gateway_timeout_seconds)),
):
    """Fail PENDING / AWAITING_3DS payments older than the bound.

    The bound may not undercut the gateway timeout; a charge in flight is not stale.
    """

    expired = service.expire_stale_payments(max_age_seconds)
    return ExpireStaleResponse(expired_count=len(expired), expired_payment_ids=expired)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
