"""HTTP surface for license and car transactions plus the outbox worker."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request

from carrental.common.config import settings
from carrental.common.db import SessionLocal, init_db
from carrental.common.errors import (
    AlreadyExists,
    CarRentalError,
    ExtraPaymentRequired,
    InvalidState,
    NotFound,
)
from carrental.common.logging import configure_logging, trace_id_ctx
from carrental.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from carrental.common.startup import log_startup_config
from carrental.common.tracing import instrument_app, setup_tracing
from carrental.services.rental.schemas import (
    CarCreateRequest,
    CarInspectRequest,
    CarResponse,
    CarSelectRequest,
    DemoSeedResponse,
    LicenseRejectRequest,
    LicenseResponse,
    LicenseUploadRequest,
    ParticipantResponse,
    RemoveAboveRateRequest,
    RemovalReport,
    SelectByColorRequest,
    TimelineEntry,
)
from carrental.services.rental.service import RentalService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "DATABASE_URL", "KAFKA_BOOTSTRAP_SERVERS", "API_KEY", "HIGH_RENTAL_RATE_THRESHOLD"],
)
service = RentalService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Create tables and run the outbox publisher with app lifecycle."""

    init_db()
    publisher_task = asyncio.create_task(service.outbox_publisher())
    yield
    publisher_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Car Rental Service", lifespan=lifespan)
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


def enforce_api_key(x_api_key: str | None) -> None:
    """Simple API-key gate for manager actions."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def _bind_trace(x_trace_id: str | None) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


def _domain_error(exc: CarRentalError) -> HTTPException:
    """Map domain failures to HTTP status codes."""

    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExtraPaymentRequired):
        return HTTPException(status_code=402, detail=str(exc))
    if isinstance(exc, (AlreadyExists, InvalidState)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.post("/licenses", response_model=LicenseResponse, status_code=201)
def upload_license(req: LicenseUploadRequest, x_trace_id: str | None = Header(default=None)):
    """Upload a license in `PENDING` and emit `LicenseUploaded`."""

    trace_id = _bind_trace(x_trace_id)
    try:
        return service.upload_license(req.license_id, req.customer_id, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.get("/licenses/{license_id}", response_model=LicenseResponse)
def get_license(license_id: str):
    try:
        return service.get_license(license_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/licenses/{license_id}/approve", response_model=LicenseResponse)
def approve_license(
    license_id: str,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Approve a pending license and emit `LicenseApproved`."""

    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.approve_license(license_id, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/licenses/{license_id}/reject", response_model=LicenseResponse)
def reject_license(
    license_id: str,
    req: LicenseRejectRequest,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Reject a pending license and emit `LicenseRejected` with the reason."""

    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.reject_license(license_id, req.reason, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.get("/licenses/{license_id}/timeline", response_model=list[TimelineEntry])
def license_timeline(license_id: str):
    try:
        return service.timeline("license", license_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars", response_model=CarResponse, status_code=201)
def create_car(req: CarCreateRequest, x_trace_id: str | None = Header(default=None)):
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.create_car(
            req.car_id, req.brand, req.model, req.color, req.year, req.rental_rate, trace_id
        )
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars/remove-above-rate", response_model=RemovalReport)
def remove_cars_above_rate(
    req: RemoveAboveRateRequest,
    x_api_key: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Delete cars priced strictly above the threshold; failures are reported per car."""

    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.remove_cars_above_rate(req.threshold, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars/select-by-color", response_model=list[CarResponse])
def select_cars_by_color(req: SelectByColorRequest):
    """List cars of one color without changing their status."""

    try:
        return service.select_cars_by_color(req.color)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.get("/cars/{car_id}", response_model=CarResponse)
def get_car(car_id: str):
    try:
        return service.get_car(car_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars/{car_id}/select", response_model=CarResponse)
def select_car(car_id: str, req: CarSelectRequest, x_trace_id: str | None = Header(default=None)):
    """Reserve a car for a customer whose license is approved."""

    trace_id = _bind_trace(x_trace_id)
    try:
        return service.select_car(req.customer_id, car_id, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars/{car_id}/deliver", response_model=CarResponse)
def deliver_car(car_id: str, x_trace_id: str | None = Header(default=None)):
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.deliver_car(car_id, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars/{car_id}/inspect", response_model=CarResponse)
def inspect_car(
    car_id: str,
    req: CarInspectRequest | None = None,
    x_trace_id: str | None = Header(default=None),
):
    """Check a delivered car; a damaged report answers 402 and leaves it delivered."""

    trace_id = _bind_trace(x_trace_id)
    damaged = req.damaged if req is not None else False
    try:
        return service.inspect_car(car_id, damaged, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/cars/{car_id}/return", response_model=CarResponse)
def return_car(car_id: str, x_trace_id: str | None = Header(default=None)):
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.return_car(car_id, trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.get("/cars/{car_id}/timeline", response_model=list[TimelineEntry])
def car_timeline(car_id: str):
    try:
        return service.timeline("car", car_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.get("/participants/{participant_id}", response_model=ParticipantResponse)
def get_participant(participant_id: str):
    try:
        return service.get_participant(participant_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.post("/demo/seed", response_model=DemoSeedResponse, status_code=201)
def seed_demo(x_api_key: str | None = Header(default=None), x_trace_id: str | None = Header(default=None)):
    """Create the demo participants, licenses and cars in one transaction."""

    enforce_api_key(x_api_key)
    trace_id = _bind_trace(x_trace_id)
    try:
        return service.seed_demo(trace_id)
    except CarRentalError as exc:
        raise _domain_error(exc) from exc


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
