"""HTTP transport for AR commands, snapshot queries, alerts and import logs.

The lifespan connects the database and, when enabled, runs the delivery and
sweep workers alongside request handling.
"""

from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import date, datetime
from time import perf_counter

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from arledger.common.config import Settings, load_settings
from arledger.common.dates import local_today, utcnow
from arledger.common.db import Database
from arledger.common.domain import ArStatus
from arledger.common.errors import (
    ArNotFound,
    BusinessRuleViolation,
    CommandValidationError,
    ConcurrentModification,
    InvalidEventSequence,
)
from arledger.common.logging import configure_logging, logger, trace_id_ctx
from arledger.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from arledger.common.startup import log_startup_config
from arledger.common.tracing import instrument_app, setup_tracing
from arledger.services.api.schemas import DueDateBody, FollowUpBody, PaymentBody, StatusBody
from arledger.services.api.wiring import Services, build_services
from arledger.services.ledger.repository import import_log_view
from arledger.services.ledger.schemas import (
    ChangeDueDateRequest,
    ChangeStatusRequest,
    CreateArRequest,
    ImportLogRequest,
    LogFollowUpRequest,
    VerifyPaymentRequest,
)
from arledger.services.notification.channels import NotificationChannel


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != request.app.state.settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


router = APIRouter(dependencies=[Depends(require_api_key)])


@router.post("/ars", status_code=201)
def create_ar(req: CreateArRequest, services: Services = Depends(get_services)):
    return {"ar_id": services.ledger.create_ar(req)}


@router.get("/ars")
def list_ars(
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
):
    return services.ledger.snapshots.find_all(limit=limit, offset=offset)


@router.get("/ars/overdue")
def overdue_ars(
    request: Request,
    as_of: date | None = None,
    services: Services = Depends(get_services),
):
    """PENDING ARs past due; `as_of` defaults to the local calendar day."""

    if as_of is None:
        as_of = local_today(services.ledger.clock(), request.app.state.settings.timezone)
    return services.ledger.snapshots.find_overdue(as_of)


@router.get("/ars/by-home/{home_id}")
def ars_by_home(home_id: str, services: Services = Depends(get_services)):
    return services.ledger.snapshots.find_by_home(home_id)


@router.get("/ars/by-zone/{zone}")
def ars_by_zone(zone: str, services: Services = Depends(get_services)):
    return services.ledger.snapshots.find_by_zone(zone)


@router.get("/ars/by-status/{status}")
def ars_by_status(status: ArStatus, services: Services = Depends(get_services)):
    return services.ledger.snapshots.find_by_status(status)


@router.get("/ars/by-sales/{sales_id}")
def ars_by_sales(sales_id: str, services: Services = Depends(get_services)):
    return services.ledger.snapshots.find_by_sales(sales_id)


@router.get("/ars/by-due-date")
def ars_by_due_date(due_date: date, status: ArStatus, services: Services = Depends(get_services)):
    return services.ledger.snapshots.find_by_due_date_and_status(due_date, status)


@router.get("/ars/{ar_id}")
def get_ar(ar_id: str, services: Services = Depends(get_services)):
    return services.ledger.get_snapshot(ar_id)


@router.get("/ars/{ar_id}/events")
def ar_history(ar_id: str, services: Services = Depends(get_services)):
    services.ledger.get_snapshot(ar_id)
    return [event.model_dump(mode="json") for event in services.ledger.get_history(ar_id)]


@router.post("/ars/{ar_id}/status")
def change_status(ar_id: str, body: StatusBody, services: Services = Depends(get_services)):
    return services.ledger.change_status(ChangeStatusRequest(ar_id=ar_id, **body.model_dump()))


@router.post("/ars/{ar_id}/follow-ups")
def log_follow_up(ar_id: str, body: FollowUpBody, services: Services = Depends(get_services)):
    return services.ledger.log_follow_up(LogFollowUpRequest(ar_id=ar_id, **body.model_dump()))


@router.post("/ars/{ar_id}/payment")
def verify_payment(ar_id: str, body: PaymentBody, services: Services = Depends(get_services)):
    return services.ledger.verify_payment(VerifyPaymentRequest(ar_id=ar_id, **body.model_dump()))


@router.post("/ars/{ar_id}/due-date")
def change_due_date(ar_id: str, body: DueDateBody, services: Services = Depends(get_services)):
    return services.ledger.change_due_date(ChangeDueDateRequest(ar_id=ar_id, **body.model_dump()))


@router.post("/ars/{ar_id}/rebuild")
def rebuild_ar(ar_id: str, services: Services = Depends(get_services)):
    if services.ledger.events.count_for(ar_id) == 0:
        raise ArNotFound(ar_id)
    return services.ledger.rebuild_snapshot(ar_id)


@router.get("/ars/{ar_id}/alerts")
def ar_alerts(ar_id: str, services: Services = Depends(get_services)):
    return services.notifications.for_ar(ar_id)


@router.get("/alerts/pending")
def pending_alerts(limit: int = Query(default=100, ge=1, le=1000), services: Services = Depends(get_services)):
    return services.notifications.pending(limit)


@router.get("/alerts/failed")
def failed_alerts(limit: int = Query(default=100, ge=1, le=1000), services: Services = Depends(get_services)):
    return services.notifications.failed(limit)


@router.get("/alerts/{alert_id}")
def get_alert(alert_id: str, services: Services = Depends(get_services)):
    alert = services.notifications.get(alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail=f"alert not found: {alert_id}")
    return alert


@router.post("/imports", status_code=201)
def save_import_log(req: ImportLogRequest, services: Services = Depends(get_services)):
    return import_log_view(services.import_logs.save(req))


@router.get("/imports")
def list_import_logs(
    status: str | None = None,
    file_name: str | None = None,
    limit: int = Query(default=20, ge=1, le=500),
    services: Services = Depends(get_services),
):
    if status:
        logs = services.import_logs.find_by_status(status)
    elif file_name:
        logs = services.import_logs.find_by_file_name(file_name)
    else:
        logs = services.import_logs.find_recent(limit)
    return [import_log_view(log) for log in logs[:limit]]


@router.get("/imports/{import_id}")
def get_import_log(import_id: str, services: Services = Depends(get_services)):
    log = services.import_logs.get(import_id)
    if log is None:
        raise HTTPException(status_code=404, detail=f"import log not found: {import_id}")
    return import_log_view(log)


@router.post("/admin/rebuild")
def rebuild_all(services: Services = Depends(get_services)):
    return services.ledger.rebuild_all()


@router.post("/admin/sweep")
def run_sweep(today: date | None = None, services: Services = Depends(get_services)):
    return services.sweep_worker.run_once(today)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ArNotFound)
    async def _not_found(_: Request, exc: ArNotFound):
        return _error(404, exc)

    @app.exception_handler(BusinessRuleViolation)
    async def _rule(_: Request, exc: BusinessRuleViolation):
        return _error(409, exc)

    @app.exception_handler(ConcurrentModification)
    async def _conflict(_: Request, exc: ConcurrentModification):
        logger.warning("request_conflict ar_id=%s", exc.ar_id)
        return _error(409, exc)

    @app.exception_handler(CommandValidationError)
    async def _invalid(_: Request, exc: CommandValidationError):
        return _error(400, exc)

    @app.exception_handler(InvalidEventSequence)
    async def _bad_history(_: Request, exc: InvalidEventSequence):
        return _error(400, exc)

    @app.exception_handler(ValidationError)
    async def _invalid_model(_: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_encoder(exc.errors(include_url=False, include_context=False))},
        )


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    channel: NotificationChannel | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the application; `database` and `channel` may be injected by tests."""

    settings = settings or load_settings()
    owns_database = database is None
    database = database or Database(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect storage and run background workers with the app lifecycle."""

        database.connect()
        if settings.auto_create_schema:
            database.create_schema()
        services = build_services(settings, database, channel=channel, clock=clock)
        app.state.services = services
        if settings.run_workers:
            services.delivery_worker.start()
            services.sweep_worker.start()
        try:
            yield
        finally:
            if settings.run_workers:
                await services.sweep_worker.stop()
                await services.delivery_worker.stop()
            if owns_database:
                database.close()

    app = FastAPI(title="AR Ledger", lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        token = trace_id_ctx.set(request.headers.get("x-trace-id", ""))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            trace_id_ctx.reset(token)
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

    _register_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    def health():
        """Liveness check for the container orchestrator."""

        return {"ok": True, "database": database.connected}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    if settings.tracing_enabled:
        setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
        instrument_app(app)
    return app


def build_default_app() -> FastAPI:
    """Entrypoint for `uvicorn arledger.services.api.main:app`."""

    settings = load_settings()
    configure_logging(settings.service_name, settings.log_level)
    log_startup_config(settings)
    return create_app(settings)


app = build_default_app()
