import hmac
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from evolution_ingest.automation import AutomationTrigger, BackgroundRunner
from evolution_ingest.config import settings
from evolution_ingest.dispatcher import EventDispatcher
from evolution_ingest.evolution_client import EvolutionClient
from evolution_ingest.identity import IdentityResolver
from evolution_ingest.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from evolution_ingest.memory_sync import ContextCache, OutboundSync, SupermemoryClient
from evolution_ingest.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from evolution_ingest.reconciler import compact_instance
from evolution_ingest.schemas import (
    CompactionReportResponse,
    ErrorResponse,
    HealthResponse,
    WebhookResponse,
)
from evolution_ingest.security import (
    RateLimiter,
    WebhookRejected,
    authenticate,
    client_identifier,
    parse_webhook_payload,
    sanitize_error,
)
from evolution_ingest.storage import init_db, check_db_health, get_db, get_instance_by_name


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 10.0

_REJECTION_RESULTS = {
    status.HTTP_400_BAD_REQUEST: "invalid_payload",
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_404_NOT_FOUND: "unknown_instance",
    status.HTTP_429_TOO_MANY_REQUESTS: "rate_limited",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and build the ingestion pipeline
    - Shutdown: Wait for in-flight automation tasks
    """
    # Startup
    init_db()

    runner = BackgroundRunner()
    app.state.runner = runner
    app.state.rate_limiter = RateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        max_keys=settings.RATE_LIMIT_MAX_KEYS,
    )
    app.state.dispatcher = EventDispatcher(
        resolver=IdentityResolver(EvolutionClient.from_settings()),
        sync=OutboundSync(SupermemoryClient.from_settings(), ContextCache()),
        automation=AutomationTrigger.from_settings(),
        runner=runner,
    )
    yield
    # Shutdown
    if runner.pending:
        logger.info(f"Waiting for {runner.pending} background task(s)")
    await runner.drain(timeout=SHUTDOWN_DRAIN_SECONDS)


app = FastAPI(
    title="Evolution Webhook Ingest",
    description="Ingests Evolution API WhatsApp webhooks into conversations and messages",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(WebhookRejected)
async def webhook_rejected_handler(request: Request, exc: WebhookRejected) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error).model_dump(),
        headers=exc.headers,
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and every
    table exists. Otherwise returns 503 (Service Unavailable).

    WEBHOOK_SECRET is optional: without it the gateway authenticates with
    instance tokens, or not at all.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid JSON or missing fields"},
        401: {"model": ErrorResponse, "description": "Authentication failed"},
        404: {"model": ErrorResponse, "description": "Unknown instance"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Internal error"},
    }
)
async def webhook(request: Request, db: Session = Depends(get_db)):
    """
    Ingest one Evolution API event.

    - Rate limited per client (forwarded-for, CDN header, peer address)
    - Body must be JSON with non-empty `event` and `instance`
    - Authenticated by x-webhook-signature, then apikey / x-api-key, then
      accepted permissively for a known instance
    - Acknowledged with {"success": true} whenever processing completed,
      including no-op outcomes (ignored, duplicate, unresolved)
    """
    client_id = client_identifier(request)
    event = None

    try:
        request.app.state.rate_limiter.enforce(client_id)

        raw_body = await request.body()
        logger.debug(f"Request body size: {len(raw_body)} bytes")

        envelope = parse_webhook_payload(raw_body)
        event = envelope.event
        log_webhook_data(request=request, event=envelope.event, instance=envelope.instance)

        auth = authenticate(
            db,
            envelope,
            raw_body,
            request.headers,
            secret=settings.WEBHOOK_SECRET,
            client_id=client_id,
            gateway_key=settings.EVOLUTION_API_KEY,
        )
        log_webhook_data(request=request, auth=auth.method)

        outcome = await request.app.state.dispatcher.dispatch(db, envelope, auth.instance)

    except WebhookRejected as e:
        result = _REJECTION_RESULTS.get(e.status_code, "rejected")
        record_webhook_outcome(event, result)
        log_webhook_data(request=request, result=result)
        raise

    except Exception as e:
        logger.exception(f"Webhook processing failed: {e}")
        record_webhook_outcome(event, "error")
        log_webhook_data(request=request, result="error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(error=sanitize_error(e, settings.is_production)).model_dump(),
        )

    logger.info(f"Event {envelope.event} for {envelope.instance} processed: {outcome.result}")
    record_webhook_outcome(envelope.event, outcome.result)
    log_webhook_data(request=request, result=outcome.result)

    return WebhookResponse(success=True)


# =============================================================================
# Maintenance Route
# =============================================================================

@app.post(
    "/maintenance/instances/{instance_name}/reconcile",
    response_model=CompactionReportResponse,
)
async def reconcile_instance(
    instance_name: str,
    x_admin_key: Annotated[str | None, Header(alias="X-Admin-Key")] = None,
    db: Session = Depends(get_db)
) -> CompactionReportResponse:
    """
    Merge duplicate conversations and normalize stored phones for one
    instance.

    Headers:
        - X-Admin-Key: must equal ADMIN_API_KEY
    """
    if not settings.ADMIN_API_KEY:
        logger.error("ADMIN_API_KEY not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="maintenance not configured"
        )

    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode("utf-8"), settings.ADMIN_API_KEY.encode("utf-8")
    ):
        logger.warning(f"Rejected maintenance request for {instance_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid admin key"
        )

    instance = get_instance_by_name(db, instance_name)
    if instance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="instance not found"
        )

    logger.info(f"Reconciling conversations of {instance_name}")
    report = compact_instance(db, instance.id)

    return CompactionReportResponse(
        instance=instance_name,
        merged_groups=report.merged_groups,
        moved_messages=report.moved_messages,
        deleted_conversations=report.deleted_conversations,
        normalized_conversations=report.normalized_conversations,
        normalized_messages=report.normalized_messages,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total / request_latency_seconds
    - webhook_events_total: webhook outcomes by event and result
    - identity, merge, memory sync and automation counters
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
