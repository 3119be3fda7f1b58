import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from waba_inbox.config import settings
from waba_inbox.ingest import process_envelope
from waba_inbox.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from waba_inbox.media import MediaRelay, close_http_client, get_media_relay
from waba_inbox.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from waba_inbox.storage import (
    init_db,
    check_db_health,
    get_db,
    get_messages,
    get_stats,
    get_tenant_by_verify_token,
    mark_tenant_verified,
)
from waba_inbox.utils import verify_hmac_signature
from waba_inbox.schemas import (
    HealthResponse,
    WebhookPayload,
    MessageResponse,
    MessagesListResponse,
    StatsResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    - Shutdown: Close the shared provider HTTP client
    """
    init_db()
    yield
    await close_http_client()


app = FastAPI(
    title="WhatsApp Business Inbox Webhook",
    description="Multi-tenant ingestion of WhatsApp Cloud API webhook deliveries",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
    db: Session = Depends(get_db),
) -> PlainTextResponse:
    """
    Provider subscription handshake.

    Echoes hub.challenge when hub.mode is "subscribe" and hub.verify_token
    matches a tenant's verification secret; that tenant is then marked as
    verified. Any other request gets a bare 403.
    """
    forbidden = PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)

    if hub_mode != "subscribe" or not hub_verify_token or hub_challenge is None:
        logger.info(f"Webhook verification rejected: mode={hub_mode}")
        return forbidden

    tenant = get_tenant_by_verify_token(db, hub_verify_token)
    if tenant is None:
        logger.info("Webhook verification failed: token not found")
        return forbidden

    mark_tenant_verified(db, tenant)
    return PlainTextResponse(hub_challenge)


@app.post(
    "/webhook",
    response_class=PlainTextResponse,
    responses={
        401: {"description": "Invalid signature (only when META_APP_SECRET is set)"},
        500: {"description": "Unparseable body"},
    }
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db),
    relay: MediaRelay = Depends(get_media_relay),
) -> PlainTextResponse:
    """
    Ingest one provider delivery.

    Always acknowledges with 200 "OK" once the body is parsed, including
    when the channel is unknown or individual messages fail: the provider
    retries whole batches on any non-2xx.
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if settings.META_APP_SECRET and not verify_hmac_signature(
        raw_body, x_hub_signature_256, settings.META_APP_SECRET
    ):
        logger.error("Invalid webhook signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        body = json.loads(raw_body)
        if not isinstance(body, dict):
            raise ValueError("body is not a JSON object")
    except ValueError as e:
        logger.error(f"Unparseable webhook body: {e}")
        record_webhook_outcome("unparseable")
        log_webhook_data(request, result="unparseable")
        return PlainTextResponse(
            "Internal Server Error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    try:
        payload = WebhookPayload.model_validate(body)
    except ValidationError as e:
        # Not an envelope we understand; nothing to attribute
        logger.warning(f"Webhook body does not match envelope shape: {e.error_count()} error(s)")
        payload = WebhookPayload()

    report = await process_envelope(db, payload, relay)

    record_webhook_outcome(report.result)
    log_webhook_data(request, **report.as_log_data())

    return PlainTextResponse("OK")


# =============================================================================
# Messages Route
# =============================================================================

@app.get(
    "/messages",
    response_model=MessagesListResponse,
)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    receiver_id: Annotated[str | None, Query(description="Filter by tenant id")] = None,
    sender_id: Annotated[str | None, Query(description="Filter by sender phone number")] = None,
    message_type: Annotated[str | None, Query(description="Filter by message type")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List stored messages in insertion order, with pagination and filtering.
    """
    messages, total = get_messages(
        db=db,
        limit=limit,
        offset=offset,
        receiver_id=receiver_id,
        sender_id=sender_id,
        message_type=message_type,
    )

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get(
    "/stats",
    response_model=StatsResponse,
)
async def get_statistics(
    receiver_id: Annotated[str | None, Query(description="Restrict to one tenant")] = None,
    db: Session = Depends(get_db)
) -> StatsResponse:
    """
    Message-level analytics: totals, distinct senders, per-type counts and
    media that could not be relayed (candidates for a media refresh).
    """
    stats = get_stats(db, receiver_id=receiver_id)
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
