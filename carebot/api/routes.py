"""Webhook and health endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from carebot.api.schemas import HealthResponse, WebhookAck, WebhookPayload
from carebot.config import WHATSAPP_VERIFY_TOKEN

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()


def get_services(request: Request):
    """Retrieve the service graph built during the FastAPI lifespan."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return services


def health_payload(request: Request) -> HealthResponse:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return HealthResponse(status="starting")
    return HealthResponse(
        cached_tenants=services.tenants.cached_count,
        cached_knowledge=services.knowledge.cached_count,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    return health_payload(request)


# ── Webhook ──────────────────────────────────────────────────────────


@webhook_router.get("/webhook")
async def verify_webhook(
    mode: str | None = Query(None, alias="hub.mode"),
    token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str | None = Query(None, alias="hub.challenge"),
):
    """Subscription handshake.  Any token is accepted when none is configured."""
    if not mode or not token or not challenge:
        return Response(status_code=400)
    if mode == "subscribe" and (not WHATSAPP_VERIFY_TOKEN or token == WHATSAPP_VERIFY_TOKEN):
        logger.info("Webhook verified")
        return PlainTextResponse(challenge)
    logger.warning("Webhook verification rejected (mode=%s)", mode)
    return Response(status_code=403)


@webhook_router.post("/webhook", response_model=WebhookAck)
@webhook_router.post("/webhook/{tenant_id}", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    tenant_id: str | None = None,
):
    """Acknowledge a delivery and process it after the response is sent.

    Unparseable bodies and deliveries for unknown or inactive tenants are
    acknowledged and dropped so the platform does not keep retrying them.
    """
    services = get_services(request)
    request_id = getattr(request.state, "request_id", "?")

    try:
        body = await request.json()
    except ValueError:
        logger.warning("[%s] Webhook body is not valid JSON; delivery ignored", request_id)
        return WebhookAck(status="ignored")
    if not isinstance(body, dict) or not body.get("object"):
        return Response(status_code=404)

    try:
        payload = WebhookPayload.model_validate(body)
    except ValidationError as exc:
        logger.warning(
            "[%s] Malformed webhook payload: %d error(s); delivery ignored", request_id, exc.error_count(),
        )
        return WebhookAck(status="ignored")

    params = dict(request.query_params)
    if tenant_id:
        params["tenant_id"] = tenant_id

    try:
        org = await services.tenants.resolve(request.headers, params, payload)
    except Exception:
        logger.exception("[%s] Tenant resolution failed", request_id)
        return JSONResponse(
            status_code=500, content={"error": "An internal error occurred. Please try again."},
        )

    if org is None:
        return WebhookAck(status="ignored")
    if not org.billing_active:
        logger.info("[%s] Tenant %s is not active; delivery ignored", request_id, org.tenant_id)
        return WebhookAck(status="ignored")

    background_tasks.add_task(services.processor.process, org, payload)
    return WebhookAck()
