"""Operator endpoints: cache control, contact maintenance, notifications.

Every endpoint requires ``?secret=<ADMIN_SECRET>``; with no secret
configured all calls are rejected.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from carebot.api.routes import get_services
from carebot.api.schemas import MarkSeenRequest, NotificationOut
from carebot.config import ADMIN_SECRET
from carebot.models import NotificationEvent

logger = logging.getLogger(__name__)


def require_admin(secret: str | None = Query(None)) -> None:
    if not ADMIN_SECRET or secret is None or not hmac.compare_digest(secret, ADMIN_SECRET):
        raise HTTPException(status_code=403, detail="Unauthorized")


admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

CACHE_TYPES = ("all", "tenant", "knowledge")


# ── Caches ───────────────────────────────────────────────────────────


@admin_router.post("/refresh-tenant")
async def refresh_tenant(request: Request, tenant_id: str | None = None):
    services = get_services(request)
    if tenant_id is None:
        return {"invalidated": services.tenants.invalidate()}
    org = await services.tenants.refresh(tenant_id)
    if org is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    logger.info("Tenant %s configuration refreshed", tenant_id)
    return {"tenant_id": org.tenant_id, "name": org.display_name, "billing_active": org.billing_active}


@admin_router.post("/clear-cache")
async def clear_cache(request: Request, type: str = "all"):  # noqa: A002
    if type not in CACHE_TYPES:
        raise HTTPException(status_code=400, detail=f"type must be one of {', '.join(CACHE_TYPES)}")
    services = get_services(request)
    cleared: dict[str, int] = {}
    if type in ("all", "tenant"):
        cleared["tenant"] = services.tenants.invalidate()
    if type in ("all", "knowledge"):
        cleared["knowledge"] = services.knowledge.clear()
    logger.info("Caches cleared: %s", cleared)
    return {"cleared": cleared}


@admin_router.post("/reload-knowledge")
async def reload_knowledge(request: Request, tenant_id: str | None = None):
    services = get_services(request)
    if tenant_id is None:
        return {"cleared": services.knowledge.clear()}
    return {"tenant_id": tenant_id, "loaded": await services.knowledge.reload(tenant_id)}


# ── Tenants and contacts ─────────────────────────────────────────────


@admin_router.get("/tenants")
async def list_tenants(request: Request):
    orgs = await get_services(request).tenants.list_active()
    return {
        "tenants": [
            {"tenant_id": o.tenant_id, "name": o.display_name, "billing_plan": o.billing_plan}
            for o in orgs
        ]
    }


@admin_router.get("/contacts-by-phone")
async def contacts_by_phone(request: Request, phone: str | None = None, tenant_id: str | None = None):
    if not phone:
        raise HTTPException(status_code=400, detail="phone is required")
    manager = get_services(request).contacts
    if tenant_id:
        found = await manager.find(phone, tenant_id)
        contacts = [found] if found else []
    else:
        contacts = await manager.find_across_tenants(phone)
    return {
        "phone": phone,
        "contacts": [
            {
                "id": c.id,
                "tenant_id": c.tenant_id,
                "name": c.name,
                "registered": c.registered,
                "bot_enabled": c.bot_enabled,
                "last_seen": c.last_seen.isoformat() if c.last_seen else None,
            }
            for c in contacts
        ],
    }


@admin_router.get("/registration-status")
async def registration_status(request: Request, tenant_id: str):
    return await get_services(request).contacts.registration_status(tenant_id)


@admin_router.post("/send-welcome")
async def send_welcome(request: Request, phone: str | None = None, tenant_id: str | None = None):
    if not phone:
        raise HTTPException(status_code=400, detail="phone is required")
    services = get_services(request)
    tenant_id = tenant_id or services.tenants.default_tenant_id
    org = await services.tenants.get_config(tenant_id)
    if org is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    if not org.billing_active:
        raise HTTPException(status_code=400, detail=f"Tenant {tenant_id} is not active")
    contact = await services.contacts.find(phone, tenant_id)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found")
    sent = await services.contacts.send_welcome(org, phone, contact.name)
    return {"sent": sent}


@admin_router.post("/backfill-contacts")
async def backfill_contacts(request: Request, tenant_id: str | None = None):
    services = get_services(request)
    tenant_id = tenant_id or services.tenants.default_tenant_id
    return {"tenant_id": tenant_id, "updated": await services.contacts.backfill_legacy(tenant_id)}


# ── Notifications ────────────────────────────────────────────────────


@admin_router.get("/notifications")
async def list_notifications(
    request: Request,
    tenant_id: str,
    limit: int = Query(20, ge=1, le=200),
    event: str | None = None,
    unseen_only: bool = False,
):
    try:
        event_filter = NotificationEvent(event) if event else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown event type {event}") from exc
    items = await get_services(request).notifications.list(
        tenant_id, limit=limit, event=event_filter, unseen_only=unseen_only,
    )
    return {
        "notifications": [
            NotificationOut(
                id=n.id,
                sender=n.sender,
                message=n.message,
                event=n.event.value,
                seen=n.seen,
                timestamp=n.timestamp.isoformat(),
                references=n.references,
            )
            for n in items
        ]
    }


@admin_router.post("/notifications/mark-seen")
async def mark_notifications_seen(request: Request, body: MarkSeenRequest, tenant_id: str):
    notifications = get_services(request).notifications
    if body.mark_all:
        return {"updated": await notifications.mark_all_seen(tenant_id)}
    if not body.ids:
        raise HTTPException(status_code=400, detail="Provide ids or mark_all")
    return {"updated": await notifications.mark_seen(tenant_id, body.ids)}


@admin_router.get("/notification-counts")
async def notification_counts(request: Request, tenant_id: str):
    return await get_services(request).notifications.counts(tenant_id)


# ── Diagnostics ──────────────────────────────────────────────────────


@admin_router.get("/tenant-self-test")
async def tenant_self_test(request: Request, tenant_id: str):
    services = get_services(request)
    org = await services.tenants.refresh(tenant_id)
    checks: dict[str, bool] = {"organization_exists": org is not None}
    if org is not None:
        has_credentials = bool(org.whatsapp_token and org.whatsapp_phone_id)
        status = await services.messenger.check_phone_number(org) if has_credentials else None
        checks.update(
            has_whatsapp_token=bool(org.whatsapp_token),
            has_whatsapp_phone_id=bool(org.whatsapp_phone_id),
            is_active=org.billing_active,
            has_knowledge_base=await services.knowledge.load(org) is not None,
            whatsapp_api_connectivity=status == 200,
        )
    return {"tenant_id": tenant_id, "checks": checks, "all_passed": all(checks.values())}
