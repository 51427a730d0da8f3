"""Tenant resolution and cached per-tenant configuration.

Resolution precedence for an inbound webhook delivery:

  1. explicit tenant header (``x-organization-id``)
  2. ``orgId`` query parameter or ``/webhook/{tenant_id}`` path parameter
  3. the receiving phone-number id from the envelope metadata, matched
     against ``whatsapp_phone_id`` and then the legacy number field
  4. an organization id carried in the message context or metadata
  5. the configured default tenant

The resolved tenant's ``Organization`` is read through a TTL cache.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from carebot.api.schemas import WebhookPayload
from carebot.config import DEFAULT_TENANT_ID, TENANT_CACHE_TTL_SECONDS
from carebot.models import Organization
from carebot.services.cache import Cache, policy_for_ttl
from carebot.services.store import DocumentStore

logger = logging.getLogger(__name__)

TENANT_HEADER = "x-organization-id"
TENANT_QUERY_PARAMS = ("orgId", "tenant_id")
ORGANIZATIONS = "organizations"

_CK_TENANT = "tenant:"


class TenantResolver:
    def __init__(
        self,
        store: DocumentStore,
        cache: Cache | None = None,
        *,
        default_tenant_id: str = DEFAULT_TENANT_ID,
    ) -> None:
        self._store = store
        self._cache = cache or Cache(policy_for_ttl(TENANT_CACHE_TTL_SECONDS))
        self.default_tenant_id = default_tenant_id

    # ── Configuration ────────────────────────────────────────────────

    async def get_config(self, tenant_id: str) -> Organization | None:
        """Return the tenant's configuration, from cache when fresh."""
        cached = self._cache.get(f"{_CK_TENANT}{tenant_id}")
        if cached is not None:
            return cached
        return await self.refresh(tenant_id)

    async def refresh(self, tenant_id: str) -> Organization | None:
        """Re-read the tenant from the store, bypassing the cache."""
        doc = await self._store.get(ORGANIZATIONS, tenant_id)
        if doc is None:
            self._cache.invalidate(f"{_CK_TENANT}{tenant_id}")
            logger.warning("No organization document for tenant=%s", tenant_id)
            return None
        org = Organization.from_document(doc.id, {"tenant_id": doc.id, **doc.data})
        self._cache.put(f"{_CK_TENANT}{tenant_id}", org)
        logger.debug("Loaded configuration for tenant=%s", tenant_id)
        return org

    def invalidate(self, tenant_id: str | None = None) -> int:
        if tenant_id is None:
            return self._cache.invalidate_prefix(_CK_TENANT)
        return int(self._cache.invalidate(f"{_CK_TENANT}{tenant_id}"))

    @property
    def cached_count(self) -> int:
        return self._cache.entry_count

    async def list_active(self) -> list[Organization]:
        docs = await self._store.query(ORGANIZATIONS, {"billing_active": True})
        return [Organization.from_document(d.id, {"tenant_id": d.id, **d.data}) for d in docs]

    # ── Resolution ───────────────────────────────────────────────────

    async def tenant_for_phone_number(self, phone_number_id: str) -> str | None:
        for field in ("whatsapp_phone_id", "legacy_phone_id"):
            docs = await self._store.query(ORGANIZATIONS, {field: phone_number_id}, limit=1)
            if docs:
                return docs[0].id
        return None

    async def resolve_tenant_id(
        self,
        headers: Mapping[str, str],
        params: Mapping[str, str],
        payload: WebhookPayload,
    ) -> str:
        header_value = headers.get(TENANT_HEADER)
        if header_value:
            return header_value

        for name in TENANT_QUERY_PARAMS:
            if params.get(name):
                return params[name]

        message = payload.message
        if message and message.context and message.context.organization_id:
            return message.context.organization_id
        value = payload.value
        if value and value.metadata and value.metadata.organization_id:
            return value.metadata.organization_id

        phone_number_id = payload.phone_number_id
        if phone_number_id:
            tenant_id = await self.tenant_for_phone_number(phone_number_id)
            if tenant_id:
                return tenant_id
            logger.info("Phone number id %s matches no tenant", phone_number_id)

        return self.default_tenant_id

    async def resolve(
        self,
        headers: Mapping[str, str],
        params: Mapping[str, str],
        payload: WebhookPayload,
    ) -> Organization | None:
        """Resolve the tenant for a delivery; ``None`` if it has no configuration."""
        tenant_id = await self.resolve_tenant_id(headers, params, payload)
        org = await self.get_config(tenant_id)
        if org is None:
            logger.warning("Resolved tenant=%s has no configuration", tenant_id)
        return org
