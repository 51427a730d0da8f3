"""Tenant-scoped dashboard notifications.

Handlers commit their primary record first and hand back a
``NotificationDraft``; publishing it is a separate step whose failure is
logged and never undoes the primary write.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from carebot.models import Notification, NotificationEvent, utcnow
from carebot.services.store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20


def notifications_collection(tenant_id: str) -> str:
    return f"organizations/{tenant_id}/notifications"


@dataclass
class NotificationDraft:
    tenant_id: str
    sender: str
    message: str
    event: NotificationEvent
    references: dict[str, Any] = field(default_factory=dict)


class NotificationEmitter:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def publish(self, draft: NotificationDraft | None) -> str | None:
        """Persist *draft* with ``seen=False``.  Returns the new id, or ``None``
        when there was nothing to publish or the write failed."""
        if draft is None:
            return None
        notification = Notification(
            tenant_id=draft.tenant_id,
            sender=draft.sender,
            message=draft.message,
            event=draft.event,
            timestamp=self._clock(),
            references=draft.references,
        )
        try:
            doc_id = await self._store.add(
                notifications_collection(draft.tenant_id), notification.to_document(),
            )
        except Exception:
            logger.exception(
                "Failed to publish %s notification for tenant=%s", draft.event.value, draft.tenant_id,
            )
            return None
        logger.info("Notification %s published for tenant=%s", draft.event.value, draft.tenant_id)
        return doc_id

    async def emit(
        self,
        tenant_id: str,
        sender: str,
        message: str,
        event: NotificationEvent,
        **references: Any,
    ) -> str | None:
        return await self.publish(NotificationDraft(tenant_id, sender, message, event, references))

    # ── Dashboard reads ──────────────────────────────────────────────

    async def list(
        self,
        tenant_id: str,
        *,
        limit: int = DEFAULT_LIST_LIMIT,
        event: NotificationEvent | None = None,
        unseen_only: bool = False,
    ) -> list[Notification]:
        filters: dict[str, Any] = {}
        if event is not None:
            filters["event"] = event
        if unseen_only:
            filters["seen"] = False
        docs = await self._store.query(
            notifications_collection(tenant_id),
            filters,
            order_by="timestamp",
            descending=True,
            limit=limit,
        )
        return [Notification.from_document(d.id, d.data) for d in docs]

    async def mark_seen(self, tenant_id: str, ids: Iterable[str]) -> int:
        """Mark the given notifications seen; unknown ids are skipped."""
        collection = notifications_collection(tenant_id)
        updated = 0
        for doc_id in ids:
            if await self._store.get(collection, doc_id) is None:
                logger.debug("Skipping unknown notification id=%s", doc_id)
                continue
            await self._store.update(collection, doc_id, {"seen": True})
            updated += 1
        return updated

    async def mark_all_seen(self, tenant_id: str) -> int:
        collection = notifications_collection(tenant_id)
        docs = await self._store.query(collection, {"seen": False})
        for doc in docs:
            await self._store.update(collection, doc.id, {"seen": True})
        return len(docs)

    async def counts(self, tenant_id: str) -> dict[str, Any]:
        docs = await self._store.query(notifications_collection(tenant_id))
        by_event: Counter[str] = Counter()
        unseen_by_event: Counter[str] = Counter()
        for doc in docs:
            event = NotificationEvent(doc.data["event"]).value
            by_event[event] += 1
            if not doc.data.get("seen"):
                unseen_by_event[event] += 1
        return {
            "total": len(docs),
            "unseen": sum(unseen_by_event.values()),
            "by_event": dict(by_event),
            "unseen_by_event": dict(unseen_by_event),
        }
