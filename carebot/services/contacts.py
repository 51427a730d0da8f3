"""Contacts, their patients, transcripts and LLM turn history.

A contact is unique on ``(phone, tenant_id)``.  New contacts are created
with a conditional write on a composite document id, so two concurrent
first messages from the same number produce exactly one contact, one
welcome template and one "new user" notification.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from carebot.models import ChatMessage, Contact, Direction, NotificationEvent, Organization, Patient, utcnow
from carebot.services.notifications import NotificationEmitter
from carebot.services.store import DocumentStore
from carebot.services.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)

CONTACTS = "contacts"
MAX_STORED_BODY = 300
TRUNCATION_SUFFIX = "...(truncated)"


def truncate_body(body: str) -> str:
    if len(body) <= MAX_STORED_BODY:
        return body
    return body[:MAX_STORED_BODY] + TRUNCATION_SUFFIX


def contact_key(tenant_id: str, phone: str) -> str:
    return f"{tenant_id}:{phone}"


def patients_collection(contact_id: str) -> str:
    return f"{CONTACTS}/{contact_id}/patients"


def transcript_collection(contact_id: str) -> str:
    return f"{CONTACTS}/{contact_id}/chat"


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it.

    ``asyncio.Lock`` wakes waiters in FIFO order, so work for one key runs
    in arrival order.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ContactManager:
    def __init__(
        self,
        store: DocumentStore,
        messenger: WhatsAppClient,
        notifications: NotificationEmitter,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._notifications = notifications
        self._clock = clock
        self.locks = KeyedLocks()

    # ── Lookup and creation ──────────────────────────────────────────

    async def find(self, phone: str, tenant_id: str) -> Contact | None:
        doc = await self._store.get(CONTACTS, contact_key(tenant_id, phone))
        if doc is None:
            # Contacts created before composite ids were introduced
            docs = await self._store.query(CONTACTS, {"phone": phone, "tenant_id": tenant_id}, limit=1)
            if not docs:
                return None
            doc = docs[0]
        return Contact.from_document(doc.id, doc.data)

    async def find_across_tenants(self, phone: str) -> list[Contact]:
        docs = await self._store.query(CONTACTS, {"phone": phone})
        return [Contact.from_document(d.id, d.data) for d in docs]

    async def get_or_create(
        self, phone: str, org: Organization, display_name: str
    ) -> tuple[Contact, bool]:
        """Return the tenant's contact for *phone*, creating it on first contact.

        Existing contacts get ``last_seen`` refreshed.  The boolean is
        ``True`` only for the call that created the contact.
        """
        now = self._clock()
        existing = await self.find(phone, org.tenant_id)
        if existing is not None:
            return await self.update(existing, last_seen=now), False

        draft = Contact(
            tenant_id=org.tenant_id,
            phone=phone,
            name=display_name,
            created_at=now,
            last_seen=now,
        )
        doc, created = await self._store.create_if_absent(
            CONTACTS, contact_key(org.tenant_id, phone), draft.to_document(),
        )
        contact = Contact.from_document(doc.id, doc.data)
        if not created:
            return await self.update(contact, last_seen=now), False

        logger.info("Created contact %s for tenant=%s", contact.id, org.tenant_id)
        await self._notifications.emit(
            org.tenant_id,
            phone,
            f"New user {display_name} created an account",
            NotificationEvent.NEW_USER,
            contact_id=contact.id,
        )
        await self.send_welcome(org, phone, display_name)
        await self.add_patient(
            contact, Patient(name=display_name, relation="Self", created_at=now),
        )
        return contact, True

    async def update(self, contact: Contact, **fields: Any) -> Contact:
        updated = contact.model_copy(update=fields)
        stored = {k: v for k, v in updated.to_document().items() if k in fields}
        await self._store.update(CONTACTS, contact.id, stored)
        return updated

    async def send_welcome(self, org: Organization, phone: str, name: str) -> bool:
        return await self._messenger.send_template(
            org,
            phone,
            org.welcome_template,
            header_params=[org.display_name],
            body_params=[org.display_name, name],
        )

    # ── Transcript and history ───────────────────────────────────────

    async def append_transcript(
        self,
        contact: Contact,
        direction: Direction,
        sender: str,
        recipient: str,
        message_type: str,
        body: str,
        extra: dict[str, Any] | None = None,
    ) -> ChatMessage:
        message = ChatMessage(
            direction=direction,
            sender=sender,
            recipient=recipient,
            message_type=message_type,
            body=truncate_body(body),
            timestamp=self._clock(),
            extra=extra or {},
        )
        doc_id = await self._store.add(transcript_collection(contact.id), message.to_document())
        return message.model_copy(update={"id": doc_id})

    async def transcript(self, contact: Contact) -> list[ChatMessage]:
        docs = await self._store.query(transcript_collection(contact.id), order_by="timestamp")
        return [ChatMessage.from_document(d.id, d.data) for d in docs]

    async def save_history(self, contact: Contact, turns: list[dict[str, str]]) -> Contact:
        return await self.update(contact, history=turns)

    # ── Patients ─────────────────────────────────────────────────────

    async def patients(self, contact: Contact) -> list[Patient]:
        docs = await self._store.query(patients_collection(contact.id), order_by="created_at")
        return [Patient.from_document(d.id, d.data) for d in docs]

    async def add_patient(self, contact: Contact, patient: Patient) -> Patient:
        doc_id = await self._store.add(patients_collection(contact.id), patient.to_document())
        return patient.model_copy(update={"id": doc_id})

    async def update_patient(self, contact: Contact, patient_id: str, **fields: Any) -> None:
        await self._store.update(patients_collection(contact.id), patient_id, fields)

    async def find_patient(self, contact: Contact, name: str) -> Patient | None:
        docs = await self._store.query(patients_collection(contact.id), {"name": name}, limit=1)
        return Patient.from_document(docs[0].id, docs[0].data) if docs else None

    # ── Maintenance ──────────────────────────────────────────────────

    async def backfill_legacy(self, tenant_id: str) -> dict[str, int]:
        """Fill fields missing on contacts created by older versions.

        Contacts without a tenant are assigned to *tenant_id*; contacts
        without ``registered`` predate registration and count as registered.
        """
        now = self._clock()
        counts = {"tenant_id": 0, "last_seen": 0, "registered": 0}
        for doc in await self._store.query(CONTACTS, {"tenant_id": None}):
            await self._store.update(CONTACTS, doc.id, {"tenant_id": tenant_id, "last_seen": now})
            counts["tenant_id"] += 1
        for doc in await self._store.query(CONTACTS, {"last_seen": None}):
            await self._store.update(CONTACTS, doc.id, {"last_seen": now})
            counts["last_seen"] += 1
        for doc in await self._store.query(CONTACTS, {"registered": None}):
            await self._store.update(CONTACTS, doc.id, {"registered": True})
            counts["registered"] += 1
        logger.info("Backfilled legacy contacts: %s", counts)
        return counts

    async def registration_status(self, tenant_id: str) -> dict[str, Any]:
        docs = await self._store.query(CONTACTS, {"tenant_id": tenant_id})
        contacts = [Contact.from_document(d.id, d.data) for d in docs]
        pending = [c for c in contacts if not c.registered]
        return {
            "tenant_id": tenant_id,
            "total": len(contacts),
            "registered": len(contacts) - len(pending),
            "unregistered": len(pending),
            "unregistered_contacts": [
                {"id": c.id, "phone": c.phone, "name": c.name, "created_at": c.created_at.isoformat()}
                for c in pending
            ],
        }
