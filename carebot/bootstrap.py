"""Wiring of the service graph shared by the HTTP server and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from carebot.agent import IntentRouter
from carebot.config import HTTP_TIMEOUT_SECONDS
from carebot.services.contacts import ContactManager
from carebot.services.knowledge import KnowledgeStore
from carebot.services.media import MediaUploader
from carebot.services.notifications import NotificationEmitter
from carebot.services.store import DocumentStore, InMemoryDocumentStore
from carebot.services.tenants import TenantResolver
from carebot.services.whatsapp_client import WhatsAppClient
from carebot.tools.flows import FlowHandlers
from carebot.tools.triage import SymptomTriage
from carebot.webhook import WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: DocumentStore
    http: httpx.AsyncClient
    tenants: TenantResolver
    notifications: NotificationEmitter
    messenger: WhatsAppClient
    contacts: ContactManager
    flows: FlowHandlers
    knowledge: KnowledgeStore
    triage: SymptomTriage
    router: IntentRouter
    processor: WebhookProcessor

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.store.close()


def create_services(
    store: DocumentStore | None = None,
    *,
    messenger: WhatsAppClient | None = None,
    uploader: MediaUploader | None = None,
    http: httpx.AsyncClient | None = None,
) -> Services:
    """Build every component around one store and one HTTP connection pool."""
    store = store or InMemoryDocumentStore()
    http = http or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)
    messenger = messenger or WhatsAppClient(http=http)
    uploader = uploader or MediaUploader()

    tenants = TenantResolver(store)
    notifications = NotificationEmitter(store)
    contacts = ContactManager(store, messenger, notifications)
    flows = FlowHandlers(store, messenger, contacts)
    knowledge = KnowledgeStore(tenants, http=http)
    triage = SymptomTriage(store)
    router = IntentRouter()
    processor = WebhookProcessor(
        contacts, flows, router, knowledge, triage, notifications, messenger, uploader,
    )
    logger.info("Services initialised with %s", type(store).__name__)
    return Services(
        store=store,
        http=http,
        tenants=tenants,
        notifications=notifications,
        messenger=messenger,
        contacts=contacts,
        flows=flows,
        knowledge=knowledge,
        triage=triage,
        router=router,
        processor=processor,
    )
