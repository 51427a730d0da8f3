"""Processing of one inbound WhatsApp delivery for a resolved tenant.

The HTTP layer acknowledges the delivery and schedules ``process`` in the
background; everything here runs under the per-contact lock so one
contact's messages are handled strictly in arrival order.
"""

from __future__ import annotations

import json
import logging

from carebot.agent import IntentRouter, TurnContext
from carebot.api.schemas import WebhookMessage, WebhookPayload
from carebot.models import Contact, Direction, NotificationEvent, Organization
from carebot.services.contacts import ContactManager, contact_key
from carebot.services.knowledge import KnowledgeStore
from carebot.services.media import MEDIA_FAILURE_TEXT, MediaUploader, rehost_media
from carebot.services.notifications import NotificationEmitter
from carebot.services.whatsapp_client import WhatsAppClient
from carebot.tools.flows import (
    APPOINTMENT_ACK,
    FEEDBACK_ACK,
    SUPPORT_ACK,
    FlowHandlers,
    checkin_ack,
    registration_ack,
)
from carebot.tools.forms import FormKind, FormPayloadError, detect_form_kind, parse_form_payload
from carebot.tools.triage import SymptomTriage

logger = logging.getLogger(__name__)

CHECKIN_PREFIX = "Checkin:"
MESSAGE_NOTIFICATION_MIN_LENGTH = 10
MESSAGE_PREVIEW_LENGTH = 30
FORM_ERROR_REPLY = "Sorry, we could not read that form. Please try submitting it again."

MEDIA_PHRASES = {
    "image": "an image",
    "video": "a video",
    "audio": "an audio message",
    "document": "a document",
}


def checkin_target(text: str) -> str | None:
    """``"Checkin: Acme"`` → ``"Acme"``; ``None`` for other messages."""
    if not text.startswith(CHECKIN_PREFIX):
        return None
    return text[len(CHECKIN_PREFIX):].split(":")[0].strip()


def message_preview(text: str) -> str:
    if len(text) > MESSAGE_PREVIEW_LENGTH:
        return text[:MESSAGE_PREVIEW_LENGTH] + "..."
    return text


class WebhookProcessor:
    def __init__(
        self,
        contacts: ContactManager,
        flows: FlowHandlers,
        router: IntentRouter,
        knowledge: KnowledgeStore,
        triage: SymptomTriage,
        notifications: NotificationEmitter,
        messenger: WhatsAppClient,
        uploader: MediaUploader,
    ) -> None:
        self._contacts = contacts
        self._flows = flows
        self._router = router
        self._knowledge = knowledge
        self._triage = triage
        self._notifications = notifications
        self._messenger = messenger
        self._uploader = uploader

    async def process(self, org: Organization, payload: WebhookPayload) -> None:
        """Handle the delivery's first message.  Failures are logged, never raised."""
        message = payload.message
        if message is None:
            logger.debug("Delivery for tenant=%s carries no message", org.tenant_id)
            return

        async with self._contacts.locks.hold(contact_key(org.tenant_id, message.from_)):
            try:
                await self._handle(org, message, payload.contact_name)
            except Exception:
                logger.exception(
                    "Failed to process %s message from %s for tenant=%s",
                    message.type, message.from_, org.tenant_id,
                )

    async def _handle(self, org: Organization, message: WebhookMessage, display_name: str) -> None:
        contact, _ = await self._contacts.get_or_create(message.from_, org, display_name)

        if message.interactive is not None and message.interactive.type == "nfm_reply":
            await self._handle_form(org, contact, message)
        elif message.media is not None:
            await self._handle_media(org, contact, message)
        elif message.type == "text":
            await self._handle_text(org, contact, message.text.body if message.text else "")
        else:
            logger.info("Ignoring %s message from %s for tenant=%s", message.type, contact.phone, org.tenant_id)

    async def _inbound(
        self, org: Organization, contact: Contact, message_type: str, body: str, extra: dict | None = None
    ) -> None:
        await self._contacts.append_transcript(
            contact, Direction.INBOUND, contact.phone, org.whatsapp_phone_id, message_type, body, extra,
        )

    async def _reply(self, org: Organization, contact: Contact, text: str) -> None:
        await self._messenger.send_text(org, contact.phone, text)
        await self._contacts.append_transcript(
            contact, Direction.OUTBOUND, org.whatsapp_phone_id, contact.phone, "text", text,
        )

    # ── Forms ────────────────────────────────────────────────────────

    async def _handle_form(self, org: Organization, contact: Contact, message: WebhookMessage) -> None:
        reply = message.interactive.nfm_reply
        raw = reply.response_json if reply else None
        try:
            form = parse_form_payload(raw)
        except FormPayloadError as exc:
            logger.warning("Unreadable form reply from %s for tenant=%s: %s", contact.phone, org.tenant_id, exc)
            await self._inbound(org, contact, "interactive", raw or "")
            await self._reply(org, contact, FORM_ERROR_REPLY)
            return

        await self._inbound(org, contact, "interactive", json.dumps(form, separators=(",", ":")))

        kind = detect_form_kind(form)
        logger.info("Form reply kind=%s from %s for tenant=%s", kind.value, contact.phone, org.tenant_id)
        if kind is FormKind.REGISTRATION:
            outcome = await self._flows.complete_registration(contact, org, form)
            ack = registration_ack(org)
        elif kind is FormKind.FEEDBACK:
            outcome = await self._flows.record_feedback(contact, org, form)
            ack = FEEDBACK_ACK
        elif kind is FormKind.SUPPORT:
            outcome = await self._flows.create_support_ticket(contact, org, form)
            ack = SUPPORT_ACK
        else:
            outcome = await self._flows.create_appointment(contact, org, form)
            ack = APPOINTMENT_ACK

        await self._notifications.publish(outcome.notification)
        await self._reply(org, contact, ack)

    # ── Media ────────────────────────────────────────────────────────

    async def _handle_media(self, org: Organization, contact: Contact, message: WebhookMessage) -> None:
        media = message.media
        url = await rehost_media(self._messenger, self._uploader, org, media.id, media.mime_type)
        link = url or MEDIA_FAILURE_TEXT

        if message.type == "image":
            await self._inbound(org, contact, "image", "User sent an image", {"image_url": link})
        elif message.type == "document":
            await self._inbound(org, contact, "pdf" if "pdf" in media.mime_type else "doc", link)
        else:
            await self._inbound(org, contact, message.type, link)

        await self._notifications.emit(
            org.tenant_id,
            contact.phone,
            f"{contact.name} sent {MEDIA_PHRASES.get(message.type, 'a media file')}",
            NotificationEvent.MESSAGE,
            contact_id=contact.id,
            media_type=message.type,
            media_url=link,
        )

    # ── Text ─────────────────────────────────────────────────────────

    async def _handle_text(self, org: Organization, contact: Contact, text: str) -> None:
        await self._inbound(org, contact, "text", text)

        if not text.startswith(CHECKIN_PREFIX) and len(text) > MESSAGE_NOTIFICATION_MIN_LENGTH:
            await self._notifications.emit(
                org.tenant_id,
                contact.phone,
                f'New message from {contact.name}: "{message_preview(text)}"',
                NotificationEvent.MESSAGE,
                contact_id=contact.id,
                message_content=text,
            )

        if checkin_target(text) == org.tenant_id:
            outcome = await self._flows.create_checkin(contact, org)
            await self._notifications.publish(outcome.notification)
            await self._reply(org, contact, checkin_ack(org))
            return

        if not contact.bot_enabled:
            logger.info("Bot disabled for contact %s; message stored only", contact.id)
            return

        ctx = TurnContext(
            org=org,
            phone=contact.phone,
            flows=self._flows,
            knowledge=self._knowledge,
            triage=self._triage,
        )
        result = await self._router.respond(text, contact.history, ctx)
        await self._contacts.save_history(contact, result.turns)
        await self._reply(org, contact, result.reply)
