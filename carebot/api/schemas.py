"""Pydantic schemas for the webhook envelope and the HTTP endpoints.

Only the parts of the WhatsApp Cloud API envelope the service reads are
modelled; unknown fields are ignored so status callbacks and new message
types still parse.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ── Webhook envelope ─────────────────────────────────────────────────


class WebhookProfile(BaseModel):
    name: str | None = None


class WebhookContact(BaseModel):
    wa_id: str | None = None
    profile: WebhookProfile | None = None


class WebhookMetadata(BaseModel):
    phone_number_id: str | None = None
    display_phone_number: str | None = None
    organization_id: str | None = None


class WebhookText(BaseModel):
    body: str = ""


class WebhookFormReply(BaseModel):
    response_json: str | None = None
    body: str | None = None
    name: str | None = None


class WebhookInteractive(BaseModel):
    type: str | None = None
    nfm_reply: WebhookFormReply | None = None


class WebhookMedia(BaseModel):
    id: str
    mime_type: str = "application/octet-stream"
    caption: str | None = None
    filename: str | None = None


class WebhookMessageContext(BaseModel):
    organization_id: str | None = None


class WebhookMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(alias="from")
    id: str | None = None
    type: str = "text"
    text: WebhookText | None = None
    interactive: WebhookInteractive | None = None
    image: WebhookMedia | None = None
    video: WebhookMedia | None = None
    audio: WebhookMedia | None = None
    document: WebhookMedia | None = None
    context: WebhookMessageContext | None = None

    @property
    def media(self) -> WebhookMedia | None:
        return getattr(self, self.type, None) if self.type in MEDIA_TYPES else None


MEDIA_TYPES = ("image", "video", "audio", "document")


class WebhookValue(BaseModel):
    messaging_product: str | None = None
    metadata: WebhookMetadata | None = None
    # Some senders put the phone-number id at the top of the value
    phone_number_id: str | None = None
    contacts: list[WebhookContact] = Field(default_factory=list)
    messages: list[WebhookMessage] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: str | None = None
    value: WebhookValue = Field(default_factory=WebhookValue)


class WebhookEntry(BaseModel):
    id: str | None = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: str | None = None
    entry: list[WebhookEntry] = Field(default_factory=list)

    @property
    def value(self) -> WebhookValue | None:
        """The first change's value; the platform sends one per delivery."""
        if self.entry and self.entry[0].changes:
            return self.entry[0].changes[0].value
        return None

    @property
    def message(self) -> WebhookMessage | None:
        value = self.value
        return value.messages[0] if value and value.messages else None

    @property
    def phone_number_id(self) -> str | None:
        value = self.value
        if value is None:
            return None
        if value.metadata and value.metadata.phone_number_id:
            return value.metadata.phone_number_id
        return value.phone_number_id

    @property
    def contact_name(self) -> str:
        value = self.value
        if value and value.contacts and value.contacts[0].profile and value.contacts[0].profile.name:
            return value.contacts[0].profile.name
        return "Unknown"


# ── HTTP responses ───────────────────────────────────────────────────


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "carebot-webhook"
    cached_tenants: int = 0
    cached_knowledge: int = 0


class WebhookAck(BaseModel):
    status: str = "received"


class MarkSeenRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)
    mark_all: bool = False


class NotificationOut(BaseModel):
    id: str
    sender: str
    message: str
    event: str
    seen: bool
    timestamp: str
    references: dict[str, Any] = Field(default_factory=dict)
