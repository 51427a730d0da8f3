"""Domain records persisted in the document store.

Every record carries a ``tenant_id`` (or hangs off a contact that does), so
nothing created while handling one organization's traffic is visible to
another.  Documents are stored as plain dicts produced by ``model_dump()``;
``from_document`` rebuilds the model and attaches the store id.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class Record(BaseModel):
    """Base for stored records; ``id`` is the document id and is not persisted."""

    id: str = Field(default="", exclude=True)

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]):
        return cls.model_validate({**data, "id": doc_id})

    def to_document(self) -> dict[str, Any]:
        return self.model_dump()


# ── Tenants ──────────────────────────────────────────────────────────


class Organization(Record):
    """Per-tenant configuration, owned externally and cached by the resolver."""

    tenant_id: str
    name: str
    whatsapp_token: str = ""
    whatsapp_phone_id: str = ""
    # Older organization documents only carry the legacy number field
    legacy_phone_id: str = ""
    billing_active: bool = False
    billing_plan: str = "Basic"
    knowledge_url: str = ""
    knowledge_file: str = ""
    welcome_template: str = "welcome"
    support_template: str = "support"
    appointment_flow_id: str = ""
    services: list[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.name or self.tenant_id


class Doctor(Record):
    tenant_id: str
    name: str
    specializations: list[str] = Field(default_factory=list)


# ── Contacts ─────────────────────────────────────────────────────────


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"
    UNKNOWN = "NA"


class Contact(Record):
    """A WhatsApp user scoped to one tenant.  Unique on ``(phone, tenant_id)``."""

    tenant_id: str | None = None
    phone: str
    name: str = "Unknown"
    bot_enabled: bool = True
    registered: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    last_seen: datetime | None = None
    gender: Gender | None = None
    dob: str | None = None
    age: int | None = None
    address: str | None = None
    # Ordered LLM turns: {"role": "system"|"user"|"assistant", "content": str}
    history: list[dict[str, str]] = Field(default_factory=list)


class Patient(Record):
    """A person on whose behalf a contact books care."""

    name: str
    gender: Gender = Gender.UNKNOWN
    age: int | None = None
    relation: str = "Self"
    dob: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ChatMessage(Record):
    """One transcript line.  ``body`` is already truncated for storage."""

    direction: Direction
    sender: str
    recipient: str
    message_type: str
    body: str
    timestamp: datetime = Field(default_factory=utcnow)
    extra: dict[str, Any] = Field(default_factory=dict)


# ── Tenant-owned records ─────────────────────────────────────────────


class Feedback(BaseModel):
    recommend: str = "No"
    comments: str = ""
    staff_experience: int | None = None
    doctor_consultation: int | None = None
    overall_experience: int | None = None
    submitted_at: datetime = Field(default_factory=utcnow)


class Appointment(Record):
    appointment_id: str
    tenant_id: str
    contact_id: str
    phone: str
    doctor_id: str = ""
    doctor_name: str | None = None
    specialty: str = ""
    date: str = ""
    time_slot: str = ""
    scheduled_for: datetime | None = None
    patient_name: str = ""
    patient_age: int | None = None
    patient_gender: Gender = Gender.UNKNOWN
    reason: str = ""
    status: str = "Draft"
    flow_token: str = ""
    feedback: Feedback | None = None
    created_at: datetime = Field(default_factory=utcnow)


class SupportTicket(Record):
    ticket_id: str
    tenant_id: str
    contact_id: str
    phone: str
    name: str
    description: str
    urgency: str = "Low"
    category: str = "General"
    status: str = "open"
    created_at: datetime = Field(default_factory=utcnow)


class Checkin(Record):
    checkin_id: str
    tenant_id: str
    contact_id: str
    phone: str
    checked_in_at: datetime = Field(default_factory=utcnow)


class NotificationEvent(str, Enum):
    NEW_USER = "NewUser"
    REGISTRATION = "Registration"
    APPOINTMENT = "Appointment"
    TICKET = "Ticket"
    CHECKIN = "Checkin"
    FEEDBACK = "Feedback"
    MESSAGE = "Message"


class Notification(Record):
    """Dashboard event.  ``seen`` starts false and only the admin API flips it."""

    tenant_id: str
    sender: str
    message: str
    event: NotificationEvent
    seen: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    references: dict[str, Any] = Field(default_factory=dict)
