"""Domain flow handlers.

Two kinds of entry point live here:

* **intent handlers** (``appointment_flow``, ``support_flow``,
  ``small_talk``) run when the intent router picks a function; they send
  a form or a canned reply and return the text the router records.
* **record handlers** (``create_appointment`` and friends) run when a
  submitted form or a check-in message arrives.  Each commits its primary
  record and returns a ``FlowOutcome`` carrying the notification to
  publish afterwards.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from carebot.config import APPOINTMENT_FLOW_ID
from carebot.models import (
    Appointment,
    Checkin,
    Contact,
    Feedback,
    NotificationEvent,
    Organization,
    Patient,
    SupportTicket,
    utcnow,
)
from carebot.services.contacts import ContactManager
from carebot.services.notifications import NotificationDraft
from carebot.services.store import DocumentStore
from carebot.services.whatsapp_client import WhatsAppClient
from carebot.tools.forms import (
    FEEDBACK_COMMENTS,
    FEEDBACK_DOCTOR,
    FEEDBACK_OVERALL,
    FEEDBACK_RECOMMEND,
    FEEDBACK_STAFF,
    REGISTRATION_ADDRESS,
    REGISTRATION_DOB,
    REGISTRATION_GENDER,
    REGISTRATION_NAME,
    SUPPORT_CATEGORY,
    SUPPORT_DESCRIPTION,
    SUPPORT_URGENCY,
    choice_label,
    parse_gender,
    parse_int,
    parse_star_rating,
    parse_yes_no,
)

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_letters + string.digits
ID_LENGTH = 8
FLOW_TOKEN_LENGTH = 6
PREVIEW_LENGTH = 50

APPOINTMENT_FLOW_NAME = "Appointment"
FLOW_FOOTER = "ConnectCare HRM"

# ── Intent replies ───────────────────────────────────────────────────
APPOINTMENT_FORM_SENT = "Appointment form sent."
RESCHEDULE_PLACEHOLDER = "Rescheduling placeholder. Not implemented."
CANCEL_PLACEHOLDER = "Cancellation placeholder. Not implemented."
UNKNOWN_APPOINTMENT_ACTION = "Unknown appointment action => new, reschedule, cancel only."
SUPPORT_FORM_SENT = "Support form sent."

# ── Form acknowledgements ────────────────────────────────────────────
FEEDBACK_ACK = "Thank you for your feedback!"
SUPPORT_ACK = "We have created your support ticket. Thank you!"
APPOINTMENT_ACK = "Your appointment has been recorded. Thank you!"


def registration_ack(org: Organization) -> str:
    return (
        "Thank you for completing your registration! "
        f"You can now use our {org.display_name} services."
    )


def checkin_ack(org: Organization) -> str:
    return f"Welcome to {org.display_name}! Check-in recorded. Please proceed!"


def small_talk_reply(org: Organization) -> str:
    return f"Hello! {org.display_name} is here to help. How can we assist you today?"


# ── Identifiers ──────────────────────────────────────────────────────


def generate_id(prefix: str, length: int = ID_LENGTH) -> str:
    """``"APT"`` → ``"APT-x9Qa2LmB"``."""
    return f"{prefix}-" + "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def generate_flow_token(length: int = FLOW_TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def appointments_collection(tenant_id: str) -> str:
    return f"organizations/{tenant_id}/appointments"


def tickets_collection(tenant_id: str) -> str:
    return f"organizations/{tenant_id}/tickets"


def checkins_collection(tenant_id: str) -> str:
    return f"organizations/{tenant_id}/checkins"


def _preview(text: str) -> str:
    return text[:PREVIEW_LENGTH] + "..." if len(text) > PREVIEW_LENGTH else text


def _parse_schedule(day: str, slot: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(f"{day}T{slot}" if slot else day)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def age_from_dob(dob: str, today: date) -> int | None:
    try:
        born = date.fromisoformat(dob[:10])
    except ValueError:
        return None
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


@dataclass
class FlowOutcome:
    """Result of a record handler: the committed record id (``None`` when
    nothing was written) and the notification to publish for it."""

    record_id: str | None
    notification: NotificationDraft | None = None


class FlowHandlers:
    def __init__(
        self,
        store: DocumentStore,
        messenger: WhatsAppClient,
        contacts: ContactManager,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._contacts = contacts
        self._clock = clock

    # ── Intent handlers ──────────────────────────────────────────────

    async def appointment_flow(self, action: str, org: Organization, phone: str) -> str:
        action = (action or "").strip().lower()
        if action == "new":
            await self._messenger.send_flow(
                org,
                phone,
                flow_token=generate_flow_token(),
                header=org.display_name,
                body="Please fill out this form to schedule your new appointment.",
                footer=FLOW_FOOTER,
                cta="Book Appointment Now!",
                flow_id=org.appointment_flow_id or APPOINTMENT_FLOW_ID,
                flow_name=APPOINTMENT_FLOW_NAME,
            )
            return APPOINTMENT_FORM_SENT
        if action == "reschedule":
            return RESCHEDULE_PLACEHOLDER
        if action == "cancel":
            return CANCEL_PLACEHOLDER
        logger.info("Unknown appointment action %r for tenant=%s", action, org.tenant_id)
        return UNKNOWN_APPOINTMENT_ACTION

    async def support_flow(self, department: str, org: Organization, phone: str) -> str:
        logger.debug("Support form requested (department=%r) tenant=%s", department, org.tenant_id)
        await self._messenger.send_template(
            org, phone, org.support_template, body_params=[org.display_name],
        )
        return SUPPORT_FORM_SENT

    def small_talk(self, message: str, org: Organization) -> str:
        return small_talk_reply(org)

    # ── Record handlers ──────────────────────────────────────────────

    async def create_appointment(
        self, contact: Contact, org: Organization, form: dict[str, Any]
    ) -> FlowOutcome:
        doctor_id = str(form.get("doctorId") or "")
        doctor_name = await self._doctor_name(doctor_id, org.tenant_id) if doctor_id else None
        day = str(form.get("date") or "")
        slot = str(form.get("time") or "")
        patient_name = str(form.get("name") or contact.name)

        appointment = Appointment(
            appointment_id=generate_id("APT"),
            tenant_id=org.tenant_id,
            contact_id=contact.id,
            phone=contact.phone,
            doctor_id=doctor_id,
            doctor_name=doctor_name,
            specialty=str(form.get("specialty") or ""),
            date=day,
            time_slot=slot,
            scheduled_for=_parse_schedule(day, slot),
            patient_name=patient_name,
            patient_age=parse_int(form.get("age")),
            patient_gender=parse_gender(form.get("gender")),
            reason=str(form.get("reason") or ""),
            flow_token=str(form.get("flow_token") or ""),
            created_at=self._clock(),
        )
        await self._store.set(
            appointments_collection(org.tenant_id), appointment.appointment_id, appointment.to_document(),
        )
        logger.info("Appointment %s created for tenant=%s", appointment.appointment_id, org.tenant_id)

        await self._ensure_patient(contact, appointment)

        return FlowOutcome(
            appointment.appointment_id,
            NotificationDraft(
                org.tenant_id,
                contact.phone,
                f"New appointment created for {patient_name} with {doctor_name or 'Unknown'} "
                f"on {day} at {slot}",
                NotificationEvent.APPOINTMENT,
                {"appointment_id": appointment.appointment_id, "contact_id": contact.id},
            ),
        )

    async def _doctor_name(self, doctor_id: str, tenant_id: str) -> str | None:
        doc = await self._store.get("doctors", doctor_id)
        if doc is None or doc.data.get("tenant_id") != tenant_id:
            logger.warning("Doctor %s not found for tenant=%s", doctor_id, tenant_id)
            return None
        return doc.data.get("name")

    async def _ensure_patient(self, contact: Contact, appointment: Appointment) -> None:
        if await self._contacts.find_patient(contact, appointment.patient_name) is not None:
            return
        is_self = appointment.patient_name.strip().lower() == contact.name.strip().lower()
        await self._contacts.add_patient(
            contact,
            Patient(
                name=appointment.patient_name,
                gender=appointment.patient_gender,
                age=appointment.patient_age,
                relation="Self" if is_self else "",
                created_at=self._clock(),
            ),
        )

    async def create_support_ticket(
        self, contact: Contact, org: Organization, form: dict[str, Any]
    ) -> FlowOutcome:
        ticket = SupportTicket(
            ticket_id=generate_id("TIC"),
            tenant_id=org.tenant_id,
            contact_id=contact.id,
            phone=contact.phone,
            name=contact.name,
            description=str(form.get(SUPPORT_DESCRIPTION) or ""),
            urgency=choice_label(form.get(SUPPORT_URGENCY), "Low"),
            category=choice_label(form.get(SUPPORT_CATEGORY), "General"),
            created_at=self._clock(),
        )
        await self._store.set(tickets_collection(org.tenant_id), ticket.ticket_id, ticket.to_document())
        logger.info("Support ticket %s created for tenant=%s", ticket.ticket_id, org.tenant_id)
        return FlowOutcome(
            ticket.ticket_id,
            NotificationDraft(
                org.tenant_id,
                contact.phone,
                f"New support ticket created by {contact.name} with {ticket.urgency} urgency "
                f"in the {ticket.category} category",
                NotificationEvent.TICKET,
                {
                    "ticket_id": ticket.ticket_id,
                    "contact_id": contact.id,
                    "ticket_details": {
                        "urgency": ticket.urgency,
                        "category": ticket.category,
                        "description": _preview(ticket.description),
                    },
                },
            ),
        )

    async def create_checkin(self, contact: Contact, org: Organization) -> FlowOutcome:
        checkin = Checkin(
            checkin_id=generate_id("CHK"),
            tenant_id=org.tenant_id,
            contact_id=contact.id,
            phone=contact.phone,
            checked_in_at=self._clock(),
        )
        await self._store.set(checkins_collection(org.tenant_id), checkin.checkin_id, checkin.to_document())
        logger.info("Check-in %s recorded for tenant=%s", checkin.checkin_id, org.tenant_id)
        return FlowOutcome(
            checkin.checkin_id,
            NotificationDraft(
                org.tenant_id,
                contact.phone,
                f"{contact.name} just checked in at the facility",
                NotificationEvent.CHECKIN,
                {"checkin_id": checkin.checkin_id, "contact_id": contact.id},
            ),
        )

    async def record_feedback(
        self, contact: Contact, org: Organization, form: dict[str, Any]
    ) -> FlowOutcome:
        """Attach feedback to the tenant's appointment with the form's flow token."""
        token = str(form.get("flow_token") or "")
        docs = (
            await self._store.query(appointments_collection(org.tenant_id), {"flow_token": token}, limit=1)
            if token
            else []
        )
        if not docs:
            logger.warning("No appointment with flow token %r for tenant=%s", token, org.tenant_id)
            return FlowOutcome(None)

        appointment = Appointment.from_document(docs[0].id, docs[0].data)
        feedback = Feedback(
            recommend=parse_yes_no(form.get(FEEDBACK_RECOMMEND)),
            comments=str(form.get(FEEDBACK_COMMENTS) or ""),
            staff_experience=parse_star_rating(form.get(FEEDBACK_STAFF)),
            doctor_consultation=parse_star_rating(form.get(FEEDBACK_DOCTOR)),
            overall_experience=parse_star_rating(form.get(FEEDBACK_OVERALL)),
            submitted_at=self._clock(),
        )
        await self._store.update(
            appointments_collection(org.tenant_id), appointment.id, {"feedback": feedback.model_dump()},
        )
        overall = feedback.overall_experience
        rating = f"{overall}/5" if overall is not None else "N/A"
        return FlowOutcome(
            appointment.id,
            NotificationDraft(
                org.tenant_id,
                contact.phone,
                f"Feedback received for appointment with {appointment.doctor_name or 'Unknown'}. "
                f"Overall rating: {rating}",
                NotificationEvent.FEEDBACK,
                {
                    "appointment_id": appointment.appointment_id,
                    "contact_id": contact.id,
                    "feedback": {
                        "recommend": feedback.recommend,
                        "comments": _preview(feedback.comments),
                        "staff_experience": feedback.staff_experience,
                        "doctor_consultation": feedback.doctor_consultation,
                        "overall_experience": overall,
                    },
                },
            ),
        )

    async def complete_registration(
        self, contact: Contact, org: Organization, form: dict[str, Any]
    ) -> FlowOutcome:
        full_name = str(form.get(REGISTRATION_NAME) or contact.name).strip()
        gender = parse_gender(form.get(REGISTRATION_GENDER))
        dob = str(form.get(REGISTRATION_DOB) or "")
        address = str(form.get(REGISTRATION_ADDRESS) or "")
        age = age_from_dob(dob, self._clock().date()) if dob else None

        contact = await self._contacts.update(
            contact,
            name=full_name,
            gender=gender,
            dob=dob or None,
            age=age,
            address=address or None,
            registered=True,
        )
        patients = await self._contacts.patients(contact)
        if patients:
            await self._contacts.update_patient(
                contact, patients[0].id, name=full_name, gender=gender, age=age, dob=dob or None,
            )
        logger.info("Contact %s completed registration for tenant=%s", contact.id, org.tenant_id)
        return FlowOutcome(
            contact.id,
            NotificationDraft(
                org.tenant_id,
                contact.phone,
                f"New user {full_name} completed registration",
                NotificationEvent.REGISTRATION,
                {
                    "contact_id": contact.id,
                    "user_data": {
                        "name": full_name,
                        "gender": gender.value,
                        "dob": dob,
                        "age": age,
                        "address": address,
                    },
                },
            ),
        )
