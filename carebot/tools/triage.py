"""Symptom triage: map free-text symptoms to a specialty and to doctors.

Each symptom fragment is classified independently by a deterministic LLM
call constrained to ``SPECIALTIES``; doctors are then matched to the
specialty with a small edit-distance tolerance so that "Cardiolgist" or
"Cardiology" in a doctor's profile still count.
"""

from __future__ import annotations

import asyncio
import logging
import re

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from carebot.config import ANTHROPIC_API_KEY, FAST_MODEL_NAME, LLM_TIMEOUT_SECONDS
from carebot.models import Doctor
from carebot.prompts import SPECIALTY_CLASSIFIER_PROMPT
from carebot.services.metrics import metrics
from carebot.services.store import DocumentStore

logger = logging.getLogger(__name__)

SPECIALTIES: tuple[str, ...] = (
    "General Physician",
    "Neurologist",
    "Cardiologist",
    "Orthopedic Surgeon",
    "Pediatrician",
    "Gynecologist",
    "Pathologist",
    "Oncologist",
    "ENT Surgeon",
    "Gastroenterologist",
    "Neuro Physician",
    "General Surgeon",
    "Urologist",
    "Nephrologist",
    "Dermatologist",
    "Physiotherapist",
    "RMO",
    "Psychologist",
    "Anesthesiologist",
    "Allergist/Immunologist",
    "Endocrinologist",
    "Hematologist",
    "Infectious Disease Specialist",
    "Pulmonologist",
    "Radiologist",
    "Rheumatologist",
    "Psychiatrist",
    "Ophthalmologist",
    "Plastic Surgeon",
    "Vascular Surgeon",
    "Neonatologist",
    "Geriatrician",
    "Sports Medicine Specialist",
    "Emergency Medicine Physician",
    "Critical Care Specialist",
    "Family Medicine Physician",
    "Pain Management Specialist",
    "Occupational Health Physician",
    "Cardiothoracic Surgeon",
    "Neurosurgeon",
    "Hepatologist",
    "Colorectal Surgeon",
    "Obstetrician",
    "Andrologist",
    "Pediatric Surgeon",
    "Medical Geneticist",
    "Forensic Pathologist",
    "Maxillofacial Surgeon",
    "Transplant Surgeon",
    "Nuclear Medicine Physician",
    "Interventional Radiologist",
    "Palliative Care Specialist",
)
DEFAULT_SPECIALTY = "General Physician"
MAX_EDIT_DISTANCE = 3

DISCLAIMER = (
    "Disclaimer: This is basic guidance, not a formal diagnosis. "
    "Please consult in person for serious concerns."
)
CLOSING = (
    "\n\nWould you like to book an appointment with any of these doctors or ask more questions? "
    "\nIf it feels severe, please see a physician immediately."
)

_FRAGMENT_SPLIT_RE = re.compile(r"[.,\n]")


# ── Pure helpers ─────────────────────────────────────────────────────


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance with unit insert, delete and substitute costs."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def _normalise(value: str) -> str:
    return value.strip().lower().strip("\"'").strip()


def specialty_matches(candidate: str, target: str) -> bool:
    """True if *candidate* is within ``MAX_EDIT_DISTANCE`` of *target* or
    either contains the other, after normalisation."""
    a, b = _normalise(candidate), _normalise(target)
    if not a or not b:
        return False
    return edit_distance(a, b) <= MAX_EDIT_DISTANCE or a in b or b in a


def coerce_specialty(raw: str) -> str:
    """Return the list entry matching *raw* case-insensitively, else the default."""
    wanted = _normalise(raw)
    for specialty in SPECIALTIES:
        if specialty.lower() == wanted:
            return specialty
    return DEFAULT_SPECIALTY


def split_symptoms(text: str) -> list[str]:
    """Split on sentence and list punctuation, dropping fragments of 2 chars or less."""
    return [part.strip() for part in _FRAGMENT_SPLIT_RE.split(text) if len(part.strip()) > 2]


def format_doctor(doctor: Doctor) -> str:
    return f"*{doctor.name}* (Specialization: {', '.join(doctor.specializations)})"


# ── LLM builder ──────────────────────────────────────────────────────


def _build_classifier_llm() -> ChatAnthropic:
    """Deterministic, short-output model for specialty classification."""
    return ChatAnthropic(
        model=FAST_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=20,
    )


# ── Triage service ───────────────────────────────────────────────────


class SymptomTriage:
    """Classifies symptom fragments and suggests the tenant's matching doctors."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._llm = _build_classifier_llm()

    async def classify(self, symptom: str) -> str:
        """Map one symptom to a specialty from ``SPECIALTIES``.

        Model failures and off-list answers both yield ``DEFAULT_SPECIALTY``.
        """
        prompt = SPECIALTY_CLASSIFIER_PROMPT.format(
            symptom=symptom, specialties="\n".join(SPECIALTIES),
        )
        try:
            async with metrics.timed("anthropic", "classify_specialty"):
                response = await asyncio.wait_for(
                    self._llm.ainvoke([HumanMessage(content=prompt)]),
                    timeout=LLM_TIMEOUT_SECONDS,
                )
        except Exception as exc:
            logger.warning("Specialty classification failed for %r: %s", symptom, exc)
            return DEFAULT_SPECIALTY
        return coerce_specialty(str(response.content))

    async def find_doctors(self, specialty: str, tenant_id: str) -> list[Doctor]:
        docs = await self._store.query("doctors", {"tenant_id": tenant_id})
        doctors = [Doctor.from_document(d.id, d.data) for d in docs]
        return [
            doctor
            for doctor in doctors
            if any(specialty_matches(s, specialty) for s in doctor.specializations)
        ]

    async def assess(self, symptom_text: str, tenant_id: str) -> str:
        """Build the multi-paragraph triage reply for *symptom_text*."""
        fragments = split_symptoms(symptom_text) or [symptom_text.strip()]
        paragraphs = []
        for fragment in fragments:
            specialty = await self.classify(fragment)
            doctors = await self.find_doctors(specialty, tenant_id)
            paragraph = (
                f'*Symptom*: "{fragment}"\nLikely specialty: {specialty}.\n{DISCLAIMER}'
                "\n*Possible doctors* matching that specialty:"
            )
            if doctors:
                paragraph += "".join(f"\n{format_doctor(d)}" for d in doctors)
            else:
                paragraph += (
                    f'\n[No specific doctor found for specialty "{specialty}"'
                    " - kindly see a general physician.]"
                )
            paragraphs.append(paragraph)
        logger.info("Triage for tenant=%s covered %d fragment(s)", tenant_id, len(paragraphs))
        return "\n\n".join(paragraphs) + CLOSING
