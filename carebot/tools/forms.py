"""Parsing for WhatsApp Flow form replies (``interactive.nfm_reply``).

Flow forms submit a JSON object whose keys are generated from the screen
layout (``screen_<n>_<Label>_<index>``).  Choice fields arrive as
``"<index>_<label>"`` strings, star ratings as text such as
``"★★★★☆ (4/5)"``.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any

from carebot.models import Gender

# ── Field keys ───────────────────────────────────────────────────────

REGISTRATION_NAME = "screen_0_Full_Name_0"
REGISTRATION_GENDER = "screen_0_Gender_1"
REGISTRATION_DOB = "screen_0_DOB_2"
REGISTRATION_ADDRESS = "screen_0_Address_3"

FEEDBACK_RECOMMEND = "screen_0_Choose_0"
FEEDBACK_COMMENTS = "screen_0_Leave_a_1"
FEEDBACK_STAFF = "screen_1_Staff_Experience_0"
FEEDBACK_DOCTOR = "screen_1_Doctor_consultation_1"
FEEDBACK_OVERALL = "screen_1_Overall_Experience_2"

SUPPORT_CATEGORY = "screen_0_Category_0"
SUPPORT_URGENCY = "screen_0_Urgency_1"
SUPPORT_DESCRIPTION = "screen_0_Description_of_issue_2"

_STAR_RATING_RE = re.compile(r"\((\d)/5\)")


class FormKind(str, Enum):
    REGISTRATION = "registration"
    FEEDBACK = "feedback"
    SUPPORT = "support"
    APPOINTMENT = "appointment"


class FormPayloadError(ValueError):
    """The form reply body is not a JSON object."""


def parse_form_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        raise FormPayloadError("empty form payload")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise FormPayloadError(f"form payload is not JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise FormPayloadError("form payload is not a JSON object")
    return data


def detect_form_kind(form: dict[str, Any]) -> FormKind:
    """Classify a form by its discriminating field.

    Checked in order, so a payload carrying both the registration name and
    the feedback choice is a registration.  Anything unrecognised is treated
    as an appointment booking.
    """
    if form.get(REGISTRATION_NAME):
        return FormKind.REGISTRATION
    if form.get(FEEDBACK_RECOMMEND):
        return FormKind.FEEDBACK
    if form.get(SUPPORT_DESCRIPTION):
        return FormKind.SUPPORT
    return FormKind.APPOINTMENT


# ── Field value parsers ──────────────────────────────────────────────


def choice_label(raw: Any, fallback: str) -> str:
    """``"2_High"`` → ``"High"``; a bare ``"High"`` is returned as is."""
    if not isinstance(raw, str) or not raw.strip():
        return fallback
    if "_" not in raw:
        return raw.strip()
    label = raw.split("_")[1].strip()
    return label or fallback


def parse_yes_no(raw: Any, fallback: str = "No") -> str:
    return choice_label(raw, fallback)


def parse_star_rating(raw: Any) -> int | None:
    """Extract ``n`` from ``"(n/5)"``; ``None`` when absent."""
    if not isinstance(raw, str):
        return None
    match = _STAR_RATING_RE.search(raw)
    return int(match.group(1)) if match else None


def parse_gender(raw: Any) -> Gender:
    if not isinstance(raw, str) or not raw.strip():
        return Gender.UNKNOWN
    label = choice_label(raw, raw)
    for gender in Gender:
        if gender.value.lower() == label.strip().lower():
            return gender
    return Gender.OTHER


def parse_int(raw: Any) -> int | None:
    """Leading-integer parse: ``"42"`` and ``"42 years"`` both give 42."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    if isinstance(raw, str):
        match = re.match(r"\s*(-?\d+)", raw)
        if match:
            return int(match.group(1))
    return None
