"""
Single-active-job rule.

A caregiver may run at most one in-progress appointment at a time unless the
running one is for the same contact at the same location.
"""

import re
from collections.abc import Iterable

from care_scheduler.models import Appointment, AppointmentStatus, StartConflict

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    return digits or None


def _normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().casefold()
    return value or None


def same_contact(a: Appointment, b: Appointment) -> bool:
    if a.contact is None or b.contact is None:
        return False

    phone_a = normalize_phone(a.contact.phone)
    phone_b = normalize_phone(b.contact.phone)
    if phone_a and phone_b:
        return phone_a == phone_b

    name_a = _normalize_text(a.contact.name)
    return name_a is not None and name_a == _normalize_text(b.contact.name)


def same_location(a: Appointment, b: Appointment) -> bool:
    location_a = _normalize_text(a.location)
    return location_a is not None and location_a == _normalize_text(b.location)


def is_compatible(a: Appointment, b: Appointment) -> bool:
    return same_contact(a, b) and same_location(a, b)


def find_start_conflict(
    candidate: Appointment, running: Iterable[Appointment]
) -> StartConflict | None:
    for other in running:
        if (
            other.id == candidate.id
            or other.caregiver_id != candidate.caregiver_id
            or other.status != AppointmentStatus.IN_PROGRESS
        ):
            continue
        if not is_compatible(candidate, other):
            return StartConflict(
                blocking_appointment_id=other.id,
                other_party_name=other.contact.name if other.contact else None,
                other_location=other.location,
            )
    return None
