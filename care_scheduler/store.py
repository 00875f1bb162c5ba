from care_scheduler.database import InMemoryKeyValueDatabase
from care_scheduler.models import Appointment, AppointmentFilter, AppointmentStatus

KEY_PREFIX = "appointment:"


def appointment_key(appointment_id: str) -> str:
    return f"{KEY_PREFIX}{appointment_id}"


class AppointmentStore:
    """
    Appointment records in the key/value database, keyed by id.

    Writes after creation go through `save`, which only succeeds against the
    version the caller read.
    """

    def __init__(self, db: InMemoryKeyValueDatabase) -> None:
        self._db = db

    def insert(self, appointment: Appointment) -> bool:
        return self._db.compare_and_set(
            appointment_key(appointment.id), 0, appointment
        )

    def get(self, appointment_id: str) -> Appointment | None:
        return self._db.get(appointment_key(appointment_id))

    def get_versioned(self, appointment_id: str) -> tuple[Appointment | None, int]:
        return self._db.get_versioned(appointment_key(appointment_id))

    def save(self, appointment: Appointment, expected_version: int) -> bool:
        return self._db.compare_and_set(
            appointment_key(appointment.id), expected_version, appointment
        )

    def all(self) -> list[Appointment]:
        return [a for _, a in self._db.items_with_prefix(KEY_PREFIX)]

    def find(self, flt: AppointmentFilter | None = None) -> list[Appointment]:
        flt = flt or AppointmentFilter()
        matches = [a for a in self.all() if _matches(a, flt)]
        return sorted(matches, key=lambda a: (a.service_date, a.start_time, a.id))

    def running_for_caregiver(self, caregiver_id: str) -> list[Appointment]:
        return self.find(
            AppointmentFilter(
                caregiver_id=caregiver_id, status=AppointmentStatus.IN_PROGRESS
            )
        )


def _matches(a: Appointment, flt: AppointmentFilter) -> bool:
    if flt.requester_id is not None and a.requester_id != flt.requester_id:
        return False
    if flt.caregiver_id is not None and a.caregiver_id != flt.caregiver_id:
        return False
    if flt.status is not None and a.status != flt.status:
        return False
    if flt.date_from is not None and a.service_date < flt.date_from:
        return False
    if flt.date_to is not None and a.service_date > flt.date_to:
        return False
    return True
