"""
Availability Ledger

Per-caregiver, per-day record of time commitments. A day is either fully
free, or a list of ranges each tagged as a manual busy block or as a hold
placed by a committed appointment.

Every mutation reads the day at a version, validates, and writes back with
compare-and-set; a lost race comes back as a `conflict` error.
"""

import calendar
from collections.abc import Iterable
from datetime import date

from care_scheduler.database import InMemoryKeyValueDatabase
from care_scheduler.errors import EngineError, ErrorKind, conflict
from care_scheduler.logger import setup_logger
from care_scheduler.models import (
    AvailabilityDay,
    BusyRange,
    DayStatus,
    DayStatusKind,
    RangeOrigin,
    TimeRange,
)
from care_scheduler.timewindow import format_time_of_day, overlaps

logger = setup_logger(__name__)

KEY_PREFIX = "availability:"


def availability_key(caregiver_id: str, day: date) -> str:
    return f"{KEY_PREFIX}{caregiver_id}:{day.isoformat()}"


def _first_overlap(
    start: int, end: int, ranges: Iterable[TimeRange]
) -> TimeRange | None:
    return next((r for r in ranges if overlaps(start, end, r.start, r.end)), None)


def _range_details(r: TimeRange) -> dict:
    return {
        "origin": r.origin.value,
        "appointment_id": r.appointment_id,
        "start": format_time_of_day(r.start),
        "end": format_time_of_day(r.end),
    }


def _sorted(ranges: Iterable[TimeRange]) -> list[TimeRange]:
    return sorted(ranges, key=lambda r: (r.start, r.end))


class AvailabilityLedger:
    def __init__(self, db: InMemoryKeyValueDatabase) -> None:
        self._db = db

    def get_day(self, caregiver_id: str, day: date) -> AvailabilityDay | None:
        return self._db.get(availability_key(caregiver_id, day))

    def status_for_date(self, caregiver_id: str, day: date) -> DayStatus:
        record = self.get_day(caregiver_id, day)
        if record is None:
            return DayStatus(kind=DayStatusKind.NONE_DECLARED)
        if record.full_day_free:
            return DayStatus(kind=DayStatusKind.FULLY_FREE)
        return DayStatus(kind=DayStatusKind.MIXED, ranges=_sorted(record.ranges))

    def month_overview(
        self, caregiver_id: str, year: int, month: int
    ) -> dict[date, DayStatusKind]:
        _, days_in_month = calendar.monthrange(year, month)
        return {
            day: self.status_for_date(caregiver_id, day).kind
            for day in (date(year, month, n) for n in range(1, days_in_month + 1))
        }

    def set_full_day_free(
        self, caregiver_id: str, day: date
    ) -> AvailabilityDay | EngineError:
        key = availability_key(caregiver_id, day)
        record, version = self._db.get_versioned(key)

        if record is not None and (holds := record.booking_ranges()):
            return EngineError(
                kind=ErrorKind.OVERLAPS_BOOKING,
                message="Day has booked appointments and cannot be marked fully free",
                details=_range_details(holds[0]),
            )

        updated = AvailabilityDay(caregiver_id=caregiver_id, date=day, full_day_free=True)
        return self._write(key, version, updated)

    def set_manual_busy_ranges(
        self, caregiver_id: str, day: date, ranges: list[BusyRange]
    ) -> AvailabilityDay | EngineError:
        """
        Replace the manual busy ranges for a day. Booking holds are kept, and
        no new range may cover time already committed to a booking.
        """
        key = availability_key(caregiver_id, day)
        record, version = self._db.get_versioned(key)
        holds = record.booking_ranges() if record is not None else []

        accepted: list[TimeRange] = []
        for r in sorted(ranges, key=lambda r: (r.start, r.end)):
            if hit := _first_overlap(r.start, r.end, holds):
                return EngineError(
                    kind=ErrorKind.OVERLAPS_BOOKING,
                    message=(
                        f"Busy range {format_time_of_day(r.start)}-"
                        f"{format_time_of_day(r.end)} overlaps booking "
                        f"{hit.appointment_id}"
                    ),
                    details=_range_details(hit),
                )
            if hit := _first_overlap(r.start, r.end, accepted):
                return EngineError(
                    kind=ErrorKind.OVERLAPS_EXISTING_RANGE,
                    message="Busy ranges overlap each other",
                    details=_range_details(hit),
                )
            accepted.append(
                TimeRange(start=r.start, end=r.end, origin=RangeOrigin.MANUAL_BUSY)
            )

        updated = AvailabilityDay(
            caregiver_id=caregiver_id, date=day, ranges=_sorted([*holds, *accepted])
        )
        return self._write(key, version, updated)

    def add_booking_hold(
        self,
        caregiver_id: str,
        day: date,
        start: int,
        end: int,
        appointment_id: str,
    ) -> AvailabilityDay | EngineError:
        key = availability_key(caregiver_id, day)
        record, version = self._db.get_versioned(key)
        existing = record.ranges if record is not None else []

        own = [r for r in existing if r.appointment_id == appointment_id]
        if len(own) == 1 and (own[0].start, own[0].end) == (start, end):
            return record

        others = [r for r in existing if r.appointment_id != appointment_id]
        if hit := _first_overlap(start, end, others):
            return EngineError(
                kind=ErrorKind.OVERLAPS_EXISTING_RANGE,
                message=(
                    f"Hold {format_time_of_day(start)}-{format_time_of_day(end)} "
                    f"for appointment {appointment_id} overlaps an existing range"
                ),
                details=_range_details(hit),
            )

        hold = TimeRange(
            start=start,
            end=end,
            origin=RangeOrigin.BOOKING_DERIVED,
            appointment_id=appointment_id,
        )
        updated = AvailabilityDay(
            caregiver_id=caregiver_id, date=day, ranges=_sorted([*others, hold])
        )
        return self._write(key, version, updated)

    def release_booking_hold(
        self, caregiver_id: str, day: date, appointment_id: str
    ) -> AvailabilityDay | None | EngineError:
        key = availability_key(caregiver_id, day)
        record, version = self._db.get_versioned(key)
        if record is None:
            return None

        kept = [r for r in record.ranges if r.appointment_id != appointment_id]
        if len(kept) == len(record.ranges):
            return record

        record.ranges = kept
        return self._write(key, version, record)

    def _write(
        self, key: str, version: int, day: AvailabilityDay
    ) -> AvailabilityDay | EngineError:
        if not self._db.compare_and_set(key, version, day):
            logger.warning("Lost availability write race on %s", key)
            return conflict(key)
        logger.debug("Wrote %s (%d ranges)", key, len(day.ranges))
        return day
