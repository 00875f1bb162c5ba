from datetime import date, datetime, timedelta, tzinfo

from care_scheduler.timewindow import lead_days

# (minimum lead days, response window), checked in order
RESPONSE_WINDOWS: tuple[tuple[int, timedelta], ...] = (
    (3, timedelta(hours=24)),
    (1, timedelta(hours=12)),
)
SAME_DAY_WINDOW = timedelta(hours=6)


def response_window(days: int) -> timedelta:
    for minimum, window in RESPONSE_WINDOWS:
        if days >= minimum:
            return window
    return SAME_DAY_WINDOW


def compute_response_deadline(
    service_date: date, now: datetime, tz: tzinfo
) -> datetime:
    """
    Deadline for the caregiver to accept or reject a new request. Stored once
    at creation and never recomputed.
    """
    return now + response_window(lead_days(service_date, now, tz))


def is_deadline_expired(deadline: datetime | None, now: datetime) -> bool:
    return deadline is not None and now > deadline
