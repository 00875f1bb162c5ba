"""
Date and time-of-day helpers.

Civil dates are plain `date` objects interpreted in the caregiver's time
zone. Times of day are integers counting minutes since midnight.
"""

import math
import re
from datetime import date, datetime, time, timedelta, tzinfo

from care_scheduler.errors import EngineError, invalid_format
from care_scheduler.models import MINUTES_PER_DAY

# date.weekday() order
VI_WEEKDAYS = (
    "Thứ hai",
    "Thứ ba",
    "Thứ tư",
    "Thứ năm",
    "Thứ sáu",
    "Thứ bảy",
    "Chủ nhật",
)

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_LONG_DATE = re.compile(r"^(?P<weekday>[^,]+),\s*(?P<d>\d{1,2})/(?P<m>\d{1,2})/(?P<y>\d{4})$")
_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})$")
_WEEKDAY_NAMES = frozenset(name.casefold() for name in VI_WEEKDAYS)


def parse_civil_date(value: str) -> date | EngineError:
    """
    Parse "YYYY-MM-DD" or the localized long form "Chủ nhật, 27/10/2025".
    The weekday must be a known name; the numeric part decides the date.
    """
    text = value.strip()

    if match := _ISO_DATE.match(text):
        year, month, day = (int(g) for g in match.groups())
        return _build_date(value, year, month, day)

    if match := _LONG_DATE.match(text):
        weekday = " ".join(match["weekday"].split()).casefold()
        if weekday not in _WEEKDAY_NAMES:
            return invalid_format(value, "date")
        return _build_date(value, int(match["y"]), int(match["m"]), int(match["d"]))

    return invalid_format(value, "date")


def _build_date(raw: str, year: int, month: int, day: int) -> date | EngineError:
    try:
        return date(year, month, day)
    except ValueError:
        return invalid_format(raw, "date")


def format_civil_date(value: date) -> str:
    return f"{VI_WEEKDAYS[value.weekday()]}, {value:%d/%m/%Y}"


def parse_time_of_day(value: str) -> int | EngineError:
    """'HH:MM' -> minutes since midnight. '24:00' is accepted as end of day."""
    match = _TIME_OF_DAY.match(value.strip())
    if not match:
        return invalid_format(value, "time of day")
    hours, minutes = int(match.group(1)), int(match.group(2))
    total = hours * 60 + minutes
    if minutes >= 60 or total > MINUTES_PER_DAY:
        return invalid_format(value, "time of day")
    return total


def format_time_of_day(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    # touching endpoints are not an overlap
    return a_start < b_end and b_start < a_end


def civil_today(now: datetime, tz: tzinfo) -> date:
    return now.astimezone(tz).date()


def service_day_start(service_date: date, tz: tzinfo) -> datetime:
    return datetime.combine(service_date, time.min, tzinfo=tz)


def lead_days(service_date: date, now: datetime, tz: tzinfo) -> int:
    """Whole days from now until the service date's midnight, rounded up."""
    delta = service_day_start(service_date, tz) - now
    return math.ceil(delta / timedelta(days=1))


def days_until(service_date: date, today: date) -> int:
    return (service_date - today).days
