import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Literal, NoReturn

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from care_scheduler.config import Settings, get_settings
from care_scheduler.database import InMemoryKeyValueDatabase
from care_scheduler.engine import AppointmentEngine
from care_scheduler.errors import EngineError, ErrorKind, invalid_format
from care_scheduler.labels import booking_tab, status_label
from care_scheduler.ledger import AvailabilityLedger
from care_scheduler.logger import setup_logger
from care_scheduler.models import (
    Appointment,
    AppointmentFilter,
    AppointmentStatus,
    AvailabilityDay,
    BusyRange,
    ContactInfo,
    DayStatus,
    DayStatusKind,
    FullDayFree,
    ManualBusyRanges,
    Task,
    TimeRange,
)
from care_scheduler.store import AppointmentStore
from care_scheduler.timewindow import (
    format_time_of_day,
    parse_civil_date,
    parse_time_of_day,
)

logger = setup_logger(__name__)

router = APIRouter()

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_FORMAT: 422,
}


class TaskIn(BaseModel):
    id: str
    name: str
    required: bool = True


class CreateAppointmentRequest(BaseModel):
    requester_id: str
    caregiver_id: str
    care_recipient_id: str
    service_date: str
    start_time: str
    end_time: str | None = None
    package_label: str
    amount: int
    tasks: list[TaskIn] = Field(default_factory=list)
    contact: ContactInfo | None = None
    location: str | None = None


class TransitionRequest(BaseModel):
    target: AppointmentStatus
    actor_id: str


class TaskUpdateRequest(BaseModel):
    completed: bool
    actor_id: str


class ReviewRequest(BaseModel):
    actor_id: str


class RangeIn(BaseModel):
    start: str
    end: str


class AvailabilityRequest(BaseModel):
    mode: Literal["full_day_free", "manual_busy"]
    ranges: list[RangeIn] = Field(default_factory=list)


def _engine(request: Request) -> AppointmentEngine:
    return request.app.state.engine


def _raise_for(error: EngineError) -> NoReturn:
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.kind, 409),
        detail={**error.model_dump(mode="json"), "retryable": error.retryable},
    )


def _parse_date(value: str) -> date:
    parsed = parse_civil_date(value)
    if isinstance(parsed, EngineError):
        _raise_for(parsed)
    return parsed


def _parse_time(value: str) -> int:
    parsed = parse_time_of_day(value)
    if isinstance(parsed, EngineError):
        _raise_for(parsed)
    return parsed


def _appointment_view(appointment: Appointment) -> dict:
    return {
        **appointment.model_dump(mode="json"),
        "status_label": status_label(appointment.status),
        "tab": booking_tab(appointment.status),
    }


def _range_view(r: TimeRange) -> dict:
    return {
        "start": format_time_of_day(r.start),
        "end": format_time_of_day(r.end),
        "origin": r.origin.value,
        "appointment_id": r.appointment_id,
    }


def _day_view(caregiver_id: str, day: date, status: DayStatus) -> dict:
    return {
        "caregiver_id": caregiver_id,
        "date": day.isoformat(),
        "status": status.kind.value,
        "ranges": [_range_view(r) for r in status.ranges],
    }


def _written_day_status(record: AvailabilityDay) -> DayStatus:
    if record.full_day_free:
        return DayStatus(kind=DayStatusKind.FULLY_FREE)
    return DayStatus(kind=DayStatusKind.MIXED, ranges=record.ranges)


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/appointments", status_code=201)
async def create_appointment(body: CreateAppointmentRequest, request: Request) -> dict:
    service_date = _parse_date(body.service_date)
    start_time = _parse_time(body.start_time)
    end_time = _parse_time(body.end_time) if body.end_time is not None else None

    result = _engine(request).create_appointment(
        requester_id=body.requester_id,
        caregiver_id=body.caregiver_id,
        care_recipient_id=body.care_recipient_id,
        service_date=service_date,
        start_time=start_time,
        end_time=end_time,
        package_label=body.package_label,
        amount=body.amount,
        tasks=[Task(id=t.id, name=t.name, required=t.required) for t in body.tasks],
        contact=body.contact,
        location=body.location,
    )
    if isinstance(result, EngineError):
        _raise_for(result)
    return _appointment_view(result)


@router.get("/appointments")
async def list_appointments(
    request: Request,
    requester_id: str | None = None,
    caregiver_id: str | None = None,
    status: AppointmentStatus | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
) -> dict:
    flt = AppointmentFilter(
        requester_id=requester_id,
        caregiver_id=caregiver_id,
        status=status,
        date_from=_parse_date(date_from) if date_from else None,
        date_to=_parse_date(date_to) if date_to else None,
    )
    appointments = _engine(request).list_appointments(flt)
    return {"appointments": [_appointment_view(a) for a in appointments]}


@router.get("/appointments/{appointment_id}")
async def get_appointment(appointment_id: str, request: Request) -> dict:
    result = _engine(request).get_appointment(appointment_id)
    if isinstance(result, EngineError):
        _raise_for(result)
    return _appointment_view(result)


@router.post("/appointments/{appointment_id}/transitions")
async def transition_appointment(
    appointment_id: str, body: TransitionRequest, request: Request
) -> dict:
    result = _engine(request).transition(appointment_id, body.target, body.actor_id)
    if isinstance(result, EngineError):
        _raise_for(result)
    return _appointment_view(result)


@router.get("/appointments/{appointment_id}/start-conflict")
async def check_start_conflict(appointment_id: str, request: Request) -> dict:
    result = _engine(request).check_start_conflict(appointment_id)
    if isinstance(result, EngineError):
        _raise_for(result)
    return {
        "appointment_id": appointment_id,
        "conflict": result.model_dump() if result is not None else None,
    }


@router.patch("/appointments/{appointment_id}/tasks/{task_id}")
async def update_task(
    appointment_id: str, task_id: str, body: TaskUpdateRequest, request: Request
) -> dict:
    result = _engine(request).set_task_completed(
        appointment_id, task_id, body.completed, body.actor_id
    )
    if isinstance(result, EngineError):
        _raise_for(result)
    return _appointment_view(result)


@router.post("/appointments/{appointment_id}/review")
async def review_appointment(
    appointment_id: str, body: ReviewRequest, request: Request
) -> dict:
    result = _engine(request).mark_reviewed(appointment_id, body.actor_id)
    if isinstance(result, EngineError):
        _raise_for(result)
    return _appointment_view(result)


@router.post("/maintenance/expire-pending")
async def expire_pending(request: Request) -> dict:
    expired = _engine(request).sweep_expired()
    return {"expired": [a.id for a in expired]}


@router.get("/caregivers/{caregiver_id}/availability")
async def month_availability(
    caregiver_id: str, year: int, month: int, request: Request
) -> dict:
    if not 1 <= month <= 12:
        _raise_for(invalid_format(str(month), "month"))
    days = _engine(request).month_overview(caregiver_id, year, month)
    return {
        "caregiver_id": caregiver_id,
        "year": year,
        "month": month,
        "days": {d.isoformat(): kind.value for d, kind in days.items()},
    }


@router.get("/caregivers/{caregiver_id}/availability/{day:path}")
async def get_availability(caregiver_id: str, day: str, request: Request) -> dict:
    parsed = _parse_date(day)
    status = _engine(request).get_availability(caregiver_id, parsed)
    return _day_view(caregiver_id, parsed, status)


@router.put("/caregivers/{caregiver_id}/availability/{day:path}")
async def set_availability(
    caregiver_id: str, day: str, body: AvailabilityRequest, request: Request
) -> dict:
    parsed = _parse_date(day)

    if body.mode == "full_day_free":
        if body.ranges:
            _raise_for(
                invalid_format(f"{len(body.ranges)} range(s)", "no ranges on a free day")
            )
        spec = FullDayFree()
    else:
        ranges = []
        for r in body.ranges:
            start, end = _parse_time(r.start), _parse_time(r.end)
            if start >= end:
                _raise_for(invalid_format(f"{r.start}-{r.end}", "time range"))
            ranges.append(BusyRange(start=start, end=end))
        spec = ManualBusyRanges(ranges=ranges)

    result = _engine(request).set_availability(caregiver_id, parsed, spec)
    if isinstance(result, EngineError):
        _raise_for(result)
    return _day_view(caregiver_id, parsed, _written_day_status(result))


async def run_expiry_sweeper(
    engine: AppointmentEngine,
    *,
    interval: float,
    sleep_fn: SleepFn,
) -> None:
    """Periodically cancel pending requests whose response deadline passed."""
    try:
        while True:
            await sleep_fn(interval)
            try:
                engine.sweep_expired()
            except Exception:
                logger.exception("Expiry sweep failed")
    except asyncio.CancelledError:
        logger.debug("Expiry sweeper stopped")
        return


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if settings.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
            task = asyncio.create_task(
                run_expiry_sweeper(
                    app.state.engine,
                    interval=settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
                    sleep_fn=lambda seconds: app.state.sleep_fn(seconds),
                )
            )
            app.state.sweeper_task = task
        yield
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(lifespan=lifespan)
    db: InMemoryKeyValueDatabase[str, Appointment | AvailabilityDay] = (
        InMemoryKeyValueDatabase()
    )
    app.state.database = db
    app.state.settings = settings

    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep

    app.state.engine = AppointmentEngine(
        AppointmentStore(db),
        AvailabilityLedger(db),
        settings,
        now_fn=lambda: app.state.now_fn(),
    )

    app.include_router(router)
    return app
