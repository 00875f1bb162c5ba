"""
Appointment state machine.

Every status change goes through `AppointmentEngine.transition`, which reads
the appointment at a version, checks the guards for the requested edge,
writes the new status with compare-and-set, and keeps the caregiver's
availability ledger in step: confirmed and in-progress appointments hold
their time, every other status releases it.

Guard failures and lost write races come back as `EngineError` values.
"""

from collections.abc import Callable
from datetime import date, datetime
from uuid import uuid4

from pydantic import ValidationError

from care_scheduler.config import Settings
from care_scheduler.conflicts import find_start_conflict
from care_scheduler.deadline import compute_response_deadline, is_deadline_expired
from care_scheduler.errors import (
    EngineError,
    ErrorKind,
    conflict,
    forbidden,
    invalid_transition,
    not_found,
)
from care_scheduler.ledger import AvailabilityLedger
from care_scheduler.logger import setup_logger
from care_scheduler.models import (
    Appointment,
    AppointmentFilter,
    AppointmentStatus,
    AvailabilityDay,
    AvailabilitySpec,
    ContactInfo,
    DayStatus,
    DayStatusKind,
    FullDayFree,
    StartConflict,
    StatusChange,
    Task,
)
from care_scheduler.store import AppointmentStore, appointment_key
from care_scheduler.timewindow import civil_today, days_until, format_civil_date

logger = setup_logger(__name__)

NowFn = Callable[[], datetime]
IdFn = Callable[[], str]

SYSTEM_ACTOR = "system"
DEADLINE_EXPIRED_REASON = "deadline_expired"

Status = AppointmentStatus
TransitionHandler = Callable[[Appointment, int, str], Appointment | EngineError]


class AppointmentEngine:
    def __init__(
        self,
        store: AppointmentStore,
        ledger: AvailabilityLedger,
        settings: Settings,
        *,
        now_fn: NowFn,
        id_fn: IdFn = lambda: uuid4().hex,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._settings = settings
        self._now = now_fn
        self._new_id = id_fn

        self._transitions: dict[tuple[Status, Status], TransitionHandler] = {
            (Status.PENDING, Status.CONFIRMED): self._confirm,
            (Status.PENDING, Status.REJECTED): self._reject,
            (Status.PENDING, Status.CANCELLED): self._cancel_pending,
            (Status.CONFIRMED, Status.CANCELLED): self._cancel_committed,
            (Status.IN_PROGRESS, Status.CANCELLED): self._cancel_committed,
            (Status.CONFIRMED, Status.IN_PROGRESS): self._start,
            (Status.IN_PROGRESS, Status.COMPLETED): self._complete,
        }

    # ------------------------------------------------------------------
    # appointments

    def create_appointment(
        self,
        *,
        requester_id: str,
        caregiver_id: str,
        care_recipient_id: str,
        service_date: date,
        start_time: int,
        end_time: int | None,
        package_label: str,
        amount: int,
        tasks: list[Task] | None = None,
        contact: ContactInfo | None = None,
        location: str | None = None,
    ) -> Appointment | EngineError:
        now = self._now()
        deadline = compute_response_deadline(service_date, now, self._settings.tz)

        try:
            appointment = Appointment(
                id=self._new_id(),
                requester_id=requester_id,
                caregiver_id=caregiver_id,
                care_recipient_id=care_recipient_id,
                service_date=service_date,
                start_time=start_time,
                end_time=end_time,
                package_label=package_label,
                amount=amount,
                tasks=tasks or [],
                contact=contact,
                location=location,
                response_deadline=deadline,
                history=[
                    StatusChange(
                        from_status=None,
                        to_status=Status.PENDING,
                        actor_id=requester_id,
                        at=now,
                    )
                ],
                created_at=now,
                updated_at=now,
            )
        except ValidationError as exc:
            return EngineError(
                kind=ErrorKind.INVALID_FORMAT,
                message="Invalid appointment request",
                details={
                    "errors": [
                        {"loc": list(e["loc"]), "msg": e["msg"]}
                        for e in exc.errors()
                    ]
                },
            )

        if not self._store.insert(appointment):
            return conflict(appointment_key(appointment.id))

        logger.info(
            "Created appointment %s for caregiver %s on %s, respond by %s",
            appointment.id,
            caregiver_id,
            service_date.isoformat(),
            deadline.isoformat(),
        )
        return appointment

    def get_appointment(self, appointment_id: str) -> Appointment | EngineError:
        appointment = self._store.get(appointment_id)
        if appointment is None:
            return not_found("appointment", appointment_id)
        return appointment

    def list_appointments(
        self, flt: AppointmentFilter | None = None
    ) -> list[Appointment]:
        return self._store.find(flt)

    def transition(
        self, appointment_id: str, target: Status, actor_id: str
    ) -> Appointment | EngineError:
        appointment, version = self._store.get_versioned(appointment_id)
        if appointment is None:
            return not_found("appointment", appointment_id)

        source = appointment.status
        if (
            source.is_terminal
            and target == Status.CANCELLED
            and actor_id == SYSTEM_ACTOR
        ):
            # the deadline sweep may fire again after the record closed
            return appointment

        handler = self._transitions.get((source, target))
        if source.is_terminal or handler is None:
            logger.info(
                "Rejected %s -> %s for appointment %s",
                source.value,
                target.value,
                appointment_id,
            )
            return invalid_transition(source.value, target.value)

        result = handler(appointment, version, actor_id)
        if isinstance(result, EngineError):
            logger.info(
                "Transition %s -> %s for appointment %s refused: %s",
                source.value,
                target.value,
                appointment_id,
                result.kind.value,
            )
        else:
            logger.info(
                "Appointment %s moved %s -> %s by %s",
                appointment_id,
                source.value,
                target.value,
                actor_id,
            )
        return result

    def expire_if_overdue(self, appointment_id: str) -> Appointment | EngineError:
        """
        Cancel a pending appointment whose response deadline has passed.
        Anything else, including terminal appointments, is returned unchanged,
        so the sweep can fire any number of times.
        """
        appointment, version = self._store.get_versioned(appointment_id)
        if appointment is None:
            return not_found("appointment", appointment_id)

        now = self._now()
        if appointment.status != Status.PENDING or not is_deadline_expired(
            appointment.response_deadline, now
        ):
            return appointment

        updated = self._moved(
            appointment, Status.CANCELLED, SYSTEM_ACTOR, now, DEADLINE_EXPIRED_REASON
        )
        if not self._store.save(updated, version):
            current = self._store.get(appointment_id)
            if current is not None and current.status != Status.PENDING:
                return current
            return conflict(appointment_key(appointment_id))

        self._release_hold(updated)
        logger.info("Appointment %s expired without a response", appointment_id)
        return updated

    def sweep_expired(self) -> list[Appointment]:
        now = self._now()
        expired: list[Appointment] = []
        for appointment in self._store.find(AppointmentFilter(status=Status.PENDING)):
            if not is_deadline_expired(appointment.response_deadline, now):
                continue
            result = self.expire_if_overdue(appointment.id)
            if isinstance(result, EngineError):
                logger.warning(
                    "Sweep could not expire %s: %s", appointment.id, result.kind.value
                )
            elif result.cancel_reason == DEADLINE_EXPIRED_REASON:
                expired.append(result)

        if expired:
            logger.info("Sweep expired %d pending appointment(s)", len(expired))
        return expired

    def check_start_conflict(
        self, appointment_id: str
    ) -> StartConflict | None | EngineError:
        appointment = self._store.get(appointment_id)
        if appointment is None:
            return not_found("appointment", appointment_id)
        return find_start_conflict(
            appointment, self._store.running_for_caregiver(appointment.caregiver_id)
        )

    def set_task_completed(
        self, appointment_id: str, task_id: str, completed: bool, actor_id: str
    ) -> Appointment | EngineError:
        appointment, version = self._store.get_versioned(appointment_id)
        if appointment is None:
            return not_found("appointment", appointment_id)
        if actor_id != appointment.caregiver_id:
            return forbidden(actor_id, "update tasks on")
        if appointment.status not in (Status.CONFIRMED, Status.IN_PROGRESS):
            return EngineError(
                kind=ErrorKind.INVALID_TRANSITION,
                message="Tasks can only be updated on confirmed or running appointments",
                details={"status": appointment.status.value},
            )

        task = next((t for t in appointment.tasks if t.id == task_id), None)
        if task is None:
            return not_found("task", task_id)

        task.completed = completed
        appointment.updated_at = self._now()
        if not self._store.save(appointment, version):
            return conflict(appointment_key(appointment_id))
        return appointment

    def mark_reviewed(
        self, appointment_id: str, actor_id: str
    ) -> Appointment | EngineError:
        appointment, version = self._store.get_versioned(appointment_id)
        if appointment is None:
            return not_found("appointment", appointment_id)
        if actor_id != appointment.requester_id:
            return forbidden(actor_id, "review")
        if appointment.status != Status.COMPLETED:
            return EngineError(
                kind=ErrorKind.INVALID_TRANSITION,
                message="Only completed appointments can be reviewed",
                details={"status": appointment.status.value},
            )
        if appointment.has_reviewed:
            return appointment

        appointment.has_reviewed = True
        appointment.updated_at = self._now()
        if not self._store.save(appointment, version):
            return conflict(appointment_key(appointment_id))
        return appointment

    # ------------------------------------------------------------------
    # availability

    def get_availability(self, caregiver_id: str, day: date) -> DayStatus:
        return self._ledger.status_for_date(caregiver_id, day)

    def set_availability(
        self, caregiver_id: str, day: date, spec: AvailabilitySpec
    ) -> AvailabilityDay | EngineError:
        if isinstance(spec, FullDayFree):
            return self._ledger.set_full_day_free(caregiver_id, day)
        return self._ledger.set_manual_busy_ranges(caregiver_id, day, spec.ranges)

    def month_overview(
        self, caregiver_id: str, year: int, month: int
    ) -> dict[date, DayStatusKind]:
        return self._ledger.month_overview(caregiver_id, year, month)

    # ------------------------------------------------------------------
    # transition handlers

    def _confirm(
        self, appointment: Appointment, version: int, actor_id: str
    ) -> Appointment | EngineError:
        if actor_id != appointment.caregiver_id:
            return forbidden(actor_id, "accept")
        now = self._now()
        if error := self._check_deadline(appointment, now):
            return error

        hold = self._place_hold(appointment)
        if isinstance(hold, EngineError):
            return hold

        updated = self._moved(appointment, Status.CONFIRMED, actor_id, now)
        if not self._store.save(updated, version):
            # only drop the hold if no concurrent write committed this appointment
            current = self._store.get(appointment.id)
            if current is None or not current.status.commits_time:
                self._release_hold(appointment)
            return conflict(appointment_key(appointment.id))
        return updated

    def _reject(
        self, appointment: Appointment, version: int, actor_id: str
    ) -> Appointment | EngineError:
        if actor_id != appointment.caregiver_id:
            return forbidden(actor_id, "reject")
        now = self._now()
        if error := self._check_deadline(appointment, now):
            return error

        updated = self._moved(appointment, Status.REJECTED, actor_id, now)
        if not self._store.save(updated, version):
            return conflict(appointment_key(appointment.id))
        self._release_hold(updated)
        return updated

    def _cancel_pending(
        self, appointment: Appointment, version: int, actor_id: str
    ) -> Appointment | EngineError:
        # a pending request is only cancelled by its deadline running out
        if not is_deadline_expired(appointment.response_deadline, self._now()):
            return invalid_transition(Status.PENDING.value, Status.CANCELLED.value)
        if actor_id not in self._parties(appointment):
            return forbidden(actor_id, "cancel")
        return self.expire_if_overdue(appointment.id)

    def _cancel_committed(
        self, appointment: Appointment, version: int, actor_id: str
    ) -> Appointment | EngineError:
        if actor_id not in (appointment.caregiver_id, appointment.requester_id):
            return forbidden(actor_id, "cancel")

        now = self._now()
        remaining = days_until(
            appointment.service_date, civil_today(now, self._settings.tz)
        )
        minimum = self._settings.CANCELLATION_MIN_LEAD_DAYS
        if remaining <= minimum:
            return EngineError(
                kind=ErrorKind.CANCELLATION_WINDOW_CLOSED,
                message=(
                    f"Appointments can only be cancelled more than {minimum} days "
                    f"ahead, {remaining} day(s) remain"
                ),
                details={"days_until_service": remaining, "minimum_days": minimum},
            )

        by = "caregiver" if actor_id == appointment.caregiver_id else "requester"
        updated = self._moved(
            appointment, Status.CANCELLED, actor_id, now, f"cancelled_by_{by}"
        )
        if not self._store.save(updated, version):
            return conflict(appointment_key(appointment.id))
        self._release_hold(updated)
        return updated

    def _start(
        self, appointment: Appointment, version: int, actor_id: str
    ) -> Appointment | EngineError:
        if actor_id != appointment.caregiver_id:
            return forbidden(actor_id, "start")

        now = self._now()
        today = civil_today(now, self._settings.tz)
        if today != appointment.service_date:
            return EngineError(
                kind=ErrorKind.NOT_SERVICE_DATE,
                message=(
                    f"Work can only start on {format_civil_date(appointment.service_date)}"
                ),
                details={
                    "service_date": appointment.service_date.isoformat(),
                    "today": today.isoformat(),
                },
            )

        blocking = find_start_conflict(
            appointment, self._store.running_for_caregiver(appointment.caregiver_id)
        )
        if blocking is not None:
            return EngineError(
                kind=ErrorKind.ACTIVE_JOB_CONFLICT,
                message=(
                    f"Caregiver is already running appointment "
                    f"{blocking.blocking_appointment_id}"
                ),
                details=blocking.model_dump(),
            )

        hold = self._place_hold(appointment)
        if isinstance(hold, EngineError):
            return hold

        updated = self._moved(appointment, Status.IN_PROGRESS, actor_id, now)
        if not self._store.save(updated, version):
            return conflict(appointment_key(appointment.id))
        return updated

    def _complete(
        self, appointment: Appointment, version: int, actor_id: str
    ) -> Appointment | EngineError:
        if actor_id != appointment.caregiver_id:
            return forbidden(actor_id, "complete")

        missing = appointment.incomplete_required_tasks()
        if missing:
            return EngineError(
                kind=ErrorKind.INCOMPLETE_REQUIRED_TASKS,
                message=f"{len(missing)} required task(s) not completed",
                details={"tasks": [{"id": t.id, "name": t.name} for t in missing]},
            )

        updated = self._moved(appointment, Status.COMPLETED, actor_id, self._now())
        if not self._store.save(updated, version):
            return conflict(appointment_key(appointment.id))
        self._release_hold(updated)
        return updated

    # ------------------------------------------------------------------
    # helpers

    @staticmethod
    def _parties(appointment: Appointment) -> tuple[str, ...]:
        return (appointment.caregiver_id, appointment.requester_id, SYSTEM_ACTOR)

    @staticmethod
    def _check_deadline(appointment: Appointment, now: datetime) -> EngineError | None:
        if is_deadline_expired(appointment.response_deadline, now):
            return EngineError(
                kind=ErrorKind.DEADLINE_EXPIRED,
                message="The response deadline for this request has passed",
                details={"response_deadline": appointment.response_deadline.isoformat()},
            )
        return None

    @staticmethod
    def _moved(
        appointment: Appointment,
        target: Status,
        actor_id: str,
        now: datetime,
        reason: str | None = None,
    ) -> Appointment:
        updated = appointment.model_copy(deep=True)
        updated.history.append(
            StatusChange(
                from_status=appointment.status,
                to_status=target,
                actor_id=actor_id,
                at=now,
                reason=reason,
            )
        )
        updated.status = target
        updated.response_deadline = None
        updated.updated_at = now
        if reason is not None and target == Status.CANCELLED:
            updated.cancel_reason = reason
        return updated

    def _place_hold(self, appointment: Appointment) -> AvailabilityDay | EngineError:
        return self._ledger.add_booking_hold(
            appointment.caregiver_id,
            appointment.service_date,
            appointment.start_time,
            appointment.hold_end,
            appointment.id,
        )

    def _release_hold(self, appointment: Appointment) -> None:
        for _ in range(self._settings.CAS_RETRY_ATTEMPTS):
            result = self._ledger.release_booking_hold(
                appointment.caregiver_id, appointment.service_date, appointment.id
            )
            if not isinstance(result, EngineError):
                return
        logger.error(
            "Could not release availability hold for appointment %s after %d attempts",
            appointment.id,
            self._settings.CAS_RETRY_ATTEMPTS,
        )
