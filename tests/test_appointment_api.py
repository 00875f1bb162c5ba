import asyncio
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from freezegun import freeze_time
from httpx import ASGITransport, AsyncClient

from care_scheduler.api import create_app, run_expiry_sweeper
from care_scheduler.config import Settings
from care_scheduler.models import Appointment, AppointmentStatus

# 10:00 in Ho Chi Minh City, Wednesday 2 July 2025
FROZEN_AT = "2025-07-02 03:00:00"

CAREGIVER = "cg-1"
REQUESTER = "req-1"


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _dump_appointments(app) -> None:
    appointments = app.state.engine.list_appointments()
    _p("db appointments:")
    for a in appointments:
        _p(
            f"  - {a.id} | {a.service_date} {a.start_time}-{a.end_time} | "
            f"status={a.status.value} deadline={a.response_deadline} "
            f"location={a.location}"
        )


@pytest_asyncio.fixture
async def client():
    app = create_app(Settings(_env_file=None))
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


def _booking(service_date: str, **overrides) -> dict:
    body = {
        "requester_id": REQUESTER,
        "caregiver_id": CAREGIVER,
        "care_recipient_id": "elder-1",
        "service_date": service_date,
        "start_time": "08:00",
        "end_time": "12:00",
        "package_label": "Gói Cơ bản",
        "amount": 400000,
        "tasks": [],
        "contact": {"name": "Nguyễn Thị Lan", "phone": "0900000001"},
        "location": "12 Main St",
    }
    body.update(overrides)
    return body


async def _create(client: AsyncClient, service_date: str, **overrides) -> dict:
    resp = await client.post("/appointments", json=_booking(service_date, **overrides))
    _p(f"POST /appointments -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 201
    return resp.json()


async def _move(
    client: AsyncClient, appointment_id: str, target: str, actor_id: str = CAREGIVER
):
    resp = await client.post(
        f"/appointments/{appointment_id}/transitions",
        json={"target": target, "actor_id": actor_id},
    )
    _p(
        f"POST /appointments/{appointment_id}/transitions target={target} "
        f"-> status={resp.status_code}, body={resp.json()}"
    )
    return resp


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    _banner("health_check returns ok")
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_appointment(client: AsyncClient) -> None:
    _banner("create appointment: pending, deadline fixed at creation")
    with freeze_time(FROZEN_AT, real_asyncio=True):
        data = await _create(client, "Thứ hai, 07/07/2025")

        assert data["status"] == "pending"
        assert data["status_label"] == "Chờ xác nhận"
        assert data["tab"] == "Mới"
        assert data["service_date"] == "2025-07-07"
        assert data["start_time"] == 480
        deadline = datetime.fromisoformat(data["response_deadline"])
        assert deadline == datetime.now(UTC) + timedelta(hours=24)

        resp = await client.get(f"/appointments/{data['id']}")
        assert resp.status_code == 200
        assert resp.json()["id"] == data["id"]


@pytest.mark.asyncio
async def test_create_rejects_malformed_input(client: AsyncClient) -> None:
    _banner("create appointment rejects malformed dates and times")
    resp = await client.post("/appointments", json=_booking("07/07/2025"))
    _p(f"bad date -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "invalid_format"

    resp = await client.post(
        "/appointments", json=_booking("2025-07-07", start_time="12:00", end_time="08:00")
    )
    _p(f"start after end -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 422

    resp = await client.post(
        "/appointments", json=_booking("2025-07-07", start_time="24:00", end_time=None)
    )
    _p(f"open-ended start at 24:00 -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "invalid_format"


@pytest.mark.asyncio
async def test_get_missing_appointment(client: AsyncClient) -> None:
    _banner("unknown appointment is 404")
    resp = await client.get("/appointments/nonexistent")
    assert resp.status_code == 404
    assert "not found" in resp.json()["detail"]["message"].lower()


@pytest.mark.asyncio
async def test_accept_within_and_after_deadline(client: AsyncClient) -> None:
    _banner("scenario A: 24h window, accept at +23h ok, at +25h expired")
    with freeze_time(FROZEN_AT, real_asyncio=True) as frozen:
        on_time = await _create(client, "2025-07-07")
        late = await _create(client, "2025-07-07", start_time="13:00", end_time="17:00")

        frozen.tick(timedelta(hours=23))
        resp = await _move(client, on_time["id"], "confirmed")
        assert resp.status_code == 200
        assert resp.json()["status"] == "confirmed"
        assert resp.json()["response_deadline"] is None

        frozen.tick(timedelta(hours=2))
        resp = await _move(client, late["id"], "confirmed")
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["kind"] == "deadline_expired"
        assert detail["retryable"] is False


@pytest.mark.asyncio
async def test_start_blocked_by_other_running_job(client: AsyncClient) -> None:
    _banner("scenario B: running job for another phone at same address blocks start")
    app = client._transport.app

    with freeze_time(FROZEN_AT, real_asyncio=True):
        x = await _create(client, "2025-07-02")
        await _move(client, x["id"], "confirmed")
        resp = await _move(client, x["id"], "in_progress")
        assert resp.status_code == 200

        y = await _create(
            client,
            "2025-07-02",
            start_time="13:00",
            end_time="17:00",
            contact={"name": "Trần Văn Hùng", "phone": "0900000002"},
        )
        await _move(client, y["id"], "confirmed")
        _dump_appointments(app)

        resp = await client.get(f"/appointments/{y['id']}/start-conflict")
        _p(f"GET start-conflict -> {resp.json()}")
        assert resp.status_code == 200
        assert resp.json()["conflict"]["blocking_appointment_id"] == x["id"]

        resp = await _move(client, y["id"], "in_progress")
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["kind"] == "active_job_conflict"
        assert detail["details"]["blocking_appointment_id"] == x["id"]
        assert detail["details"]["other_party_name"] == "Nguyễn Thị Lan"


@pytest.mark.asyncio
async def test_cancellation_window(client: AsyncClient) -> None:
    _banner("scenario C: cancel at +2 days refused, at +4 days allowed")
    with freeze_time(FROZEN_AT, real_asyncio=True):
        soon = await _create(client, "2025-07-04")
        later = await _create(client, "2025-07-06")
        await _move(client, soon["id"], "confirmed")
        await _move(client, later["id"], "confirmed")

        resp = await _move(client, soon["id"], "cancelled")
        assert resp.status_code == 409
        assert resp.json()["detail"]["kind"] == "cancellation_window_closed"

        resp = await client.get(f"/caregivers/{CAREGIVER}/availability/2025-07-06")
        _p(f"availability before cancel -> {resp.json()}")
        assert [r["appointment_id"] for r in resp.json()["ranges"]] == [later["id"]]

        resp = await _move(client, later["id"], "cancelled")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["status_label"] == "Đã hủy"

        resp = await client.get(f"/caregivers/{CAREGIVER}/availability/2025-07-06")
        _p(f"availability after cancel -> {resp.json()}")
        assert resp.json()["ranges"] == []


@pytest.mark.asyncio
async def test_completion_needs_required_tasks(client: AsyncClient) -> None:
    _banner("scenario D: incomplete required task blocks completion until ticked")
    with freeze_time(FROZEN_AT, real_asyncio=True):
        data = await _create(
            client,
            "2025-07-02",
            tasks=[
                {"id": "t1", "name": "Đo huyết áp", "required": True},
                {"id": "t2", "name": "Đọc báo", "required": False},
            ],
        )
        await _move(client, data["id"], "confirmed")
        await _move(client, data["id"], "in_progress")

        resp = await _move(client, data["id"], "completed")
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["kind"] == "incomplete_required_tasks"
        assert detail["details"]["tasks"] == [{"id": "t1", "name": "Đo huyết áp"}]

        resp = await client.patch(
            f"/appointments/{data['id']}/tasks/t1",
            json={"completed": True, "actor_id": CAREGIVER},
        )
        _p(f"PATCH task -> status={resp.status_code}")
        assert resp.status_code == 200

        resp = await _move(client, data["id"], "completed")
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        resp = await client.post(
            f"/appointments/{data['id']}/review", json={"actor_id": REQUESTER}
        )
        assert resp.status_code == 200
        assert resp.json()["has_reviewed"] is True

        # terminal
        resp = await _move(client, data["id"], "cancelled")
        assert resp.status_code == 409
        assert resp.json()["detail"]["kind"] == "invalid_transition"


@pytest.mark.asyncio
async def test_manual_busy_over_booking_rejected(client: AsyncClient) -> None:
    _banner("scenario E: manual 09:00-10:00 over booking 09:30-11:00 is rejected")
    with freeze_time(FROZEN_AT, real_asyncio=True):
        data = await _create(client, "2025-07-08", start_time="09:30", end_time="11:00")
        await _move(client, data["id"], "confirmed")

        resp = await client.put(
            f"/caregivers/{CAREGIVER}/availability/2025-07-08",
            json={"mode": "manual_busy", "ranges": [{"start": "09:00", "end": "10:00"}]},
        )
        _p(f"PUT availability -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["kind"] == "overlaps_booking"
        assert detail["details"]["appointment_id"] == data["id"]


@pytest.mark.asyncio
async def test_availability_round_trip(client: AsyncClient) -> None:
    _banner("availability: set ranges, read back, month overview")
    resp = await client.get(f"/caregivers/{CAREGIVER}/availability/2025-10-25")
    assert resp.json()["status"] == "none_declared"

    resp = await client.put(
        f"/caregivers/{CAREGIVER}/availability/Thứ bảy, 25/10/2025",
        json={
            "mode": "manual_busy",
            "ranges": [
                {"start": "14:00", "end": "18:00"},
                {"start": "08:00", "end": "12:00"},
            ],
        },
    )
    _p(f"PUT availability -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200

    resp = await client.get(f"/caregivers/{CAREGIVER}/availability/2025-10-25")
    body = resp.json()
    assert body["status"] == "mixed"
    assert [(r["start"], r["end"], r["origin"]) for r in body["ranges"]] == [
        ("08:00", "12:00", "manual_busy"),
        ("14:00", "18:00", "manual_busy"),
    ]

    resp = await client.put(
        f"/caregivers/{CAREGIVER}/availability/2025-10-23", json={"mode": "full_day_free"}
    )
    assert resp.json()["status"] == "fully_free"

    resp = await client.get(
        f"/caregivers/{CAREGIVER}/availability", params={"year": 2025, "month": 10}
    )
    days = resp.json()["days"]
    assert days["2025-10-23"] == "fully_free"
    assert days["2025-10-25"] == "mixed"
    assert days["2025-10-24"] == "none_declared"

    resp = await client.put(
        f"/caregivers/{CAREGIVER}/availability/2025-10-26",
        json={"mode": "manual_busy", "ranges": [{"start": "10:00", "end": "09:00"}]},
    )
    assert resp.status_code == 422

    resp = await client.put(
        f"/caregivers/{CAREGIVER}/availability/2025-10-27",
        json={"mode": "full_day_free", "ranges": [{"start": "08:00", "end": "09:00"}]},
    )
    _p(f"free day with ranges -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 422
    assert resp.json()["detail"]["kind"] == "invalid_format"
    resp = await client.get(f"/caregivers/{CAREGIVER}/availability/2025-10-27")
    assert resp.json()["status"] == "none_declared"


@pytest.mark.asyncio
async def test_list_appointments_by_filter(client: AsyncClient) -> None:
    _banner("list appointments filtered by status and date range")
    with freeze_time(FROZEN_AT, real_asyncio=True):
        a = await _create(client, "2025-07-03")
        b = await _create(client, "2025-07-10")
        await _move(client, b["id"], "confirmed")

        resp = await client.get("/appointments", params={"caregiver_id": CAREGIVER})
        assert [x["id"] for x in resp.json()["appointments"]] == [a["id"], b["id"]]

        resp = await client.get("/appointments", params={"status": "confirmed"})
        assert [x["id"] for x in resp.json()["appointments"]] == [b["id"]]

        resp = await client.get(
            "/appointments", params={"date_from": "2025-07-01", "date_to": "2025-07-05"}
        )
        assert [x["id"] for x in resp.json()["appointments"]] == [a["id"]]


@pytest.mark.asyncio
async def test_expire_pending_sweep_endpoint(client: AsyncClient) -> None:
    _banner("deadline sweep cancels overdue requests and is safe to repeat")
    with freeze_time(FROZEN_AT, real_asyncio=True) as frozen:
        data = await _create(client, "2025-07-02")  # same day, 6h window

        frozen.tick(timedelta(hours=6, minutes=1))
        resp = await client.post("/maintenance/expire-pending")
        _p(f"sweep #1 -> {resp.json()}")
        assert resp.json() == {"expired": [data["id"]]}

        resp = await client.post("/maintenance/expire-pending")
        _p(f"sweep #2 -> {resp.json()}")
        assert resp.json() == {"expired": []}

        resp = await client.get(f"/appointments/{data['id']}")
        assert resp.json()["status"] == "cancelled"
        assert resp.json()["cancel_reason"] == "deadline_expired"


class FreezegunSleeper:
    """
    Fake sleep function that advances only when the test manually ticks
    freezegun time forward.
    """

    def __init__(self, frozen_time):
        self.frozen_time = frozen_time
        self._event = asyncio.Event()

    def tick(self, *, delta: timedelta) -> None:
        self.frozen_time.tick(delta=delta)
        self._event.set()

    async def sleep(self, seconds: float) -> None:
        deadline = datetime.now(UTC) + timedelta(seconds=seconds)
        while datetime.now(UTC) < deadline:
            await self._event.wait()
            self._event.clear()


@pytest.mark.asyncio
async def test_background_sweeper_expires_requests(client: AsyncClient) -> None:
    _banner("background sweeper cancels a request once its window closes")
    app = client._transport.app
    engine = app.state.engine

    with freeze_time(FROZEN_AT, real_asyncio=True) as frozen:
        sleeper = FreezegunSleeper(frozen)
        data = await _create(client, "2025-07-02")

        task = asyncio.create_task(
            run_expiry_sweeper(engine, interval=3600, sleep_fn=sleeper.sleep)
        )
        await asyncio.sleep(0)

        for hour in range(1, 7):
            sleeper.tick(delta=timedelta(hours=1))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            status = engine.get_appointment(data["id"]).status
            _p(f"[+{hour}h] status={status.value}")
            assert status == AppointmentStatus.PENDING

        sleeper.tick(delta=timedelta(hours=1))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        appointment = engine.get_appointment(data["id"])
        assert isinstance(appointment, Appointment)
        assert appointment.status == AppointmentStatus.CANCELLED

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert task.done()


@pytest.mark.asyncio
async def test_background_sweeper_survives_a_failed_sweep(
    client: AsyncClient, monkeypatch, caplog
) -> None:
    _banner("background sweeper logs a failing sweep and keeps running")
    app = client._transport.app
    engine = app.state.engine
    real_sweep = engine.sweep_expired
    calls = []

    def flaky_sweep():
        calls.append(datetime.now(UTC))
        if len(calls) == 1:
            raise RuntimeError("ledger unavailable")
        return real_sweep()

    monkeypatch.setattr(engine, "sweep_expired", flaky_sweep)

    with freeze_time(FROZEN_AT, real_asyncio=True) as frozen:
        sleeper = FreezegunSleeper(frozen)
        data = await _create(client, "2025-07-02")  # same day, 6h window

        task = asyncio.create_task(
            run_expiry_sweeper(engine, interval=7 * 3600, sleep_fn=sleeper.sleep)
        )
        await asyncio.sleep(0)

        # first sweep raises
        sleeper.tick(delta=timedelta(hours=7))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert len(calls) == 1
        assert not task.done()
        assert "Expiry sweep failed" in caplog.text
        assert engine.get_appointment(data["id"]).status == AppointmentStatus.PENDING

        # the next one still runs
        sleeper.tick(delta=timedelta(hours=7))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert len(calls) == 2
        assert engine.get_appointment(data["id"]).status == AppointmentStatus.CANCELLED

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        assert task.done()
