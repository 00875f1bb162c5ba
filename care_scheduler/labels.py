"""Display labels. Always derived from a status, never parsed back into one."""

from care_scheduler.models import AppointmentStatus

STATUS_LABELS: dict[AppointmentStatus, str] = {
    AppointmentStatus.PENDING: "Chờ xác nhận",
    AppointmentStatus.CONFIRMED: "Chờ thực hiện",
    AppointmentStatus.IN_PROGRESS: "Đang thực hiện",
    AppointmentStatus.COMPLETED: "Hoàn thành",
    AppointmentStatus.CANCELLED: "Đã hủy",
    AppointmentStatus.REJECTED: "Đã từ chối",
}

# caregiver booking screen tabs; rejected requests are listed with cancellations
BOOKING_TABS: dict[AppointmentStatus, str] = {
    AppointmentStatus.PENDING: "Mới",
    AppointmentStatus.CONFIRMED: "Chờ thực hiện",
    AppointmentStatus.IN_PROGRESS: "Đang thực hiện",
    AppointmentStatus.COMPLETED: "Hoàn thành",
    AppointmentStatus.CANCELLED: "Đã hủy",
    AppointmentStatus.REJECTED: "Đã hủy",
}


def status_label(status: AppointmentStatus) -> str:
    return STATUS_LABELS[status]


def booking_tab(status: AppointmentStatus) -> str:
    return BOOKING_TABS[status]
