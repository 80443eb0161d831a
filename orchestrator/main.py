"""Command line entry point for Shedula appointment workflows."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from clinic.analytics import DEFAULT_RANGE_DAYS, RANGE_CHOICES
from clinic.appointments import AppointmentStatus, CompletionPrompt
from clinic.context import ClinicContext, build_context
from clinic.models import Patient, format_timestamp, utc_now
from clinic.prescription_print import write_prescription_pdf
from clinic.reviews import ReviewNotEditableError
from connector.api_client import ShedulaApiClient, ShedulaClientError

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_HEALTH_INTERVAL_SECONDS = 30

logger = logging.getLogger(__name__)

ActionResult = Optional[Dict[str, object]]

_ACTIVITY_LOCK = threading.Lock()


def read_activity(path: Path) -> List[Dict[str, object]]:
    if not path.exists():
        return []
    raw_content = path.read_text(encoding="utf-8").strip()
    if not raw_content:
        return []
    try:
        data = json.loads(raw_content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Activity log is corrupted and cannot be parsed: {exc.msg}") from exc
    if not isinstance(data, list):
        raise ValueError("Activity log must contain a JSON list of entries.")
    return data


def append_activity(path: Path, entry: Dict[str, object]) -> None:
    with _ACTIVITY_LOCK:
        history = read_activity(path)
        history.append(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{json.dumps(history, indent=2, default=str)}\n", encoding="utf-8")


def run_logged(command: str, action: Callable[[], ActionResult], path: Path) -> ActionResult:
    """Run ``action`` and append its outcome to the activity log at ``path``."""

    entry: Dict[str, object] = {"task": command, "status": "failed", "started_at": format_timestamp(utc_now())}
    try:
        result = action()
        entry["status"] = "success"
        if isinstance(result, dict):
            entry["details"] = result
        return result
    except Exception as exc:
        entry["message"] = str(exc)
        raise
    finally:
        entry["completed_at"] = format_timestamp(utc_now())
        append_activity(path, entry)


class ApiStatusMonitor:
    """Polls the backend health check until stopped."""

    def __init__(
        self,
        client: ShedulaApiClient,
        *,
        interval_seconds: float = DEFAULT_HEALTH_INTERVAL_SECONDS,
        on_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._client = client
        self._interval = max(1.0, float(interval_seconds))
        self._on_change = on_change
        self._stop_event = threading.Event()
        self.last_status: Optional[bool] = None

    def check(self) -> bool:
        online = self._client.check_status()
        if online != self.last_status:
            logger.info("API server %s is %s", self._client.base_url, "online" if online else "offline")
            if self._on_change is not None:
                self._on_change(online)
        self.last_status = online
        return online

    def start(self, max_checks: Optional[int] = None) -> None:
        previous_handlers = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous_handlers[signum] = signal.signal(signum, self._handle_stop_signal)

        checks = 0
        try:
            while not self._stop_event.is_set():
                self.check()
                checks += 1
                if max_checks is not None and checks >= max_checks:
                    break
                self._stop_event.wait(self._interval)
        finally:
            self._stop_event.set()
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)

    def stop(self) -> None:
        self._stop_event.set()

    def _handle_stop_signal(self, signum: int, frame) -> None:  # type: ignore[override]
        self.stop()


def _echo_notices(context: ClinicContext) -> None:
    for notice in context.notifier.drain():
        print(f"[{notice.title}] {notice.description}")


def run_health(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    client = context.client
    if args.watch:
        monitor = ApiStatusMonitor(
            client,
            interval_seconds=args.interval,
            on_change=lambda online: print(f"API server {client.base_url} is {'online' if online else 'offline'}"),
        )
        monitor.start()
        return {"apiBase": client.base_url, "status": "online" if monitor.last_status else "offline"}

    online = client.check_status()
    status = "online" if online else "offline"
    print(f"API server {client.base_url} is {status}")
    return {"apiBase": client.base_url, "status": status}


def run_list_appointments(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    book = context.doctor_book(args.doctor) if args.doctor else context.patient_book(args.patient)
    book.load()
    records = book.filter(status=args.status)
    for record in records:
        print(f"{record.id}\t{record.date} {record.time}\t{record.status:<9}\t{record.patient_name or record.patient_id}")
    if not records:
        print("No appointments found.")
    return {"count": len(records), "status": args.status or "all"}


def run_set_status(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    result = context.workflow().request_status_change(args.appointment_id, args.status)
    if isinstance(result, CompletionPrompt):
        print(
            f"Completing appointment {args.appointment_id} needs a choice: "
            f"run 'shedula complete {args.appointment_id}' or add '--prescription'."
        )
        return {"appointmentId": args.appointment_id, "prompt": list(result.options)}
    _echo_notices(context)
    return {"appointmentId": result.id, "status": result.status}


def run_complete(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    outcome = context.workflow().complete(args.appointment_id, create_prescription=args.prescription)
    _echo_notices(context)
    if outcome.redirect_url:
        print(f"Write the prescription at {outcome.redirect_url}")
    return {"appointmentId": outcome.appointment.id, "status": outcome.appointment.status, "redirect": outcome.redirect_url}


def run_cancel(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    appointment = context.workflow().cancel(args.appointment_id)
    _echo_notices(context)
    return {"appointmentId": appointment.id, "status": appointment.status}


def run_reschedule(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    appointment = context.workflow().reschedule(args.appointment_id, args.date, args.time)
    _echo_notices(context)
    return {"appointmentId": appointment.id, "date": appointment.date, "time": appointment.time}


def run_print_prescription(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    prescription = context.prescriptions.get(args.prescription_id)
    doctor = context.doctor(prescription.doctor_id)
    output = write_prescription_pdf(prescription, doctor, args.output)
    print(f"Prescription written to {output}")
    return {"prescriptionId": prescription.id, "output": str(output)}


def run_rating_stats(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    stats = context.reviews.doctor_rating_stats(args.doctor_id)
    print(f"Average rating: {stats.average_rating} ({stats.total_reviews} reviews)")
    for rating in sorted(stats.rating_distribution, reverse=True):
        print(f"  {rating} stars: {stats.rating_distribution[rating]}")
    return stats.to_dict()


def run_book(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    doctor = context.doctor(args.doctor)
    patient = Patient.from_payload(context.patients.get_by_id(args.patient))
    appointment = context.workflow().book_appointment(
        doctor_id=doctor.id,
        patient_id=patient.id,
        date=args.date,
        time=args.time,
        doctor_name=doctor.name,
        patient_name=patient.name,
        specialty=doctor.specialty,
    )
    _echo_notices(context)
    return {"appointmentId": appointment.id, "date": appointment.date, "time": appointment.time}


def run_analytics(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    analytics = context.analytics(args.doctor_id, args.range)
    print(f"Last {analytics.range_days} days")
    print(f"  Patients: {analytics.total_patients}")
    print(f"  Appointments: {analytics.total_appointments}")
    print(f"  Completed: {analytics.completed}  Cancelled: {analytics.cancelled}")
    print(f"  Success rate: {analytics.success_rate}%")
    for month in analytics.monthly:
        print(f"  {month.month} {month.year}: {month.appointments} appointments, {month.completed} completed")
    return analytics.to_dict()


def run_schedule(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    if args.date:
        slots = context.schedules.slots_for(args.doctor_id, args.date)
        print(f"{args.date}: " + (", ".join(slot.start for slot in slots) if slots else "no slots"))
        return {"doctorId": args.doctor_id, "date": args.date, "slots": [slot.start for slot in slots]}

    schedule = context.schedules.get(args.doctor_id)
    for name, day in schedule.days.items():
        if not day.enabled:
            print(f"{name.capitalize():<10} off")
            continue
        hours = f"{day.start_time}-{day.end_time}"
        if day.break_start and day.break_end:
            hours += f" (break {day.break_start}-{day.break_end})"
        print(f"{name.capitalize():<10} {hours}, {day.slot_duration} min slots")
    for blocked in schedule.blocked_dates:
        print(f"Blocked {blocked.date}: {blocked.reason} [{blocked.id}]")
    return {"doctorId": args.doctor_id, "blockedDates": len(schedule.blocked_dates)}


def run_block_date(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    blocked = context.schedules.block_date(args.doctor_id, args.date, args.reason)
    _echo_notices(context)
    return blocked.to_payload()


def run_unblock_date(context: ClinicContext, args: argparse.Namespace) -> Dict[str, object]:
    context.schedules.unblock_date(args.doctor_id, args.blocked_id)
    _echo_notices(context)
    return {"doctorId": args.doctor_id, "removed": args.blocked_id}


def run_serve(context: ClinicContext, args: argparse.Namespace) -> None:
    from ui.dashboard import create_app

    app = create_app(context)
    app.run(host=args.host, port=args.port, debug=False)


COMMANDS: Dict[str, Callable[[ClinicContext, argparse.Namespace], ActionResult]] = {
    "health": run_health,
    "appointments": run_list_appointments,
    "set-status": run_set_status,
    "complete": run_complete,
    "cancel": run_cancel,
    "reschedule": run_reschedule,
    "print-prescription": run_print_prescription,
    "rating-stats": run_rating_stats,
    "book": run_book,
    "analytics": run_analytics,
    "schedule": run_schedule,
    "block-date": run_block_date,
    "unblock-date": run_unblock_date,
    "serve": run_serve,
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="shedula", description="Shedula appointment management")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--activity-log", type=Path, default=None, help="Override the activity log location")
    subparsers = parser.add_subparsers(dest="command", required=True)

    health = subparsers.add_parser("health", help="Check whether the API server is reachable")
    health.add_argument("--watch", action="store_true", help="Keep polling until interrupted")
    health.add_argument("--interval", type=float, default=DEFAULT_HEALTH_INTERVAL_SECONDS)

    listing = subparsers.add_parser("appointments", help="List appointments")
    owner = listing.add_mutually_exclusive_group(required=True)
    owner.add_argument("--doctor", help="Doctor id")
    owner.add_argument("--patient", help="Patient id")
    listing.add_argument("--status", choices=[status.value for status in AppointmentStatus])

    set_status = subparsers.add_parser("set-status", help="Change an appointment's status")
    set_status.add_argument("appointment_id")
    set_status.add_argument("status", choices=[status.value for status in AppointmentStatus])

    complete = subparsers.add_parser("complete", help="Mark an appointment as completed")
    complete.add_argument("appointment_id")
    complete.add_argument("--prescription", action="store_true", help="Continue to the prescription form")

    cancel = subparsers.add_parser("cancel", help="Cancel an appointment")
    cancel.add_argument("appointment_id")

    reschedule = subparsers.add_parser("reschedule", help="Move an appointment to a new slot")
    reschedule.add_argument("appointment_id")
    reschedule.add_argument("date", help="YYYY-MM-DD")
    reschedule.add_argument("time", help="HH:MM")

    printing = subparsers.add_parser("print-prescription", help="Write a prescription PDF")
    printing.add_argument("prescription_id")
    printing.add_argument("--output", "-o", type=Path, required=True)

    stats = subparsers.add_parser("rating-stats", help="Show a doctor's review statistics")
    stats.add_argument("doctor_id")

    book = subparsers.add_parser("book", help="Book a pending appointment in a free slot")
    book.add_argument("--doctor", required=True, help="Doctor id")
    book.add_argument("--patient", required=True, help="Patient id")
    book.add_argument("date", help="YYYY-MM-DD")
    book.add_argument("time", help="HH:MM")

    analytics = subparsers.add_parser("analytics", help="Show a doctor's practice figures")
    analytics.add_argument("doctor_id")
    analytics.add_argument("--range", type=int, choices=RANGE_CHOICES, default=DEFAULT_RANGE_DAYS, help="Days")

    schedule = subparsers.add_parser("schedule", help="Show a doctor's weekly schedule")
    schedule.add_argument("doctor_id")
    schedule.add_argument("--date", help="List the bookable slots of one date instead")

    block = subparsers.add_parser("block-date", help="Stop bookings on a date")
    block.add_argument("doctor_id")
    block.add_argument("date", help="YYYY-MM-DD")
    block.add_argument("--reason", default="")

    unblock = subparsers.add_parser("unblock-date", help="Remove a blocked date")
    unblock.add_argument("doctor_id")
    unblock.add_argument("blocked_id")

    serve = subparsers.add_parser("serve", help="Run the web dashboard")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=5000)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None, *, context: Optional[ClinicContext] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)

    try:
        context = context or build_context()
    except (ShedulaClientError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    activity_path = Path(args.activity_log or context.settings.activity_log_path)
    handler = COMMANDS[args.command]

    if args.command == "serve":
        append_activity(
            activity_path,
            {
                "task": "serve",
                "status": "started",
                "started_at": format_timestamp(utc_now()),
                "message": f"Dashboard listening on {args.host}:{args.port}",
            },
        )
        handler(context, args)
        return 0

    try:
        result = run_logged(args.command, lambda: handler(context, args), activity_path)
    except (ShedulaClientError, ValueError, LookupError, ReviewNotEditableError) as exc:
        _echo_notices(context)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if args.command == "health" and isinstance(result, dict) and result.get("status") != "online":
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
