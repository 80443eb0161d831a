import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from clinic.appointments import InvalidTransitionError
from clinic.calendar import (
    HoverTracker,
    RescheduleProposal,
    RescheduleState,
    RescheduleStateError,
    build_event,
    split_drop_target,
)
from clinic.models import Appointment
from connector import ApiResponseError
from fake_server import FakeJsonServer, make_context


class CalendarEventTests(unittest.TestCase):
    def test_event_shape(self) -> None:
        appointment = Appointment(
            id="1", doctor_id="1", patient_id="10", date="2025-02-20", time="09:00",
            status="confirmed", patient_name="John Doe", specialty="Cardiology",
        )

        event = build_event(appointment).to_dict()

        self.assertEqual(event["title"], "John Doe")
        self.assertEqual(event["start"], "2025-02-20T09:00:00")
        self.assertEqual(event["end"], "2025-02-20T09:30:00")
        self.assertEqual(event["backgroundColor"], "#10b981")
        self.assertEqual(event["borderColor"], "#059669")
        self.assertEqual(event["textColor"], "#ffffff")
        self.assertEqual(event["extendedProps"]["status"], "confirmed")
        self.assertEqual(event["extendedProps"]["specialty"], "Cardiology")

    def test_split_drop_target(self) -> None:
        self.assertEqual(split_drop_target(datetime(2025, 3, 1, 10, 0)), ("2025-03-01", "10:00"))
        self.assertEqual(split_drop_target("2025-03-01T14:30:00"), ("2025-03-01", "14:30"))
        with self.assertRaises(ValueError):
            split_drop_target("tomorrow")


class AppointmentCalendarTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.server = FakeJsonServer()
        self.server.db["prescriptions"].append(
            {
                "id": "rx-1",
                "doctorId": "1",
                "patientId": "11",
                "patientName": "Jane Smith",
                "doctorName": "Dr. Sarah Johnson",
                "medicines": [{"name": "Aspirin", "dosage": "75mg", "duration": "30 days"}],
                "dateCreated": "2025-02-18T15:00:00.000Z",
            }
        )
        self.context = make_context(self.server, Path(self._tmp.name))
        self.calendar = self.context.calendar("1")
        self.calendar.load()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_events_respect_filters(self) -> None:
        events = self.calendar.events(status="pending")

        self.assertEqual([event.id for event in events], ["1"])
        self.assertEqual(len(self.calendar.events()), 4)

    def test_drop_then_cancel_leaves_slot_unchanged(self) -> None:
        proposal = self.calendar.drop("2", datetime(2025, 3, 1, 10, 0))

        self.assertIsInstance(proposal, RescheduleProposal)
        self.assertEqual(proposal.old_slot, "2025-02-21 at 10:30")
        self.assertEqual(proposal.new_slot, "2025-03-01 at 10:00")
        self.assertEqual(self.calendar.flow.state, RescheduleState.PENDING_CONFIRMATION)

        self.calendar.cancel_reschedule("2")

        record = self.server.record("appointments", "2")
        self.assertEqual((record["date"], record["time"]), ("2025-02-21", "10:30"))
        self.assertEqual(self.server.calls("PATCH"), [])
        self.assertEqual(self.calendar.flow.state, RescheduleState.IDLE)

    def test_confirm_then_drag_keeps_confirmed_status(self) -> None:
        self.calendar.workflow.update_status("1", "confirmed")
        proposal = self.calendar.drop("1", "2025-03-01T10:00:00")
        self.calendar.confirm_reschedule(proposal.key)

        record = self.server.record("appointments", "1")
        self.assertEqual(record["date"], "2025-03-01")
        self.assertEqual(record["time"], "10:00")
        self.assertEqual(record["status"], "confirmed")
        self.assertEqual(self.calendar.book.get("1").date, "2025-03-01")

    def test_pending_proposals_are_resolved_by_their_own_key(self) -> None:
        self.calendar.drop("1", "2025-03-01T10:00:00")
        self.calendar.drop("2", "2025-03-02T11:00:00")

        self.calendar.confirm_reschedule("1")

        self.assertEqual(self.server.record("appointments", "1")["date"], "2025-03-01")
        self.assertEqual(self.server.record("appointments", "2")["date"], "2025-02-21")
        self.assertEqual(self.calendar.flow.state_of("2"), RescheduleState.PENDING_CONFIRMATION)

        self.calendar.cancel_reschedule("2")

        self.assertEqual(self.server.record("appointments", "2")["date"], "2025-02-21")
        self.assertEqual(self.calendar.flow.state, RescheduleState.IDLE)

    def test_second_drop_of_same_appointment_replaces_its_proposal(self) -> None:
        self.calendar.drop("1", "2025-03-01T10:00:00")
        self.calendar.drop("1", "2025-03-02T11:00:00")

        self.assertEqual(len(self.calendar.flow.pending()), 1)
        self.calendar.confirm_reschedule("1")

        record = self.server.record("appointments", "1")
        self.assertEqual((record["date"], record["time"]), ("2025-03-02", "11:00"))

    def test_confirm_without_proposal(self) -> None:
        with self.assertRaises(RescheduleStateError):
            self.calendar.confirm_reschedule("1")
        self.calendar.drop("1", "2025-03-01T10:00:00")
        with self.assertRaises(RescheduleStateError):
            self.calendar.cancel_reschedule("2")

    def test_terminal_appointments_cannot_be_dragged(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self.calendar.drop("3", "2025-03-01T10:00:00")

    def test_failed_confirmation_reloads_appointments(self) -> None:
        self.calendar.request_reschedule("1", "2025-03-01", "10:00")
        self.server.fail("PATCH", "appointments/1", status=500)
        loads_before = len(self.server.calls("GET", "appointments"))

        with self.assertRaises(ApiResponseError):
            self.calendar.confirm_reschedule("1")

        self.assertEqual(self.calendar.flow.state, RescheduleState.IDLE)
        self.assertEqual(len(self.server.calls("GET", "appointments")), loads_before + 1)
        self.assertEqual(self.calendar.book.get("1").date, "2025-02-20")
        notices = self.context.notifier.drain()
        self.assertEqual(notices[-1].description, "Failed to reschedule appointment")

    def test_simple_variant_commits_immediately(self) -> None:
        calendar = self.context.calendar("1")
        calendar.confirm_reschedule_enabled = False
        calendar.load()

        updated = calendar.drop("2", "2025-03-01T10:00:00")

        self.assertEqual(updated.date, "2025-03-01")
        self.assertEqual(self.server.record("appointments", "2")["time"], "10:00")
        descriptions = [notice.description for notice in self.context.notifier.drain()]
        self.assertEqual(descriptions, ["Appointment moved to 2025-03-01 at 10:00"])

    def test_action_sheet_for_pending_appointment(self) -> None:
        sheet = self.calendar.click("1").to_dict()

        enabled = {action["status"]: action["enabled"] for action in sheet["statusActions"]}
        self.assertEqual(
            enabled, {"pending": False, "confirmed": True, "completed": False, "cancelled": True}
        )
        self.assertTrue(sheet["canCancel"])
        self.assertTrue(sheet["canReschedule"])
        self.assertIsNone(sheet["prescription"])

    def test_action_sheet_for_completed_appointment_links_prescription(self) -> None:
        sheet = self.calendar.click("3")

        self.assertFalse(sheet.can_cancel)
        self.assertFalse(sheet.can_reschedule)
        self.assertEqual(sheet.prescription.id, "rx-1")

    def test_prescription_failure_does_not_block_calendar(self) -> None:
        self.server.fail("GET", "prescriptions", status=500)

        events = self.calendar.load()

        self.assertEqual(len(events), 4)
        self.assertIsNone(self.calendar.click("3").prescription)


class HoverTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        context = make_context(FakeJsonServer(), Path(self._tmp.name))
        self.book = context.doctor_book("1")
        self.book.load()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_tooltip_appears_after_delay(self) -> None:
        tracker = HoverTracker(self.book)
        tracker.enter("1", 120, 240, at=10.0)

        self.assertIsNone(tracker.tooltip(now=10.4))
        tooltip = tracker.tooltip(now=10.5)
        self.assertEqual(tooltip.appointment.id, "1")
        self.assertEqual((tooltip.x, tooltip.y), (120, 240))

    def test_leave_hides_tooltip(self) -> None:
        tracker = HoverTracker(self.book)
        tracker.enter("1", 0, 0, at=0.0)
        tracker.leave()

        self.assertIsNone(tracker.tooltip(now=5.0))


if __name__ == "__main__":
    unittest.main()
