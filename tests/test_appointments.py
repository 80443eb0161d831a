import tempfile
import unittest
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

from clinic.appointments import (
    AppointmentBook,
    AppointmentNotFoundError,
    AppointmentStatus,
    CompletionPrompt,
    InvalidTransitionError,
    PrescriptionPrefill,
    available_actions,
    can_transition,
    prescription_redirect_url,
    status_style,
)
from clinic.models import Appointment
from clinic.schedule import SlotUnavailableError
from connector import ApiResponseError
from fake_server import FakeJsonServer, make_context


class TransitionRulesTests(unittest.TestCase):
    def test_lifecycle_transitions(self) -> None:
        self.assertTrue(can_transition("pending", "confirmed"))
        self.assertTrue(can_transition("pending", "cancelled"))
        self.assertTrue(can_transition("confirmed", "completed"))
        self.assertTrue(can_transition("confirmed", "cancelled"))
        self.assertFalse(can_transition("pending", "completed"))
        self.assertFalse(can_transition("completed", "pending"))
        self.assertFalse(can_transition("cancelled", "confirmed"))

    def test_same_status_is_always_allowed(self) -> None:
        for status in AppointmentStatus:
            self.assertTrue(can_transition(status.value, status.value))

    def test_unknown_current_status_may_be_corrected(self) -> None:
        self.assertTrue(can_transition("rescheduled", "confirmed"))

    def test_unknown_target_status_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            can_transition("pending", "archived")

    def test_available_actions_follow_lifecycle(self) -> None:
        pending = Appointment(id="1", doctor_id="1", patient_id="10", date="2025-02-20", time="09:00", status="pending")

        self.assertEqual(
            available_actions(pending), [AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED]
        )
        self.assertEqual(len(available_actions(pending, enforce=False)), 3)

    def test_status_colours(self) -> None:
        self.assertEqual(status_style("confirmed").background_color, "#10b981")
        self.assertEqual(status_style("pending").border_color, "#d97706")
        self.assertEqual(status_style("completed").background_color, "#6366f1")
        self.assertEqual(status_style("cancelled").background_color, "#ef4444")
        self.assertEqual(status_style("mystery").background_color, "#6b7280")


class AppointmentWorkflowTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.server = FakeJsonServer()
        self.context = make_context(self.server, Path(self._tmp.name))
        self.book = self.context.doctor_book("1")
        self.book.load()
        self.workflow = self.context.workflow(self.book)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _descriptions(self) -> list:
        return [notice.description for notice in self.context.notifier.drain()]

    def test_cancel_is_a_status_change_not_a_delete(self) -> None:
        for appointment_id in ("1", "2"):
            updated = self.workflow.cancel(appointment_id)

            self.assertEqual(updated.status, "cancelled")
            self.assertEqual(self.server.record("appointments", appointment_id)["status"], "cancelled")
        self.assertEqual(self.server.calls("DELETE"), [])
        self.assertEqual(self.book.get("1").status, "cancelled")

    def test_complete_without_prescription(self) -> None:
        outcome = self.workflow.complete("2")

        self.assertEqual(outcome.appointment.status, "completed")
        self.assertIsNone(outcome.redirect_url)
        self.assertEqual(self.server.record("appointments", "2")["status"], "completed")
        self.assertIn("Appointment marked as completed", self._descriptions())

    def test_complete_with_prescription_redirects_to_prefilled_form(self) -> None:
        outcome = self.workflow.complete("2", create_prescription=True)

        self.assertEqual(self.server.record("appointments", "2")["status"], "completed")
        parsed = urlsplit(outcome.redirect_url)
        self.assertEqual(parsed.path, "/doctor/prescriptions")
        self.assertEqual(
            parse_qs(parsed.query),
            {"appointmentId": ["2"], "patientId": ["10"], "patientName": ["John Doe"]},
        )
        self.assertIn("patientName=John%20Doe", outcome.redirect_url)

    def test_repeating_a_status_update_is_idempotent(self) -> None:
        self.workflow.update_status("1", "confirmed")
        once = dict(self.server.record("appointments", "1"))
        self.workflow.update_status("1", "confirmed")
        twice = self.server.record("appointments", "1")

        self.assertEqual(once["status"], twice["status"])
        self.assertEqual(
            {key: value for key, value in once.items() if key != "updatedAt"},
            {key: value for key, value in twice.items() if key != "updatedAt"},
        )

    def test_illegal_transition_is_rejected_without_request(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self.workflow.update_status("3", "pending")

        self.assertEqual(self.server.calls("PATCH"), [])

    def test_transition_rules_can_be_disabled(self) -> None:
        workflow = self.context.workflow(self.book)
        workflow.enforce_transitions = False

        self.assertEqual(workflow.update_status("3", "pending").status, "pending")

    def test_completion_request_asks_before_patching(self) -> None:
        result = self.workflow.request_status_change("2", "completed")

        self.assertIsInstance(result, CompletionPrompt)
        self.assertEqual(len(result.options), 2)
        self.assertEqual(self.server.calls("PATCH"), [])

    def test_other_status_requests_apply_immediately(self) -> None:
        result = self.workflow.request_status_change("1", "confirmed")

        self.assertEqual(result.status, "confirmed")
        self.assertIn("Appointment marked as confirmed", self._descriptions())

    def test_failed_update_posts_error_notice(self) -> None:
        self.server.fail("PATCH", "appointments/1", status=500)

        with self.assertRaises(ApiResponseError):
            self.workflow.update_status("1", "confirmed")

        notices = self.context.notifier.drain()
        self.assertEqual(notices[-1].description, "Failed to update appointment status")
        self.assertEqual(notices[-1].variant, "destructive")
        self.assertEqual(self.book.get("1").status, "pending")

    def test_reschedule_keeps_status(self) -> None:
        updated = self.workflow.reschedule("2", "2025-03-01", "10:00")

        record = self.server.record("appointments", "2")
        self.assertEqual((record["date"], record["time"], record["status"]), ("2025-03-01", "10:00", "confirmed"))
        self.assertEqual(updated.status, "confirmed")
        self.assertIn("Appointment rescheduled to 2025-03-01 at 10:00", self._descriptions())

    def test_reschedule_validates_slot(self) -> None:
        with self.assertRaises(ValueError):
            self.workflow.reschedule("2", "01/03/2025", "10:00")
        with self.assertRaises(ValueError):
            self.workflow.reschedule("2", "2025-03-01", "25:00")

    def test_terminal_appointment_cannot_be_rescheduled(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self.workflow.reschedule("4", "2025-03-01", "10:00")

    def test_delete_removes_record(self) -> None:
        self.workflow.delete("4")

        self.assertIsNone(self.server.record("appointments", "4"))
        self.assertIsNone(self.book.find("4"))

    def test_unknown_appointment(self) -> None:
        with self.assertRaises(AppointmentNotFoundError):
            self.workflow.update_status("999", "confirmed")

    def test_book_appointment_rejects_taken_slot(self) -> None:
        with self.assertRaises(ValueError):
            self.workflow.book_appointment(doctor_id="1", patient_id="11", date="2025-02-20", time="09:00")

        created = self.workflow.book_appointment(
            doctor_id="1", patient_id="11", date="2025-02-25", time="11:00", patient_name="Jane Smith"
        )
        self.assertEqual(created.status, "pending")
        self.assertIsNotNone(self.server.record("appointments", created.id))

    def test_book_appointment_follows_doctor_schedule(self) -> None:
        self.context.schedules.block_date("1", "2025-02-26", "Conference")
        self.context.notifier.drain()

        with self.assertRaises(SlotUnavailableError) as ctx:
            self.workflow.book_appointment(doctor_id="1", patient_id="11", date="2025-02-26", time="10:00")
        self.assertIn("Conference", str(ctx.exception))
        with self.assertRaises(SlotUnavailableError):
            self.workflow.book_appointment(doctor_id="1", patient_id="11", date="2025-03-02", time="10:00")

        self.assertEqual(self.server.calls("POST"), [])
        self.assertEqual(self._descriptions(), [])

    def test_reschedule_can_leave_the_notice_to_the_caller(self) -> None:
        self.workflow.reschedule("2", "2025-03-01", "10:00", notify=False)

        self.assertEqual(self._descriptions(), [])
        self.assertEqual(self.server.record("appointments", "2")["date"], "2025-03-01")


class AppointmentBookTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.server = FakeJsonServer()
        self.context = make_context(self.server, Path(self._tmp.name))
        self.book = self.context.doctor_book("1")
        self.book.load()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_requires_exactly_one_owner(self) -> None:
        with self.assertRaises(ValueError):
            AppointmentBook(self.context.appointments)
        with self.assertRaises(ValueError):
            AppointmentBook(self.context.appointments, doctor_id="1", patient_id="10")

    def test_records_are_sorted_by_slot(self) -> None:
        self.assertEqual([record.id for record in self.book.all()], ["3", "1", "2", "4"])

    def test_filters(self) -> None:
        self.assertEqual([r.id for r in self.book.filter(status="confirmed")], ["2"])
        self.assertEqual(len(self.book.filter(status="all")), 4)
        self.assertEqual([r.id for r in self.book.filter(patient="jane")], ["3", "4"])
        self.assertEqual([r.id for r in self.book.filter(date_from="2025-02-20")], ["1"])
        self.assertEqual(
            [r.id for r in self.book.filter(date_from="2025-02-19", date_to="2025-02-21")], ["1", "2"]
        )

    def test_counts_and_patients(self) -> None:
        self.assertEqual(
            self.book.counts_by_status(), {"pending": 1, "confirmed": 1, "completed": 1, "cancelled": 1}
        )
        self.assertEqual(self.book.patients(), ["Jane Smith", "John Doe"])

    def test_stale_copies_are_ignored(self) -> None:
        fresh = Appointment(
            id="1", doctor_id="1", patient_id="10", date="2025-02-20", time="09:00",
            status="confirmed", updated_at="2025-02-20T09:00:00.000Z",
        )
        stale = Appointment(
            id="1", doctor_id="1", patient_id="10", date="2025-02-20", time="09:00",
            status="pending", updated_at="2025-02-20T08:00:00.000Z",
        )
        self.book.apply(fresh)

        self.assertIs(self.book.apply(stale), fresh)
        self.assertEqual(self.book.get("1").status, "confirmed")


class PrescriptionLinkTests(unittest.TestCase):
    def test_redirect_url_encodes_patient_name(self) -> None:
        appointment = Appointment(
            id="7", doctor_id="1", patient_id="10", date="2025-02-20", time="09:00",
            status="completed", patient_name="Zoë O'Neil & Co",
        )

        url = prescription_redirect_url(appointment)
        prefill = PrescriptionPrefill.from_query({k: v[0] for k, v in parse_qs(urlsplit(url).query).items()})

        self.assertNotIn("+", url)
        self.assertEqual(prefill.patient_name, "Zoë O'Neil & Co")
        self.assertTrue(prefill.is_linked)

    def test_prefill_ignores_blank_values(self) -> None:
        prefill = PrescriptionPrefill.from_query({"appointmentId": " ", "patientId": "10"})

        self.assertFalse(prefill.is_linked)
        self.assertEqual(prefill.patient_id, "10")


if __name__ == "__main__":
    unittest.main()
