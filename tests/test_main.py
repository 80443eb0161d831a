import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

from fake_server import FakeClock, FakeJsonServer, make_context
from orchestrator.main import ApiStatusMonitor, main, read_activity, run_logged


class MainCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.workdir = Path(self._tmp.name)
        self.server = FakeJsonServer()
        self.context = make_context(self.server, self.workdir)
        self.log_path = self.context.settings.activity_log_path

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _run(self, *argv: str) -> tuple:
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = main(list(argv), context=self.context)
        return code, stdout.getvalue(), stderr.getvalue()

    def _entries(self) -> list:
        return json.loads(self.log_path.read_text(encoding="utf-8"))

    def test_list_appointments(self) -> None:
        code, out, _ = self._run("appointments", "--doctor", "1", "--status", "confirmed")

        self.assertEqual(code, 0)
        self.assertIn("2025-02-21 10:30", out)
        self.assertNotIn("2025-02-20", out)
        entry = self._entries()[-1]
        self.assertEqual((entry["task"], entry["status"]), ("appointments", "success"))
        self.assertEqual(entry["details"], {"count": 1, "status": "confirmed"})

    def test_cancel(self) -> None:
        code, out, _ = self._run("cancel", "1")

        self.assertEqual(code, 0)
        self.assertEqual(self.server.record("appointments", "1")["status"], "cancelled")
        self.assertIn("[Appointment Cancelled]", out)

    def test_set_status_completed_defers_to_complete(self) -> None:
        code, out, _ = self._run("set-status", "2", "completed")

        self.assertEqual(code, 0)
        self.assertIn("shedula complete 2", out)
        self.assertEqual(self.server.calls("PATCH"), [])

    def test_complete_with_prescription_prints_redirect(self) -> None:
        code, out, _ = self._run("complete", "2", "--prescription")

        self.assertEqual(code, 0)
        self.assertIn("/doctor/prescriptions?appointmentId=2&patientId=10&patientName=John%20Doe", out)

    def test_reschedule(self) -> None:
        code, _, _ = self._run("reschedule", "2", "2025-03-01", "10:00")

        self.assertEqual(code, 0)
        record = self.server.record("appointments", "2")
        self.assertEqual((record["date"], record["time"], record["status"]), ("2025-03-01", "10:00", "confirmed"))

    def test_failure_is_logged_and_reported(self) -> None:
        code, _, err = self._run("set-status", "3", "pending")

        self.assertEqual(code, 1)
        self.assertIn("Cannot move appointment 3", err)
        entry = self._entries()[-1]
        self.assertEqual(entry["status"], "failed")
        self.assertIn("Cannot move appointment 3", entry["message"])

    def test_health_offline_exits_non_zero(self) -> None:
        self.server.fail("HEAD", "doctors", error=requests.ConnectionError("down"))

        code, out, _ = self._run("health")

        self.assertEqual(code, 1)
        self.assertIn("offline", out)

    def test_print_prescription(self) -> None:
        self.server.db["prescriptions"].append(
            {
                "id": "rx-9",
                "doctorId": "1",
                "patientId": "10",
                "patientName": "John Doe",
                "doctorName": "Dr. Sarah Johnson",
                "medicines": [{"name": "Aspirin", "dosage": "75mg", "duration": "30 days"}],
                "dateCreated": "2025-02-21T11:00:00.000Z",
            }
        )
        output = self.workdir / "rx.pdf"

        code, _, _ = self._run("print-prescription", "rx-9", "--output", str(output))

        self.assertEqual(code, 0)
        self.assertTrue(output.read_bytes().startswith(b"%PDF"))

    def test_rating_stats(self) -> None:
        code, out, _ = self._run("rating-stats", "1")

        self.assertEqual(code, 0)
        self.assertIn("Average rating: 0.0 (0 reviews)", out)

    def test_book_rejects_slot_outside_working_hours(self) -> None:
        code, _, err = self._run("book", "--doctor", "1", "--patient", "11", "2025-02-25", "17:30")

        self.assertEqual(code, 1)
        self.assertIn("outside the doctor's working hours", err)
        self.assertEqual(self.server.calls("POST"), [])

        code, out, _ = self._run("book", "--doctor", "1", "--patient", "11", "2025-02-25", "16:30")

        self.assertEqual(code, 0)
        self.assertIn("Appointment booked for 2025-02-25 at 16:30", out)
        self.assertEqual(self.server.calls("POST")[0][2]["patientName"], "Jane Smith")

    def test_analytics(self) -> None:
        self.context.clock = FakeClock(datetime(2025, 2, 26, 9, 0, tzinfo=UTC))

        code, out, _ = self._run("analytics", "1", "--range", "90")

        self.assertEqual(code, 0)
        self.assertIn("Success rate: 25%", out)
        self.assertIn("Feb 2025: 4 appointments, 1 completed", out)
        self.assertEqual(self._entries()[-1]["details"]["rangeDays"], 90)

    def test_block_date_then_schedule_shows_no_slots(self) -> None:
        code, out, _ = self._run("block-date", "1", "2025-02-26", "--reason", "Conference")

        self.assertEqual(code, 0)
        self.assertEqual(out.count("Date blocked successfully!"), 1)
        blocked_id = self._entries()[-1]["details"]["id"]

        _, out, _ = self._run("schedule", "1", "--date", "2025-02-26")
        self.assertIn("2025-02-26: no slots", out)

        _, out, _ = self._run("schedule", "1")
        self.assertIn("Sunday     off", out)
        self.assertIn(f"Blocked 2025-02-26: Conference [{blocked_id}]", out)

        code, _, _ = self._run("unblock-date", "1", blocked_id)
        self.assertEqual(code, 0)
        code, _, err = self._run("unblock-date", "1", blocked_id)
        self.assertEqual(code, 1)
        self.assertIn("does not exist", err)

    def test_invalid_environment_is_reported_without_traceback(self) -> None:
        stderr = io.StringIO()
        with patch.dict(os.environ, {"SHEDULA_MAX_RETRIES": "abc"}), redirect_stderr(stderr):
            code = main(["appointments", "--doctor", "1"])

        self.assertEqual(code, 1)
        self.assertTrue(stderr.getvalue().startswith("Error: "))

    def test_activity_log_override(self) -> None:
        override = self.workdir / "custom" / "log.json"

        self._run("--activity-log", str(override), "appointments", "--patient", "11")

        self.assertEqual(read_activity(override)[-1]["task"], "appointments")


class RunLoggedTests(unittest.TestCase):
    def test_reraises_and_records_failure(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "log.json"

            def boom() -> None:
                raise RuntimeError("backend exploded")

            with self.assertRaises(RuntimeError):
                run_logged("explode", boom, path)

            entry = read_activity(path)[-1]
            self.assertEqual(entry["status"], "failed")
            self.assertEqual(entry["message"], "backend exploded")

    def test_corrupted_log_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "log.json"
            path.write_text("{oops", encoding="utf-8")

            with self.assertRaises(ValueError):
                read_activity(path)


class ApiStatusMonitorTests(unittest.TestCase):
    def test_reports_only_changes(self) -> None:
        client = MagicMock()
        client.base_url = "http://api.test"
        client.check_status.side_effect = [True, True, False]
        changes = []
        monitor = ApiStatusMonitor(client, interval_seconds=1, on_change=changes.append)
        monitor._stop_event.wait = MagicMock(return_value=False)

        monitor.start(max_checks=3)

        self.assertEqual(changes, [True, False])
        self.assertFalse(monitor.last_status)
        self.assertEqual(client.check_status.call_count, 3)


if __name__ == "__main__":
    unittest.main()
