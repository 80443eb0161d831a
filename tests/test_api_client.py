import unittest

import requests

from connector import (
    ApiConnectionError,
    ApiResponseError,
    ApiSettings,
    ApiTimeoutError,
    AppointmentsAPI,
    AuthAPI,
    AuthenticationError,
    DiagnosesAPI,
    DoctorsAPI,
    PatientsAPI,
    PrescriptionsAPI,
    ShedulaApiClient,
    resolve_api_base,
)
from fake_server import BASE_URL, FakeJsonServer, make_session


class ShedulaApiClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.server = FakeJsonServer()
        self.client = ShedulaApiClient(
            base_url=BASE_URL + "/", max_retries=0, session=make_session((BASE_URL, self.server))
        )
        self.appointments = AppointmentsAPI(self.client)

    def test_base_url_is_normalised(self) -> None:
        self.assertEqual(self.client.base_url, BASE_URL)

    def test_get_by_doctor_id_filters_collection(self) -> None:
        records = self.appointments.get_by_doctor_id("1")

        self.assertEqual([record["id"] for record in records], ["1", "2", "3", "4"])
        _, path, _, params = self.server.requests[-1]
        self.assertEqual(path, "appointments")
        self.assertEqual(params, {"doctorId": ["1"]})

    def test_update_status_sends_patch_with_version_stamp(self) -> None:
        updated = self.appointments.update_status("1", "confirmed", updated_at="2025-02-20T08:00:00.000Z")

        self.assertEqual(updated["status"], "confirmed")
        self.assertEqual(
            self.server.calls("PATCH", "appointments/1"),
            [("PATCH", "appointments/1", {"status": "confirmed", "updatedAt": "2025-02-20T08:00:00.000Z"})],
        )

    def test_create_lets_backend_assign_identifier(self) -> None:
        prescriptions = PrescriptionsAPI(self.client)

        created = prescriptions.create({"doctorId": "1", "patientId": "10", "medicines": []})

        self.assertTrue(created["id"])
        self.assertIsNotNone(self.server.record("prescriptions", created["id"]))

    def test_doctors_and_patients_are_listed_and_patched(self) -> None:
        doctors = DoctorsAPI(self.client)
        patients = PatientsAPI(self.client)

        self.assertEqual([doctor["id"] for doctor in doctors.get_all()], ["1"])
        self.assertEqual(len(patients.get_all()), 2)

        doctors.update("1", {"phone": "555-0100"})
        patients.update("11", {"phone": "555-0111"})

        self.assertEqual(self.server.record("doctors", "1")["phone"], "555-0100")
        self.assertEqual(patients.get_by_id("11")["phone"], "555-0111")

    def test_unexpected_status_raises_response_error(self) -> None:
        self.server.fail("GET", "appointments/1", status=500)

        with self.assertRaises(ApiResponseError) as ctx:
            self.appointments.get_by_id("1")

        self.assertEqual(ctx.exception.status_code, 500)

    def test_missing_record_raises_not_found(self) -> None:
        with self.assertRaises(ApiResponseError) as ctx:
            self.appointments.get_by_id("999")

        self.assertEqual(ctx.exception.status_code, 404)

    def test_connection_failure_is_reported(self) -> None:
        self.server.fail("GET", "appointments", error=requests.ConnectionError("refused"))

        with self.assertRaises(ApiConnectionError) as ctx:
            self.appointments.get_by_doctor_id("1")

        self.assertIn(BASE_URL, str(ctx.exception))

    def test_timeout_names_the_operation(self) -> None:
        self.server.fail("GET", "appointments", error=requests.Timeout("slow"))

        with self.assertRaises(ApiTimeoutError) as ctx:
            self.appointments.get_by_doctor_id("1")

        self.assertEqual(str(ctx.exception), "Request timeout: fetching appointments took too long to respond.")

    def test_blank_identifier_is_rejected_before_any_request(self) -> None:
        with self.assertRaises(ValueError):
            self.appointments.update_status("  ", "confirmed")

        self.assertEqual(self.server.requests, [])

    def test_check_status_reports_online_and_offline(self) -> None:
        self.assertTrue(self.client.check_status())
        self.assertEqual(self.server.requests[-1][:2], ("HEAD", "doctors"))

        self.server.fail("HEAD", "doctors", error=requests.ConnectionError("down"))
        self.assertFalse(self.client.check_status())

    def test_patient_diagnoses_degrade_to_empty_list(self) -> None:
        diagnoses = DiagnosesAPI(self.client)
        self.assertEqual([item["id"] for item in diagnoses.get_by_patient_id("10")], ["d1"])

        self.server.fail("GET", "diagnoses", status=503)
        self.assertEqual(diagnoses.get_by_patient_id("10"), [])


class AuthAPITests(unittest.TestCase):
    def setUp(self) -> None:
        self.server = FakeJsonServer()
        client = ShedulaApiClient(base_url=BASE_URL, max_retries=0, session=make_session((BASE_URL, self.server)))
        self.auth = AuthAPI(client)

    def test_login_returns_user_with_role(self) -> None:
        user = self.auth.login("sarah@shedula.test", "heart123", "doctor")

        self.assertEqual(user["id"], "1")
        self.assertEqual(user["role"], "doctor")

    def test_login_rejects_wrong_password(self) -> None:
        with self.assertRaises(AuthenticationError):
            self.auth.login("john@shedula.test", "wrong", "patient")

    def test_signup_posts_to_role_collection(self) -> None:
        created = self.auth.signup({"name": "Ann Lee", "email": "ann@shedula.test", "password": "pw"}, "patient")

        self.assertEqual(created["role"], "patient")
        self.assertEqual(self.server.calls("POST")[0][1], "patients")

    def test_unknown_role_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.auth.login("a@b.c", "pw", "admin")


class ResolveApiBaseTests(unittest.TestCase):
    def test_prefers_first_reachable_backend(self) -> None:
        local = FakeJsonServer()
        remote = FakeJsonServer()
        session = make_session(("http://local.test", local), (BASE_URL, remote))

        self.assertEqual(resolve_api_base(["http://local.test", BASE_URL], session=session), "http://local.test")

    def test_falls_back_when_local_backend_is_down(self) -> None:
        local = FakeJsonServer()
        local.fail("HEAD", "doctors", error=requests.ConnectionError("refused"))
        remote = FakeJsonServer()
        session = make_session(("http://local.test", local), (BASE_URL, remote))

        self.assertEqual(resolve_api_base(["http://local.test", BASE_URL], session=session), BASE_URL)


class ApiSettingsTests(unittest.TestCase):
    def test_from_env_reads_overrides(self) -> None:
        settings = ApiSettings.from_env(
            {
                "NEXT_PUBLIC_API_BASE": "http://backend.test/",
                "SHEDULA_TIMEOUT_SECONDS": "12",
                "SHEDULA_REVIEW_STORE": "LOCAL",
                "SHEDULA_CONFIRM_RESCHEDULE": "off",
            }
        )

        self.assertEqual(settings.api_base, "http://backend.test")
        self.assertEqual(settings.timeout, 12.0)
        self.assertEqual(settings.review_store, "local")
        self.assertFalse(settings.confirm_reschedule)
        self.assertTrue(settings.enforce_transitions)

    def test_invalid_values_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ApiSettings.from_env({"SHEDULA_REVIEW_STORE": "cookie"})
        with self.assertRaises(ValueError):
            ApiSettings.from_env({"SHEDULA_ENFORCE_TRANSITIONS": "maybe"})


if __name__ == "__main__":
    unittest.main()
