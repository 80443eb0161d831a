"""Web dashboard for Shedula doctors.

This module exposes a Flask application with an HTML dashboard per doctor
and the JSON endpoints behind the calendar gestures: status changes,
completion, cancellation, drag-and-drop rescheduling with confirmation,
prescriptions, reviews, analytics and weekly schedules. All backend access goes through the
``ClinicContext`` stored in ``app.config``.
"""
from __future__ import annotations

import os
import threading
from io import BytesIO
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import Blueprint, Flask, Response, current_app, g, jsonify, render_template_string, request, send_file

from clinic.appointments import (
    STATUS_STYLES,
    AppointmentNotFoundError,
    AppointmentStatus,
    AppointmentWorkflow,
    CompletionPrompt,
    InvalidTransitionError,
    PrescriptionPrefill,
)
from clinic.calendar import (
    SLOT_MAX_TIME,
    SLOT_MIN_TIME,
    AppointmentCalendar,
    RescheduleProposal,
    RescheduleStateError,
)
from clinic.context import ClinicContext, build_context
from clinic.analytics import DEFAULT_RANGE_DAYS, RANGE_CHOICES
from clinic.models import Doctor, Patient
from clinic.prescription_print import document_id, render_prescription_pdf
from clinic.prescriptions import PrescriptionDraft, PrescriptionValidationError
from clinic.reviews import ReviewNotEditableError, ReviewNotFoundError, ReviewValidationError
from clinic.schedule import BlockedDateNotFoundError, SlotUnavailableError, WeeklySchedule
from connector.api_client import ApiResponseError, ShedulaClientError
from orchestrator.main import read_activity

CONTEXT_KEY = "CLINIC_CONTEXT"
CALENDARS_KEY = "CLINIC_CALENDARS"

bp = Blueprint("dashboard", __name__)


class CalendarRegistry:
    """One calendar per doctor, shared by every request for that doctor."""

    def __init__(self, context: ClinicContext) -> None:
        self._context = context
        self._calendars: Dict[str, AppointmentCalendar] = {}
        self._lock = threading.Lock()

    def get(self, doctor_id: str, *, reload: bool = False) -> AppointmentCalendar:
        with self._lock:
            calendar = self._calendars.get(doctor_id)
            if calendar is None:
                calendar = self._context.calendar(doctor_id)
                self._calendars[doctor_id] = calendar
        if reload or not calendar.book.loaded:
            calendar.load()
        return calendar

    def workflow_for(self, appointment_id: str) -> AppointmentWorkflow:
        """Workflow bound to the calendar already holding ``appointment_id``."""

        with self._lock:
            calendars = list(self._calendars.values())
        for calendar in calendars:
            if calendar.book.find(appointment_id) is not None:
                return calendar.workflow
        return self._context.workflow()


def _context() -> ClinicContext:
    return current_app.config[CONTEXT_KEY]


def _calendars() -> CalendarRegistry:
    return current_app.config[CALENDARS_KEY]


@bp.before_app_request
def _open_notice_scope() -> None:
    g.notices = _context().notifier.open_scope()


@bp.teardown_app_request
def _close_notice_scope(exc: Optional[BaseException]) -> None:
    _context().notifier.close_scope()


def _notices() -> List[Dict[str, str]]:
    """Notices posted while handling the current request."""

    posted = g.get("notices")
    if not posted:
        return []
    notices = [notice.to_dict() for notice in posted]
    posted.clear()
    return notices


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


def _respond(payload: Dict[str, Any], status: int = 200) -> Tuple[Response, int]:
    return jsonify({**payload, "notices": _notices()}), status


def _error(exc: Exception, status: int, **extra: Any) -> Tuple[Response, int]:
    return jsonify({"error": str(exc), "notices": _notices(), **extra}), status


def _handle_prescription_validation(exc: PrescriptionValidationError) -> Tuple[Response, int]:
    return _error(exc, 400, errors=exc.errors)


def _handle_bad_request(exc: Exception) -> Tuple[Response, int]:
    return _error(exc, 400)


def _handle_not_found(exc: Exception) -> Tuple[Response, int]:
    return _error(exc, 404)


def _handle_conflict(exc: Exception) -> Tuple[Response, int]:
    return _error(exc, 409)


def _handle_forbidden(exc: Exception) -> Tuple[Response, int]:
    return _error(exc, 403)


def _handle_backend(exc: ShedulaClientError) -> Tuple[Response, int]:
    if isinstance(exc, ApiResponseError) and exc.status_code == 404:
        return _error(exc, 404)
    return _error(exc, 502)


def _filters_from_query(args: Mapping[str, str]) -> Dict[str, Optional[str]]:
    return {
        "status": args.get("status") or None,
        "patient": args.get("patient") or None,
        "date_from": args.get("from") or None,
        "date_to": args.get("to") or None,
    }


def _doctor_or_none(doctor_id: str) -> Optional[Doctor]:
    try:
        return _context().doctor(doctor_id)
    except (ShedulaClientError, ValueError) as exc:
        current_app.logger.warning("Doctor %s profile unavailable: %s", doctor_id, exc)
        return None


dashboard_template = """
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\">
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
    <title>Shedula · {{ doctor_name }}</title>
    <link
      href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\"
      rel=\"stylesheet\"
      integrity=\"sha384-QWTKZyjpPEjISv5WaRU9OFeRpok6YctnYmDr5pNlyT2bRjXh0JMhjY6hW+ALEwIH\"
      crossorigin=\"anonymous\"
    >
  </head>
  <body class=\"bg-light\">
    <nav class=\"navbar navbar-expand-lg navbar-dark bg-primary\">
      <div class=\"container-fluid\">
        <a class=\"navbar-brand\" href=\"#\">Shedula · {{ doctor_name }}</a>
        <span class=\"navbar-text text-white-50\">Working hours {{ slot_min }} – {{ slot_max }}</span>
      </div>
    </nav>
    <main class=\"container my-4\">
      <section class=\"mb-4 d-flex flex-wrap gap-2\" aria-label=\"Status legend\">
        {% for item in legend %}
          <span class=\"badge\" style=\"background-color: {{ item.style.background_color }}; border: 1px solid {{ item.style.border_color }}; color: {{ item.style.text_color }};\">
            {{ item.style.label }} · {{ item.count }}
          </span>
        {% endfor %}
      </section>
      <section class=\"mb-4\">
        <form class=\"row gy-2 gx-3 align-items-end\" method=\"get\" aria-label=\"Appointment filters\">
          <div class=\"col-md-2\">
            <label for=\"filter-status\" class=\"form-label\">Status</label>
            <select id=\"filter-status\" name=\"status\" class=\"form-select\">
              <option value=\"all\">All</option>
              {% for item in legend %}
                <option value=\"{{ item.status }}\" {% if item.status == filters.status %}selected{% endif %}>{{ item.style.label }}</option>
              {% endfor %}
            </select>
          </div>
          <div class=\"col-md-3\">
            <label for=\"filter-patient\" class=\"form-label\">Patient</label>
            <input id=\"filter-patient\" name=\"patient\" class=\"form-control\" list=\"patient-names\" value=\"{{ filters.patient or '' }}\">
            <datalist id=\"patient-names\">
              {% for name in patients %}<option value=\"{{ name }}\">{% endfor %}
            </datalist>
          </div>
          <div class=\"col-md-2\">
            <label for=\"filter-from\" class=\"form-label\">From</label>
            <input id=\"filter-from\" name=\"from\" type=\"date\" class=\"form-control\" value=\"{{ filters.date_from or '' }}\">
          </div>
          <div class=\"col-md-2\">
            <label for=\"filter-to\" class=\"form-label\">To</label>
            <input id=\"filter-to\" name=\"to\" type=\"date\" class=\"form-control\" value=\"{{ filters.date_to or '' }}\">
          </div>
          <div class=\"col-md-3\">
            <button type=\"submit\" class=\"btn btn-primary w-100\">Apply Filters</button>
          </div>
        </form>
      </section>
      <section class=\"row g-4\">
        <div class=\"col-lg-8\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-success text-white\">Appointments</div>
            <div class=\"card-body\">
              {% if appointments %}
                <div class=\"table-responsive\">
                  <table class=\"table table-sm table-striped align-middle\">
                    <thead>
                      <tr>
                        <th scope=\"col\">Date</th>
                        <th scope=\"col\">Time</th>
                        <th scope=\"col\">Patient</th>
                        <th scope=\"col\">Status</th>
                        <th scope=\"col\"></th>
                      </tr>
                    </thead>
                    <tbody>
                      {% for event in appointments %}
                        <tr>
                          <td>{{ event.appointment.date }}</td>
                          <td>{{ event.appointment.time }}</td>
                          <td>{{ event.title }}</td>
                          <td>
                            <span class=\"badge\" style=\"background-color: {{ event.background_color }}; color: {{ event.text_color }};\">{{ event.appointment.status }}</span>
                          </td>
                          <td class=\"text-end\">
                            {% if event.appointment.status not in ('cancelled', 'completed') %}
                              <button type=\"button\" class=\"btn btn-outline-danger btn-sm\" data-cancel=\"{{ event.id }}\">Cancel</button>
                            {% endif %}
                          </td>
                        </tr>
                      {% endfor %}
                    </tbody>
                  </table>
                </div>
              {% else %}
                <p class=\"text-muted mb-0\">No appointments found for the selected filters.</p>
              {% endif %}
            </div>
          </div>
        </div>
        <div class=\"col-lg-4\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-warning text-dark\">Patient Reviews</div>
            <div class=\"card-body\">
              <p class=\"display-6 mb-1\">{{ stats.average_rating }}</p>
              <p class=\"text-muted\">{{ stats.total_reviews }} reviews</p>
              <ul class=\"list-unstyled mb-0\">
                {% for rating in [5, 4, 3, 2, 1] %}
                  <li>{{ rating }} ★ · {{ stats.rating_distribution[rating] }}</li>
                {% endfor %}
              </ul>
            </div>
          </div>
        </div>
      </section>
    </main>
    <script>
      document.querySelectorAll('[data-cancel]').forEach(function (button) {
        button.addEventListener('click', function () {
          if (!window.confirm('Cancel this appointment?')) { return; }
          fetch('/api/appointments/' + button.dataset.cancel + '/cancel', {method: 'POST'})
            .then(function () { window.location.reload(); });
        });
      });
    </script>
  </body>
</html>
"""

prescription_form_template = """
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\">
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
    <title>New Prescription</title>
    <link
      href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\"
      rel=\"stylesheet\"
      integrity=\"sha384-QWTKZyjpPEjISv5WaRU9OFeRpok6YctnYmDr5pNlyT2bRjXh0JMhjY6hW+ALEwIH\"
      crossorigin=\"anonymous\"
    >
  </head>
  <body class=\"bg-light\">
    <main class=\"container my-4\">
      <h1 class=\"h3 mb-3\">New Prescription</h1>
      {% if prefill.is_linked %}
        <div class=\"alert alert-info\">Linked to appointment {{ prefill.appointment_id }}</div>
      {% endif %}
      <form id=\"prescription-form\" class=\"card card-body shadow-sm\">
        <input type=\"hidden\" name=\"appointmentId\" value=\"{{ prefill.appointment_id or '' }}\">
        <input type=\"hidden\" name=\"doctorId\" value=\"{{ doctor_id }}\">
        <input type=\"hidden\" name=\"doctorName\" value=\"{{ doctor_name }}\">
        <div class=\"row g-3 mb-3\">
          <div class=\"col-md-6\">
            <label for=\"patient-id\" class=\"form-label\">Patient ID</label>
            <input id=\"patient-id\" name=\"patientId\" class=\"form-control\" value=\"{{ prefill.patient_id or '' }}\" required>
          </div>
          <div class=\"col-md-6\">
            <label for=\"patient-name\" class=\"form-label\">Patient Name</label>
            <input id=\"patient-name\" name=\"patientName\" class=\"form-control\" value=\"{{ prefill.patient_name or '' }}\" required>
          </div>
        </div>
        <div class=\"row g-2 mb-3\" data-medicine>
          <div class=\"col-md-3\"><input name=\"name\" class=\"form-control\" placeholder=\"Medicine\" required></div>
          <div class=\"col-md-3\"><input name=\"dosage\" class=\"form-control\" placeholder=\"Dosage\" required></div>
          <div class=\"col-md-2\"><input name=\"duration\" class=\"form-control\" placeholder=\"Duration\" required></div>
          <div class=\"col-md-4\"><input name=\"instructions\" class=\"form-control\" placeholder=\"Instructions\"></div>
        </div>
        <div class=\"mb-3\">
          <label for=\"notes\" class=\"form-label\">Notes</label>
          <textarea id=\"notes\" name=\"notes\" class=\"form-control\" rows=\"3\"></textarea>
        </div>
        <div class=\"form-check mb-3\">
          <input id=\"merge\" name=\"merge\" type=\"checkbox\" class=\"form-check-input\">
          <label for=\"merge\" class=\"form-check-label\">Add to the patient's latest prescription</label>
        </div>
        <button type=\"submit\" class=\"btn btn-primary\">Save Prescription</button>
      </form>
    </main>
    <script>
      document.getElementById('prescription-form').addEventListener('submit', function (event) {
        event.preventDefault();
        var form = event.target;
        var medicines = Array.from(form.querySelectorAll('[data-medicine]')).map(function (row) {
          var value = function (name) { return row.querySelector('[name=' + name + ']').value; };
          return {name: value('name'), dosage: value('dosage'), duration: value('duration'), instructions: value('instructions')};
        });
        fetch('/api/prescriptions', {
          method: 'POST',
          headers: {'Content-Type': 'application/json'},
          body: JSON.stringify({
            appointmentId: form.appointmentId.value || null,
            doctorId: form.doctorId.value,
            doctorName: form.doctorName.value,
            patientId: form.patientId.value,
            patientName: form.patientName.value,
            notes: form.notes.value,
            merge: form.merge.checked,
            medicines: medicines
          })
        }).then(function (response) { return response.json(); })
          .then(function (body) {
            if (body.prescription) { window.location = '/doctor/prescriptions/' + body.prescription.id + '/print'; }
            else { window.alert(body.error); }
          });
      });
    </script>
  </body>
</html>
"""


@bp.route("/doctor/<doctor_id>/dashboard", methods=["GET"])
def doctor_dashboard(doctor_id: str) -> str:
    calendar = _calendars().get(doctor_id, reload=True)
    filters = _filters_from_query(request.args)
    counts = calendar.book.counts_by_status()
    doctor = _doctor_or_none(doctor_id)
    legend = [
        {"status": status.value, "style": STATUS_STYLES[status], "count": counts.get(status.value, 0)}
        for status in AppointmentStatus
    ]
    return render_template_string(
        dashboard_template,
        doctor_name=doctor.display_name if doctor else f"Doctor {doctor_id}",
        slot_min=SLOT_MIN_TIME,
        slot_max=SLOT_MAX_TIME,
        legend=legend,
        filters=filters,
        patients=calendar.book.patients(),
        appointments=calendar.events(**filters),
        stats=_context().reviews.doctor_rating_stats(doctor_id),
    )


@bp.route("/api/doctors/<doctor_id>/calendar/events", methods=["GET"])
def calendar_events(doctor_id: str) -> Response:
    calendar = _calendars().get(doctor_id, reload=request.args.get("refresh") == "1")
    events = calendar.events(**_filters_from_query(request.args))
    return jsonify([event.to_dict() for event in events])


@bp.route("/api/doctors/<doctor_id>/calendar/events/<event_id>", methods=["GET"])
def calendar_event_actions(doctor_id: str, event_id: str) -> Response:
    return jsonify(_calendars().get(doctor_id).click(event_id).to_dict())


@bp.route("/api/doctors/<doctor_id>/calendar/drop", methods=["POST"])
def calendar_drop(doctor_id: str) -> Tuple[Response, int]:
    body = _json_body()
    calendar = _calendars().get(doctor_id)
    result = calendar.drop(str(body.get("appointmentId") or ""), str(body.get("start") or ""))
    if isinstance(result, RescheduleProposal):
        return _respond({"proposal": result.to_dict()}, 202)
    return _respond({"appointment": result.to_payload()})


@bp.route("/api/doctors/<doctor_id>/calendar/reschedule", methods=["POST"])
def calendar_request_reschedule(doctor_id: str) -> Tuple[Response, int]:
    body = _json_body()
    proposal = _calendars().get(doctor_id).request_reschedule(
        str(body.get("appointmentId") or ""), body.get("date"), body.get("time")
    )
    return _respond({"proposal": proposal.to_dict()}, 202)


def _proposal_key() -> str:
    key = str(_json_body().get("appointmentId") or "").strip()
    if not key:
        raise ValueError("appointmentId is required to resolve a reschedule")
    return key


@bp.route("/api/doctors/<doctor_id>/calendar/reschedule/confirm", methods=["POST"])
def calendar_confirm_reschedule(doctor_id: str) -> Tuple[Response, int]:
    appointment = _calendars().get(doctor_id).confirm_reschedule(_proposal_key())
    return _respond({"appointment": appointment.to_payload()})


@bp.route("/api/doctors/<doctor_id>/calendar/reschedule/cancel", methods=["POST"])
def calendar_cancel_reschedule(doctor_id: str) -> Tuple[Response, int]:
    proposal = _calendars().get(doctor_id).cancel_reschedule(_proposal_key())
    return _respond({"dismissed": proposal.to_dict()})


@bp.route("/api/appointments/<appointment_id>/status", methods=["POST"])
def appointment_status(appointment_id: str) -> Tuple[Response, int]:
    body = _json_body()
    workflow = _calendars().workflow_for(appointment_id)
    result = workflow.request_status_change(appointment_id, body.get("status"))
    if isinstance(result, CompletionPrompt):
        return _respond({"prompt": result.to_dict()}, 202)
    return _respond({"appointment": result.to_payload()})


@bp.route("/api/appointments/<appointment_id>/complete", methods=["POST"])
def appointment_complete(appointment_id: str) -> Tuple[Response, int]:
    body = request.get_json(silent=True) or {}
    workflow = _calendars().workflow_for(appointment_id)
    outcome = workflow.complete(appointment_id, create_prescription=bool(body.get("createPrescription")))
    return _respond(outcome.to_dict())


@bp.route("/api/appointments/<appointment_id>/cancel", methods=["POST"])
def appointment_cancel(appointment_id: str) -> Tuple[Response, int]:
    appointment = _calendars().workflow_for(appointment_id).cancel(appointment_id)
    return _respond({"appointment": appointment.to_payload()})


@bp.route("/api/appointments/<appointment_id>", methods=["DELETE"])
def appointment_delete(appointment_id: str) -> Tuple[Response, int]:
    _calendars().workflow_for(appointment_id).delete(appointment_id)
    return _respond({"deleted": appointment_id})


@bp.route("/api/appointments/<appointment_id>/review", methods=["GET"])
def appointment_review(appointment_id: str) -> Response:
    review = _context().reviews.get_by_appointment_id(appointment_id)
    return jsonify(review.to_payload() if review else None)


@bp.route("/doctor/prescriptions", methods=["GET"])
def prescription_form() -> str:
    prefill = PrescriptionPrefill.from_query(request.args)
    doctor_id = request.args.get("doctorId", "")
    doctor_name = ""
    if not doctor_id and prefill.is_linked:
        try:
            appointment = _context().workflow().current(prefill.appointment_id or "")
        except (ShedulaClientError, LookupError) as exc:
            current_app.logger.warning("Appointment %s unavailable for prefill: %s", prefill.appointment_id, exc)
        else:
            doctor_id, doctor_name = appointment.doctor_id, appointment.doctor_name
    doctor = _doctor_or_none(doctor_id) if doctor_id else None
    return render_template_string(
        prescription_form_template,
        prefill=prefill,
        doctor_id=doctor_id,
        doctor_name=doctor.display_name if doctor else doctor_name,
    )


@bp.route("/api/prescriptions", methods=["POST"])
def prescription_create() -> Tuple[Response, int]:
    body = _json_body()
    draft = PrescriptionDraft.from_payload(body)
    service = _context().prescriptions
    if body.get("merge"):
        prescription, updated = service.create_or_merge(draft)
    else:
        prescription, updated = service.create(draft), False
    return _respond({"prescription": prescription.to_payload(), "updated": updated}, 200 if updated else 201)


@bp.route("/doctor/prescriptions/<prescription_id>/print", methods=["GET"])
def prescription_print(prescription_id: str) -> Response:
    context = _context()
    prescription = context.prescriptions.get(prescription_id)
    doctor = context.doctor(prescription.doctor_id)
    pdf = render_prescription_pdf(prescription, doctor)
    return send_file(
        BytesIO(pdf),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=f"prescription-{document_id(prescription)}.pdf",
    )


@bp.route("/api/doctors/<doctor_id>/reviews", methods=["GET"])
def doctor_reviews(doctor_id: str) -> Response:
    return jsonify([review.to_payload() for review in _context().reviews.get_by_doctor_id(doctor_id)])


@bp.route("/api/doctors/<doctor_id>/reviews/stats", methods=["GET"])
def doctor_review_stats(doctor_id: str) -> Response:
    return jsonify(_context().reviews.doctor_rating_stats(doctor_id).to_dict())


@bp.route("/api/patients/<patient_id>/reviews", methods=["GET"])
def patient_reviews(patient_id: str) -> Response:
    return jsonify([review.to_payload() for review in _context().reviews.get_by_patient_id(patient_id)])


@bp.route("/api/reviews", methods=["POST"])
def review_create() -> Tuple[Response, int]:
    body = _json_body()
    review = _context().reviews.create(
        appointment_id=str(body.get("appointmentId") or ""),
        doctor_id=str(body.get("doctorId") or ""),
        patient_id=str(body.get("patientId") or ""),
        rating=body.get("rating"),
        review_text=body.get("reviewText"),
        doctor_name=str(body.get("doctorName") or ""),
        patient_name=str(body.get("patientName") or ""),
    )
    _context().notifier.success("Thank you for your feedback!", title="Review Submitted")
    return _respond({"review": review.to_payload()}, 201)


@bp.route("/api/reviews/<review_id>", methods=["PATCH"])
def review_update(review_id: str) -> Tuple[Response, int]:
    body = _json_body()
    review = _context().reviews.update(review_id, rating=body.get("rating"), review_text=body.get("reviewText"))
    _context().notifier.success("Your review has been updated successfully.", title="Review Updated")
    return _respond({"review": review.to_payload()})


@bp.route("/api/reviews/<review_id>", methods=["DELETE"])
def review_delete(review_id: str) -> Tuple[Response, int]:
    _context().reviews.delete(review_id)
    return _respond({"deleted": review_id})


@bp.route("/api/patients/<patient_id>/diagnoses", methods=["GET"])
def patient_diagnoses(patient_id: str) -> Response:
    return jsonify(_context().diagnoses.get_by_patient_id(patient_id))


@bp.route("/api/appointments", methods=["POST"])
def appointment_book() -> Tuple[Response, int]:
    body = _json_body()
    context = _context()
    doctor = context.doctor(str(body.get("doctorId") or ""))
    patient = Patient.from_payload(context.patients.get_by_id(str(body.get("patientId") or "")))
    appointment = _calendars().get(doctor.id).workflow.book_appointment(
        doctor_id=doctor.id,
        patient_id=patient.id,
        date=body.get("date"),
        time=body.get("time"),
        doctor_name=doctor.name,
        patient_name=patient.name,
        specialty=doctor.specialty,
    )
    return _respond({"appointment": appointment.to_payload()}, 201)


@bp.route("/api/doctors/<doctor_id>/analytics", methods=["GET"])
def doctor_analytics(doctor_id: str) -> Response:
    raw_range = request.args.get("range", str(DEFAULT_RANGE_DAYS))
    try:
        range_days = int(raw_range)
    except ValueError as exc:
        raise ValueError(f"range must be one of {RANGE_CHOICES}") from exc
    if range_days not in RANGE_CHOICES:
        raise ValueError(f"range must be one of {RANGE_CHOICES}")
    return jsonify(_context().analytics(doctor_id, range_days).to_dict())


@bp.route("/api/doctors/<doctor_id>/schedule", methods=["GET"])
def doctor_schedule(doctor_id: str) -> Response:
    return jsonify(_context().schedules.get(doctor_id).to_payload())


@bp.route("/api/doctors/<doctor_id>/schedule", methods=["PUT"])
def doctor_schedule_update(doctor_id: str) -> Tuple[Response, int]:
    body = _json_body()
    days = body.get("days")
    if not isinstance(days, dict):
        raise ValueError("days must be an object keyed by weekday")
    service = _context().schedules
    current = service.get(doctor_id).to_payload()
    schedule = WeeklySchedule.from_payload(
        doctor_id, {"days": {**current["days"], **days}, "blockedDates": current["blockedDates"]}
    )
    return _respond({"schedule": service.save(schedule).to_payload()})


@bp.route("/api/doctors/<doctor_id>/schedule/slots", methods=["GET"])
def doctor_schedule_slots(doctor_id: str) -> Response:
    date_value = request.args.get("date", "")
    slots = _context().schedules.slots_for(doctor_id, date_value)
    return jsonify({"date": date_value, "slots": [slot.to_dict() for slot in slots]})


@bp.route("/api/doctors/<doctor_id>/schedule/blocked-dates", methods=["POST"])
def doctor_block_date(doctor_id: str) -> Tuple[Response, int]:
    body = _json_body()
    blocked = _context().schedules.block_date(doctor_id, body.get("date"), str(body.get("reason") or ""))
    return _respond({"blockedDate": blocked.to_payload()}, 201)


@bp.route("/api/doctors/<doctor_id>/schedule/blocked-dates/<blocked_id>", methods=["DELETE"])
def doctor_unblock_date(doctor_id: str, blocked_id: str) -> Tuple[Response, int]:
    _context().schedules.unblock_date(doctor_id, blocked_id)
    return _respond({"deleted": blocked_id})


@bp.route("/api/health", methods=["GET"])
def health() -> Response:
    client = _context().client
    return jsonify({"status": "online" if client.check_status() else "offline", "apiBase": client.base_url})


@bp.route("/activity", methods=["GET"])
def activity() -> Response:
    """Return CLI activity log entries as JSON."""
    return jsonify(read_activity(_context().settings.activity_log_path))


def create_app(context: Optional[ClinicContext] = None) -> Flask:
    app = Flask(__name__)
    context = context or build_context()
    app.config[CONTEXT_KEY] = context
    app.config[CALENDARS_KEY] = CalendarRegistry(context)
    app.register_blueprint(bp)

    app.register_error_handler(PrescriptionValidationError, _handle_prescription_validation)
    app.register_error_handler(ReviewValidationError, _handle_bad_request)
    app.register_error_handler(ValueError, _handle_bad_request)
    app.register_error_handler(AppointmentNotFoundError, _handle_not_found)
    app.register_error_handler(ReviewNotFoundError, _handle_not_found)
    app.register_error_handler(BlockedDateNotFoundError, _handle_not_found)
    app.register_error_handler(InvalidTransitionError, _handle_conflict)
    app.register_error_handler(RescheduleStateError, _handle_conflict)
    app.register_error_handler(SlotUnavailableError, _handle_conflict)
    app.register_error_handler(ReviewNotEditableError, _handle_forbidden)
    app.register_error_handler(ShedulaClientError, _handle_backend)
    return app


if __name__ == "__main__":
    create_app().run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "5000")),
        debug=False,
    )
