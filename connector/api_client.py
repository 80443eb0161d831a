"""Shedula REST connector.

This module provides the HTTP clients used to talk to the json-server style
backend that stores doctors, patients, appointments, prescriptions, reviews
and diagnoses. The base client manages HTTP session handling with retries
for idempotent reads, per-request timeouts, and structured error reporting;
the resource clients map each backend collection onto plain methods.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from connector.settings import (
    DEFAULT_API_BASE,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SECONDS,
    ApiSettings,
)

__all__ = [
    "ApiConnectionError",
    "ApiResponseError",
    "ApiTimeoutError",
    "AppointmentsAPI",
    "AuthAPI",
    "AuthenticationError",
    "DiagnosesAPI",
    "DoctorsAPI",
    "PatientsAPI",
    "PrescriptionsAPI",
    "ReviewsAPI",
    "SchedulesAPI",
    "ShedulaApiClient",
    "ShedulaClientError",
    "resolve_api_base",
]

logger = logging.getLogger(__name__)

JsonPayload = Union[Dict[str, Any], List[Any]]

USER_ROLES = ("doctor", "patient")
_ROLE_COLLECTIONS = {"doctor": "doctors", "patient": "patients"}


class ShedulaClientError(RuntimeError):
    """Base exception for backend client errors."""


class ApiConnectionError(ShedulaClientError):
    """Raised when the backend cannot be reached at all."""


class ApiTimeoutError(ShedulaClientError):
    """Raised when a request exceeds its timeout."""


class ApiResponseError(ShedulaClientError):
    """Raised when the backend answers with an unexpected status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ShedulaClientError):
    """Raised when an email/password pair does not match any account."""


def _validate_identifier(value: object, label: str) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


class ShedulaApiClient:
    """Shared HTTP plumbing for every backend collection."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.health_timeout = health_timeout
        self._session = session or self._build_session(
            max_retries=max_retries, backoff_factor=backoff_factor
        )

    @classmethod
    def from_settings(
        cls, settings: ApiSettings, *, session: Optional[requests.Session] = None
    ) -> "ShedulaApiClient":
        return cls(
            base_url=settings.api_base,
            timeout=settings.timeout,
            health_timeout=settings.health_timeout,
            max_retries=settings.max_retries,
            backoff_factor=settings.backoff_factor,
            session=session,
        )

    def _build_session(self, *, max_retries: int, backoff_factor: float) -> requests.Session:
        session = requests.Session()
        # Mutations are never replayed; only reads are safe to retry.
        retry_strategy = Retry(
            total=max_retries,
            read=max_retries,
            connect=max_retries,
            status=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("GET", "HEAD"),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_payload: Optional[JsonPayload] = None,
        expected_status: Union[int, Tuple[int, ...]] = (200,),
        timeout: Optional[float] = None,
        operation: Optional[str] = None,
    ) -> Response:
        if not path:
            raise ValueError("path must be provided")
        if isinstance(expected_status, int):
            expected_status = (expected_status,)

        url = f"{self.base_url}/{path.lstrip('/')}"
        operation = operation or f"{method.upper()} /{path.lstrip('/')}"
        headers = {"Accept": "application/json"}

        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json_payload,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.Timeout as exc:
            logger.error("Request to %s timed out: %s", url, exc)
            raise ApiTimeoutError(f"Request timeout: {operation} took too long to respond.") from exc
        except requests.ConnectionError as exc:
            logger.error("Could not connect to %s: %s", url, exc)
            raise ApiConnectionError(
                f"Cannot connect to API server at {self.base_url}. "
                "Please ensure the JSON server is running and reachable."
            ) from exc
        except requests.RequestException as exc:
            logger.error("Request to %s failed: %s", url, exc)
            raise ShedulaClientError(f"Failed to execute request: {operation}") from exc

        if response.status_code not in expected_status:
            self._log_error_response(response)
            raise ApiResponseError(
                f"{operation} failed: {response.status_code} {response.reason or ''}".rstrip(),
                response.status_code,
            )

        return response

    @staticmethod
    def _decode(response: Response) -> JsonPayload:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ShedulaClientError("Backend response was not valid JSON") from exc

    @staticmethod
    def _log_error_response(response: Response) -> None:
        content_type = response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                parsed = response.json()
                logger.error("Backend error response: status=%s body=%s", response.status_code, parsed)
                return
            except ValueError:
                pass
        logger.error("Backend error response: status=%s body=%s", response.status_code, response.text[:2048])

    def get_json(self, path: str, *, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> JsonPayload:
        return self._decode(self._request("GET", path, params=params, **kwargs))

    def post_json(self, path: str, payload: JsonPayload, **kwargs: Any) -> JsonPayload:
        kwargs.setdefault("expected_status", (200, 201))
        return self._decode(self._request("POST", path, json_payload=payload, **kwargs))

    def patch_json(self, path: str, payload: JsonPayload, **kwargs: Any) -> JsonPayload:
        return self._decode(self._request("PATCH", path, json_payload=payload, **kwargs))

    def delete(self, path: str, **kwargs: Any) -> None:
        kwargs.setdefault("expected_status", (200, 204))
        self._request("DELETE", path, **kwargs)

    def check_status(self) -> bool:
        """Return whether the backend answers a HEAD request on ``/doctors``."""

        try:
            self._request(
                "HEAD",
                "doctors",
                timeout=self.health_timeout,
                operation="health check",
            )
        except ShedulaClientError as exc:
            logger.warning("API server at %s is not available: %s", self.base_url, exc)
            return False
        return True


def resolve_api_base(
    candidates: Sequence[str],
    *,
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> str:
    """Pick the first reachable backend from ``candidates``.

    The check runs once; callers store the result in their settings. When no
    candidate answers, the last one is returned.
    """

    bases = [candidate for candidate in candidates if candidate]
    if not bases:
        raise ValueError("at least one candidate API base is required")
    for base in bases:
        client = ShedulaApiClient(
            base_url=base, health_timeout=health_timeout, max_retries=0, session=session
        )
        if client.check_status():
            logger.info("Using API server %s", client.base_url)
            return client.base_url
    logger.warning("No API server answered; falling back to %s", bases[-1])
    return bases[-1].rstrip("/")


class _Collection:
    """Common CRUD helpers for a json-server collection."""

    collection = ""
    label = "record"

    def __init__(self, client: ShedulaApiClient) -> None:
        self._client = client

    def _list(self, **filters: Any) -> List[Dict[str, Any]]:
        params = {key: value for key, value in filters.items() if value is not None}
        payload = self._client.get_json(
            self.collection,
            params=params or None,
            operation=f"fetching {self.collection}",
        )
        if not isinstance(payload, list):
            raise ShedulaClientError(f"Expected a list of {self.collection} from the backend")
        return [item for item in payload if isinstance(item, dict)]

    def _get(self, record_id: str) -> Dict[str, Any]:
        record_id = _validate_identifier(record_id, f"{self.label}_id")
        payload = self._client.get_json(
            f"{self.collection}/{record_id}", operation=f"fetching {self.label} {record_id}"
        )
        if not isinstance(payload, dict):
            raise ShedulaClientError(f"Expected a {self.label} object from the backend")
        return payload

    def _create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(payload, dict) or not payload:
            raise ValueError("payload must be a non-empty dictionary")
        created = self._client.post_json(
            self.collection, payload, operation=f"creating {self.label}"
        )
        return created if isinstance(created, dict) else {}

    def _patch(self, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        record_id = _validate_identifier(record_id, f"{self.label}_id")
        if not isinstance(changes, dict) or not changes:
            raise ValueError("changes must be a non-empty dictionary")
        updated = self._client.patch_json(
            f"{self.collection}/{record_id}", changes, operation=f"updating {self.label} {record_id}"
        )
        return updated if isinstance(updated, dict) else {}

    def _delete(self, record_id: str) -> None:
        record_id = _validate_identifier(record_id, f"{self.label}_id")
        self._client.delete(
            f"{self.collection}/{record_id}", operation=f"deleting {self.label} {record_id}"
        )


class DoctorsAPI(_Collection):
    collection = "doctors"
    label = "doctor"

    def get_all(self) -> List[Dict[str, Any]]:
        return self._list()

    def get_by_id(self, doctor_id: str) -> Dict[str, Any]:
        return self._get(doctor_id)

    def update(self, doctor_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch(doctor_id, changes)


class PatientsAPI(_Collection):
    collection = "patients"
    label = "patient"

    def get_all(self) -> List[Dict[str, Any]]:
        return self._list()

    def get_by_id(self, patient_id: str) -> Dict[str, Any]:
        return self._get(patient_id)

    def update(self, patient_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch(patient_id, changes)


class AppointmentsAPI(_Collection):
    collection = "appointments"
    label = "appointment"

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(payload)

    def get_by_id(self, appointment_id: str) -> Dict[str, Any]:
        return self._get(appointment_id)

    def get_by_doctor_id(self, doctor_id: str) -> List[Dict[str, Any]]:
        return self._list(doctorId=_validate_identifier(doctor_id, "doctor_id"))

    def get_by_patient_id(self, patient_id: str) -> List[Dict[str, Any]]:
        return self._list(patientId=_validate_identifier(patient_id, "patient_id"))

    def update_status(
        self, appointment_id: str, status: str, *, updated_at: Optional[str] = None
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"status": status}
        if updated_at:
            changes["updatedAt"] = updated_at
        return self._patch(appointment_id, changes)

    def update_date_time(
        self, appointment_id: str, date: str, time: str, *, updated_at: Optional[str] = None
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {"date": date, "time": time}
        if updated_at:
            changes["updatedAt"] = updated_at
        return self._patch(appointment_id, changes)

    def delete(self, appointment_id: str) -> None:
        self._delete(appointment_id)


class PrescriptionsAPI(_Collection):
    collection = "prescriptions"
    label = "prescription"

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(payload)

    def get_all(self) -> List[Dict[str, Any]]:
        return self._list()

    def get_by_id(self, prescription_id: str) -> Dict[str, Any]:
        return self._get(prescription_id)

    def get_by_doctor_id(self, doctor_id: str) -> List[Dict[str, Any]]:
        return self._list(doctorId=_validate_identifier(doctor_id, "doctor_id"))

    def get_by_patient_id(self, patient_id: str) -> List[Dict[str, Any]]:
        return self._list(patientId=_validate_identifier(patient_id, "patient_id"))

    def get_by_doctor_and_patient(self, doctor_id: str, patient_id: str) -> List[Dict[str, Any]]:
        return self._list(
            doctorId=_validate_identifier(doctor_id, "doctor_id"),
            patientId=_validate_identifier(patient_id, "patient_id"),
        )

    def update(self, prescription_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch(prescription_id, changes)

    def delete(self, prescription_id: str) -> None:
        self._delete(prescription_id)


class ReviewsAPI(_Collection):
    collection = "reviews"
    label = "review"

    def list(self, **filters: Any) -> List[Dict[str, Any]]:
        return self._list(**filters)

    def get_by_id(self, review_id: str) -> Dict[str, Any]:
        return self._get(review_id)

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(payload)

    def update(self, review_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch(review_id, changes)

    def delete(self, review_id: str) -> None:
        self._delete(review_id)


class SchedulesAPI(_Collection):
    """Weekly availability records, one per doctor and keyed by the doctor id."""

    collection = "schedules"
    label = "schedule"

    def get_by_doctor_id(self, doctor_id: str) -> Dict[str, Any]:
        return self._get(doctor_id)

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(payload)

    def update(self, doctor_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch(doctor_id, changes)


class DiagnosesAPI(_Collection):
    collection = "diagnoses"
    label = "diagnosis"

    def get_all(self) -> List[Dict[str, Any]]:
        return self._list()

    def get_by_patient_id(self, patient_id: str) -> List[Dict[str, Any]]:
        """Return a patient's diagnoses, or an empty list on any failure."""

        patient_id = _validate_identifier(patient_id, "patient_id")
        try:
            payload = self._client.get_json(
                self.collection,
                params={"patientId": patient_id},
                timeout=self._client.health_timeout,
                operation="fetching diagnoses",
            )
        except ShedulaClientError as exc:
            logger.warning("Error fetching diagnoses for patient %s, returning empty list: %s", patient_id, exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Diagnoses endpoint returned a non-list body; returning empty list")
            return []
        return [item for item in payload if isinstance(item, dict)]

    def get_by_doctor_id(self, doctor_id: str) -> List[Dict[str, Any]]:
        return self._list(doctorId=_validate_identifier(doctor_id, "doctor_id"))

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(payload)

    def update(self, diagnosis_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._patch(diagnosis_id, changes)


class AuthAPI:
    """Local email/password matching against the doctor and patient collections."""

    def __init__(self, client: ShedulaApiClient) -> None:
        self._client = client

    @staticmethod
    def _collection_for(role: str) -> str:
        if role not in USER_ROLES:
            raise ValueError(f"role must be one of {USER_ROLES}")
        return _ROLE_COLLECTIONS[role]

    def login(self, email: str, password: str, role: str) -> Dict[str, Any]:
        collection = self._collection_for(role)
        if not email or not password:
            raise ValueError("email and password must be provided")

        users = self._client.get_json(collection, operation=f"fetching {collection}")
        if not isinstance(users, list):
            raise ShedulaClientError(f"Expected a list of {collection} from the backend")
        for user in _iter_dicts(users):
            if user.get("email") == email and user.get("password") == password:
                logger.info("%s %s signed in", role.capitalize(), user.get("id"))
                return {**user, "role": role}
        raise AuthenticationError("Invalid email or password")

    def signup(self, data: Dict[str, Any], role: str) -> Dict[str, Any]:
        collection = self._collection_for(role)
        if not isinstance(data, dict) or not data.get("email"):
            raise ValueError("signup data must include an email")
        created = self._client.post_json(collection, dict(data), operation=f"creating {role}")
        if not isinstance(created, dict):
            raise ShedulaClientError("Signup response was not an object")
        return {**created, "role": role}


def _iter_dicts(items: Iterable[Any]) -> Iterable[Dict[str, Any]]:
    for item in items:
        if isinstance(item, dict):
            yield item
