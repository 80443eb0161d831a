"""Connector interfaces for the Shedula backend."""

from connector.api_client import (
    ApiConnectionError,
    ApiResponseError,
    ApiTimeoutError,
    AppointmentsAPI,
    AuthAPI,
    AuthenticationError,
    DiagnosesAPI,
    DoctorsAPI,
    PatientsAPI,
    PrescriptionsAPI,
    ReviewsAPI,
    SchedulesAPI,
    ShedulaApiClient,
    ShedulaClientError,
    resolve_api_base,
)
from connector.settings import ApiSettings

__all__ = [
    "ApiConnectionError",
    "ApiResponseError",
    "ApiSettings",
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
