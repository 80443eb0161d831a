"""Runtime settings for the Shedula backend connector.

Settings are resolved once when the process starts and handed to the
components that need them. Nothing in the connector reads the environment
after that point.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_API_BASE = "https://doctor-appointment-api-1.onrender.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
DEFAULT_REVIEW_STORE_PATH = Path("data") / "reviews.json"
DEFAULT_SCHEDULE_STORE_PATH = Path("data") / "schedules.json"
DEFAULT_ACTIVITY_LOG_PATH = Path(__file__).resolve().parents[1] / "orchestrator" / "activity_log.json"

STORE_API = "api"
STORE_LOCAL = "local"
STORE_CHOICES = (STORE_API, STORE_LOCAL)
REVIEW_STORE_API = STORE_API
REVIEW_STORE_LOCAL = STORE_LOCAL

_TRUE_VALUES = {"1", "true", "t", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "f", "no", "n", "off"}


def _parse_bool(raw: Optional[str], default: bool, name: str) -> bool:
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


def _parse_number(raw: Optional[str], default: float, name: str) -> float:
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    return value


@dataclass(frozen=True)
class ApiSettings:
    """Immutable connector and workflow configuration."""

    api_base: str = DEFAULT_API_BASE
    local_api_base: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    review_store: str = REVIEW_STORE_API
    review_store_path: Path = DEFAULT_REVIEW_STORE_PATH
    schedule_store: str = STORE_LOCAL
    schedule_store_path: Path = DEFAULT_SCHEDULE_STORE_PATH
    enforce_transitions: bool = True
    confirm_reschedule: bool = True
    activity_log_path: Path = DEFAULT_ACTIVITY_LOG_PATH

    def __post_init__(self) -> None:
        if not self.api_base:
            raise ValueError("api_base must be provided")
        for name in ("review_store", "schedule_store"):
            value = getattr(self, name)
            if value not in STORE_CHOICES:
                raise ValueError(f"{name} must be one of {STORE_CHOICES}, got {value!r}")
        object.__setattr__(self, "api_base", self.api_base.rstrip("/"))
        if self.local_api_base:
            object.__setattr__(self, "local_api_base", self.local_api_base.rstrip("/"))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ApiSettings":
        env = os.environ if environ is None else environ
        api_base = env.get("SHEDULA_API_BASE") or env.get("NEXT_PUBLIC_API_BASE") or DEFAULT_API_BASE
        review_store = (env.get("SHEDULA_REVIEW_STORE") or REVIEW_STORE_API).strip().lower()
        store_path = env.get("SHEDULA_REVIEW_STORE_PATH")
        schedule_store = (env.get("SHEDULA_SCHEDULE_STORE") or STORE_LOCAL).strip().lower()
        schedule_path = env.get("SHEDULA_SCHEDULE_STORE_PATH")
        activity_path = env.get("SHEDULA_ACTIVITY_LOG")
        return cls(
            api_base=api_base,
            local_api_base=env.get("SHEDULA_LOCAL_API_BASE") or None,
            timeout=_parse_number(env.get("SHEDULA_TIMEOUT_SECONDS"), DEFAULT_TIMEOUT_SECONDS, "SHEDULA_TIMEOUT_SECONDS"),
            health_timeout=_parse_number(
                env.get("SHEDULA_HEALTH_TIMEOUT_SECONDS"),
                DEFAULT_HEALTH_TIMEOUT_SECONDS,
                "SHEDULA_HEALTH_TIMEOUT_SECONDS",
            ),
            max_retries=int(_parse_number(env.get("SHEDULA_MAX_RETRIES"), DEFAULT_MAX_RETRIES, "SHEDULA_MAX_RETRIES")),
            backoff_factor=_parse_number(
                env.get("SHEDULA_BACKOFF_FACTOR"), DEFAULT_BACKOFF_FACTOR, "SHEDULA_BACKOFF_FACTOR"
            ),
            review_store=review_store,
            review_store_path=Path(store_path) if store_path else DEFAULT_REVIEW_STORE_PATH,
            schedule_store=schedule_store,
            schedule_store_path=Path(schedule_path) if schedule_path else DEFAULT_SCHEDULE_STORE_PATH,
            enforce_transitions=_parse_bool(
                env.get("SHEDULA_ENFORCE_TRANSITIONS"), True, "SHEDULA_ENFORCE_TRANSITIONS"
            ),
            confirm_reschedule=_parse_bool(
                env.get("SHEDULA_CONFIRM_RESCHEDULE"), True, "SHEDULA_CONFIRM_RESCHEDULE"
            ),
            activity_log_path=Path(activity_path) if activity_path else DEFAULT_ACTIVITY_LOG_PATH,
        )

    def with_api_base(self, api_base: str) -> "ApiSettings":
        return replace(self, api_base=api_base)


__all__ = [
    "ApiSettings",
    "DEFAULT_API_BASE",
    "REVIEW_STORE_API",
    "REVIEW_STORE_LOCAL",
    "STORE_API",
    "STORE_LOCAL",
]
