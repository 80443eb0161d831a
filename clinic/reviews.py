"""Patient reviews of completed appointments.

Reviews live either in the backend's ``/reviews`` collection or in a local
JSON file. The store is picked from settings when the process starts; the
service on top behaves identically for both, including the 24 hour edit
window which is recomputed on every read.
"""
from __future__ import annotations

import json
import logging
import math
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from clinic.models import Review, format_timestamp, parse_timestamp, utc_now
from connector.api_client import ApiResponseError, ReviewsAPI, ShedulaClientError
from connector.settings import REVIEW_STORE_LOCAL, ApiSettings

logger = logging.getLogger(__name__)

EDIT_WINDOW = timedelta(hours=24)
MIN_RATING = 1
MAX_RATING = 5
MIN_TEXT_LENGTH = 10
MAX_TEXT_LENGTH = 500
LOCAL_STORE_KEY = "healthcareReviews"


class ReviewValidationError(ValueError):
    """Raised when a rating or review text is out of bounds."""


class ReviewNotEditableError(PermissionError):
    """Raised when a review is changed after its edit window closed."""


class ReviewNotFoundError(LookupError):
    """Raised when a review id is unknown to the store."""


class ReviewStore(Protocol):
    def list(self, **filters: Any) -> List[Dict[str, Any]]: ...

    def get(self, review_id: str) -> Dict[str, Any]: ...

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]: ...

    def update(self, review_id: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete(self, review_id: str) -> None: ...


class ApiReviewStore:
    """Reviews kept in the backend's ``/reviews`` collection."""

    def __init__(self, api: ReviewsAPI) -> None:
        self._api = api

    def list(self, **filters: Any) -> List[Dict[str, Any]]:
        return self._api.list(**filters)

    def get(self, review_id: str) -> Dict[str, Any]:
        try:
            return self._api.get_by_id(review_id)
        except ApiResponseError as exc:
            if exc.status_code == 404:
                raise ReviewNotFoundError(f"Review '{review_id}' does not exist") from exc
            raise

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._api.create(payload)

    def update(self, review_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._api.update(review_id, changes)

    def delete(self, review_id: str) -> None:
        self._api.delete(review_id)


class LocalReviewStore:
    """Reviews kept in a JSON file on this machine."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                logger.warning("Review store %s is corrupted; starting from an empty list", self.path)
                return []
        reviews = data.get(LOCAL_STORE_KEY, []) if isinstance(data, dict) else []
        return [review for review in reviews if isinstance(review, dict)]

    def _write(self, reviews: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump({LOCAL_STORE_KEY: reviews}, handle, indent=2)

    def list(self, **filters: Any) -> List[Dict[str, Any]]:
        wanted = {key: str(value) for key, value in filters.items() if value is not None}
        with self._lock:
            reviews = self._read()
        return [
            review
            for review in reviews
            if all(str(review.get(key)) == value for key, value in wanted.items())
        ]

    def get(self, review_id: str) -> Dict[str, Any]:
        with self._lock:
            for review in self._read():
                if review.get("id") == review_id:
                    return review
        raise ReviewNotFoundError(f"Review '{review_id}' does not exist")

    def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = {**payload, "id": payload.get("id") or uuid.uuid4().hex}
        with self._lock:
            reviews = self._read()
            reviews.append(record)
            self._write(reviews)
        return record

    def update(self, review_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            reviews = self._read()
            for index, review in enumerate(reviews):
                if review.get("id") == review_id:
                    reviews[index] = {**review, **changes, "id": review_id}
                    self._write(reviews)
                    return reviews[index]
        raise ReviewNotFoundError(f"Review '{review_id}' does not exist")

    def delete(self, review_id: str) -> None:
        with self._lock:
            reviews = self._read()
            remaining = [review for review in reviews if review.get("id") != review_id]
            if len(remaining) != len(reviews):
                self._write(remaining)


def build_review_store(settings: ApiSettings, api: ReviewsAPI) -> ReviewStore:
    if settings.review_store == REVIEW_STORE_LOCAL:
        logger.info("Reviews are stored locally in %s", settings.review_store_path)
        return LocalReviewStore(settings.review_store_path)
    return ApiReviewStore(api)


def is_review_editable(date_created: object, now: datetime) -> bool:
    created = parse_timestamp(date_created)
    if created is None:
        return False
    return now - created < EDIT_WINDOW


def validate_rating(rating: object) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise ReviewValidationError("Please select a rating")
    return rating


def validate_review_text(text: object) -> str:
    value = str(text or "").strip()
    if len(value) < MIN_TEXT_LENGTH:
        raise ReviewValidationError(f"Review must be at least {MIN_TEXT_LENGTH} characters")
    if len(value) > MAX_TEXT_LENGTH:
        raise ReviewValidationError(f"Review must be at most {MAX_TEXT_LENGTH} characters")
    return value


@dataclass(frozen=True)
class RatingStats:
    average_rating: float = 0.0
    total_reviews: int = 0
    rating_distribution: Dict[int, int] = field(
        default_factory=lambda: {rating: 0 for rating in range(MIN_RATING, MAX_RATING + 1)}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "averageRating": self.average_rating,
            "totalReviews": self.total_reviews,
            "ratingDistribution": {str(key): value for key, value in self.rating_distribution.items()},
        }


class ReviewService:
    def __init__(self, store: ReviewStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self._clock = clock

    def _hydrate(self, payload: Mapping[str, Any]) -> Review:
        review = Review.from_payload(payload)
        review.is_editable = is_review_editable(review.date_created, self._clock())
        return review

    def _hydrate_many(self, payloads: List[Dict[str, Any]]) -> List[Review]:
        reviews: List[Review] = []
        for payload in payloads:
            try:
                reviews.append(self._hydrate(payload))
            except ValueError as exc:
                logger.warning("Skipping invalid review payload %s: %s", payload, exc)
        return reviews

    def create(
        self,
        *,
        appointment_id: str,
        doctor_id: str,
        patient_id: str,
        rating: object,
        review_text: object,
        doctor_name: str = "",
        patient_name: str = "",
    ) -> Review:
        if not appointment_id or not doctor_id or not patient_id:
            raise ReviewValidationError("appointment, doctor and patient are required")
        payload = {
            "appointmentId": appointment_id,
            "doctorId": doctor_id,
            "patientId": patient_id,
            "doctorName": doctor_name,
            "patientName": patient_name,
            "rating": validate_rating(rating),
            "reviewText": validate_review_text(review_text),
            "dateCreated": format_timestamp(self._clock()),
            "dateUpdated": None,
            "isEditable": True,
        }
        created = self._hydrate(self.store.create(payload))
        logger.info("Review %s created for appointment %s", created.id, appointment_id)
        return created

    def _find(self, **filters: Any) -> List[Review]:
        try:
            return self._hydrate_many(self.store.list(**filters))
        except (ShedulaClientError, OSError) as exc:
            logger.warning("Error fetching reviews %s: %s", filters, exc)
            return []

    def get_by_doctor_id(self, doctor_id: str) -> List[Review]:
        return self._find(doctorId=doctor_id)

    def get_by_patient_id(self, patient_id: str) -> List[Review]:
        return self._find(patientId=patient_id)

    def get_by_appointment_id(self, appointment_id: str) -> Optional[Review]:
        reviews = self._find(appointmentId=appointment_id)
        return reviews[0] if reviews else None

    def get(self, review_id: str) -> Review:
        return self._hydrate(self.store.get(review_id))

    def update(
        self,
        review_id: str,
        *,
        rating: Optional[object] = None,
        review_text: Optional[object] = None,
    ) -> Review:
        current = self.get(review_id)
        if not current.is_editable:
            raise ReviewNotEditableError("Reviews can only be edited within 24 hours of posting")
        changes: Dict[str, Any] = {}
        if rating is not None:
            changes["rating"] = validate_rating(rating)
        if review_text is not None:
            changes["reviewText"] = validate_review_text(review_text)
        if not changes:
            raise ReviewValidationError("Nothing to update")
        changes["dateUpdated"] = format_timestamp(self._clock())
        updated = self._hydrate(self.store.update(review_id, changes))
        logger.info("Review %s updated", review_id)
        return updated

    def delete(self, review_id: str) -> None:
        self.store.delete(review_id)
        logger.info("Review %s deleted", review_id)

    def doctor_rating_stats(self, doctor_id: str) -> RatingStats:
        reviews = [
            review for review in self.get_by_doctor_id(doctor_id) if MIN_RATING <= review.rating <= MAX_RATING
        ]
        if not reviews:
            return RatingStats()
        distribution = {rating: 0 for rating in range(MIN_RATING, MAX_RATING + 1)}
        for review in reviews:
            distribution[review.rating] += 1
        average = sum(review.rating for review in reviews) / len(reviews)
        return RatingStats(
            average_rating=math.floor(average * 10 + 0.5) / 10,
            total_reviews=len(reviews),
            rating_distribution=distribution,
        )


__all__ = [
    "ApiReviewStore",
    "LocalReviewStore",
    "RatingStats",
    "ReviewNotEditableError",
    "ReviewNotFoundError",
    "ReviewService",
    "ReviewStore",
    "ReviewValidationError",
    "build_review_store",
    "is_review_editable",
]
