"""User-facing notices raised by clinic workflows."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional

from clinic.models import format_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT = "default"
DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Notice:
    """A title/description pair shown to the person driving the workflow."""

    title: str
    description: str
    variant: str = DEFAULT
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, str]:
        return {
            "title": self.title,
            "description": self.description,
            "variant": self.variant,
            "createdAt": format_timestamp(self.created_at),
        }


class Notifier:
    """Keeps the most recent notices and mirrors them to the log.

    A thread that opens a scope collects its own notices apart from the
    shared queue until it closes the scope; the dashboard opens one per
    request.
    """

    def __init__(self, capacity: int = 50) -> None:
        self._notices: Deque[Notice] = deque(maxlen=max(1, capacity))
        self._lock = threading.Lock()
        self._scope = threading.local()

    def success(self, description: str, title: str = "Success") -> Notice:
        return self._post(Notice(title=title, description=description))

    def error(self, description: str, title: str = "Error") -> Notice:
        return self._post(Notice(title=title, description=description, variant=DESTRUCTIVE))

    def open_scope(self) -> List[Notice]:
        notices: List[Notice] = []
        self._scope.notices = notices
        return notices

    def close_scope(self) -> None:
        self._scope.notices = None

    def _scoped(self) -> Optional[List[Notice]]:
        return getattr(self._scope, "notices", None)

    def _post(self, notice: Notice) -> Notice:
        if notice.variant == DESTRUCTIVE:
            logger.error("%s: %s", notice.title, notice.description)
        else:
            logger.info("%s: %s", notice.title, notice.description)
        scoped = self._scoped()
        if scoped is not None:
            scoped.append(notice)
            return notice
        with self._lock:
            self._notices.append(notice)
        return notice

    def drain(self) -> List[Notice]:
        scoped = self._scoped()
        if scoped is not None:
            notices = list(scoped)
            scoped.clear()
            return notices
        with self._lock:
            notices = list(self._notices)
            self._notices.clear()
        return notices
