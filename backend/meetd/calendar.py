import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .models import BusyPeriod, UserRecord, Visibility

logger = logging.getLogger(__name__)

MASKED_TITLE = "Busy"


@dataclass
class CreatedEvent:
    id: str
    html_link: Optional[str] = None


class CalendarProvider(Protocol):
    """Calendar collaborator. Implementations raise UpstreamUnavailable when unreachable."""

    def busy_periods(self, user: UserRecord, start: datetime, end: datetime) -> List[BusyPeriod]: ...

    def create_event(
        self,
        user: UserRecord,
        title: str,
        description: Optional[str],
        start: datetime,
        end: datetime,
        attendee_email: Optional[str],
    ) -> CreatedEvent: ...


class NullCalendar:
    """No calendar connected: everyone is free and events are not written anywhere."""

    def busy_periods(self, user: UserRecord, start: datetime, end: datetime) -> List[BusyPeriod]:
        return []

    def create_event(self, user, title, description, start, end, attendee_email) -> CreatedEvent:
        return CreatedEvent(id=uuid.uuid4().hex)


class StaticCalendar:
    """In-memory calendar keyed by email, for development and tests."""

    def __init__(self, busy: Optional[Dict[str, List[BusyPeriod]]] = None, link_base: str = "https://calendar.local/event/"):
        self._busy: Dict[str, List[BusyPeriod]] = dict(busy or {})
        self._events: List[dict] = []
        self._link_base = link_base
        self._lock = threading.Lock()

    def add_busy(self, email: str, period: BusyPeriod) -> None:
        with self._lock:
            self._busy.setdefault(email, []).append(period)

    @property
    def events(self) -> List[dict]:
        with self._lock:
            return list(self._events)

    def busy_periods(self, user: UserRecord, start: datetime, end: datetime) -> List[BusyPeriod]:
        with self._lock:
            periods = list(self._busy.get(user.email, []))
        return [p for p in periods if p.start < end and p.end > start]

    def create_event(self, user, title, description, start, end, attendee_email) -> CreatedEvent:
        event_id = uuid.uuid4().hex
        with self._lock:
            self._events.append(
                {
                    "id": event_id,
                    "owner": user.email,
                    "title": title,
                    "description": description,
                    "start": start,
                    "end": end,
                    "attendee": attendee_email,
                }
            )
            self._busy.setdefault(user.email, []).append(BusyPeriod(start=start, end=end, title=title))
        return CreatedEvent(id=event_id, html_link=self._link_base + event_id)


def apply_visibility(periods: List[BusyPeriod], visibility: Visibility) -> List[BusyPeriod]:
    """What a counterparty may see of someone's busy periods."""
    if visibility is Visibility.FULL:
        return [BusyPeriod(start=p.start, end=p.end, title=p.title) for p in periods]
    if visibility is Visibility.MASKED:
        return [BusyPeriod(start=p.start, end=p.end, title=MASKED_TITLE) for p in periods]
    return [BusyPeriod(start=p.start, end=p.end) for p in periods]
