"""Candidate slot search and scoring.

Everything here is a pure function of its arguments: no clock reads, no I/O,
no shared state, so requests can be scored in parallel.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidDuration, InvalidSlot
from .models import MAX_DURATION_MINUTES, ScoredSlot, TimeSlot

Interval = Tuple[datetime, datetime]


@dataclass(frozen=True)
class ScoringPreferences:
    timezone: str = "UTC"
    granularity_minutes: int = 30
    work_day_start_hour: int = 9
    work_day_end_hour: int = 17
    min_lead: timedelta = timedelta(hours=4)
    max_lead: timedelta = timedelta(days=14)
    # Weights sum to 1 so the score stays in [0, 1]
    hours_weight: float = 0.6
    lead_weight: float = 0.3
    round_weight: float = 0.1

    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise InvalidSlot(f"Unknown timezone: {self.timezone}") from e


def merge_busy(*busy_sets: Iterable[TimeSlot]) -> List[Interval]:
    """Union of busy intervals; overlapping and adjacent intervals coalesce."""
    intervals = sorted((b.start, b.end) for busy in busy_sets for b in busy if b.end > b.start)
    merged: List[Interval] = []
    for start, end in intervals:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def free_intervals(busy: Sequence[Interval], window_start: datetime, window_end: datetime) -> List[Interval]:
    free: List[Interval] = []
    cursor = window_start
    for start, end in busy:
        if end <= cursor:
            continue
        if start >= window_end:
            break
        if start > cursor:
            free.append((cursor, start))
        cursor = max(cursor, end)
    if cursor < window_end:
        free.append((cursor, window_end))
    return free


def _align_up(moment: datetime, granularity: timedelta) -> datetime:
    hour = moment.replace(minute=0, second=0, microsecond=0)
    offset = moment - hour
    steps = -(-offset // granularity)  # ceil
    return hour + steps * granularity


def candidate_starts(free: Sequence[Interval], duration: timedelta, granularity: timedelta) -> List[datetime]:
    starts: List[datetime] = []
    for start, end in free:
        cursor = _align_up(start, granularity)
        while cursor + duration <= end:
            starts.append(cursor)
            cursor += granularity
    return starts


def _hours_score(local_start: datetime, local_end: datetime, prefs: ScoringPreferences) -> float:
    day_start = local_start.replace(hour=prefs.work_day_start_hour, minute=0, second=0, microsecond=0)
    day_end = local_start.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(
        hours=prefs.work_day_end_hour
    )
    shoulder = timedelta(hours=1)
    if day_start <= local_start and local_end <= day_end:
        score = 1.0
    elif day_start - shoulder <= local_start and local_end <= day_end + shoulder:
        score = 0.5
    else:
        score = 0.0
    if local_start.weekday() >= 5:
        score *= 0.5
    return score


def _lead_score(lead: timedelta, prefs: ScoringPreferences) -> float:
    if lead < prefs.min_lead:
        return 0.0
    if lead <= prefs.max_lead:
        return 1.0
    return 0.25


def _round_score(start: datetime) -> float:
    if start.minute == 0:
        return 1.0
    if start.minute == 30:
        return 0.5
    return 0.0


def score_slot(start: datetime, end: datetime, now: datetime, prefs: ScoringPreferences) -> float:
    zone = prefs.zone()
    local_start = start.astimezone(zone)
    local_end = end.astimezone(zone)
    score = (
        prefs.hours_weight * _hours_score(local_start, local_end, prefs)
        + prefs.lead_weight * _lead_score(start - now, prefs)
        + prefs.round_weight * _round_score(local_start)
    )
    return round(min(max(score, 0.0), 1.0), 4)


def find_slots(
    busy_a: Iterable[TimeSlot],
    busy_b: Iterable[TimeSlot],
    duration_minutes: int,
    window_start: datetime,
    window_end: datetime,
    now: datetime,
    prefs: Optional[ScoringPreferences] = None,
    limit: Optional[int] = None,
) -> List[ScoredSlot]:
    """Ranked meeting slots free in both calendars, best first, ties by earliest start."""
    prefs = prefs or ScoringPreferences()
    if duration_minutes <= 0:
        raise InvalidDuration("duration_minutes must be positive")
    if duration_minutes > MAX_DURATION_MINUTES:
        raise InvalidDuration(f"duration_minutes must be at most {MAX_DURATION_MINUTES}")
    if window_end <= window_start:
        raise InvalidSlot("window_end must be after window_start")
    if prefs.granularity_minutes <= 0 or 60 % prefs.granularity_minutes:
        raise InvalidSlot("granularity_minutes must divide an hour")
    prefs.zone()

    window_start = window_start.astimezone(timezone.utc)
    window_end = window_end.astimezone(timezone.utc)
    start = max(window_start, now)
    if start >= window_end:
        return []

    duration = timedelta(minutes=duration_minutes)
    granularity = timedelta(minutes=prefs.granularity_minutes)
    free = free_intervals(merge_busy(busy_a, busy_b), start, window_end)

    slots = [
        ScoredSlot(start=s, end=s + duration, score=score_slot(s, s + duration, now, prefs))
        for s in candidate_starts(free, duration, granularity)
    ]
    slots.sort(key=lambda s: (-s.score, s.start))
    if limit is not None:
        slots = slots[:limit]
    return slots
