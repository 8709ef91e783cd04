"""Bucketing of play events into per-day aggregates in the user's local calendar"""
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytz

from listening_insights.errors import ValidationError
from listening_insights.models.listening import DailyAggregate, PlayEvent

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60000

def resolve_timezone(timezone_name: Optional[str]) -> pytz.BaseTzInfo:
    """Look up an IANA timezone, raising ValidationError for unknown names"""
    try:
        return pytz.timezone(timezone_name or "UTC")
    except pytz.UnknownTimeZoneError as e:
        raise ValidationError(f"Unknown timezone: {timezone_name}") from e

def local_date(played_at: datetime, tz: pytz.BaseTzInfo) -> date:
    """Calendar date of a UTC instant in the given timezone"""
    if played_at.tzinfo is None:
        played_at = pytz.UTC.localize(played_at)
    return played_at.astimezone(tz).date()

def round_minutes(total_ms: int) -> int:
    """
    Convert milliseconds to whole minutes, rounding half up.

    Integer arithmetic keeps the result exact: 90000ms -> 2, 89999ms -> 1.
    """
    return max(0, (total_ms + MS_PER_MINUTE // 2) // MS_PER_MINUTE)

def dedupe_events(events: Iterable[PlayEvent]) -> List[PlayEvent]:
    """Drop repeated (track, played_at) plays and order by play time"""
    seen = set()
    unique = []
    for event in events:
        key = (event.track_id, event.played_at)
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return sorted(unique, key=lambda e: (e.played_at, e.track_id))

def _pick_top(events: List[PlayEvent], key: Callable[[PlayEvent], Optional[str]],
              name: Callable[[PlayEvent], Optional[str]]) -> Tuple[Optional[str], Optional[str]]:
    """
    Entity with the most plays; ties go to the entity played most recently.
    Returns (entity_id, entity_name).
    """
    counts: Dict[str, int] = defaultdict(int)
    last_played: Dict[str, datetime] = {}
    names: Dict[str, Optional[str]] = {}
    for event in events:
        entity_id = key(event)
        if not entity_id:
            continue
        counts[entity_id] += 1
        last_played[entity_id] = max(last_played.get(entity_id, event.played_at), event.played_at)
        if name(event):
            names[entity_id] = name(event)

    if not counts:
        return None, None
    top_id = max(counts, key=lambda entity_id: (counts[entity_id], last_played[entity_id], entity_id))
    return top_id, names.get(top_id)

def aggregate_daily(user_id: str, events: Iterable[PlayEvent], timezone_name: Optional[str]) -> List[DailyAggregate]:
    """
    Group play events by local date and summarise each day.

    Every event is converted on its own, so a single page of plays around
    midnight can produce rows for two different local dates.

    Args:
        user_id: Owner of the events
        events: Play events, in any order and possibly containing repeats
        timezone_name: IANA timezone of the user (None means UTC)

    Returns:
        One DailyAggregate per distinct local date, ordered by date
    """
    tz = resolve_timezone(timezone_name)
    by_day: Dict[date, List[PlayEvent]] = defaultdict(list)
    for event in dedupe_events(events):
        by_day[local_date(event.played_at, tz)].append(event)

    aggregates = []
    for day in sorted(by_day):
        day_events = by_day[day]
        total_ms = sum(max(0, e.duration_ms) for e in day_events)
        top_artist_id, top_artist_name = _pick_top(day_events, lambda e: e.artist_id, lambda e: e.artist_name)
        top_track_id, top_track_name = _pick_top(day_events, lambda e: e.track_id, lambda e: e.track_name)
        aggregates.append(DailyAggregate(
            user_id=user_id,
            date=day,
            minutes=round_minutes(total_ms),
            track_count=len(day_events),
            top_artist_id=top_artist_id,
            top_artist_name=top_artist_name,
            top_track_id=top_track_id,
            top_track_name=top_track_name
        ))

    logger.info(f"Aggregated {sum(a.track_count for a in aggregates)} plays into {len(aggregates)} days for user {user_id} ({tz.zone})")
    return aggregates
