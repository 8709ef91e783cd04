"""Domain models for listening history, top entities and personality results"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

@dataclass(frozen=True)
class PlayEvent:
    """A single play from the recently played feed"""
    track_id: str
    artist_id: str
    played_at: datetime  # timezone-aware UTC
    duration_ms: int
    track_name: Optional[str] = None
    artist_name: Optional[str] = None

@dataclass
class DailyAggregate:
    """Listening summary for one user-local calendar day"""
    user_id: str
    date: date
    minutes: int
    track_count: int
    top_artist_id: Optional[str]
    top_artist_name: Optional[str]
    top_track_id: Optional[str]
    top_track_name: Optional[str]

@dataclass
class TopEntity:
    """One ranked entry from a top artists/tracks list"""
    entity_id: str
    name: Optional[str]
    image_ref: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    popularity: Optional[int] = None

@dataclass
class RecentPage:
    """A page of recently played events"""
    events: List[PlayEvent]
    invalid_count: int = 0
    next_cursor: Optional[int] = None

@dataclass
class StreakSummary:
    """Longest and current artist streaks over the daily history"""
    longest_length: int = 0
    longest_artist_id: Optional[str] = None
    longest_start: Optional[date] = None
    longest_end: Optional[date] = None
    current_length: int = 0
    current_artist_id: Optional[str] = None

@dataclass
class PersonalityProfile:
    """Fully recomputed personality for one user"""
    user_id: str
    tags: List[str]
    genre_diversity: float
    repeat_rate: float
    unique_artists: int
    streaks: StreakSummary
    computed_at: datetime
