"""Personality inference from daily listening history and top artists"""
import logging
import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from listening_insights.models.listening import DailyAggregate, PersonalityProfile, StreakSummary
from listening_insights.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

EXPLORER = "Explorer"
LOYALIST = "Loyalist"
REPEAT_LISTENER = "Repeat Listener"
DISCOVERER = "Discoverer"
MAINSTREAM = "Mainstream"
HIPSTER = "Hipster"
MUSIC_LOVER = "Music Lover"

# Tag thresholds
EXPLORER_MIN_DIVERSITY = 0.75
LOYALIST_MIN_STREAK_DAYS = 5
REPEAT_LISTENER_MIN_RATE = 0.5
DISCOVERER_MIN_UNIQUE_ARTISTS = 50
MAINSTREAM_MIN_POPULARITY = 70
HIPSTER_MAX_POPULARITY = 40
HIPSTER_MIN_ARTISTS = 5
MUSIC_LOVER_MIN_DAILY_MINUTES = 60
MUSIC_LOVER_MIN_DAYS = 7

def genre_diversity(artists: Iterable) -> float:
    """
    Normalized Shannon entropy of genres across top artists.

    Each distinct artist is counted once even when it appears in several time
    ranges; each of its genres adds one to the distribution. The entropy
    H = -sum(p * log2(p)) is divided by log2(k) for k distinct genres, so a
    uniform spread scores 1.0 and a single genre scores 0.0.

    Args:
        artists: Objects with entity_id and genres attributes
    """
    seen = set()
    genre_counts: Counter = Counter()
    for artist in artists:
        if artist.entity_id in seen:
            continue
        seen.add(artist.entity_id)
        genre_counts.update(g.lower() for g in (artist.genres or []) if g)

    distinct = len(genre_counts)
    if distinct <= 1:
        return 0.0

    total = sum(genre_counts.values())
    entropy = 0.0
    for count in genre_counts.values():
        p = count / total
        entropy -= p * math.log2(p)
    return min(1.0, max(0.0, entropy / math.log2(distinct)))

def repeat_rate(history: Sequence[DailyAggregate]) -> float:
    """
    Fraction of consecutive calendar-day pairs whose top track is the same.
    Pairs separated by a day without data are not counted.
    """
    days = sorted((d for d in history if d.top_track_id), key=lambda d: d.date)
    if len(days) < 2:
        return 0.0

    pairs = 0
    repeats = 0
    for previous, current in zip(days, days[1:]):
        if current.date - previous.date != timedelta(days=1):
            continue
        pairs += 1
        if current.top_track_id == previous.top_track_id:
            repeats += 1
    if pairs == 0:
        return 0.0
    return repeats / pairs

def find_streaks(history: Sequence[DailyAggregate]) -> StreakSummary:
    """
    Longest and current runs of consecutive days with the same top artist.

    A missing day or a day without a top artist ends a run. The longest run
    keeps the earliest one on ties. The current run is the one ending at the
    latest dated entry.
    """
    days = sorted(history, key=lambda d: d.date)
    summary = StreakSummary()
    run_length = 0
    run_artist: Optional[str] = None
    run_start = None
    previous_date = None

    for day in days:
        artist = day.top_artist_id
        continues = (
            artist is not None
            and artist == run_artist
            and previous_date is not None
            and day.date - previous_date == timedelta(days=1)
        )
        if continues:
            run_length += 1
        elif artist is not None:
            run_length, run_artist, run_start = 1, artist, day.date
        else:
            run_length, run_artist, run_start = 0, None, None
        previous_date = day.date

        if run_length > summary.longest_length:
            summary.longest_length = run_length
            summary.longest_artist_id = run_artist
            summary.longest_start = run_start
            summary.longest_end = day.date

    summary.current_length = run_length
    summary.current_artist_id = run_artist
    return summary

def count_unique_artists(history: Iterable[DailyAggregate], top_artists: Iterable) -> int:
    """Distinct artists across daily top artists and all top artist snapshots"""
    artist_ids = {d.top_artist_id for d in history if d.top_artist_id}
    artist_ids.update(a.entity_id for a in top_artists)
    return len(artist_ids)

def assign_tags(diversity: float, repeat: float, unique_artists: int, longest_streak: int,
                mean_popularity: Optional[float], popularity_sample: int,
                average_daily_minutes: float, days_with_data: int) -> List[str]:
    """
    Map metrics to personality labels

    Rules (all inclusive):
    - Explorer: genre diversity >= 0.75
    - Loyalist: longest artist streak >= 5 days
    - Repeat Listener: repeat rate >= 0.5
    - Discoverer: 50+ unique artists
    - Mainstream: mean top artist popularity >= 70
    - Hipster: mean top artist popularity <= 40 over 5+ artists
    - Music Lover: 60+ minutes per day on average over 7+ days of data
    """
    tags = []
    if diversity >= EXPLORER_MIN_DIVERSITY:
        tags.append(EXPLORER)
    if longest_streak >= LOYALIST_MIN_STREAK_DAYS:
        tags.append(LOYALIST)
    if repeat >= REPEAT_LISTENER_MIN_RATE:
        tags.append(REPEAT_LISTENER)
    if unique_artists >= DISCOVERER_MIN_UNIQUE_ARTISTS:
        tags.append(DISCOVERER)
    if mean_popularity is not None:
        if mean_popularity >= MAINSTREAM_MIN_POPULARITY:
            tags.append(MAINSTREAM)
        elif mean_popularity <= HIPSTER_MAX_POPULARITY and popularity_sample >= HIPSTER_MIN_ARTISTS:
            tags.append(HIPSTER)
    if days_with_data >= MUSIC_LOVER_MIN_DAYS and average_daily_minutes >= MUSIC_LOVER_MIN_DAILY_MINUTES:
        tags.append(MUSIC_LOVER)
    return sorted(tags)

class PersonalityEngine:
    """Recomputes a user's personality profile from scratch"""

    def compute(self, user_id: str, history: Sequence[DailyAggregate], top_artists: Sequence,
                now: Optional[datetime] = None) -> PersonalityProfile:
        """
        Build a full profile.

        Args:
            user_id: Profile owner
            history: Every stored DailyAggregate of the user
            top_artists: Top artist snapshots of all time ranges (entity_id,
                genres and popularity attributes)
            now: Computation time
        """
        diversity = genre_diversity(top_artists)
        repeat = repeat_rate(history)
        streaks = find_streaks(history)
        unique_artists = count_unique_artists(history, top_artists)

        popularity_by_artist = {}
        for artist in top_artists:
            if artist.popularity is not None and artist.entity_id not in popularity_by_artist:
                popularity_by_artist[artist.entity_id] = artist.popularity
        mean_popularity = (
            sum(popularity_by_artist.values()) / len(popularity_by_artist) if popularity_by_artist else None
        )

        days_with_data = len(history)
        average_daily_minutes = sum(d.minutes for d in history) / days_with_data if days_with_data else 0.0

        tags = assign_tags(
            diversity=diversity,
            repeat=repeat,
            unique_artists=unique_artists,
            longest_streak=streaks.longest_length,
            mean_popularity=mean_popularity,
            popularity_sample=len(popularity_by_artist),
            average_daily_minutes=average_daily_minutes,
            days_with_data=days_with_data
        )
        logger.info(
            f"Personality for user {user_id}: diversity={diversity:.3f} repeat={repeat:.3f} "
            f"unique_artists={unique_artists} longest_streak={streaks.longest_length} tags={tags}"
        )
        return PersonalityProfile(
            user_id=user_id,
            tags=tags,
            genre_diversity=diversity,
            repeat_rate=repeat,
            unique_artists=unique_artists,
            streaks=streaks,
            computed_at=now or utcnow()
        )
