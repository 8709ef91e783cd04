"""SQLAlchemy database models for synced listening data"""
import datetime

from sqlalchemy import Column, Integer, String, Float, Date, DateTime, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)

class User(Base):
    """
    Application user linked to a Spotify account.
    Holds the timezone used for daily bucketing and the public username.
    """
    __tablename__ = 'users'

    id = Column(String, primary_key=True)
    spotify_id = Column(String, unique=True, nullable=False, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    country = Column(String(2), nullable=True)
    timezone = Column(String, nullable=True)
    is_public = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

class DailyListening(Base):
    """
    Per-day listening aggregate in the user's local calendar.
    Rows are replaced wholesale whenever a sync touches their date.
    """
    __tablename__ = 'daily_listening'
    __table_args__ = (UniqueConstraint('user_id', 'date', name='uq_daily_listening_user_date'),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    minutes = Column(Integer, nullable=False)
    track_count = Column(Integer, nullable=False)
    top_artist_id = Column(String, nullable=True)
    top_artist_name = Column(String, nullable=True)
    top_track_id = Column(String, nullable=True)
    top_track_name = Column(String, nullable=True)

class TopEntitySnapshot(Base):
    """
    Ranked top artist or track for one time range.
    The set for a (user, kind, time range) is always replaced as a unit.
    """
    __tablename__ = 'top_entity_snapshots'
    __table_args__ = (
        UniqueConstraint('user_id', 'entity_kind', 'entity_id', 'time_range', name='uq_top_entity'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False)
    entity_kind = Column(String(6), nullable=False)  # artist | track
    rank = Column(Integer, nullable=False)
    time_range = Column(String(6), nullable=False)  # short | medium | long
    name = Column(String, nullable=True)
    image_ref = Column(String, nullable=True)
    genres = Column(JSON, nullable=True)
    popularity = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

class PersonalityProfileRecord(Base):
    """One recomputed personality profile per user"""
    __tablename__ = 'personality_profiles'

    user_id = Column(String, primary_key=True)
    tags = Column(JSON, nullable=False)
    genre_diversity = Column(Float, nullable=False)
    repeat_rate = Column(Float, nullable=False)
    unique_artists = Column(Integer, nullable=False)
    longest_streak = Column(Integer, nullable=False)
    current_streak = Column(Integer, nullable=False)
    streak_artist_id = Column(String, nullable=True)
    longest_streak_start = Column(Date, nullable=True)
    longest_streak_end = Column(Date, nullable=True)
    current_streak_artist_id = Column(String, nullable=True)
    computed_at = Column(DateTime, nullable=False)

class SyncCursor(Base):
    """
    Per-user sync cursor.
    last_sync_at is only written after a full successful sync; the lease columns
    mark an in-flight sync so concurrent triggers for the same user are rejected.
    All timestamps are naive UTC.
    """
    __tablename__ = 'sync_cursors'

    user_id = Column(String, primary_key=True)
    last_sync_at = Column(DateTime, nullable=True)
    lease_token = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
