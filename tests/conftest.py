"""Shared fixtures: in-memory database and a scripted upstream fetcher"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from listening_insights.models.db import Base, User
from listening_insights.models.listening import PlayEvent, RecentPage, TopEntity


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    """Create test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def user(db):
    """A stored user in UTC."""
    record = User(id="user-1", spotify_id="spotify-1", username="ada", display_name="Ada", timezone="UTC")
    db.add(record)
    db.commit()
    return record


def utc(year, month, day, hour=12, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def play(track_id, artist_id, played_at, duration_ms=180000, track_name=None, artist_name=None):
    return PlayEvent(
        track_id=track_id,
        artist_id=artist_id,
        played_at=played_at,
        duration_ms=duration_ms,
        track_name=track_name or f"Track {track_id}",
        artist_name=artist_name or f"Artist {artist_id}",
    )


class FakeFetcher:
    """Scripted stand-in for SpotifyAPI recording every call."""

    def __init__(self, events=None, top_artists=None, top_tracks=None, invalid_count=0, errors=None, profile=None):
        self.events = list(events or [])
        self.top_artists = top_artists or {}
        self.top_tracks = top_tracks or {}
        self.invalid_count = invalid_count
        self.errors = errors or {}
        self.profile = profile or {"id": "spotify-1", "display_name": "Ada", "country": "GB"}
        self.calls = []

    def _maybe_raise(self, name):
        if name in self.errors:
            raise self.errors[name]

    def get_user_info(self):
        self.calls.append(("me", None))
        self._maybe_raise("me")
        return dict(self.profile)

    def get_recently_played(self, limit=50, before=None):
        self.calls.append(("recent", limit))
        self._maybe_raise("recent")
        return RecentPage(events=self.events[:limit], invalid_count=self.invalid_count)

    def get_top_artists(self, time_range="medium", limit=50):
        self.calls.append(("artists", time_range))
        self._maybe_raise("artists")
        return list(self.top_artists.get(time_range, []))

    def get_top_tracks(self, time_range="medium", limit=50):
        self.calls.append(("tracks", time_range))
        self._maybe_raise("tracks")
        return list(self.top_tracks.get(time_range, []))


def artist(entity_id, genres=(), popularity=50):
    return TopEntity(entity_id=entity_id, name=f"Artist {entity_id}", genres=list(genres), popularity=popularity)


def track(entity_id, popularity=50):
    return TopEntity(entity_id=entity_id, name=f"Track {entity_id}", popularity=popularity)
