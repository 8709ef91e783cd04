"""
Sync pipeline tests

End-to-end runs against the in-memory database with a scripted fetcher:
aggregation results, gate rejections, error codes, lease release after
failures, cancellation and cache invalidation.
"""
import threading
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from listening_insights.cache import CacheInvalidator, TopEntityCache
from listening_insights.errors import AuthError, RateLimitError, UpstreamApiError
from listening_insights.gate import SyncGate
from listening_insights.models.db import PersonalityProfileRecord, SyncCursor
from listening_insights.models.sync import SyncErrorResponse, SyncResponse
from listening_insights.services.storage import StorageService
from listening_insights.sync import SyncService

from conftest import FakeFetcher, artist, play, track, utc

T0 = utc(2024, 3, 3, 8, 0)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def invalidator():
    notifier = MagicMock(spec=CacheInvalidator)
    notifier.notify.return_value = True
    return notifier


@pytest.fixture
def service(db, clock, invalidator):
    gate = SyncGate(db, interval_seconds=3600, lease_seconds=300)
    return SyncService(db, invalidator=invalidator, gate=gate, clock=clock)


def two_day_fetcher(**kwargs):
    events = [
        play("t1", "a1", utc(2024, 3, 1, 10), duration_ms=180000),
        play("t2", "a2", utc(2024, 3, 1, 11), duration_ms=60000),
        play("t2", "a2", utc(2024, 3, 1, 12), duration_ms=60000),
        play("t3", "a3", utc(2024, 3, 2, 9), duration_ms=600000),
        play("t3", "a3", utc(2024, 3, 2, 10), duration_ms=600000),
    ]
    return FakeFetcher(
        events=events,
        top_artists={"short": [artist("a1", ["rock"], 80), artist("a2", ["jazz"], 30)], "medium": [artist("a1", ["rock"], 80)]},
        top_tracks={"short": [track("t1")]},
        **kwargs,
    )


class TestSuccessfulSync:
    def test_daily_rows_and_counts(self, service, user, db):
        result = service.sync(user.id, two_day_fetcher(invalid_count=2))

        assert isinstance(result, SyncResponse)
        assert result.days_aggregated == 2
        assert result.artists_saved == 3
        assert result.tracks_saved == 1
        assert result.skipped_records == 2
        assert result.last_sync_at == T0
        assert result.next_sync_available_at == T0 + timedelta(hours=1)

        history = StorageService(db).get_daily_history(user.id)
        assert [(d.date, d.minutes, d.track_count, d.top_track_id, d.top_artist_id) for d in history] == [
            (date(2024, 3, 1), 5, 3, "t2", "a2"),
            (date(2024, 3, 2), 20, 2, "t3", "a3"),
        ]

    def test_payload_uses_camel_case(self, service, user):
        payload = service.sync(user.id, two_day_fetcher()).to_payload()
        assert payload["success"] is True
        assert payload["daysAggregated"] == 2
        assert payload["artistsSaved"] == 3
        assert payload["tracksSaved"] == 1
        assert payload["skippedRecords"] == 0
        assert "lastSyncAt" in payload
        assert "nextSyncAvailableAt" in payload

    def test_fetches_every_time_range(self, service, user):
        fetcher = two_day_fetcher()
        service.sync(user.id, fetcher)
        assert fetcher.calls == [
            ("recent", 50),
            ("artists", "short"), ("tracks", "short"),
            ("artists", "medium"), ("tracks", "medium"),
            ("artists", "long"), ("tracks", "long"),
        ]

    def test_personality_is_recomputed(self, service, user, db):
        service.sync(user.id, two_day_fetcher())
        record = db.get(PersonalityProfileRecord, user.id)
        assert record is not None
        assert record.unique_artists == 3
        assert record.genre_diversity == pytest.approx(1.0)
        assert record.longest_streak == 1

    def test_caches_are_invalidated(self, service, user, invalidator):
        service.sync(user.id, two_day_fetcher())
        invalidator.notify.assert_called_once_with("ada", user_id=user.id)

    def test_invalidation_failure_does_not_fail_sync(self, service, user, invalidator):
        invalidator.notify.return_value = False
        assert service.sync(user.id, two_day_fetcher()).success

    def test_resync_of_same_plays_does_not_double_minutes(self, service, user, clock, db):
        service.sync(user.id, two_day_fetcher())
        clock.now = T0 + timedelta(hours=1)
        assert service.sync(user.id, two_day_fetcher()).success
        history = StorageService(db).get_daily_history(user.id)
        assert [d.minutes for d in history] == [5, 20]

    def test_unknown_timezone_falls_back_to_default(self, service, user, db):
        user.timezone = "Mars/Olympus_Mons"
        db.commit()
        assert service.sync(user.id, two_day_fetcher()).success


class TestRejectedSync:
    def test_second_sync_within_interval(self, service, user, clock, invalidator):
        service.sync(user.id, two_day_fetcher())
        clock.now = T0 + timedelta(minutes=30)
        fetcher = two_day_fetcher()

        result = service.sync(user.id, fetcher)

        assert isinstance(result, SyncErrorResponse)
        assert result.error.code == "RATE_LIMIT"
        assert result.error.retry_after == 1800
        assert fetcher.calls == []
        assert invalidator.notify.call_count == 1

    def test_unknown_user(self, service):
        result = service.sync("nobody", two_day_fetcher())
        assert result.error.code == "UNKNOWN"


class TestFailedSync:
    def test_auth_error_releases_lease_and_keeps_cursor(self, service, user, clock, db, invalidator):
        result = service.sync(user.id, two_day_fetcher(errors={"recent": AuthError("token expired")}))

        assert result.error.code == "AUTH_ERROR"
        assert result.error.message == "token expired"
        cursor = db.get(SyncCursor, user.id)
        db.refresh(cursor)
        assert cursor.last_sync_at is None
        assert cursor.lease_token is None
        invalidator.notify.assert_not_called()

        clock.now = T0 + timedelta(seconds=5)
        assert service.sync(user.id, two_day_fetcher()).success

    def test_upstream_rate_limit_carries_wait(self, service, user):
        result = service.sync(user.id, two_day_fetcher(errors={"artists": RateLimitError("slow down", retry_after=42)}))
        assert result.error.code == "RATE_LIMIT"
        assert result.error.retry_after == 42
        assert result.to_payload()["error"]["retryAfter"] == 42

    def test_upstream_api_error(self, service, user):
        result = service.sync(user.id, two_day_fetcher(errors={"tracks": UpstreamApiError("502 from upstream")}))
        assert result.error.code == "API_ERROR"
        assert "retryAfter" not in result.to_payload()["error"]

    def test_unexpected_error_is_reported_as_unknown(self, service, user, clock):
        result = service.sync(user.id, two_day_fetcher(errors={"recent": RuntimeError("boom")}))
        assert result.error.code == "UNKNOWN"
        assert result.error.message == "Sync failed"
        assert result.to_payload()["success"] is False

        clock.now = T0 + timedelta(seconds=1)
        assert service.sync(user.id, two_day_fetcher()).success

    def test_cancelled_sync(self, service, user, db):
        cancel = threading.Event()
        cancel.set()
        fetcher = two_day_fetcher()

        result = service.sync(user.id, fetcher, cancel_event=cancel)

        assert result.error.code == "UNKNOWN"
        assert fetcher.calls == []
        assert StorageService(db).get_daily_history(user.id) == []

    def test_failure_after_daily_step_keeps_written_days(self, service, user, db):
        service.sync(user.id, two_day_fetcher(errors={"artists": UpstreamApiError("down")}))
        assert len(StorageService(db).get_daily_history(user.id)) == 2
        assert db.get(PersonalityProfileRecord, user.id) is None


class TestTopEntityReads:
    def test_reads_are_served_from_cache_until_invalidated(self, db, user, clock):
        cache = TopEntityCache(ttl_seconds=3600)
        notifier = CacheInvalidator(cache=cache, session=MagicMock())
        notifier.config = notifier.config.model_copy(update={"url": None})
        service = SyncService(db, invalidator=notifier, cache=cache,
                              gate=SyncGate(db, interval_seconds=3600, lease_seconds=300), clock=clock)
        storage = StorageService(db)

        storage.replace_top_entities(user.id, "artist", "short", [artist("a1")])
        first = service.get_top_entities(user.id, "short")
        assert [e.entity_id for e in first["artist"]] == ["a1"]
        assert first["track"] == []

        storage.replace_top_entities(user.id, "artist", "short", [artist("b1")])
        assert service.get_top_entities(user.id, "short") is first

        service.sync(user.id, two_day_fetcher())
        refreshed = service.get_top_entities(user.id, "short")
        assert [e.entity_id for e in refreshed["artist"]] == ["a1", "a2"]
        assert [e.entity_id for e in refreshed["track"]] == ["t1"]
