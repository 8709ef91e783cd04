"""Sync pipeline: gate, fetch, aggregate, persist, recompute personality, invalidate caches"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from listening_insights.aggregation import aggregate_daily, resolve_timezone
from listening_insights.cache import CacheInvalidator, TopEntityCache
from listening_insights.config import TIME_RANGES, settings
from listening_insights.errors import RateLimitError, SyncCancelledError, SyncError, ValidationError
from listening_insights.gate import SyncGate
from listening_insights.models.db import TopEntitySnapshot
from listening_insights.models.sync import ErrorDetail, SyncErrorResponse, SyncResponse
from listening_insights.personality import PersonalityEngine
from listening_insights.services.storage import StorageService
from listening_insights.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

@dataclass
class _StepCounts:
    days_aggregated: int = 0
    artists_saved: int = 0
    tracks_saved: int = 0
    skipped_records: int = 0

class SyncService:
    """
    Runs one sync for one user.

    The fetcher is anything with get_recently_played(limit), get_top_artists(time_range, limit)
    and get_top_tracks(time_range, limit), typically a SpotifyAPI bound to the
    user's token. Each step commits on its own; a failure part-way leaves the
    earlier writes in place for the next sync to overwrite.
    """

    def __init__(self, session: Session, invalidator: Optional[CacheInvalidator] = None,
                 cache: Optional[TopEntityCache] = None, gate: Optional[SyncGate] = None,
                 engine: Optional[PersonalityEngine] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.storage = StorageService(session)
        self.gate = gate or SyncGate(session)
        self.engine = engine or PersonalityEngine()
        self.cache = cache
        self.invalidator = invalidator or CacheInvalidator(cache=cache)
        self._clock = clock

    def sync(self, user_id: str, fetcher, cancel_event: Optional[threading.Event] = None) -> Union[SyncResponse, SyncErrorResponse]:
        """Trigger a sync and return a structured success or error result"""
        lease_token: Optional[str] = None
        try:
            user = self.storage.get_user(user_id)
            if user is None:
                raise SyncError(f"Unknown user {user_id}")

            decision = self.gate.attempt_sync(user_id, now=self._clock())
            if not decision.allowed:
                raise RateLimitError("Sync attempted too soon", retry_after=decision.retry_after_seconds)
            lease_token = decision.lease_token

            counts = self._run_steps(user_id, user.timezone, fetcher, cancel_event)

            last_sync_at = self.gate.complete(user_id, lease_token, now=self._clock())
            lease_token = None
            self.invalidator.notify(user.username, user_id=user_id)

            logger.info(f"Sync completed for user {user_id}: {counts}")
            return SyncResponse(
                days_aggregated=counts.days_aggregated,
                artists_saved=counts.artists_saved,
                tracks_saved=counts.tracks_saved,
                skipped_records=counts.skipped_records,
                last_sync_at=last_sync_at,
                next_sync_available_at=self.gate.next_sync_available_at(last_sync_at)
            )
        except SyncError as e:
            logger.warning(f"Sync for user {user_id} failed with {e.code}: {e.message}")
            self._release(user_id, lease_token)
            return SyncErrorResponse(error=ErrorDetail(code=e.code, message=e.message, retry_after=e.retry_after))
        except Exception as e:
            logger.exception(f"Unexpected error during sync for user {user_id}: {e}")
            self.session.rollback()
            self._release(user_id, lease_token)
            return SyncErrorResponse(error=ErrorDetail(code=SyncError.code, message="Sync failed"))

    def _run_steps(self, user_id: str, timezone_name: Optional[str], fetcher,
                   cancel_event: Optional[threading.Event]) -> _StepCounts:
        counts = _StepCounts()

        # --- Step 1: Recently played page ---
        self._check_cancelled(cancel_event)
        page = fetcher.get_recently_played(limit=settings.RECENT_PAGE_SIZE)
        counts.skipped_records = page.invalid_count
        logger.info(f"Fetched {len(page.events)} play events for user {user_id}")

        # --- Step 2: Aggregate into local days and replace touched dates ---
        self._check_cancelled(cancel_event)
        aggregates = aggregate_daily(user_id, page.events, self._timezone_for(timezone_name))
        counts.days_aggregated = self.storage.upsert_daily_aggregates(aggregates)

        # --- Step 3: Top artists and tracks per time range ---
        for time_range in TIME_RANGES:
            self._check_cancelled(cancel_event)
            artists = fetcher.get_top_artists(time_range=time_range, limit=settings.TOP_ENTITY_LIMIT)
            counts.artists_saved += self.storage.replace_top_entities(
                user_id, 'artist', time_range, artists, now=self._clock()
            )
            tracks = fetcher.get_top_tracks(time_range=time_range, limit=settings.TOP_ENTITY_LIMIT)
            counts.tracks_saved += self.storage.replace_top_entities(
                user_id, 'track', time_range, tracks, now=self._clock()
            )

        # --- Step 4: Personality over the full history ---
        self._check_cancelled(cancel_event)
        profile = self.engine.compute(
            user_id,
            self.storage.get_daily_history(user_id),
            self.storage.get_top_entities(user_id, 'artist'),
            now=self._clock()
        )
        self.storage.save_personality(profile)
        return counts

    def get_top_entities(self, user_id: str, time_range: str) -> Dict[str, List[TopEntitySnapshot]]:
        """Stored top artists and tracks for a time range, served from the TTL cache when fresh"""
        if self.cache is not None:
            cached = self.cache.get(user_id, time_range)
            if cached is not None:
                return cached
        entities = {
            'artist': self.storage.get_top_entities(user_id, 'artist', time_range),
            'track': self.storage.get_top_entities(user_id, 'track', time_range),
        }
        if self.cache is not None:
            self.cache.put(user_id, time_range, entities)
        return entities

    @staticmethod
    def _timezone_for(timezone_name: Optional[str]) -> str:
        name = timezone_name or settings.DEFAULT_TIMEZONE
        try:
            resolve_timezone(name)
        except ValidationError:
            logger.warning(f"Unknown timezone '{name}', falling back to {settings.DEFAULT_TIMEZONE}")
            return settings.DEFAULT_TIMEZONE
        return name

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelledError("Sync cancelled")

    def _release(self, user_id: str, lease_token: Optional[str]) -> None:
        if lease_token is None:
            return
        try:
            self.gate.release(user_id, lease_token)
        except SQLAlchemyError as e:
            # The lease still expires on its own after SYNC_LEASE_SECONDS
            logger.error(f"Could not release sync lease for user {user_id}: {e}")
