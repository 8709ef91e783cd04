"""Database storage service for daily aggregates, top entity snapshots and profiles"""
import logging
import random
import re
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from listening_insights.config import ENTITY_KINDS, TIME_RANGES
from listening_insights.models.db import DailyListening, PersonalityProfileRecord, TopEntitySnapshot, User
from listening_insights.models.listening import DailyAggregate, PersonalityProfile, TopEntity
from listening_insights.utils.timeutil import to_db_time, utcnow

logger = logging.getLogger(__name__)

# Attempts at finding a free username before giving up
MAX_USERNAME_ATTEMPTS = 10

def _slugify_username(display_name: Optional[str]) -> str:
    if not display_name:
        return 'user'
    return re.sub(r'\s+', '_', display_name.strip().lower()) or 'user'

class StorageService:
    """Handles all database operations"""

    def __init__(self, session: Session):
        self.session = session

    # --- Users ---

    def get_user(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    def ensure_user(self, spotify_id: str, display_name: Optional[str] = None,
                    country: Optional[str] = None, timezone_name: Optional[str] = None,
                    user_id: Optional[str] = None) -> User:
        """
        Get or create the user for a Spotify account.

        New users get a username derived from their display name, suffixed with a
        random number until it is free. Existing users have country and timezone
        refreshed when new values are provided.
        """
        try:
            user = self.session.execute(
                select(User).where(User.spotify_id == spotify_id)
            ).scalar_one_or_none()

            if user:
                if country and user.country != country:
                    user.country = country
                if timezone_name and user.timezone != timezone_name:
                    user.timezone = timezone_name
                self.session.commit()
                return user

            base = _slugify_username(display_name)
            username = base
            for _ in range(MAX_USERNAME_ATTEMPTS):
                taken = self.session.execute(
                    select(User.id).where(User.username == username)
                ).first()
                if not taken:
                    break
                username = f"{base}_{random.randint(0, 999)}"
            else:
                raise ValueError(f"Could not find a free username for '{base}'")

            user = User(
                id=user_id or str(uuid.uuid4()),
                spotify_id=spotify_id,
                username=username,
                display_name=display_name,
                country=country,
                timezone=timezone_name,
                is_public=True
            )
            self.session.add(user)
            self.session.commit()
            logger.info(f"Created user {user.id} with username {username}")
            return user
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error ensuring user for Spotify account {spotify_id}: {e}")
            raise

    # --- Daily aggregates ---

    def upsert_daily_aggregates(self, aggregates: Iterable[DailyAggregate]) -> int:
        """
        Replace the stored row for every (user, date) in aggregates.

        Rows are overwritten, never accumulated: a fetch window overlapping a
        previous sync recomputes the day from scratch, so re-running the same
        input leaves identical rows. All rows are written in one transaction.
        """
        aggregates = list(aggregates)
        if not aggregates:
            return 0
        try:
            self._write_daily(aggregates)
        except IntegrityError:
            # A concurrent writer inserted one of the dates first; overwrite it
            self.session.rollback()
            logger.warning("Concurrent insert detected while writing daily aggregates, retrying as update")
            self._write_daily(aggregates)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error storing daily aggregates: {e}")
            raise
        logger.info(f"Stored {len(aggregates)} daily aggregates for user {aggregates[0].user_id}")
        return len(aggregates)

    def _write_daily(self, aggregates: List[DailyAggregate]) -> None:
        try:
            for aggregate in aggregates:
                row = self.session.execute(
                    select(DailyListening).where(
                        DailyListening.user_id == aggregate.user_id,
                        DailyListening.date == aggregate.date
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = DailyListening(user_id=aggregate.user_id, date=aggregate.date)
                    self.session.add(row)
                row.minutes = aggregate.minutes
                row.track_count = aggregate.track_count
                row.top_artist_id = aggregate.top_artist_id
                row.top_artist_name = aggregate.top_artist_name
                row.top_track_id = aggregate.top_track_id
                row.top_track_name = aggregate.top_track_name
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def get_daily_history(self, user_id: str) -> List[DailyAggregate]:
        """All daily aggregates for a user, oldest first"""
        rows = self.session.execute(
            select(DailyListening)
            .where(DailyListening.user_id == user_id)
            .order_by(DailyListening.date)
        ).scalars().all()
        return [
            DailyAggregate(
                user_id=row.user_id,
                date=row.date,
                minutes=row.minutes,
                track_count=row.track_count,
                top_artist_id=row.top_artist_id,
                top_artist_name=row.top_artist_name,
                top_track_id=row.top_track_id,
                top_track_name=row.top_track_name
            )
            for row in rows
        ]

    # --- Top entity snapshots ---

    def replace_top_entities(self, user_id: str, kind: str, time_range: str,
                             entities: Iterable[TopEntity], now: Optional[datetime] = None) -> int:
        """
        Atomically replace the ranked set for (user, kind, time range).

        The delete of the previous set and the insert of the new one share a
        single transaction, so readers see either the old ranks or the new ones.
        Ranks are assigned 1..N in upstream order; a repeated entity keeps its
        first rank.

        Returns:
            Number of rows stored
        """
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {kind}")
        if time_range not in TIME_RANGES:
            raise ValueError(f"Unknown time range: {time_range}")

        created_at = to_db_time(now or utcnow())
        rows = []
        seen = set()
        for entity in entities:
            if entity.entity_id in seen:
                continue
            seen.add(entity.entity_id)
            rows.append(TopEntitySnapshot(
                user_id=user_id,
                entity_id=entity.entity_id,
                entity_kind=kind,
                rank=len(rows) + 1,
                time_range=time_range,
                name=entity.name,
                image_ref=entity.image_ref,
                genres=list(entity.genres),
                popularity=entity.popularity,
                created_at=created_at
            ))

        try:
            self.session.execute(
                delete(TopEntitySnapshot).where(
                    TopEntitySnapshot.user_id == user_id,
                    TopEntitySnapshot.entity_kind == kind,
                    TopEntitySnapshot.time_range == time_range
                )
            )
            self.session.add_all(rows)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error replacing top {kind}s ({time_range}) for user {user_id}: {e}")
            raise
        logger.info(f"Stored {len(rows)} top {kind}s ({time_range}) for user {user_id}")
        return len(rows)

    def get_top_entities(self, user_id: str, kind: str, time_range: Optional[str] = None) -> List[TopEntitySnapshot]:
        """Stored snapshots ordered by time range then rank"""
        query = select(TopEntitySnapshot).where(
            TopEntitySnapshot.user_id == user_id,
            TopEntitySnapshot.entity_kind == kind
        )
        if time_range is not None:
            query = query.where(TopEntitySnapshot.time_range == time_range)
        return list(self.session.execute(
            query.order_by(TopEntitySnapshot.time_range, TopEntitySnapshot.rank)
        ).scalars().all())

    # --- Personality ---

    def save_personality(self, profile: PersonalityProfile) -> None:
        """Overwrite the user's single profile row with a full recomputation"""
        try:
            record = self.session.get(PersonalityProfileRecord, profile.user_id)
            if record is None:
                record = PersonalityProfileRecord(user_id=profile.user_id)
                self.session.add(record)
            streaks = profile.streaks
            record.tags = list(profile.tags)
            record.genre_diversity = profile.genre_diversity
            record.repeat_rate = profile.repeat_rate
            record.unique_artists = profile.unique_artists
            record.longest_streak = streaks.longest_length
            record.current_streak = streaks.current_length
            record.streak_artist_id = streaks.longest_artist_id
            record.longest_streak_start = streaks.longest_start
            record.longest_streak_end = streaks.longest_end
            record.current_streak_artist_id = streaks.current_artist_id
            record.computed_at = to_db_time(profile.computed_at)
            self.session.commit()
            logger.info(f"Stored personality profile for user {profile.user_id}: tags={profile.tags}")
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error storing personality for user {profile.user_id}: {e}")
            raise

    def get_personality(self, user_id: str) -> Optional[PersonalityProfileRecord]:
        return self.session.get(PersonalityProfileRecord, user_id)
