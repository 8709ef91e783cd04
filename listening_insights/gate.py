"""Per-user sync gate backed by the durable sync cursor"""
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from listening_insights.config import settings
from listening_insights.models.db import SyncCursor
from listening_insights.utils.timeutil import from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

@dataclass
class SyncDecision:
    """Outcome of a gate check: allowed with a lease token, or rejected with a wait hint"""
    allowed: bool
    lease_token: Optional[str] = None
    retry_after_seconds: int = 0
    last_sync_at: Optional[datetime] = None

class SyncGate:
    """
    Allows at most one sync per user per rolling interval.

    The check and the claim are a single conditional UPDATE on the user's
    cursor row, so two concurrent triggers cannot both pass. The claim is a
    lease: last_sync_at only moves forward in complete(), after the whole
    pipeline succeeded, and release() frees the lease after a failure.
    """

    def __init__(self, session: Session, interval_seconds: Optional[int] = None,
                 lease_seconds: Optional[int] = None):
        self.session = session
        self.interval = timedelta(seconds=interval_seconds if interval_seconds is not None else settings.SYNC_INTERVAL_SECONDS)
        self.lease = timedelta(seconds=lease_seconds if lease_seconds is not None else settings.SYNC_LEASE_SECONDS)

    def attempt_sync(self, user_id: str, now: Optional[datetime] = None) -> SyncDecision:
        """Try to claim the user's cursor for a new sync"""
        now = now or utcnow()
        token = uuid.uuid4().hex
        try:
            if self._claim(user_id, token, now):
                logger.info(f"Sync gate opened for user {user_id}")
                return SyncDecision(allowed=True, lease_token=token)

            cursor = self.session.get(SyncCursor, user_id)
            if cursor is None:
                if self._insert_claimed(user_id, token, now):
                    logger.info(f"Sync gate opened for first sync of user {user_id}")
                    return SyncDecision(allowed=True, lease_token=token)
                # Lost the insert race; the other trigger owns the row now
                if self._claim(user_id, token, now):
                    return SyncDecision(allowed=True, lease_token=token)
                cursor = self.session.get(SyncCursor, user_id)

            return self._rejection(cursor, now)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error checking sync gate for user {user_id}: {e}")
            raise

    def complete(self, user_id: str, lease_token: str, now: Optional[datetime] = None) -> datetime:
        """Record a successful sync and free the lease. Returns the stored sync time."""
        now = now or utcnow()
        try:
            result = self.session.execute(
                update(SyncCursor)
                .where(SyncCursor.user_id == user_id, SyncCursor.lease_token == lease_token)
                .values(last_sync_at=to_db_time(now), lease_token=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
            if result.rowcount != 1:
                # Lease expired and was taken over; still record our completion time
                logger.warning(f"Sync lease for user {user_id} was lost before completion")
                self.session.execute(
                    update(SyncCursor)
                    .where(SyncCursor.user_id == user_id)
                    .values(last_sync_at=to_db_time(now))
                    .execution_options(synchronize_session=False)
                )
                self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error completing sync for user {user_id}: {e}")
            raise
        return now

    def release(self, user_id: str, lease_token: str) -> None:
        """Free the lease after a failed sync without touching last_sync_at"""
        try:
            self.session.execute(
                update(SyncCursor)
                .where(SyncCursor.user_id == user_id, SyncCursor.lease_token == lease_token)
                .values(lease_token=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error releasing sync lease for user {user_id}: {e}")
            raise

    def last_sync_at(self, user_id: str) -> Optional[datetime]:
        value = self.session.execute(
            select(SyncCursor.last_sync_at).where(SyncCursor.user_id == user_id)
        ).scalar_one_or_none()
        return from_db_time(value)

    def next_sync_available_at(self, last_sync_at: datetime) -> datetime:
        return last_sync_at + self.interval

    def _claim(self, user_id: str, token: str, now: datetime) -> bool:
        db_now = to_db_time(now)
        result = self.session.execute(
            update(SyncCursor)
            .where(
                SyncCursor.user_id == user_id,
                or_(SyncCursor.last_sync_at.is_(None), SyncCursor.last_sync_at <= db_now - self.interval),
                or_(SyncCursor.lease_expires_at.is_(None), SyncCursor.lease_expires_at <= db_now)
            )
            .values(lease_token=token, lease_expires_at=db_now + self.lease)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def _insert_claimed(self, user_id: str, token: str, now: datetime) -> bool:
        try:
            self.session.add(SyncCursor(
                user_id=user_id,
                last_sync_at=None,
                lease_token=token,
                lease_expires_at=to_db_time(now + self.lease)
            ))
            self.session.commit()
            return True
        except IntegrityError:
            self.session.rollback()
            return False

    def _rejection(self, cursor: SyncCursor, now: datetime) -> SyncDecision:
        self.session.refresh(cursor)
        last_sync = from_db_time(cursor.last_sync_at)
        if last_sync is not None:
            elapsed = (now - last_sync).total_seconds()
            remaining = self.interval.total_seconds() - elapsed
            if remaining > 0:
                retry_after = max(1, math.ceil(remaining))
                logger.info(f"Sync rejected for user {cursor.user_id}: last sync {elapsed:.0f}s ago, retry in {retry_after}s")
                return SyncDecision(allowed=False, retry_after_seconds=retry_after, last_sync_at=last_sync)

        lease_expires = from_db_time(cursor.lease_expires_at)
        retry_after = 1
        if lease_expires is not None:
            retry_after = max(1, math.ceil((lease_expires - now).total_seconds()))
        logger.info(f"Sync rejected for user {cursor.user_id}: another sync is in progress, retry in {retry_after}s")
        return SyncDecision(allowed=False, retry_after_seconds=retry_after, last_sync_at=last_sync)
