"""Presentation cache invalidation and the top entity TTL cache"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

import requests

from listening_insights.config import RevalidateSettings, settings

logger = logging.getLogger(__name__)

# Base delay in seconds between revalidation attempts
RETRY_BASE_DELAY = 0.5

class TopEntityCache:
    """
    TTL cache of top entity lists keyed by (user_id, time_range).

    Entries are only ever read through get(), which drops them once they are
    older than ttl_seconds according to the injected clock.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.TOP_CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: Dict[Tuple[str, Hashable], Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, time_range: Hashable) -> Optional[Any]:
        key = (user_id, time_range)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def put(self, user_id: str, time_range: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[(user_id, time_range)] = (self._clock(), value)

    def invalidate_user(self, user_id: str) -> int:
        """Drop every entry of a user. Returns the number of entries removed."""
        with self._lock:
            keys = [key for key in self._entries if key[0] == user_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CacheInvalidator:
    """
    Tells the presentation layer that a user's pages are stale.

    Delivery is at-least-once: the revalidation call is repeated until it
    succeeds or max_attempts is reached. Re-invalidating a fresh entry is a
    no-op on the receiving side, so duplicates are harmless.
    """

    def __init__(self, config: Optional[RevalidateSettings] = None,
                 cache: Optional[TopEntityCache] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or settings.revalidate_settings
        self.cache = cache
        # A session passed in stays owned by the caller
        self._owns_session = session is None
        self.session = session or requests.Session()
        self._sleep = sleep

    def close(self) -> None:
        """Close the HTTP session if this invalidator created it"""
        if self._owns_session:
            self.session.close()

    def notify(self, username: str, user_id: Optional[str] = None) -> bool:
        """
        Invalidate cached views of a user.

        Args:
            username: Public username whose pages should be refreshed
            user_id: When given, local top entity cache entries are dropped too

        Returns:
            True when the presentation layer acknowledged the invalidation (or
            none is configured), False when every attempt failed
        """
        if self.cache is not None and user_id is not None:
            dropped = self.cache.invalidate_user(user_id)
            logger.debug(f"Dropped {dropped} cached top entity lists for user {user_id}")

        if not self.config.url:
            logger.debug("No revalidation URL configured; skipping presentation cache invalidation")
            return True

        payload = {'username': username, 'paths': [f'/u/{username}', '/dashboard']}
        headers = {'Content-Type': 'application/json'}
        if self.config.secret:
            headers['x-revalidate-secret'] = self.config.secret

        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.post(
                    self.config.url, json=payload, headers=headers, timeout=self.config.timeout_seconds
                )
                response.raise_for_status()
                logger.info(f"Invalidated presentation cache for {username}")
                return True
            except requests.exceptions.RequestException as e:
                logger.warning(f"Cache invalidation attempt {attempt}/{attempts} for {username} failed: {e}")
                if attempt < attempts:
                    self._sleep(RETRY_BASE_DELAY * (2 ** (attempt - 1)))

        logger.error(f"Cache invalidation for {username} failed after {attempts} attempts")
        return False
