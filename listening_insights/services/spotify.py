"""Spotify API integration service"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Tuple

import requests

from listening_insights.config import settings
from listening_insights.errors import AuthError, RateLimitError, UpstreamApiError, ValidationError
from listening_insights.models.listening import PlayEvent, RecentPage, TopEntity

logger = logging.getLogger(__name__)

# Spotify caps both recently played and top lists at 50 items per request
SPOTIFY_MAX_LIMIT = 50
# Wait hint used when a 429 response has no Retry-After header
DEFAULT_RETRY_AFTER_SECONDS = 60

TIME_RANGE_PARAMS = {
    'short': 'short_term',   # ~4 weeks
    'medium': 'medium_term', # ~6 months
    'long': 'long_term',     # several years
}

def _get_image_url(images_list: List[Dict], preferred_index: int = 1) -> Optional[str]:
    """Safely extracts an image URL from Spotify's image list."""
    if not images_list or not isinstance(images_list, list):
        return None
    if len(images_list) > preferred_index and isinstance(images_list[preferred_index], dict):
        return images_list[preferred_index].get('url')
    for img in images_list:
        if isinstance(img, dict) and img.get('url'):
            return img.get('url')
    return None

def _get_primary_artist_info(artists_list: Optional[List[Dict]]) -> Tuple[Optional[str], Optional[str]]:
    """Safely extracts primary artist name and ID."""
    if isinstance(artists_list, list) and artists_list:
        primary_artist = artists_list[0]
        if isinstance(primary_artist, dict):
            return primary_artist.get('name'), primary_artist.get('id')
    return None, None

def parse_spotify_datetime(value: Any) -> Optional[datetime]:
    """Parse Spotify datetime string to timezone-aware UTC datetime object"""
    if not value:
        return None
    try:
        if isinstance(value, str):
            dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
        elif isinstance(value, datetime):
            dt = value
        else:
            logger.warning(f"Unexpected type for datetime value: {type(value)}")
            return None
        if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, TypeError) as e:
        logger.warning(f"Could not parse datetime value: {value}. Error: {e}")
        return None

def parse_play_event(entry: Any) -> PlayEvent:
    """
    Convert one recently played item into a PlayEvent.

    Raises:
        ValidationError: If the item lacks a track id, artist id, a parseable
            played_at or a non-negative integer duration
    """
    if not isinstance(entry, dict):
        raise ValidationError("Recently played entry is not an object", entry)
    track = entry.get('track')
    if not (isinstance(track, dict) and track.get('id')):
        raise ValidationError("Recently played entry has no track id", entry)

    played_at = parse_spotify_datetime(entry.get('played_at'))
    if played_at is None:
        raise ValidationError(f"Unparseable played_at for track {track['id']}", entry)

    artist_name, artist_id = _get_primary_artist_info(track.get('artists'))
    if not artist_id:
        raise ValidationError(f"Track {track['id']} has no primary artist id", entry)

    duration = track.get('duration_ms')
    if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
        raise ValidationError(f"Invalid duration {duration!r} for track {track['id']}", entry)

    return PlayEvent(
        track_id=track['id'],
        artist_id=artist_id,
        played_at=played_at,
        duration_ms=int(duration),
        track_name=track.get('name'),
        artist_name=artist_name
    )

def parse_top_entity(item: Any, kind: str) -> TopEntity:
    """Convert one top artist/track item, raising ValidationError when it has no id"""
    if not (isinstance(item, dict) and item.get('id')):
        raise ValidationError(f"Top {kind} entry has no id", item)

    if kind == 'artist':
        images = item.get('images', [])
        genres = [g for g in item.get('genres') or [] if isinstance(g, str) and g]
    else:
        album = item.get('album') if isinstance(item.get('album'), dict) else {}
        images = album.get('images', [])
        genres = []

    popularity = item.get('popularity')
    return TopEntity(
        entity_id=item['id'],
        name=item.get('name'),
        image_ref=_get_image_url(images),
        genres=genres,
        popularity=popularity if isinstance(popularity, int) else None
    )


class SpotifyAPI:
    """
    Handles all Spotify API interactions with consistent formatting.

    Every call is made exactly once: failures are mapped onto the sync error
    taxonomy and raised, leaving retries to the next externally triggered sync.
    """

    def __init__(self, token: str, base_url: str = "https://api.spotify.com/v1",
                 timeout: float = 15.0, session: Optional[requests.Session] = None):
        """
        Initialize with Spotify access token
        """
        if not token:
            raise ValueError("Spotify token cannot be empty")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Accept': 'application/json'
        })

    @classmethod
    def from_settings(cls, token: str) -> 'SpotifyAPI':
        return cls(token=token, base_url=settings.SPOTIFY_API_URL, timeout=settings.SPOTIFY_REQUEST_TIMEOUT)

    def get_user_info(self) -> Dict[str, Any]:
        """Get basic user profile information"""
        logger.info("Fetching user info...")
        user_info = self._make_request('me')
        if 'id' not in user_info:
            logger.error(f"Invalid user info response received: {user_info}")
            raise UpstreamApiError("Failed to fetch valid user info from Spotify.")
        logger.info(f"User info fetched successfully for user ID: {user_info.get('id')}")
        return user_info

    def get_recently_played(self, limit: int = 50, before: Optional[int] = None) -> RecentPage:
        """
        Get one page of recently played tracks

        Args:
            limit: Number of tracks to fetch (max 50 per Spotify API docs)
            before: Unix timestamp in milliseconds for pagination
        """
        params: Dict[str, Any] = {'limit': min(limit, SPOTIFY_MAX_LIMIT)}
        if before is not None:
            params['before'] = before

        response_data = self._make_request('me/player/recently-played', params)
        items = response_data.get('items')
        if not isinstance(items, list):
            logger.warning(f"Unexpected response format for recently played: {response_data}")
            raise UpstreamApiError("Unexpected response format for recently played")

        events: List[PlayEvent] = []
        invalid_count = 0
        for entry in items:
            try:
                events.append(parse_play_event(entry))
            except ValidationError as e:
                invalid_count += 1
                logger.warning(f"Skipping invalid recently played entry: {e}")

        next_cursor = None
        cursors = response_data.get('cursors')
        if isinstance(cursors, dict) and cursors.get('before'):
            try:
                next_cursor = int(cursors['before'])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed pagination cursor: {cursors['before']}")

        logger.info(f"Fetched {len(events)} recently played events ({invalid_count} skipped)")
        return RecentPage(events=events, invalid_count=invalid_count, next_cursor=next_cursor)

    def get_top_artists(self, time_range: str = 'medium', limit: int = 50) -> List[TopEntity]:
        """Get user's top artists

        Args:
            time_range: short (4 weeks), medium (6 months), or long (years)
            limit: Number of artists to fetch (Spotify API max is 50).
        """
        return self._get_top('artist', time_range, limit)

    def get_top_tracks(self, time_range: str = 'medium', limit: int = 50) -> List[TopEntity]:
        """Get user's top tracks, same arguments as get_top_artists"""
        return self._get_top('track', time_range, limit)

    def _get_top(self, kind: str, time_range: str, limit: int) -> List[TopEntity]:
        if time_range not in TIME_RANGE_PARAMS:
            raise ValueError(f"Unknown time range: {time_range}")
        actual_limit = min(limit, SPOTIFY_MAX_LIMIT)
        logger.info(f"Fetching top {kind}s (range: {time_range}, limit: {actual_limit})...")
        response_data = self._make_request(
            f'me/top/{kind}s', {'time_range': TIME_RANGE_PARAMS[time_range], 'limit': actual_limit}
        )
        items = response_data.get('items')
        if not isinstance(items, list):
            logger.warning(f"Unexpected response format for top {kind}s ({time_range}): {response_data}")
            raise UpstreamApiError(f"Unexpected response format for top {kind}s")

        entities = []
        for item in items:
            try:
                entities.append(parse_top_entity(item, kind))
            except ValidationError as e:
                logger.warning(f"Skipping invalid top {kind} entry: {e}")
        return entities

    def _make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict:
        """Make one authenticated request to the Spotify API"""
        url = f'{self.base_url}/{endpoint}'
        try:
            logger.debug(f"Making request to {url} {params or ''}")
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status in (401, 403):
                logger.error(f"Spotify rejected the credentials ({status}) for {url}.")
                raise AuthError(f"Spotify credentials rejected ({status})") from e
            if status == 429:
                retry_after = self._retry_after(e.response)
                logger.warning(f"Rate limit hit (429) for {url}. Retry after {retry_after} seconds.")
                raise RateLimitError("Spotify rate limit reached", retry_after=retry_after) from e
            logger.error(f"Spotify returned {status} for {url}.")
            raise UpstreamApiError(f"Spotify request failed with status {status}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for {url}: {e}")
            raise UpstreamApiError("Spotify request failed") from e

        try:
            json_response = response.json()
        except ValueError as e:
            logger.error(f"Failed to decode JSON response from {url}. Status: {response.status_code}. Response text: {response.text[:200]}")
            raise UpstreamApiError("Spotify returned an invalid response body") from e
        return json_response if isinstance(json_response, dict) else {}

    @staticmethod
    def _retry_after(response: Optional[requests.Response]) -> int:
        if response is None:
            return DEFAULT_RETRY_AFTER_SECONDS
        try:
            return max(1, int(response.headers.get('Retry-After', DEFAULT_RETRY_AFTER_SECONDS)))
        except (TypeError, ValueError):
            return DEFAULT_RETRY_AFTER_SECONDS
