"""Entry point for running one sync from the command line"""
import logging
import sys

from listening_insights.cache import CacheInvalidator
from listening_insights.config import settings
from listening_insights.db import db
from listening_insights.services.spotify import SpotifyAPI
from listening_insights.services.storage import StorageService
from listening_insights.sync import SyncService
from listening_insights.utils.json_encoder import json_dumps

logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)

def run() -> int:
    """
    Sync the user owning SPOTIFY_TOKEN and print the result.

    Returns:
        0 on success, 2 when the sync returned an error response, 1 on
        missing configuration or an unexpected failure
    """
    if not settings.SPOTIFY_TOKEN:
        logger.error("SPOTIFY_TOKEN is required")
        return 1

    invalidator = CacheInvalidator()
    try:
        db.init()

        # Log config (excluding sensitive data)
        safe_config = settings.model_dump(exclude={'SPOTIFY_TOKEN', 'DATABASE_URL', 'REVALIDATE_SECRET'})
        logger.info(f"Using configuration: {json_dumps(safe_config, indent=2)}")

        spotify = SpotifyAPI.from_settings(settings.SPOTIFY_TOKEN)
        with db.session() as session:
            profile = spotify.get_user_info()
            user = StorageService(session).ensure_user(
                spotify_id=settings.SPOTIFY_USER_ID or profile['id'],
                display_name=settings.DISPLAY_NAME or profile.get('display_name'),
                country=profile.get('country'),
                timezone_name=settings.USER_TIMEZONE,
                user_id=settings.USER_ID
            )
            result = SyncService(session, invalidator=invalidator).sync(user.id, spotify)

        print(json_dumps(result.to_payload(), indent=2))
        return 0 if result.success else 2
    except Exception as e:
        logger.exception(f"Error during sync: {e}")
        return 1
    finally:
        invalidator.close()
        db.dispose()

if __name__ == "__main__":
    sys.exit(run())
