"""Application configuration and environment settings"""
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class RevalidateSettings(BaseModel):
    """Presentation-layer cache invalidation settings"""
    url: Optional[str] = Field(None, description="Revalidation endpoint")
    secret: Optional[str] = Field(None, description="Shared secret sent with revalidation calls")
    max_attempts: int = Field(3, description="Delivery attempts per notification")
    timeout_seconds: float = Field(5.0, description="HTTP timeout per attempt")

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Storage
    DATABASE_URL: str = Field("sqlite:///listening_insights.db", description="SQLAlchemy database URL")

    # Upstream API
    SPOTIFY_TOKEN: Optional[str] = Field(None, description="Spotify API access token (used by the CLI only)")
    SPOTIFY_API_URL: str = Field("https://api.spotify.com/v1", description="Spotify Web API base URL")
    SPOTIFY_REQUEST_TIMEOUT: float = Field(15.0, description="Timeout in seconds for Spotify requests")
    RECENT_PAGE_SIZE: int = Field(50, description="Recently played events fetched per sync (Spotify max is 50)")
    TOP_ENTITY_LIMIT: int = Field(50, description="Top artists/tracks fetched per time range")

    # Sync policy
    SYNC_INTERVAL_SECONDS: int = Field(3600, description="Minimum seconds between syncs per user")
    SYNC_LEASE_SECONDS: int = Field(300, description="How long an in-flight sync holds the user's cursor")
    DEFAULT_TIMEZONE: str = Field("UTC", description="Timezone used when the user has none stored")

    # Caching
    TOP_CACHE_TTL_SECONDS: int = Field(3600, description="TTL of cached top entity lists")
    REVALIDATE_URL: Optional[str] = Field(None, description="Presentation-layer revalidation endpoint")
    REVALIDATE_SECRET: Optional[str] = Field(None, description="Secret for the revalidation endpoint")
    REVALIDATE_MAX_ATTEMPTS: int = Field(3, description="Delivery attempts per cache invalidation")

    # CLI context
    USER_ID: Optional[str] = Field(None, description="Internal user id to sync")
    SPOTIFY_USER_ID: Optional[str] = Field(None, description="Spotify account id of the user")
    DISPLAY_NAME: Optional[str] = Field(None, description="Display name used to derive a username")
    USER_TIMEZONE: Optional[str] = Field(None, description="IANA timezone of the user")

    @property
    def revalidate_settings(self) -> RevalidateSettings:
        """Get revalidation settings as a separate model"""
        return RevalidateSettings(
            url=self.REVALIDATE_URL,
            secret=self.REVALIDATE_SECRET,
            max_attempts=self.REVALIDATE_MAX_ATTEMPTS
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

settings = Settings()

# Constants
TIME_RANGES = ("short", "medium", "long")
ENTITY_KINDS = ("artist", "track")
