"""Sync trigger response models"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        """Serialize with camelCase keys for external callers"""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)

class SyncResponse(_CamelModel):
    """
    Result of a successful sync.

    Attributes:
        days_aggregated: Distinct local dates written in this sync
        artists_saved: Top artist rows written across all time ranges
        tracks_saved: Top track rows written across all time ranges
        last_sync_at: Completion time recorded on the user's cursor
        next_sync_available_at: Earliest time the gate will allow another sync
        skipped_records: Malformed upstream records skipped during parsing
    """
    success: bool = True
    days_aggregated: int = 0
    artists_saved: int = 0
    tracks_saved: int = 0
    last_sync_at: datetime
    next_sync_available_at: datetime
    skipped_records: int = 0

class ErrorDetail(_CamelModel):
    """Machine-readable error with an optional wait hint"""
    code: str = Field(description="RATE_LIMIT, AUTH_ERROR, API_ERROR or UNKNOWN")
    message: str
    retry_after: Optional[int] = Field(None, description="Seconds to wait before retrying")

class SyncErrorResponse(_CamelModel):
    """Result of a failed or rejected sync"""
    success: bool = False
    error: ErrorDetail
