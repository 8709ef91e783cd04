"""UTC helpers shared by the gate and storage layers"""
from datetime import datetime, timezone
from typing import Optional

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Store datetimes as naive UTC"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive value read back from the database"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
