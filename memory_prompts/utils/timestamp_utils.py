"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def expires_after(days: int, created_at: Optional[datetime] = None) -> datetime:
    """Expiry instant `days` after `created_at` (now if None).

    Args:
        days: Lifetime in days
        created_at: Creation instant

    Returns:
        Timezone-aware UTC datetime
    """
    return (created_at or utc_now()) + timedelta(days=days)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
