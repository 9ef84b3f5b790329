"""
Shared utility functions for routers and services
"""
import json
import logging
import math
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value) -> Optional[datetime]:
    """Convert a unix timestamp in seconds (as gateways send them) to naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def from_millis(value) -> Optional[datetime]:
    """Convert a millisecond timestamp (int or numeric string) to naive UTC."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


def days_until(moment: datetime, now: Optional[datetime] = None) -> int:
    """Whole days until moment, rounded up; negative once it has passed."""
    now = now or utcnow()
    return math.ceil((moment - now).total_seconds() / 86400)


def log_endpoint_event(endpoint: str, user_id=None, result: str = "success", details: Optional[dict] = None):
    """Log endpoint execution to app.log"""
    logger.info(f"{endpoint} | user={user_id or 'none'} | {result} | {json.dumps(details or {}, default=str)}")
