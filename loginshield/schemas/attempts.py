"""Attempt record schemas for the admin API."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class AttemptRecordItem(BaseModel):
    """One tracked identity. Only a hash prefix is exposed."""

    id: int
    identity_prefix: str
    attempts: int
    locked: bool
    locked_until: Optional[datetime] = None
    first_attempt_at: datetime
    last_attempt_at: datetime


class AttemptsOverview(BaseModel):
    total: int
    locked: int
    safe_percent: int


class AttemptListResponse(BaseModel):
    items: List[AttemptRecordItem]
    overview: AttemptsOverview
