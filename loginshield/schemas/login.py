"""Login form schemas."""
from typing import Optional

from pydantic import BaseModel, Field


class AttemptsInfo(BaseModel):
    remaining: int
    max: int
    locked: bool
    lock_minutes: int = 0


class LoginStatusResponse(BaseModel):
    """What the login form should render for the caller."""

    state: str
    show_captcha: bool = False
    attempts: AttemptsInfo
    message: Optional[str] = None


class ChallengeResponse(BaseModel):
    """A math question to show next to the login form.

    ``required`` is false when the caller does not need a captcha yet;
    the other fields are then empty.
    """

    required: bool
    question: Optional[str] = None
    token: Optional[str] = None
    expires_in: int = Field(default=0, description="Seconds until the token expires")
