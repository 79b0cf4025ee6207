"""Login form endpoints: status snapshot and captcha issuance.

The host's own login handler drives the gate directly; these endpoints let a
separate front end render the form correctly before the user submits it.
"""
import logging

from fastapi import APIRouter, Depends, Request

from loginshield.api.deps import get_gate, get_identity
from loginshield.core.errors import E, default_message
from loginshield.core.policy_gate import GateState, PolicyGate
from loginshield.core.rate_limit import RATE_CHALLENGE, RATE_STATUS, limiter
from loginshield.schemas.login import AttemptsInfo, ChallengeResponse, LoginStatusResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/status", response_model=LoginStatusResponse)
@limiter.limit(RATE_STATUS)
async def login_status(
    request: Request,
    identity: str = Depends(get_identity),
    gate: PolicyGate = Depends(get_gate),
):
    """Lockout and captcha state for the calling client."""
    status = await gate.status(identity)
    snap = status.attempts

    message = None
    if status.state is GateState.BLOCKED:
        message = default_message(E.LOCKED, minutes=snap.lock_minutes)
    elif status.state is GateState.CHALLENGE_REQUIRED:
        message = default_message(E.CAPTCHA_REQUIRED)

    return LoginStatusResponse(
        state=status.state.value,
        show_captcha=status.show_captcha,
        attempts=AttemptsInfo(
            remaining=snap.remaining,
            max=snap.max,
            locked=snap.locked,
            lock_minutes=snap.lock_minutes,
        ),
        message=message,
    )


@router.post("/challenge", response_model=ChallengeResponse)
@limiter.limit(RATE_CHALLENGE)
async def issue_challenge(
    request: Request,
    identity: str = Depends(get_identity),
    gate: PolicyGate = Depends(get_gate),
):
    """Issue a fresh math question if the caller must solve one."""
    challenge = await gate.issue_challenge(identity)
    if challenge is None:
        return ChallengeResponse(required=False)
    return ChallengeResponse(
        required=True,
        question=challenge.question,
        token=challenge.token,
        expires_in=gate.captcha.ttl,
    )
