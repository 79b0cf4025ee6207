"""Admin endpoints for tracked login attempts."""
import logging

from fastapi import APIRouter, Depends, Request

from loginshield.api.deps import get_gate, require_admin
from loginshield.core.errors import E, StoreUnavailable, api_error
from loginshield.core.identity import short_hash
from loginshield.core.policy_gate import PolicyGate
from loginshield.core.rate_limit import RATE_ADMIN, limiter
from loginshield.schemas.attempts import AttemptListResponse, AttemptRecordItem, AttemptsOverview
from loginshield.schemas.common import SuccessResponse

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("", response_model=AttemptListResponse)
@limiter.limit(RATE_ADMIN)
async def list_attempts(request: Request, gate: PolicyGate = Depends(get_gate)):
    """All tracked identities, most recent activity first."""
    tracker = gate.tracker
    try:
        records = await tracker.list_records()
    except StoreUnavailable as e:
        logger.error("Cannot list attempt records: %s", e)
        raise api_error(503, E.STORE_UNAVAILABLE)

    now = tracker.clock()
    overview = tracker.overview(records)
    return AttemptListResponse(
        items=[
            AttemptRecordItem(
                id=rec.id,
                identity_prefix=short_hash(rec.identity_hash),
                attempts=rec.attempts,
                locked=rec.is_locked_at(now),
                locked_until=rec.locked_until,
                first_attempt_at=rec.first_attempt_at,
                last_attempt_at=rec.last_attempt_at,
            )
            for rec in records
        ],
        overview=AttemptsOverview(
            total=overview.total,
            locked=overview.locked,
            safe_percent=overview.safe_percent,
        ),
    )


@router.delete("/{record_id}", response_model=SuccessResponse)
@limiter.limit(RATE_ADMIN)
async def delete_attempt(request: Request, record_id: int, gate: PolicyGate = Depends(get_gate)):
    """Delete a record, unlocking the identity immediately."""
    try:
        deleted = await gate.tracker.delete_record(record_id)
    except StoreUnavailable as e:
        logger.error("Cannot delete attempt record %d: %s", record_id, e)
        raise api_error(503, E.STORE_UNAVAILABLE)
    if not deleted:
        raise api_error(404, E.RECORD_NOT_FOUND)
    return SuccessResponse(message="Record deleted")
