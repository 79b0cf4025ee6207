"""API dependencies for the login shield."""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, Request

from loginshield.core.config import ShieldSettings
from loginshield.core.errors import E, api_error
from loginshield.core.identity import resolve_client_ip
from loginshield.core.policy_gate import PolicyGate

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> ShieldSettings:
    return request.app.state.settings


def get_gate(request: Request) -> PolicyGate:
    return request.app.state.gate


def get_client_ip(request: Request, settings: ShieldSettings = Depends(get_settings)) -> str:
    """Caller address, honouring proxy headers when configured to."""
    remote = request.client.host if request.client else None
    return resolve_client_ip(
        request.headers,
        remote,
        trust_forwarded=settings.trust_forwarded_headers,
    ) or "unknown"


def get_identity(
    client_ip: str = Depends(get_client_ip),
    gate: PolicyGate = Depends(get_gate),
) -> str:
    """Store key for the caller, computed once per request."""
    return gate.identify(client_ip)


async def require_admin(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    settings: ShieldSettings = Depends(get_settings),
) -> None:
    """Guard admin endpoints with the static admin key."""
    if not settings.admin_api_key:
        raise api_error(403, E.ADMIN_DISABLED)
    if not x_admin_key:
        raise api_error(401, E.ADMIN_KEY_REQUIRED)
    if not hmac.compare_digest(x_admin_key.encode(), settings.admin_api_key.encode()):
        logger.warning("Rejected admin request with invalid key")
        raise api_error(401, E.ADMIN_KEY_REQUIRED, "Invalid admin key")
