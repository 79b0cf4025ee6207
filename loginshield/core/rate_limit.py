"""Rate limiting for the shield endpoints.

Uses Redis as storage backend when REDIS_URL is configured,
otherwise falls back to in-memory storage.
"""
import logging
from typing import Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from loginshield.core.config import get_shield_settings
from loginshield.core.identity import resolve_client_ip

logger = logging.getLogger(__name__)


def client_ip_key(request: Request) -> str:
    """Bucket per client address, resolved the same way as the lockout identity."""
    settings = getattr(request.app.state, "settings", None) or get_shield_settings()
    remote = request.client.host if request.client else None
    return resolve_client_ip(
        request.headers,
        remote,
        trust_forwarded=settings.trust_forwarded_headers,
    ) or get_remote_address(request)


limiter = Limiter(
    key_func=client_ip_key,
    default_limits=["200/minute"],
    storage_uri=None,  # in-memory by default, upgraded to Redis in configure_limiter()
)

# ── Per-endpoint rate limit presets ──────────────────────────

RATE_CHALLENGE = "20/minute"     # captcha issuance
RATE_STATUS = "60/minute"        # login form status
RATE_ADMIN = "30/minute"         # attempt records listing and deletion


def configure_limiter(redis_url: Optional[str] = None) -> None:
    """Point the limiter at Redis so all workers share counters."""
    if not redis_url:
        return
    try:
        from limits.storage import storage_from_string

        storage = storage_from_string(redis_url)
        strategy = type(limiter._limiter)(storage)
        limiter._storage_uri = redis_url
        limiter._storage = storage
        limiter._limiter = strategy
        logger.info("Rate limiter upgraded to Redis backend")
    except Exception as e:
        logger.warning("Failed to configure Redis rate limiter: %s", e)
