"""Client identity resolution and hashing.

Raw client addresses never leave this module: everything downstream works
with a salted SHA-256 digest, so stored keys cannot be reversed to an IP and
are not portable between deployments with different secrets.
"""
import hashlib
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = ("::1", "127.0.0.1")
CANONICAL_LOOPBACK = "127.0.0.1"


def normalize_identity(raw_identity: str) -> str:
    """Collapse IPv4/IPv6 loopback into one tracked identity."""
    identity = (raw_identity or "").strip()
    if identity in LOOPBACK_ADDRESSES:
        return CANONICAL_LOOPBACK
    return identity


def hash_identity(raw_identity: str, secret: str) -> str:
    """Derive the stable, non-reversible store key for a client identity."""
    material = normalize_identity(raw_identity) + (secret or "")
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def short_hash(identity_hash: str) -> str:
    """Prefix safe to put in logs and admin listings."""
    return identity_hash[:12]


def resolve_client_ip(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    trust_forwarded: bool = True,
) -> str:
    """Pick the caller address: Client-IP, then first X-Forwarded-For hop, then the peer.

    Forwarded headers are only honoured when the host sits behind a proxy that
    overwrites them; otherwise a client can pick its own identity.
    """
    if trust_forwarded:
        client_ip = (headers.get("client-ip") or "").strip()
        if client_ip:
            return client_ip
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            # First IP in the chain is the original client
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return (remote_addr or "").strip()
