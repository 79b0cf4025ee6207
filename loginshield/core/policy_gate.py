"""Policy gate: the one object the authentication pipeline talks to.

The pipeline calls it at three points::

    key = gate.identify(client_ip)
    decision = await gate.precheck(key, username, password, token, answer)
    if decision.state is not GateState.ALLOW:
        ...render decision.message, do not check credentials...
    elif credentials_ok:
        await gate.on_success(key)
    else:
        await gate.on_failure(key)
        message = await gate.decorate_error(key, "Invalid credentials.")
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loginshield.core.attempt_tracker import AttemptSnapshot, AttemptTracker
from loginshield.core.cache import TransientCache
from loginshield.core.captcha import CaptchaManager, Challenge
from loginshield.core.config import ShieldSettings
from loginshield.core.errors import (
    E,
    Blocked,
    ChallengeFailed,
    ChallengeRequired,
    ErrorCode,
    StoreUnavailable,
    default_message,
    is_shield_code,
)
from loginshield.core.identity import hash_identity, short_hash
from loginshield.core.notifier import Notifier, build_notifier
from loginshield.core.store import InMemoryRecordStore, PostgresRecordStore, RecordStore

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    ALLOW = "allow"
    BLOCKED = "blocked"
    CHALLENGE_REQUIRED = "challenge_required"
    CHALLENGE_FAILED = "challenge_failed"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of one gate check, with the message the login page should show."""

    state: GateState
    reason: Optional[str] = None
    retry_after_minutes: int = 0
    code: Optional[ErrorCode] = None
    message: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.state is GateState.ALLOW

    def raise_for_state(self) -> None:
        """Raise the matching ShieldError for anything but ALLOW."""
        if self.state is GateState.BLOCKED:
            raise Blocked(self.retry_after_minutes, self.reason or "locked", self.message)
        if self.state is GateState.CHALLENGE_REQUIRED:
            raise ChallengeRequired(self.message)
        if self.state is GateState.CHALLENGE_FAILED:
            raise ChallengeFailed(self.reason or "wrong", self.message)


ALLOW = GateDecision(GateState.ALLOW)


def blocked(minutes: int) -> GateDecision:
    return GateDecision(
        GateState.BLOCKED,
        reason="locked",
        retry_after_minutes=minutes,
        code=E.LOCKED,
        message=default_message(E.LOCKED, minutes=minutes),
    )


def challenge_failed(reason: str) -> GateDecision:
    code = E.CAPTCHA_MISSING if reason == "missing" else E.CAPTCHA_WRONG
    return GateDecision(
        GateState.CHALLENGE_FAILED,
        reason=reason,
        code=code,
        message=default_message(code),
    )


@dataclass(frozen=True)
class LoginStatus:
    """Login form state for one caller."""

    state: GateState
    attempts: AttemptSnapshot
    show_captcha: bool


class PolicyGate:
    """Composes the attempt tracker and captcha manager into per-request decisions."""

    def __init__(
        self,
        tracker: AttemptTracker,
        captcha: CaptchaManager,
        secret: str,
        fail_closed: bool = False,
    ):
        self.tracker = tracker
        self.captcha = captcha
        self.secret = secret
        self.fail_closed = fail_closed

    @property
    def policy(self):
        return self.tracker.policy

    def identify(self, raw_identity: str) -> str:
        return hash_identity(raw_identity, self.secret)

    async def precheck(
        self,
        identity_hash: str,
        username: Optional[str],
        password: Optional[str],
        captcha_token: Optional[str] = None,
        captcha_answer: Optional[str] = None,
    ) -> GateDecision:
        """Decide whether the credential check may run for this request."""
        if not username and not password:
            # Nothing submitted, nothing to track
            return ALLOW

        try:
            if await self.tracker.is_locked(identity_hash):
                minutes = await self.tracker.remaining_lockout_minutes(identity_hash)
                return blocked(minutes)

            if await self.captcha.should_challenge(identity_hash):
                token = (captcha_token or "").strip()
                answer = (captcha_answer or "").strip()
                if not token or not answer:
                    return challenge_failed("missing")
                if not await self.captcha.validate(token, answer):
                    logger.info("Wrong captcha answer from %s", short_hash(identity_hash))
                    return challenge_failed("wrong")
        except StoreUnavailable as e:
            return self._store_down(e)

        return ALLOW

    async def on_failure(self, identity_hash: str) -> None:
        """Credential verification failed."""
        try:
            await self.tracker.record_failure(identity_hash)
        except StoreUnavailable as e:
            logger.error("Could not record failed login for %s: %s", short_hash(identity_hash), e)

    async def on_success(self, identity_hash: str) -> None:
        """Credential verification succeeded."""
        try:
            await self.tracker.record_success(identity_hash)
        except StoreUnavailable as e:
            logger.error("Could not reset attempts for %s: %s", short_hash(identity_hash), e)

    async def decorate_error(
        self,
        identity_hash: str,
        base_message: str,
        code: Optional[str] = None,
    ) -> str:
        """Append a remaining-attempts hint to a plain credential failure message."""
        if is_shield_code(code):
            return base_message
        try:
            if await self.tracker.is_locked(identity_hash):
                return base_message
            remaining = await self.tracker.remaining_attempts(identity_hash)
        except StoreUnavailable:
            return base_message

        if 0 < remaining < self.policy.max_attempts:
            return f"{base_message} {remaining} attempt(s) remaining before lockout."
        return base_message

    async def status(self, identity_hash: str) -> LoginStatus:
        """Login form state: blocked, captcha required, or plain."""
        try:
            snapshot = await self.tracker.snapshot(identity_hash)
            show_captcha = not snapshot.locked and await self.captcha.should_challenge(identity_hash)
        except StoreUnavailable as e:
            logger.warning("Record store unavailable while building login status: %s", e)
            max_attempts = self.policy.max_attempts
            snapshot = AttemptSnapshot(
                remaining=max_attempts, max=max_attempts, locked=self.fail_closed, lock_minutes=0,
            )
            show_captcha = False

        if snapshot.locked:
            state = GateState.BLOCKED
        elif show_captcha:
            state = GateState.CHALLENGE_REQUIRED
        else:
            state = GateState.ALLOW
        return LoginStatus(state=state, attempts=snapshot, show_captcha=show_captcha)

    async def issue_challenge(self, identity_hash: str) -> Optional[Challenge]:
        """A fresh captcha if this identity must solve one, else None."""
        try:
            if not await self.captcha.should_challenge(identity_hash):
                return None
        except StoreUnavailable:
            return None
        return await self.captcha.generate()

    def _store_down(self, error: StoreUnavailable) -> GateDecision:
        if self.fail_closed:
            logger.error("Record store unavailable, blocking login (fail-closed): %s", error)
            return GateDecision(
                GateState.BLOCKED,
                reason="unavailable",
                retry_after_minutes=1,
                code=E.STORE_UNAVAILABLE,
                message=default_message(E.STORE_UNAVAILABLE),
            )
        logger.warning("Record store unavailable, allowing login (fail-open): %s", error)
        return ALLOW


def build_gate(
    settings: ShieldSettings,
    store: Optional[RecordStore] = None,
    cache: Optional[TransientCache] = None,
    notifier: Optional[Notifier] = None,
) -> PolicyGate:
    """Wire a gate from settings. Connections are opened later by the host."""
    policy = settings.policy
    if store is None:
        if settings.database_url:
            store = PostgresRecordStore(settings.database_url)
        else:
            logger.info("No DATABASE_URL, using in-memory record store")
            store = InMemoryRecordStore()
    cache = cache or TransientCache()
    tracker = AttemptTracker(
        store,
        policy,
        notifier=notifier or build_notifier(settings),
        site_name=settings.site_name,
        notify_timeout=settings.notify_timeout_seconds,
    )
    captcha = CaptchaManager(cache, store, policy, ttl=settings.captcha_ttl_seconds)
    return PolicyGate(tracker, captcha, settings.secret_key, fail_closed=settings.fail_closed)
