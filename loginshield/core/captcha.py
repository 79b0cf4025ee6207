"""Math captcha challenges.

Answers live only in the transient cache, keyed by an opaque token that is
handed to the client. Validation consumes the entry before comparing, so a
token can be checked exactly once.
"""
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from loginshield.core.cache import TransientCache
from loginshield.core.config import PolicyConfig
from loginshield.core.errors import ChallengeValidationError
from loginshield.core.store import RecordStore

logger = logging.getLogger(__name__)

CAPTCHA_TTL = 300  # 5 minutes
TOKEN_PREFIX = "captcha:"
OPERATORS = ("+", "-", "+", "+")  # weighted towards addition

_INT_LITERAL = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class Challenge:
    question: str
    token: str


class CaptchaManager:
    """Generates and validates one-time math challenges."""

    def __init__(
        self,
        cache: TransientCache,
        store: RecordStore,
        policy: PolicyConfig,
        ttl: int = CAPTCHA_TTL,
    ):
        self.cache = cache
        self.store = store
        self.policy = policy
        self.ttl = ttl
        self._rng = secrets.SystemRandom()

    async def generate(self) -> Challenge:
        """Create a question, store its answer under a fresh token and return both."""
        num1 = self._rng.randint(1, 9)
        num2 = self._rng.randint(1, 9)
        op = self._rng.choice(OPERATORS)
        answer = num1 + num2 if op == "+" else num1 - num2

        token = secrets.token_urlsafe(15)
        await self.cache.put(TOKEN_PREFIX + token, str(answer), self.ttl)

        return Challenge(question=f"What is {num1} {op} {num2}?", token=token)

    async def validate(self, token: str, answer: str) -> bool:
        """Check an answer against its token. A token that is looked up is spent, right or wrong."""
        if not token:
            return False
        try:
            submitted = parse_answer(answer)
        except ChallengeValidationError:
            return False

        expected = await self.cache.take(TOKEN_PREFIX + token.strip())
        if expected is None:
            logger.debug("Captcha token expired, already used, or never issued")
            return False

        return submitted == int(expected)

    async def should_challenge(self, identity_hash: str) -> bool:
        """Captcha is due once an identity has enough recorded failures."""
        if not self.policy.captcha_enabled:
            return False
        rec = await self.store.get(identity_hash)
        if rec is None:
            return False
        return rec.attempts >= self.policy.captcha_after_attempts


def parse_answer(answer: Optional[str]) -> int:
    """Parse a submitted answer, accepting only a plain integer literal."""
    text = str(answer if answer is not None else "").strip()
    if not _INT_LITERAL.match(text):
        raise ChallengeValidationError()
    return int(text)
