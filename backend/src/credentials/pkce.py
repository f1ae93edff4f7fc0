"""
PKCE (RFC 7636) challenge generation and pending-authorization tracking.

Used by the Etsy authorization-code flow:
1. start:    PKCEChallenge.generate(), remember it under its state
2. callback: consume(state) exactly once, exchange code with code_verifier

SECURITY:
- code_verifier never leaves the process except in the token exchange
- A state can be consumed once; unknown, expired or replayed states fail
  with InvalidGrant
"""

import base64
import hashlib
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from src.gateway.errors import InvalidGrant

logger = logging.getLogger(__name__)

# RFC 7636 unreserved characters
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
VERIFIER_LENGTH = 128
STATE_LENGTH = 32
STATE_ALPHABET = string.ascii_letters + string.digits

PENDING_AUTHORIZATION_TTL = timedelta(minutes=10)


def _random_string(length: int, alphabet: str) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def compute_code_challenge(code_verifier: str) -> str:
    """S256 transform: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """One PKCE verifier/challenge pair plus the anti-CSRF state nonce."""
    code_verifier: str = field(repr=False)
    code_challenge: str
    state: str

    code_challenge_method = "S256"

    @classmethod
    def generate(cls) -> "PKCEChallenge":
        verifier = _random_string(VERIFIER_LENGTH, VERIFIER_ALPHABET)
        return cls(
            code_verifier=verifier,
            code_challenge=compute_code_challenge(verifier),
            state=_random_string(STATE_LENGTH, STATE_ALPHABET),
        )


@dataclass
class PendingAuthorization:
    """A started authorization flow awaiting its callback."""
    challenge: PKCEChallenge
    tenant_id: Optional[str]
    created_at: datetime
    redirect_uri: Optional[str] = None


class PendingAuthorizationStore:
    """
    In-process registry of started authorization flows, keyed by state.

    Entries expire after ttl and are removed on first consume.
    """

    def __init__(
        self,
        ttl: timedelta = PENDING_AUTHORIZATION_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: Dict[str, PendingAuthorization] = {}

    def add(
        self,
        challenge: PKCEChallenge,
        tenant_id: Optional[str],
        redirect_uri: Optional[str] = None,
    ) -> PendingAuthorization:
        self._purge_expired()
        pending = PendingAuthorization(
            challenge=challenge,
            tenant_id=tenant_id,
            created_at=self._clock(),
            redirect_uri=redirect_uri,
        )
        self._pending[challenge.state] = pending
        return pending

    def peek(self, state: str) -> Optional[PendingAuthorization]:
        """Return the pending flow for state without consuming it."""
        return self._pending.get(state)

    def consume(self, state: str) -> PendingAuthorization:
        """
        Remove and return the pending flow for state.

        Raises:
            InvalidGrant: Unknown, expired or already-consumed state
        """
        pending = self._pending.pop(state, None)
        if pending is None:
            logger.warning("Authorization state unknown or already used")
            raise InvalidGrant("Unknown or already used authorization state", provider="etsy")

        if self._clock() - pending.created_at > self._ttl:
            logger.warning(
                "Authorization state expired",
                extra={"tenant_id": pending.tenant_id}
            )
            raise InvalidGrant("Authorization state expired", provider="etsy")

        return pending

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [s for s, p in self._pending.items() if now - p.created_at > self._ttl]
        for state in expired:
            del self._pending[state]

    def __len__(self) -> int:
        return len(self._pending)
