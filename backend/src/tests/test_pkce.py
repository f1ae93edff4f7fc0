"""
PKCE challenge and pending-authorization tests.
"""

from datetime import timedelta

import pytest

from src.credentials.pkce import (
    VERIFIER_ALPHABET,
    VERIFIER_LENGTH,
    PendingAuthorizationStore,
    PKCEChallenge,
    compute_code_challenge,
)
from src.gateway.errors import InvalidGrant


class TestPKCEChallenge:

    def test_rfc7636_appendix_b_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert compute_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_generated_verifier_shape(self):
        challenge = PKCEChallenge.generate()

        assert len(challenge.code_verifier) == VERIFIER_LENGTH
        assert set(challenge.code_verifier) <= set(VERIFIER_ALPHABET)
        assert challenge.code_challenge == compute_code_challenge(challenge.code_verifier)
        assert "=" not in challenge.code_challenge
        assert challenge.code_challenge_method == "S256"

    def test_each_challenge_is_unique(self):
        first, second = PKCEChallenge.generate(), PKCEChallenge.generate()

        assert first.code_verifier != second.code_verifier
        assert first.state != second.state

    def test_verifier_not_in_repr(self):
        challenge = PKCEChallenge.generate()

        assert challenge.code_verifier not in repr(challenge)


class TestPendingAuthorizationStore:

    def test_consume_returns_pending_once(self, fake_clock):
        store = PendingAuthorizationStore(clock=fake_clock)
        challenge = PKCEChallenge.generate()
        store.add(challenge, "tenant-1", redirect_uri="https://app.example.com/etsy/callback")

        pending = store.consume(challenge.state)

        assert pending.challenge == challenge
        assert pending.tenant_id == "tenant-1"
        assert pending.redirect_uri == "https://app.example.com/etsy/callback"
        with pytest.raises(InvalidGrant):
            store.consume(challenge.state)

    def test_unknown_state_is_invalid_grant(self, fake_clock):
        store = PendingAuthorizationStore(clock=fake_clock)

        with pytest.raises(InvalidGrant):
            store.consume("never-issued")

    def test_expired_state_is_invalid_grant(self, fake_clock):
        store = PendingAuthorizationStore(ttl=timedelta(minutes=10), clock=fake_clock)
        challenge = PKCEChallenge.generate()
        store.add(challenge, "tenant-1")

        fake_clock.advance(minutes=11)

        with pytest.raises(InvalidGrant, match="expired"):
            store.consume(challenge.state)
        assert len(store) == 0

    def test_peek_does_not_consume(self, fake_clock):
        store = PendingAuthorizationStore(clock=fake_clock)
        challenge = PKCEChallenge.generate()
        store.add(challenge, "tenant-1")

        assert store.peek(challenge.state).tenant_id == "tenant-1"
        assert store.peek("never-issued") is None
        assert store.consume(challenge.state).tenant_id == "tenant-1"

    def test_add_purges_expired_entries(self, fake_clock):
        store = PendingAuthorizationStore(ttl=timedelta(minutes=10), clock=fake_clock)
        store.add(PKCEChallenge.generate(), "tenant-1")

        fake_clock.advance(minutes=30)
        store.add(PKCEChallenge.generate(), "tenant-2")

        assert len(store) == 1
