"""Tests for oauth/pkce.py and the PKCE store."""
import base64
import hashlib

import pytest

from oauth.pkce import compute_challenge, issue_challenge, verify_challenge
from oauth.stores import PkceStore


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return PkceStore(ttl=600, clock=clock)


class TestChallenge:
    def test_challenge_is_sha256_of_verifier(self):
        for _ in range(20):
            verifier, challenge = issue_challenge()
            expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
            assert challenge == expected
            assert verify_challenge(verifier, challenge)

    def test_verifier_length_and_alphabet(self):
        verifier, challenge = issue_challenge()
        assert 43 <= len(verifier) <= 128
        assert "=" not in verifier and "=" not in challenge

    def test_pairs_are_unique(self):
        verifiers = {issue_challenge()[0] for _ in range(50)}
        assert len(verifiers) == 50

    def test_rfc7636_appendix_b_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert compute_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_wrong_verifier_does_not_match(self):
        _, challenge = issue_challenge()
        other, _ = issue_challenge()
        assert not verify_challenge(other, challenge)


class TestPkceStore:
    def test_redeem_is_one_time(self, store):
        store.remember("abc123", "verifier-1")
        assert store.redeem("abc123") == "verifier-1"
        assert store.redeem("abc123") is None

    def test_unknown_flow(self, store):
        assert store.redeem("never-issued") is None

    def test_expired_flow_is_not_found(self, store, clock):
        store.remember("abc123", "verifier-1")
        clock.advance(601)
        assert store.redeem("abc123") is None

    def test_just_before_expiry(self, store, clock):
        store.remember("abc123", "verifier-1")
        clock.advance(599)
        assert store.redeem("abc123") == "verifier-1"

    def test_remember_overwrites_with_fresh_expiry(self, store, clock):
        store.remember("abc123", "old")
        clock.advance(500)
        store.remember("abc123", "new")
        clock.advance(500)
        assert store.redeem("abc123") == "new"

    def test_sweep_reclaims_expired_entries(self, store, clock):
        store.remember("a", "1")
        store.remember("b", "2")
        clock.advance(700)
        store.remember("c", "3")  # triggers the opportunistic sweep
        assert len(store) == 1
        assert store.redeem("a") is None
        assert store.redeem("c") == "3"
