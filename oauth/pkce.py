"""PKCE (Proof Key for Code Exchange) helpers, S256 only."""

import base64
import hashlib
import hmac
import secrets

CHALLENGE_METHOD = "S256"


def compute_challenge(verifier: str) -> str:
    """Return BASE64URL(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def issue_challenge() -> tuple[str, str]:
    """Generate a (verifier, challenge) pair.

    The verifier carries 32 random bytes, which base64url-encodes to 43
    characters, the minimum length RFC 7636 allows.
    """
    verifier = secrets.token_urlsafe(32)
    return verifier, compute_challenge(verifier)


def verify_challenge(verifier: str, challenge: str) -> bool:
    return hmac.compare_digest(compute_challenge(verifier), challenge)
