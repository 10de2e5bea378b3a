"""PKCE (RFC 7636) code verifier checks."""

import base64
import hashlib
import hmac

SUPPORTED_METHODS = ("S256", "plain")


def s256_challenge(code_verifier: str) -> str:
    """Return base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def verify_code_verifier(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    """Check a client-supplied verifier against the stored challenge.

    Args:
        code_verifier: The secret sent by the client to the token endpoint
        code_challenge: The challenge stored when the code was issued
        method: "S256" or "plain"

    Returns:
        True if the verifier matches, False otherwise (including unknown methods)
    """
    if not code_verifier or not code_challenge:
        return False

    if method == "S256":
        expected = s256_challenge(code_verifier)
    elif method == "plain":
        expected = code_verifier
    else:
        return False

    return hmac.compare_digest(expected.encode(), code_challenge.encode())
