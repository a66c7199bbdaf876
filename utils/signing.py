"""
Cookie Signing Utilities

Provides HMAC signatures for visitor-held tokens (session and dedup cookies).
Tokens are signed so a visitor cannot forge clicks they never made.

Usage:
    from utils.signing import sign_value, unsign_value

    cookie_value = sign_value("abc...:1700000000", SECRET_KEY)
    payload = unsign_value(cookie_value, SECRET_KEY)  # None if tampered
"""
import hmac
import hashlib
from typing import Optional

SIGNATURE_LENGTH = 32


def _signature(payload: str, secret: str) -> str:
    return hmac.new(
        secret.encode('utf-8'),
        payload.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()[:SIGNATURE_LENGTH]  # Truncated to keep cookies short


def sign_value(payload: str, secret: str) -> str:
    """
    Sign a payload.

    Token format: {payload}.{signature}
    Signature is HMAC-SHA256 of the payload using secret.

    Args:
        payload: Cookie payload; must not contain '.'
        secret: App secret key for signing

    Returns:
        Signed token string
    """
    if not secret:
        raise ValueError("A secret is required to sign cookie values.")
    return f"{payload}.{_signature(payload, secret)}"


def unsign_value(token: str, secret: str) -> Optional[str]:
    """
    Verify a signed token.

    Args:
        token: The token string from the cookie
        secret: App secret key for verification

    Returns:
        The payload if the signature is valid, None otherwise
    """
    if not token or not secret:
        return None

    payload, sep, provided_sig = token.rpartition('.')
    if not sep or len(provided_sig) != SIGNATURE_LENGTH:
        return None

    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(_signature(payload, secret), provided_sig):
        return None

    return payload
