"""
Signed unsubscribe links.

Token = hex HMAC-SHA256 of the lowercased email under UNSUBSCRIBE_SECRET.
"""

import hashlib
import hmac
from urllib.parse import urlencode

from palette.config import Config


def _secret() -> bytes:
    secret = Config.UNSUBSCRIBE_SECRET
    if not secret:
        raise RuntimeError("UNSUBSCRIBE_SECRET is not configured")
    return secret.encode()


def generate_unsubscribe_token(email: str) -> str:
    return hmac.new(_secret(), email.strip().lower().encode(), hashlib.sha256).hexdigest()


def verify_unsubscribe_token(email: str, token: str) -> bool:
    """Constant-time check of a token against the email it claims to sign."""
    if not email or not token:
        return False
    expected = generate_unsubscribe_token(email)
    return hmac.compare_digest(expected, token)


def build_unsubscribe_url(email: str, base_url: str | None = None) -> str:
    base = (base_url or Config.FRONTEND_URL).rstrip("/")
    query = urlencode({"email": email, "token": generate_unsubscribe_token(email)})
    return f"{base}/api/unsubscribe?{query}"
