"""
shared/utils/security.py
Access token codec and Razorpay HMAC checks.
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings

TOKEN_TYPE = "access"


# ── Access tokens ─────────────────────────────────────────────

def create_access_token(user_id: str, role: str, email: str) -> tuple[str, str]:
    """
    Mint a token in the identity provider's format. The API never issues
    tokens to callers; this exists for operators and the test-suite.
    Returns (token, jti).
    """
    issued_at = datetime.now(timezone.utc)
    jti = uuid.uuid4().hex
    claims = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "type": TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Raises JWTError for a bad signature, an expired token or a non-access token."""
    claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != TOKEN_TYPE:
        raise JWTError("Not an access token")
    return claims


# ── Razorpay ──────────────────────────────────────────────────

def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_razorpay_signature(
    order_id: str,
    payment_id: str,
    signature: str,
    key_secret: Optional[str] = None,
) -> bool:
    """Checkout callback: HMAC of "order_id|payment_id" under the key secret."""
    secret = settings.RAZORPAY_KEY_SECRET if key_secret is None else key_secret
    expected = _hmac_sha256(secret, f"{order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected, signature)


def verify_razorpay_webhook_signature(payload_body: bytes, signature: str) -> bool:
    expected = _hmac_sha256(settings.RAZORPAY_WEBHOOK_SECRET, payload_body)
    return hmac.compare_digest(expected, signature)
