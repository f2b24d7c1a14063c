import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from ..config import settings


def compute_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 of the raw body, hex encoded"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, provided: Optional[str]) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature in constant time.

    Accepts the bare hex digest, a `sha256=` prefixed digest, or the
    base64 encoding of the raw digest.
    """
    if not provided or not secret:
        return False

    value = provided.strip()
    if value.lower().startswith("sha256="):
        value = value[7:]

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if hmac.compare_digest(value.lower(), digest.hex()):
        return True
    return hmac.compare_digest(value, base64.b64encode(digest).decode("ascii"))


def content_hash(body: bytes) -> str:
    """SHA256 of the full (untruncated) body"""
    return hashlib.sha256(body).hexdigest()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (used by ops tooling and tests)"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and verify a JWT token"""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
