from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

import jwt
from passlib.hash import pbkdf2_sha256

from isp_crm.config import settings


class TokenError(Exception):
    """Raised when a bearer token is missing, malformed, expired or forged."""


def hash_password(plain: str) -> str:
    return pbkdf2_sha256.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pbkdf2_sha256.verify(plain, hashed)
    except ValueError:
        # Not a pbkdf2 hash; never a match.
        return False


def create_access_token(
    user_id: int,
    role: str,
    tenant_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> tuple[str, dict]:
    """Return an HS256-signed token and its claims."""
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "role": role,
        "tenant_id": tenant_id,
        "jti": uuid4().hex,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(hours=settings.jwt_expire_hours)).timestamp()),
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, claims


def decode_access_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenError("invalid token") from exc
    if "sub" not in claims or "jti" not in claims:
        raise TokenError("invalid token")
    return claims
