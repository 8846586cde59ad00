from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from campaign_ingest.config import settings


def create_super_admin_token(super_admin_id: str) -> str:
    """Create a signed JWT for a super-admin."""
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET is not configured")
    now = datetime.now(timezone.utc)
    payload = {
        "sub": super_admin_id,
        "type": "super_admin",
        "exp": now + timedelta(minutes=settings.jwt_expiration_minutes),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_super_admin_token(token: str) -> dict | None:
    """Decode and validate a super-admin JWT. Returns payload or None if invalid."""
    if not settings.jwt_secret:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        if payload.get("type") != "super_admin":
            return None
        return payload
    except JWTError:
        return None
