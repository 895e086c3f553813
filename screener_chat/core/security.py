import secrets
from datetime import datetime, timedelta, timezone
from jose import jwt
from .config import settings


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _jti() -> str:
    return secrets.token_urlsafe(32)


def create_access_token(user_id: str) -> tuple[str, int]:
    # Tokens are minted by the identity service; this is kept for local tooling and tests.
    ttl = int(settings.JWT_ACCESS_TTL_SECONDS)
    exp = _now() + timedelta(seconds=ttl)
    payload = {
        "sub": user_id,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": int(_now().timestamp()),
        "exp": int(exp.timestamp()),
        "typ": "access",
        "jti": _jti(),
    }
    token = jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")
    return token, ttl


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
        options={"verify_aud": True, "verify_iss": True},
    )
