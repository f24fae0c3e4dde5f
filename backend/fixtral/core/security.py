from datetime import datetime, timedelta, timezone

from jose import jwt

from fixtral.core.config import settings
from fixtral.schemas import AuthUser

JWT_ALGORITHM = "HS256"
# Supabase signs end-user sessions with this audience.
JWT_AUDIENCE = "authenticated"


def decode_access_token(token: str, secret: str | None = None) -> AuthUser:
    """Verify a Supabase access token and return the identity it carries.

    Raises jose.JWTError when the signature, expiry or audience is wrong and
    ValueError when the token has no subject.
    """
    payload = jwt.decode(
        token,
        secret or settings.supabase_jwt_secret,
        algorithms=[JWT_ALGORITHM],
        audience=JWT_AUDIENCE,
    )
    sub = payload.get("sub")
    if not sub:
        raise ValueError("token has no subject")
    return AuthUser(id=str(sub), email=payload.get("email"))


def create_access_token(*, user_id: str, email: str | None = None, secret: str | None = None,
                        expires_minutes: int = 60) -> str:
    # Mirrors the claims Supabase issues; handy for local development.
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": JWT_AUDIENCE,
        "role": "authenticated",
        "iat": int(now.timestamp()),
        "exp": now + timedelta(minutes=expires_minutes),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret or settings.supabase_jwt_secret, algorithm=JWT_ALGORITHM)
