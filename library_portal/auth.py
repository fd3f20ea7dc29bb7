from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from library_portal.settings import settings


class AuthNotConfigured(RuntimeError):
    pass


def _secret_key() -> str:
    if not settings.secret_key:
        raise AuthNotConfigured(
            "Authentication is not configured. Set SECRET_KEY in the environment or a .env file."
        )
    return settings.secret_key


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, _secret_key(), algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """Return the subject (profile e-mail) of a valid token, or None."""
    try:
        payload = jwt.decode(token, _secret_key(), algorithms=[settings.algorithm])
    except JWTError:
        return None
    return payload.get("sub")
