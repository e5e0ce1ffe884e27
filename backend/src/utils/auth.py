from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt
from backend.src.core.config import settings

# JWT Configuration
ALGORITHM = "HS256"


def create_access_token(data: dict, expires_minutes: Optional[int] = None, secret_key: Optional[str] = None):
    """Caller identity token; `sub` carries the user id."""
    to_encode = data.copy()
    minutes = expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key or settings.SECRET_KEY, algorithm=ALGORITHM)
