import uuid
from datetime import datetime, timedelta, timezone

import jwt

from agrirent.config import settings

TOKEN_ISSUER = "agrirent"


def create_access_token(user_id: str) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": user_id,
        "exp": expire,
        "iat": now,
        "iss": TOKEN_ISSUER,
        "type": "access",
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """Return the user id carried by a valid access token.

    Raises ``jwt.PyJWTError`` for anything that is not a signed, unexpired
    access token issued by this service.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        issuer=TOKEN_ISSUER,
        options={"verify_iss": True},
    )
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Not an access token")
    user_id = payload.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("Token has no subject")
    return user_id
