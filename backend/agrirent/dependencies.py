import uuid

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.auth.service import decode_access_token
from agrirent.database import get_db
from agrirent.models.enums import UserRole
from agrirent.models.user import User
from agrirent.services.events import EventEmitter
from agrirent.services.otp import OTPAuthority

logger = structlog.get_logger()
security = HTTPBearer()


async def load_user_from_token(db: AsyncSession, token: str) -> User:
    try:
        user_id = uuid.UUID(decode_access_token(token))
    except (jwt.PyJWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account has been deactivated. Contact support for more information.",
        )
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the bearer token, return the authenticated user."""
    return await load_user_from_token(db, credentials.credentials)


def _require_role(user: User, role: UserRole, detail: str) -> User:
    if user.role != role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    return user


async def get_current_farmer(user: User = Depends(get_current_user)) -> User:
    return _require_role(user, UserRole.FARMER, "Only farmers can access this resource")


async def get_current_admin(user: User = Depends(get_current_user)) -> User:
    return _require_role(user, UserRole.ADMIN, "Admin access required")


def get_otp_authority(request: Request) -> OTPAuthority:
    return request.app.state.otp_authority


def get_event_emitter(request: Request) -> EventEmitter:
    return request.app.state.event_emitter
