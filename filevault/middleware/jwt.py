"""
Bearer token authentication dependency.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from jose import JWTError

from filevault.database import get_db
from filevault.models.user import User
from filevault.services.database import db_service
from filevault.utils.jwt import verify_token
from filevault.utils.logger import get_logger

logger = get_logger("auth")

security = HTTPBearer()


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Resolve the authenticated user from the bearer token.

    Raises:
        HTTPException: 401 for a bad token or unknown user, 403 for a deactivated account
    """
    try:
        token_data = verify_token(credentials.credentials)
    except JWTError as e:
        logger.warning("JWT verification failed", error=str(e))
        raise _unauthorized()

    user = await db_service.get_user_by_id(db, token_data.user_id)
    if user is None:
        logger.warning("User not found for valid token", user_id=str(token_data.user_id))
        raise _unauthorized("User not found")

    if not user.is_active:
        logger.warning("Inactive user attempted access", user_id=str(user.id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated"
        )

    return user
