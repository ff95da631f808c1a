"""
JWT bearer token utilities.

Tokens are issued by the account service; this service only verifies them.
create_access_token exists for tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from uuid import UUID
from jose import JWTError, jwt
from filevault.config import settings
from filevault.schemas.auth import TokenData


def create_access_token(user_id: UUID, email: str) -> str:
    """
    Create a signed access token for a user.

    Args:
        user_id: User's UUID
        email: User's email address

    Returns:
        Encoded JWT token string
    """
    expire = datetime.now(timezone.utc) + timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    claims = {
        "sub": str(user_id),
        "email": email,
        "exp": expire,
        "type": "access"
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> TokenData:
    """
    Verify and decode an access token.

    Raises:
        JWTError: If the token is invalid, expired or not an access token
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError as e:
        raise JWTError(f"Token verification failed: {e}") from e

    subject: str | None = payload.get("sub")
    token_type: str = payload.get("type", "access")

    if subject is None:
        raise JWTError("Token verification failed: missing subject")
    if token_type != "access":
        raise JWTError(f"Token verification failed: unexpected token type {token_type}")

    try:
        user_id = UUID(subject)
    except ValueError as e:
        raise JWTError("Token verification failed: subject is not a UUID") from e

    return TokenData(user_id=user_id, email=payload.get("email"), token_type=token_type)
