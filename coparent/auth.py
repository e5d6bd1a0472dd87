"""
Authentication seam
Session tokens are issued by the auth service as HS256 JWTs with the user id in
`sub`; this module verifies them and loads the User.
"""
import logging
from datetime import timedelta
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from sqlalchemy.orm import Session

from .config import JWT_ALGORITHM, SECRET_KEY
from .database import get_db
from .models import User, utcnow

logger = logging.getLogger(__name__)

security = HTTPBearer()

OAUTH_STATE_PURPOSE = "calendar_connect"


def create_jwt_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT token

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time (default 15 minutes)
    """
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_jwt_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Session token as the auth service mints it"""
    return create_jwt_token({"sub": str(user_id)}, expires_delta or timedelta(hours=12))


def create_oauth_state(user_id: int) -> str:
    """Short-lived state value binding a provider consent screen to the user who opened it"""
    return create_jwt_token({"sub": str(user_id), "purpose": OAUTH_STATE_PURPOSE}, timedelta(minutes=10))


def verify_oauth_state(state: str, user_id: int) -> bool:
    payload = verify_jwt_token(state)
    return bool(
        payload
        and payload.get("purpose") == OAUTH_STATE_PURPOSE
        and payload.get("sub") == str(user_id)
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to a User"""
    payload = verify_jwt_token(credentials.credentials)
    if not payload or payload.get("purpose"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError) as e:
        logger.error("❌ Token missing user id")
        raise HTTPException(status_code=401, detail="Invalid token") from e

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"⚠️ Token for unknown user {user_id}")
        raise HTTPException(status_code=401, detail="User not found")

    logger.debug(f"✅ User authenticated: {user.email}")
    return user
