"""
Dimeloc Security Utilities

Bearer tokens for field staff and password checks against the users table.
Tokens carry the user id as ``sub`` plus ``role``; the visit and analysis
layers trust those claims as-is.
"""

from datetime import datetime, timedelta

import structlog
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import User

logger = structlog.get_logger()

USER_ROLES = ("collaborator", "advisor", "admin")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def token_claims(user: User) -> dict:
    """Claims embedded in a field-staff access token."""
    return {"sub": user.user_id, "email": user.email, "role": user.role, "name": user.name}


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Sign ``data`` with an expiry taken from settings unless overridden."""
    runtime_settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=runtime_settings.jwt_expire_hours))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, runtime_settings.jwt_secret, algorithm=runtime_settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Return the claims, or None when the token is invalid, expired, or missing ``sub``."""
    runtime_settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            runtime_settings.jwt_secret,
            algorithms=[runtime_settings.jwt_algorithm],
        )
    except JWTError:
        return None
    if not claims.get("sub"):
        return None
    return claims


async def authenticate_user(db: AsyncSession, email: str, password: str) -> User | None:
    """Look up an active user by email (case-insensitive) and check the password."""
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user
