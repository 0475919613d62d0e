"""
Dimeloc API Dependencies

Dependency injection for DB sessions, auth, and the Text Analysis Provider.
"""

from collections.abc import AsyncGenerator
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from analysis.provider import GeminiProvider, TextAnalysisProvider
from core.config import get_settings
from core.security import decode_access_token

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

DEV_USER_ID = "dev-collaborator"


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session from the app's Database handle."""
    async with request.app.state.database.session() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return the verified identity. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": DEV_USER_ID,
            "email": "dev@dimeloc.mx",
            "role": "collaborator",
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


@lru_cache
def get_analysis_provider() -> TextAnalysisProvider:
    """Process-wide Gemini provider built from settings."""
    return GeminiProvider.from_settings(get_settings())
