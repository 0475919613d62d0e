"""
Auth Router — Password login issuing JWT access tokens.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db
from core.security import authenticate_user, create_access_token, token_claims

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
logger = structlog.get_logger()


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


@router.post("/login")
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Exchange email + password for a bearer token."""
    user = await authenticate_user(db, body.email, body.password)
    if user is None:
        logger.info("auth.login_rejected", email=body.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )

    token = create_access_token(token_claims(user))
    logger.info("auth.login", user_id=user.user_id)
    return {
        "success": True,
        "data": {
            "access_token": token,
            "token_type": "bearer",
            "user": {"id": user.user_id, "name": user.name, "email": user.email, "role": user.role},
        },
    }


@router.get("/me")
async def me(user: dict = Depends(get_current_user)):
    return {"success": True, "data": {"id": user.get("sub"), "email": user.get("email"), "role": user.get("role")}}
