import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, refresh_header
from app.api.schemas.auth import LoginRequest, RefreshRequest, TokenPair
from app.core.db import get_session
from app.core.security import decode_refresh_token
from app.models.user import User, UserPublic
from app.services.auth_service import (
    login_user,
    refresh_tokens,
    revoke_refresh_token,
    user_to_public,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _token_pair(user: User, access: str, refresh: str, expires_in: int) -> TokenPair:
    """Tokens plus the viewer scope the calendar needs on first paint."""
    return TokenPair(
        access_token=access,
        refresh_token=refresh,
        expires_in=expires_in,
        role=user.role,
        therapist_id=user.therapist_id,
    )


def _presented_token(header: str | None, body: RefreshRequest | None) -> str | None:
    return header or (body.refresh_token if body else None)


@router.post("/login", response_model=TokenPair)
async def login(
    body: LoginRequest,
    session: AsyncSession = Depends(get_session),
) -> TokenPair:
    pair = await login_user(session, body.email, body.password)
    if not pair:
        logger.info("Failed login for %s", body.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    user = pair[0]
    logger.info("User %s logged in as %s", user.id, user.role)
    return _token_pair(*pair)


@router.post("/refresh", response_model=TokenPair)
async def refresh(
    session: AsyncSession = Depends(get_session),
    x_refresh_token: str | None = Depends(refresh_header),
    body: RefreshRequest | None = None,
) -> TokenPair:
    """Rotate the refresh token; the presented one stops working."""
    token = _presented_token(x_refresh_token, body)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required (header X-Refresh-Token or body refresh_token)",
        )
    pair = await refresh_tokens(session, token)
    if not pair:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired refresh token")
    return _token_pair(*pair)


@router.post("/logout")
async def logout(
    session: AsyncSession = Depends(get_session),
    x_refresh_token: str | None = Depends(refresh_header),
    body: RefreshRequest | None = None,
) -> dict:
    token = _presented_token(x_refresh_token, body)
    user_id, jti = decode_refresh_token(token) if token else (None, None)
    if jti:
        await revoke_refresh_token(session, jti)
        logger.info("User %s logged out", user_id)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserPublic)
async def me(current_user: User = Depends(get_current_user)) -> UserPublic:
    return user_to_public(current_user)
