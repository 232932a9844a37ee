from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_admin_user
from app.api.schemas.auth import CreateUserRequest
from app.core.db import get_session
from app.models.user import ROLE_ADMIN, ROLE_THERAPIST, User, UserCreate, UserPublic
from app.services.auth_service import create_user, get_user_by_email, list_users, user_to_public

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserPublic])
async def list_all_users(
    session: AsyncSession = Depends(get_session),
    _admin: User = Depends(get_admin_user),
) -> list[UserPublic]:
    return [user_to_public(u) for u in await list_users(session)]


@router.post("", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def create_account(
    body: CreateUserRequest,
    session: AsyncSession = Depends(get_session),
    _admin: User = Depends(get_admin_user),
) -> UserPublic:
    if body.role not in (ROLE_ADMIN, ROLE_THERAPIST):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Role must be admin or therapist")
    if body.role == ROLE_THERAPIST and not (body.therapist_id or "").strip():
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Therapist id is required")
    if await get_user_by_email(session, body.email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An account with this email already exists")
    user = await create_user(
        session,
        UserCreate(
            email=body.email,
            password=body.password,
            full_name=body.full_name,
            role=body.role,
            therapist_id=body.therapist_id,
        ),
    )
    return user_to_public(user)
