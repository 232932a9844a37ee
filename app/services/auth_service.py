import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.security import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_password,
    verify_password,
)
from app.models.refresh_token import RefreshToken
from app.models.user import ROLE_ADMIN, ROLE_THERAPIST, User, UserCreate, UserPublic

logger = logging.getLogger(__name__)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def create_user(session: AsyncSession, data: UserCreate) -> User:
    therapist_id = (data.therapist_id or "").strip() or None
    user = User(
        email=data.email.lower(),
        full_name=data.full_name,
        role=data.role,
        therapist_id=therapist_id if data.role == ROLE_THERAPIST else None,
        hashed_password=hash_password(data.password),
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.id))
    return list(result.scalars().all())


async def list_therapists(session: AsyncSession) -> list[User]:
    result = await session.execute(
        select(User).where(User.role == ROLE_THERAPIST, User.therapist_id.is_not(None)).order_by(User.id)
    )
    return list(result.scalars().all())


async def therapist_names(session: AsyncSession) -> dict[str, str]:
    """therapist_id -> display name, for messages that mention another therapist."""
    return {u.therapist_id: u.full_name or u.email for u in await list_therapists(session) if u.therapist_id}


async def bootstrap_admin(session: AsyncSession) -> User | None:
    """Create the first admin from settings when no user exists yet."""
    count = (await session.execute(select(func.count()).select_from(User))).scalar_one()
    if count:
        return None
    if not settings.bootstrap_admin_email or not settings.bootstrap_admin_password:
        logger.warning("No users and no BOOTSTRAP_ADMIN_EMAIL/BOOTSTRAP_ADMIN_PASSWORD set; nobody can log in")
        return None
    user = await create_user(
        session,
        UserCreate(
            email=settings.bootstrap_admin_email,
            password=settings.bootstrap_admin_password,
            full_name="Administrator",
            role=ROLE_ADMIN,
        ),
    )
    logger.info("Bootstrapped admin user %s", user.email)
    return user


def user_to_public(user: User) -> UserPublic:
    return UserPublic(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        therapist_id=user.therapist_id,
    )


def make_token_pair(user: User) -> tuple[str, str, int]:
    access = create_access_token(user.id, user.role, user.therapist_id)
    refresh = create_refresh_token(user.id)
    expires_in = settings.access_token_expire_minutes * 60
    return access, refresh, expires_in


async def store_refresh_token(session: AsyncSession, user_id: int, refresh_token: str) -> None:
    user_id_str, jti = decode_refresh_token(refresh_token)
    if not user_id_str or not jti:
        return
    expires_at = datetime.now(UTC) + timedelta(days=settings.refresh_token_expire_days)
    session.add(RefreshToken(user_id=user_id, jti=jti, expires_at=expires_at))
    await session.flush()


async def login_user(session: AsyncSession, email: str, password: str) -> tuple[User, str, str, int] | None:
    user = await get_user_by_email(session, email)
    if not user or not verify_password(password, user.hashed_password):
        return None
    access, refresh, expires_in = make_token_pair(user)
    await store_refresh_token(session, user_id=user.id, refresh_token=refresh)
    return user, access, refresh, expires_in


async def revoke_refresh_token(session: AsyncSession, jti: str) -> None:
    result = await session.execute(select(RefreshToken).where(RefreshToken.jti == jti))
    row = result.scalar_one_or_none()
    if row:
        row.revoked = True
        session.add(row)


async def refresh_tokens(session: AsyncSession, refresh_token: str) -> tuple[User, str, str, int] | None:
    """Rotate: the presented refresh token is revoked and a new pair issued."""
    user_id_str, jti = decode_refresh_token(refresh_token)
    if not user_id_str or not jti:
        return None
    result = await session.execute(
        select(RefreshToken).where(
            RefreshToken.jti == jti,
            RefreshToken.revoked == False,  # noqa: E712
            RefreshToken.expires_at > datetime.now(UTC),
        )
    )
    token_row = result.scalar_one_or_none()
    if not token_row:
        return None
    user = await session.get(User, int(user_id_str))
    if not user:
        return None
    token_row.revoked = True
    session.add(token_row)
    access, refresh, expires_in = make_token_pair(user)
    await store_refresh_token(session, user_id=user.id, refresh_token=refresh)
    return user, access, refresh, expires_in
