"""
Account registration and login for queue users.

Anonymous callers can still join a queue with an X-Session-ID header; an
account is needed to hold a purchase session and to be counted against the
per-user ticket allowance.
"""

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ticketqueue.core.logging import get_logger
from ticketqueue.core.security import create_access_token, hash_password, verify_password
from ticketqueue.models.user import User
from ticketqueue.schemas.user import UserCreate, UserLogin

logger = get_logger(__name__)


async def register_user(db: AsyncSession, user_data: UserCreate) -> User:
    """Create an account. 409 if the email or username is taken."""
    result = await db.execute(
        select(User).where(or_(User.email == user_data.email, User.username == user_data.username))
    )
    existing = result.scalars().first()
    if existing is not None:
        field = "email" if existing.email == user_data.email else "username"
        logger.warning("registration_failed", reason=f"{field}_exists")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered" if field == "email" else "Username already taken",
        )

    user = User(
        email=user_data.email,
        username=user_data.username,
        hashed_password=hash_password(user_data.password),
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)

    logger.info("user_registered", user_id=user.id)
    return user


async def authenticate_user(db: AsyncSession, login_data: UserLogin) -> tuple[User, str]:
    """Check credentials and issue an access token. 401 on bad credentials."""
    result = await db.execute(select(User).where(User.email == login_data.email))
    user = result.scalar_one_or_none()

    if not user or not verify_password(login_data.password, user.hashed_password):
        logger.warning("login_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated",
        )

    token = create_access_token(data={"sub": str(user.id), "admin": user.is_admin})
    logger.info("user_logged_in", user_id=user.id)
    return user, token
