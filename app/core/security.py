from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models
from app.core.config import settings
from app.core.database import get_db
from app.core.schemas import UserRole

db_dep = Annotated[AsyncSession, Depends(get_db)]

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Swagger "Authorize" posts the form here
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="profile/token")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict) -> str:
    """Sign `data` plus an `exp` claim ACCESS_TOKEN_EXPIRE_MINUTES from now."""
    claims = dict(data)
    claims["exp"] = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Verify signature and expiry.

    Raises:
        jwt.InvalidTokenError: bad signature, garbage or expired token
    """
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)], db: db_dep
) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        user_id = decode_access_token(token).get("user_id")
    except jwt.InvalidTokenError:
        raise credentials_exception
    if user_id is None:
        raise credentials_exception

    # Role is re-read from the db, the token claim is informational only
    result = await db.execute(select(models.User).where(models.User.id == user_id))
    user = result.scalars().first()
    if user is None:
        raise credentials_exception
    return user


async def validate_admin_role(
    current_user: Annotated[models.User, Depends(get_current_user)],
) -> models.User:
    if current_user.role != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have enough privileges (Admin only)",
        )
    return current_user
