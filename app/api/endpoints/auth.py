from typing import Annotated
from fastapi import APIRouter, HTTPException, status, Depends
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core import schemas, models
from app.core.database import get_db
from app.core.security import get_current_user, verify_password, create_access_token

router = APIRouter(prefix="/profile", tags=["Authentication"])

db_dep = Annotated[AsyncSession, Depends(get_db)]


async def _authenticate(email: str, password: str, db: AsyncSession) -> dict:
    query = select(models.User).where(models.User.email == email)
    result = await db.execute(query)
    db_user = result.scalars().first()

    # Same answer for unknown email and wrong password
    if not db_user or not verify_password(password, db_user.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = create_access_token({"user_id": db_user.id, "role": db_user.role})
    return {"access_token": token, "token_type": "bearer"}


@router.post("/login", status_code=status.HTTP_200_OK)
async def verify_user(user_credentials: schemas.UserLogin, db: db_dep):
    return await _authenticate(user_credentials.email, user_credentials.password, db)


# Form flavour of login so the OpenAPI "Authorize" button works
@router.post("/token", status_code=status.HTTP_200_OK)
async def issue_token(
    form: Annotated[OAuth2PasswordRequestForm, Depends()], db: db_dep
):
    return await _authenticate(form.username, form.password, db)


@router.get("/me", response_model=schemas.UserResponse)
async def read_me(current_user: Annotated[models.User, Depends(get_current_user)]):
    return current_user
