import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models, schemas
from app.core.database import get_db
from app.core.security import get_current_user, hash_password, validate_admin_role

router = APIRouter(prefix="/profile", tags=["Users"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
admin_dep = Annotated[models.User, Depends(validate_admin_role)]


async def _find_user(db: AsyncSession, **filters) -> Optional[models.User]:
    query = select(models.User).filter_by(**filters)
    result = await db.execute(query)
    return result.scalars().first()


@router.post(
    "/signup",
    response_model=schemas.UserResponse,
    status_code=status.HTTP_201_CREATED,
)
async def sign_up(user: schemas.CreateUser, db: db_dep):
    if await _find_user(db, email=user.email):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="User already exists"
        )

    new_user = models.User(
        email=user.email,
        password=hash_password(user.password),
        role=schemas.UserRole.USER.value,
    )
    try:
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to add a new user: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to sign up",
        )
    return new_user


# Declared before /{user_id} so "stats" is not parsed as an id
@router.get("/stats")
async def get_user_stats(current_user: user_dep, db: db_dep):
    """Conversations and answered questions per path for the caller."""
    conversations = await db.execute(
        select(func.count(models.Conversation.id)).where(
            models.Conversation.owner_id == current_user.id
        )
    )

    by_path_query = (
        select(models.Message.path, func.count(models.Message.id).label("count"))
        .join(models.Conversation)
        .where(
            models.Conversation.owner_id == current_user.id,
            models.Message.role == "assistant",
        )
        .group_by(models.Message.path)
    )
    by_path = await db.execute(by_path_query)
    questions_by_path = {row.path: row.count for row in by_path.all() if row.path}

    return {
        "total_conversations": conversations.scalar() or 0,
        "total_questions": sum(questions_by_path.values()),
        "questions_by_path": questions_by_path,
    }


@router.get("/{user_id}", response_model=schemas.UserResponse)
async def get_user(user_id: int, db: db_dep):
    db_user = await _find_user(db, id=user_id)
    if db_user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        )
    return db_user


@router.delete("/{user_id}")
async def delete_user(user_id: int, admin: admin_dep, db: db_dep):
    """Admin only. Conversations and messages go with the user."""
    if admin.id == user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot delete your own admin account.",
        )

    user_to_delete = await _find_user(db, id=user_id)
    if user_to_delete is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User with id: {user_id} does not exist",
        )

    try:
        await db.delete(user_to_delete)
        await db.commit()
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to delete user {user_id}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete a user",
        )
    return {"Result": "Successfully deleted a user"}
