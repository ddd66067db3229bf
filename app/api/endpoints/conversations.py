import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core import models, schemas
from app.core.database import get_db
from app.core.security import get_current_user

router = APIRouter(prefix="/conversations", tags=["Conversations"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]


async def _get_owned(conversation_id: int, user: models.User, db: AsyncSession):
    query = (
        select(models.Conversation)
        .options(selectinload(models.Conversation.messages))
        .where(
            models.Conversation.id == conversation_id,
            models.Conversation.owner_id == user.id,
        )
    )
    result = await db.execute(query)
    conversation = result.scalars().first()
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found"
        )
    return conversation


@router.get("", response_model=List[schemas.ConversationResponse])
async def list_conversations(current_user: user_dep, db: db_dep):
    query = (
        select(models.Conversation)
        .where(models.Conversation.owner_id == current_user.id)
        .order_by(models.Conversation.id.desc())
    )
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{conversation_id}", response_model=schemas.ConversationDetail)
async def get_conversation(conversation_id: int, current_user: user_dep, db: db_dep):
    return await _get_owned(conversation_id, current_user, db)


@router.delete("/{conversation_id}")
async def delete_conversation(
    conversation_id: int, current_user: user_dep, db: db_dep
):
    conversation = await _get_owned(conversation_id, current_user, db)
    try:
        await db.delete(conversation)
        await db.commit()
        return {"Result": "Conversation deleted"}
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to delete conversation {conversation_id}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete conversation",
        )
