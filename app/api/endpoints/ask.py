import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models, schemas
from app.core.database import get_db
from app.core.security import get_current_user
from app.ai_feature.errors import LLMError
from app.ai_feature.executor import ReadOnlyExecutor, get_executor
from app.ai_feature.llm import LLMClient, get_llm
from app.ai_feature.service import AskService, ConversationNotFound

router = APIRouter(tags=["Ask"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
llm_dep = Annotated[LLMClient, Depends(get_llm)]
executor_dep = Annotated[ReadOnlyExecutor, Depends(get_executor)]


@router.post("/ask", response_model=schemas.AskResponse)
async def ask_question(
    payload: schemas.AskRequest,
    current_user: user_dep,
    db: db_dep,
    llm: llm_dep,
    executor: executor_dep,
):
    """
    Answer a natural-language question.

    The question is routed to the Insight (documents), Exact (SQL) or
    Prediction (forecast) path. Pass `conversation_id` to continue a chat.
    """
    service = AskService(db, llm, executor)
    try:
        return await service.ask(current_user, payload)
    except ConversationNotFound:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found"
        )
    except LLMError as error:
        await db.rollback()
        logging.error(f"Model call failed while answering: {error}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Language model unavailable: {error}",
        )
