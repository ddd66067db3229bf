import logging
from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models, schemas
from app.core.database import get_db
from app.core.security import get_current_user, validate_admin_role
from app.ai_feature import retrieval

router = APIRouter(prefix="/documents", tags=["Documents"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
admin_dep = Annotated[models.User, Depends(validate_admin_role)]


@router.post(
    "", response_model=schemas.DocumentResponse, status_code=status.HTTP_201_CREATED
)
async def add_document(payload: schemas.DocumentCreate, admin: admin_dep, db: db_dep):
    """Store a document for the Insight path (chunked on the way in)."""
    try:
        document = await retrieval.ingest_document(
            db, title=payload.title, content=payload.content, source=payload.source
        )
    except Exception as error:
        await db.rollback()
        logging.error(f"Failed to store document: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store document",
        )

    return schemas.DocumentResponse(
        id=document.id,
        title=document.title,
        source=document.source,
        created_at=document.created_at,
        chunk_count=len(document.chunks),
    )


@router.get("", response_model=List[schemas.DocumentResponse])
async def list_documents(current_user: user_dep, db: db_dep):
    query = (
        select(models.Document, func.count(models.DocumentChunk.id).label("chunks"))
        .outerjoin(models.DocumentChunk)
        .group_by(models.Document.id)
        .order_by(models.Document.id)
    )
    result = await db.execute(query)
    return [
        schemas.DocumentResponse(
            id=doc.id,
            title=doc.title,
            source=doc.source,
            created_at=doc.created_at,
            chunk_count=chunks,
        )
        for doc, chunks in result.all()
    ]


@router.get("/search", response_model=List[schemas.SearchHit])
async def search_documents(
    current_user: user_dep,
    db: db_dep,
    q: str = Query(min_length=1),
    top_k: int = Query(default=5, ge=1, le=50),
):
    """Ranked chunks for a query, the same retrieval the Insight path uses."""
    hits = await retrieval.search_documents(db, q, top_k)
    return [
        schemas.SearchHit(
            document_id=hit.document.id,
            title=hit.document.title,
            chunk_id=hit.chunk.id,
            position=hit.chunk.position,
            score=hit.score,
            text=hit.chunk.text,
        )
        for hit in hits
    ]
