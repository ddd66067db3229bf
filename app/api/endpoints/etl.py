from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models, schemas
from app.core.database import get_db
from app.core.security import get_current_user, validate_admin_role
from app.core.etl import pipeline

router = APIRouter(prefix="/etl", tags=["ETL"])

db_dep = Annotated[AsyncSession, Depends(get_db)]
user_dep = Annotated[models.User, Depends(get_current_user)]
admin_dep = Annotated[models.User, Depends(validate_admin_role)]


@router.post("/run-csv")
async def run_csv_pipeline(
    admin: admin_dep,
    db: db_dep,
    file: UploadFile = File(...),
):
    """
    Run the full ETL pipeline with a CSV upload:
    ingest -> transform -> load into daily_changes_snapshot.
    """
    file_content = await file.read()
    if not file_content:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, "Uploaded file is empty or unreadable"
        )

    return await pipeline.run_complete_etl_pipeline(
        run_by=admin.id, db=db, file_content=file_content
    )


@router.post("/run-api")
async def run_api_pipeline(
    admin: admin_dep,
    payload: schemas.ApiIngestRequest,
    db: db_dep,
):
    """
    Run the full ETL pipeline with an API source.
    Provide URL/headers/params in the request body.
    """
    return await pipeline.run_complete_etl_pipeline(
        run_by=admin.id, db=db, api_config=payload.api_config.model_dump()
    )


@router.post("/transform-only")
async def transform_only(admin: admin_dep, db: db_dep):
    """Clean every unprocessed staged row."""
    return await pipeline.run_transform_pipeline(admin.id, db)


@router.post("/load-only")
async def load_only(admin: admin_dep, db: db_dep):
    """Upsert clean staged rows into the snapshot table."""
    return await pipeline.run_load_pipeline(admin.id, db)


@router.get("/status")
async def get_status(current_user: user_dep, db: db_dep):
    """Staging backlog and snapshot coverage."""
    return await pipeline.get_pipeline_status(db)


@router.get("/health")
async def health_check(admin: admin_dep, db: db_dep):
    """Admin-only health check for the data layer."""
    return await pipeline.get_pipeline_health_check(db)
