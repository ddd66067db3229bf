from typing import Annotated, List

from fastapi import APIRouter, Depends, HTTPException, status

from app.core import models, schemas
from app.core.config import settings
from app.core.security import get_current_user
from app.ai_feature.executor import ReadOnlyExecutor, get_executor
from app.ai_feature.schema_catalog import load_catalog

router = APIRouter(prefix="/schema", tags=["Schema"])

user_dep = Annotated[models.User, Depends(get_current_user)]
executor_dep = Annotated[ReadOnlyExecutor, Depends(get_executor)]


@router.get("/tables", response_model=List[str])
async def list_tables(current_user: user_dep, executor: executor_dep):
    """Tables the agent is allowed to query."""
    catalog = await load_catalog(executor.engine, settings.QUERYABLE_TABLES)
    return catalog.table_names()


@router.get("/tables/{table_name}", response_model=schemas.TableResponse)
async def describe_table(
    table_name: str, current_user: user_dep, executor: executor_dep
):
    catalog = await load_catalog(executor.engine, settings.QUERYABLE_TABLES)
    try:
        return catalog.describe(table_name).to_dict()
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Table '{table_name}' is not queryable",
        )
