from typing import Dict, Any, List, Optional
from datetime import datetime
from enum import Enum
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, inspect, table, text

from app.core import models
from app.core.config import settings
from app.core.etl import ingest, transform, load


# -----------------------------------------------------------------------------
# PIPELINE MODULE - Orchestration
# Purpose: run ingest -> transform -> load for Daily_Changes_Snapshot in order,
# stop at the first failed step, report status and step logs
# -----------------------------------------------------------------------------


class PipelineStatus(str, Enum):
    """Pipeline execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStep(str, Enum):
    """Individual pipeline steps."""

    INGEST = "ingest"
    TRANSFORM = "transform"
    LOAD = "load"


logger = logging.getLogger(__name__)


class PipelineLogger:
    """Custom logger for ETL pipeline operations."""

    def __init__(self, run_by: int):
        """
        Initialize a pipeline logger scoped to the user who started the run.

        Args:
            run_by: id of the (admin) user running the pipeline
        """
        self.run_by = run_by
        self.start_time = datetime.now()
        self.logs = []

    def log(self, step: str, message: str, level: str = "info"):
        """Record a step message and forward it to the module logger."""
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "step": step,
            "message": message,
            "level": level,
            "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
        }
        self.logs.append(log_entry)

        if level == "error":
            logger.error(f"[User {self.run_by}] {step}: {message}")
        elif level == "warning":
            logger.warning(f"[User {self.run_by}] {step}: {message}")
        else:
            logger.info(f"[User {self.run_by}] {step}: {message}")

    def get_logs(self) -> List[Dict[str, Any]]:
        return self.logs

    def get_summary(self) -> Dict[str, Any]:
        """Compact overview of the run for the API response."""
        end_time = datetime.now()
        return {
            "run_by": self.run_by,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "total_logs": len(self.logs),
            "logs": self.logs,
        }


async def run_ingest_pipeline(
    run_by: int,
    db: AsyncSession,
    file_content: Optional[bytes] = None,
    api_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Run the ingest step of the pipeline.

    This handles both CSV file uploads and API data fetching.

    Args:
        run_by: User running the pipeline
        file_content: CSV file content (for file uploads)
        api_config: {"url", "headers", "params", "source"} (for API fetching)
        db: Database session

    Returns:
        {"status", "result" | "error", "logs"}
    """
    pipeline_logger = PipelineLogger(run_by)
    pipeline_logger.log("ingest", "Starting data ingestion...")

    try:
        if file_content:
            pipeline_logger.log("ingest", "Processing CSV file...")
            result = await ingest.ingest_from_csv(file_content, db)
            pipeline_logger.log(
                "ingest",
                f"CSV processed: {result['saved']} saved, {result['duplicates']} duplicates",
            )

        elif api_config:
            url = api_config.get("url")
            if not url:
                raise ValueError("api_config.url is required for API ingestion")

            source = api_config.get("source") or api_config.get("type", "api")
            pipeline_logger.log("ingest", f"Fetching data from {source} API...")
            result = await ingest.ingest_from_api(
                url=url,
                db=db,
                headers=api_config.get("headers") or {},
                params=api_config.get("params"),
                source=source,
            )
            pipeline_logger.log(
                "ingest", f"API data processed: {result['saved']} saved"
            )
        else:
            raise ValueError("Either file_content or api_config must be provided")

        pipeline_logger.log("ingest", "Data ingestion completed successfully")
        return {
            "status": PipelineStatus.COMPLETED,
            "result": result,
            "logs": pipeline_logger.get_logs(),
        }

    except Exception as e:
        pipeline_logger.log("ingest", f"Ingestion failed: {str(e)}", "error")
        return {
            "status": PipelineStatus.FAILED,
            "error": str(e),
            "logs": pipeline_logger.get_logs(),
        }


async def run_transform_pipeline(run_by: int, db: AsyncSession) -> Dict[str, Any]:
    """Clean every unprocessed staged row."""
    pipeline_logger = PipelineLogger(run_by)
    pipeline_logger.log("transform", "Starting transformation...")

    try:
        result = await transform.transform_all_unprocessed(db)
        pipeline_logger.log(
            "transform",
            f"{result['cleaned']} cleaned, {result['rejected']} rejected",
            "warning" if result["rejected"] else "info",
        )
        return {
            "status": PipelineStatus.COMPLETED,
            "result": result,
            "logs": pipeline_logger.get_logs(),
        }
    except Exception as e:
        await db.rollback()
        pipeline_logger.log("transform", f"Transformation failed: {str(e)}", "error")
        return {
            "status": PipelineStatus.FAILED,
            "error": str(e),
            "logs": pipeline_logger.get_logs(),
        }


async def run_load_pipeline(run_by: int, db: AsyncSession) -> Dict[str, Any]:
    """Upsert clean rows into daily_changes_snapshot."""
    pipeline_logger = PipelineLogger(run_by)
    pipeline_logger.log("load", "Starting load...")

    try:
        result = await load.load_processed_data(db)
        result["snapshot"] = await load.get_snapshot_summary(db)
        pipeline_logger.log(
            "load",
            f"{result['inserted']} inserted, {result['updated']} updated",
        )
        return {
            "status": PipelineStatus.COMPLETED,
            "result": result,
            "logs": pipeline_logger.get_logs(),
        }
    except Exception as e:
        pipeline_logger.log("load", f"Loading failed: {str(e)}", "error")
        return {
            "status": PipelineStatus.FAILED,
            "error": str(e),
            "logs": pipeline_logger.get_logs(),
        }


async def run_complete_etl_pipeline(
    run_by: int,
    db: AsyncSession,
    file_content: Optional[bytes] = None,
    api_config: Optional[Dict[str, Any]] = None,
    steps_to_run: Optional[List[PipelineStep]] = None,
) -> Dict[str, Any]:
    """
    Run the complete ETL pipeline.

    Example flow:
        1. Ingest: CSV/API → snapshot_staging (raw)
        2. Transform: raw → clean columns on the staging row
        3. Load: clean → daily_changes_snapshot
    """
    if steps_to_run is None:
        steps_to_run = [PipelineStep.INGEST, PipelineStep.TRANSFORM, PipelineStep.LOAD]

    pipeline_logger = PipelineLogger(run_by)
    pipeline_logger.log("pipeline", "Starting ETL pipeline")
    pipeline_logger.log(
        "pipeline", f"Steps to run: {[step.value for step in steps_to_run]}"
    )

    step_results = {}
    pipeline_status = PipelineStatus.RUNNING

    if PipelineStep.INGEST in steps_to_run and (file_content or api_config):
        pipeline_logger.log("pipeline", "Step 1: Ingestion")
        step_results["ingest"] = await run_ingest_pipeline(
            run_by, db, file_content, api_config
        )

    if PipelineStep.TRANSFORM in steps_to_run and not _failed(step_results):
        pipeline_logger.log("pipeline", "Step 2: Transformation")
        step_results["transform"] = await run_transform_pipeline(run_by, db)

    if PipelineStep.LOAD in steps_to_run and not _failed(step_results):
        pipeline_logger.log("pipeline", "Step 3: Loading")
        step_results["load"] = await run_load_pipeline(run_by, db)

    failed_step = _failed(step_results)
    if failed_step:
        pipeline_status = PipelineStatus.FAILED
        pipeline_logger.log(
            "pipeline",
            f"ETL pipeline failed at {failed_step}: {step_results[failed_step]['error']}",
            "error",
        )
    else:
        pipeline_status = PipelineStatus.COMPLETED
        pipeline_logger.log("pipeline", "ETL pipeline completed successfully")

    summary = pipeline_logger.get_summary()
    return {
        "status": pipeline_status,
        "steps_run": list(step_results),
        "step_results": step_results,
        "pipeline_summary": summary,
        "total_duration": summary["duration_seconds"],
    }


def _failed(step_results: Dict[str, Any]) -> Optional[str]:
    """Name of the first failed step, if any."""
    for name, result in step_results.items():
        if result["status"] == PipelineStatus.FAILED:
            return name
    return None


async def get_pipeline_status(db: AsyncSession) -> Dict[str, Any]:
    """
    Staging backlog and snapshot coverage.

    Status is "needs_transform" while raw rows wait, "needs_load" while
    clean rows wait, otherwise "ready".
    """
    staging = models.SnapshotStaging

    async def count(*conditions) -> int:
        result = await db.execute(select(func.count(staging.id)).where(*conditions))
        return result.scalar() or 0

    total = await count()
    unprocessed = await count(staging.processed == False)  # noqa: E712
    rejected = await count(staging.error.is_not(None))
    waiting_load = await count(
        and_(
            staging.processed == True,  # noqa: E712
            staging.loaded == False,  # noqa: E712
            staging.error.is_(None),
        )
    )

    if unprocessed:
        status = "needs_transform"
    elif waiting_load:
        status = "needs_load"
    else:
        status = "ready"

    return {
        "staged_rows": total,
        "unprocessed_rows": unprocessed,
        "rejected_rows": rejected,
        "awaiting_load": waiting_load,
        "snapshot": await load.get_snapshot_summary(db),
        "status": status,
    }


async def get_pipeline_health_check(db: AsyncSession) -> Dict[str, Any]:
    """
    Health check of the data layer the agent depends on.

    Checks:
        - database connectivity
        - every queryable table has rows
        - share of rejected staging rows
    """
    health_status = {
        "overall_status": "healthy",
        "checks": [],
        "recommendations": [],
        "timestamp": datetime.now().isoformat(),
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"].append(
            {
                "name": "database_connectivity",
                "status": "pass",
                "message": "Database connection successful",
            }
        )
    except Exception as e:
        health_status["overall_status"] = "unhealthy"
        health_status["checks"].append(
            {
                "name": "database_connectivity",
                "status": "fail",
                "message": f"Database connection failed: {str(e)}",
            }
        )
        return health_status

    existing = await db.run_sync(
        lambda sync_session: set(inspect(sync_session.connection()).get_table_names())
    )
    for table_name in settings.QUERYABLE_TABLES:
        check_name = f"table_{table_name}"
        if table_name not in existing:
            health_status["overall_status"] = "degraded"
            health_status["checks"].append(
                {"name": check_name, "status": "fail", "message": f"{table_name} does not exist"}
            )
            health_status["recommendations"].append(
                f"Remove {table_name} from QUERYABLE_TABLES or run the migrations"
            )
            continue

        count_query = select(func.count()).select_from(table(table_name))
        rows = (await db.execute(count_query)).scalar() or 0
        if rows == 0:
            health_status["overall_status"] = "degraded"
            health_status["checks"].append(
                {"name": check_name, "status": "warn", "message": f"{table_name} is empty"}
            )
            health_status["recommendations"].append(
                "Run the ETL pipeline so Exact and Prediction questions have data"
            )
        else:
            health_status["checks"].append(
                {"name": check_name, "status": "pass", "message": f"{table_name} has {rows} rows"}
            )

    status = await get_pipeline_status(db)
    if status["staged_rows"] and status["rejected_rows"] / status["staged_rows"] > 0.1:
        health_status["overall_status"] = "degraded"
        health_status["checks"].append(
            {
                "name": "staging_quality",
                "status": "warn",
                "message": f"{status['rejected_rows']} of {status['staged_rows']} staged rows were rejected",
            }
        )
        health_status["recommendations"].append(
            "Inspect snapshot_staging.error for rejected rows"
        )
    else:
        health_status["checks"].append(
            {"name": "staging_quality", "status": "pass", "message": "Rejection rate OK"}
        )

    health_status["queryable_tables"] = settings.QUERYABLE_TABLES
    return health_status
