import logging
from typing import Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_

from app.core import models

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# LOAD MODULE
# Purpose: move clean staged rows into daily_changes_snapshot.
# One row per (snapshot_date, entity, metric); the most recently staged value wins.
# -----------------------------------------------------------------------------


async def upsert_snapshot_row(
    row: models.SnapshotStaging, db: AsyncSession
) -> str:
    """
    Insert or update the snapshot row for one clean staged row.

    Returns:
        "inserted" or "updated"
    """
    snapshot = models.DailyChangesSnapshot
    result = await db.execute(
        select(snapshot).where(
            and_(
                snapshot.snapshot_date == row.snapshot_date,
                snapshot.entity == row.entity,
                snapshot.metric == row.metric,
            )
        )
    )
    existing = result.scalars().first()

    if existing is None:
        db.add(
            snapshot(
                snapshot_date=row.snapshot_date,
                entity=row.entity,
                metric=row.metric,
                value=row.value,
                source=row.source,
            )
        )
        # Later rows in the same batch must see this one
        await db.flush()
        return "inserted"

    existing.value = row.value
    existing.source = row.source
    existing.updated_at = func.now()
    return "updated"


async def load_processed_data(db: AsyncSession) -> Dict[str, Any]:
    """
    Load every clean, not yet loaded staged row.

    Rows are applied in staging order so a re-sent correction overwrites
    the earlier value for the same day.
    """
    result = await db.execute(
        select(models.SnapshotStaging)
        .where(
            and_(
                models.SnapshotStaging.processed == True,  # noqa: E712
                models.SnapshotStaging.loaded == False,  # noqa: E712
                models.SnapshotStaging.error.is_(None),
            )
        )
        .order_by(models.SnapshotStaging.id)
    )
    rows = result.scalars().all()

    counts = {"inserted": 0, "updated": 0}
    try:
        for row in rows:
            counts[await upsert_snapshot_row(row, db)] += 1
            row.loaded = True
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(f"Loading snapshot rows failed: {e}")
        raise

    logger.info(
        f"Loaded snapshot rows: {counts['inserted']} inserted, {counts['updated']} updated"
    )
    return {"rows_loaded": len(rows), **counts}


async def get_snapshot_summary(db: AsyncSession) -> Dict[str, Any]:
    """Row count, date range and distinct metrics/entities of the snapshot table."""
    snapshot = models.DailyChangesSnapshot
    result = await db.execute(
        select(
            func.count(snapshot.id).label("rows"),
            func.min(snapshot.snapshot_date).label("first_day"),
            func.max(snapshot.snapshot_date).label("last_day"),
            func.count(func.distinct(snapshot.metric)).label("metrics"),
            func.count(func.distinct(snapshot.entity)).label("entities"),
        )
    )
    stats = result.first()
    return {
        "rows": stats.rows or 0,
        "first_day": stats.first_day.isoformat() if stats.first_day else None,
        "last_day": stats.last_day.isoformat() if stats.last_day else None,
        "metrics": stats.metrics or 0,
        "entities": stats.entities or 0,
    }
