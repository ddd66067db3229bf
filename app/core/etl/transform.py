# app/core/etl/transform.py
"""
TRANSFORM MODULE - Clean and normalize staged rows

Purpose:
    1. Fix messy data from different sources
    2. Standardize formats (dates, numbers, entity and metric names)
    3. Mark rows as "processed" (with an error when they can't be used)

Data Flow:
    raw_payload (from ingest.py) → parse_date() → parse_number() → normalize names
                                                                        ↓
                                                           update staging row in place
                                                                        ↓
                                                               processed = True

Why this matters:
    - "1 500,50" and "1,500.50" are the same number
    - "15.01.2025", "2025/01/15" and 1736899200 are the same day
    - "Revenue " and "revenue" must be the same metric or forecasts split in two
"""

import logging
import re
from typing import Dict, Any, Optional
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core import models

logger = logging.getLogger(__name__)


# ============================================================================
# STEP 1: CLEAN AND STANDARDIZE DATES
# ============================================================================


def parse_date(date_str: Any) -> Optional[date]:
    """
    Parse the date formats we receive into a date object.

    Handles:
        - "2025-01-15" (ISO) and "2025-01-15T08:30:00"
        - "15.01.2025", "15/01/2025", "15-01-2025"
        - "2025/01/15"
        - Unix timestamps in seconds or milliseconds

    Examples:
        "15.01.2025" → datetime.date(2025, 1, 15)
        "1736899200" → datetime.date(2025, 1, 15)
    """
    if date_str is None or str(date_str).strip() == "":
        return None

    date_str = str(date_str).strip()

    formats = [
        "%Y-%m-%d",
        "%d.%m.%Y",
        "%d/%m/%Y",
        "%d-%m-%Y",
        "%Y/%m/%d",
    ]
    for fmt in formats:
        try:
            return datetime.strptime(date_str, fmt).date()
        except ValueError:
            continue

    # ISO datetime from APIs
    try:
        return datetime.fromisoformat(date_str.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    if re.fullmatch(r"\d{9,13}(\.\d+)?", date_str):
        timestamp = float(date_str)
        if timestamp > 1e11:  # Milliseconds
            timestamp /= 1000
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()

    return None


# ============================================================================
# STEP 2: CLEAN AND STANDARDIZE NUMBERS
# ============================================================================


def parse_number(value_str: Any) -> Optional[Decimal]:
    """
    Parse number strings to Decimal.

    Handles:
        - "1,500,000" → Decimal('1500000')
        - "1,500.50" → Decimal('1500.50')
        - "1.500,50" → Decimal('1500.50') (European)
        - "1 500,5" → Decimal('1500.5')
        - "(250)" → Decimal('-250') (accounting negative)
        - "+12%" → Decimal('12')
    """
    if value_str is None:
        return None
    if isinstance(value_str, (int, float, Decimal)) and not isinstance(value_str, bool):
        return Decimal(str(value_str))

    text = str(value_str).strip()
    if not text:
        return None

    negative = text.startswith("(") and text.endswith(")")
    text = re.sub(r"[\s ']", "", text.strip("()"))
    text = re.sub(r"[^0-9.,+-]", "", text)

    if "," in text and "." in text:
        # Whichever separator comes last is the decimal point
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        parts = text.split(",")
        if len(parts) == 2 and len(parts[1]) != 3:
            text = ".".join(parts)  # decimal comma: "1,5"
        else:
            text = "".join(parts)  # thousands: "1,500,000"

    try:
        number = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    return -abs(number) if negative else number


# ============================================================================
# STEP 3: NORMALIZE NAMES
# ============================================================================


def normalize_entity(entity: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace: "  Store   12 " → "Store 12"."""
    if entity is None:
        return None
    cleaned = re.sub(r"\s+", " ", str(entity)).strip()
    return cleaned or None


def normalize_metric(metric: Optional[str]) -> Optional[str]:
    """Lower snake case: "New Signups " → "new_signups"."""
    if metric is None:
        return None
    cleaned = re.sub(r"[^0-9a-zA-Z]+", "_", str(metric)).strip("_").lower()
    return cleaned or None


def clean_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Clean one raw payload.

    Raises:
        ValueError: with the reason the row can't be used
    """
    snapshot_date = parse_date(raw.get("date"))
    if snapshot_date is None:
        raise ValueError(f"unparseable date: {raw.get('date')!r}")

    entity = normalize_entity(raw.get("entity"))
    if entity is None:
        raise ValueError("missing entity")

    metric = normalize_metric(raw.get("metric"))
    if metric is None:
        raise ValueError("missing metric")

    value = parse_number(raw.get("value"))
    if value is None:
        raise ValueError(f"unparseable value: {raw.get('value')!r}")

    return {
        "snapshot_date": snapshot_date,
        "entity": entity,
        "metric": metric,
        "value": value,
    }


# ============================================================================
# DATABASE FUNCTIONS
# ============================================================================


async def transform_all_unprocessed(db: AsyncSession) -> Dict[str, Any]:
    """
    Clean every staged row that hasn't been processed yet.

    Bad rows are marked processed with `error` set, so they are not retried
    forever and can be inspected later.
    """
    result = await db.execute(
        select(models.SnapshotStaging)
        .where(models.SnapshotStaging.processed == False)  # noqa: E712
        .order_by(models.SnapshotStaging.id)
    )
    staged = result.scalars().all()

    cleaned = 0
    rejected = []
    for row in staged:
        try:
            clean = clean_row(row.raw_payload or {})
        except ValueError as e:
            row.error = str(e)
            rejected.append({"id": row.id, "error": str(e)})
        else:
            row.snapshot_date = clean["snapshot_date"]
            row.entity = clean["entity"]
            row.metric = clean["metric"]
            row.value = clean["value"]
            row.error = None
            cleaned += 1
        row.processed = True

    await db.commit()
    logger.info(f"Transformed {cleaned} rows, rejected {len(rejected)}")

    return {
        "total_processed": len(staged),
        "cleaned": cleaned,
        "rejected": len(rejected),
        "errors": rejected[:50],
    }
