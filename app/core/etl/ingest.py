# app/core/etl/ingest.py
"""
INGEST MODULE - Get raw daily-change rows from different sources

Purpose:
    1. Read CSV files (exports, manual uploads)
    2. Fetch from JSON APIs
    3. Convert to standard format (date / entity / metric / value)
    4. Save RAW rows to snapshot_staging (no cleaning yet - that's transform.py's job)

Data Flow:
    CSV/API → read_data() → to_standard_format() → save_to_staging() → raw_payload
"""

import csv
import io
import hashlib
import logging
from typing import List, Dict, Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import models

logger = logging.getLogger(__name__)

# Column names seen in the wild, mapped to our standard keys
FIELD_ALIASES = {
    "date": ["date", "snapshot_date", "day", "as_of", "timestamp"],
    "entity": ["entity", "name", "store", "region", "account", "object"],
    "metric": ["metric", "kpi", "measure", "field"],
    "value": ["value", "amount", "delta", "change", "count"],
}


# ============================================================================
# STEP 1: READ DATA FROM SOURCE
# ============================================================================


def read_csv_file(file_content: bytes) -> List[Dict[str, str]]:
    """
    Read CSV file and return list of dictionaries.

    Handles:
        - UTF-8 (with or without BOM) and windows-1251 exports
        - comma or semicolon separated files
        - empty rows

    Example:
        Input CSV:
            date,entity,metric,value
            2025-01-15,Store 12,revenue,1500.50

        Output:
            [{"date": "2025-01-15", "entity": "Store 12", "metric": "revenue", "value": "1500.50"}]
    """
    try:
        text = file_content.decode("utf-8-sig")
    except UnicodeDecodeError:
        # Fallback for old Windows CSV files
        text = file_content.decode("windows-1251")

    sample = text[:2048]
    delimiter = ";" if sample.count(";") > sample.count(",") else ","
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)

    rows = [row for row in reader if any((v or "").strip() for v in row.values())]

    logger.info(f"Read {len(rows)} rows from CSV")
    return rows


async def fetch_from_api(
    api_url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Fetch rows from an external JSON API.

    Accepts either a bare list or a wrapper object:
    {"data": [...]}, {"rows": [...]}, {"items": [...]}, {"value": [...]} (OData)
    """
    logger.info(f"Fetching from API: {api_url}")

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(api_url, headers=headers, params=params)
        response.raise_for_status()

        data = response.json()

        if isinstance(data, list):
            rows = data
        elif isinstance(data, dict):
            rows = (
                data.get("data")
                or data.get("rows")
                or data.get("items")
                or data.get("value")
                or []
            )
        else:
            raise ValueError(f"Unexpected API format: {type(data)}")

    logger.info(f"Fetched {len(rows)} rows")
    return rows


# ============================================================================
# STEP 2: CONVERT TO STANDARD FORMAT
# ============================================================================


def _pick(raw_row: Dict[str, Any], key: str) -> Any:
    lowered = {str(k).strip().lower(): v for k, v in raw_row.items() if k is not None}
    for alias in FIELD_ALIASES[key]:
        if alias in lowered and lowered[alias] not in (None, ""):
            return lowered[alias]
    return None


def _hash_part(value: Any) -> str:
    # 0 from a JSON API must hash like "0" from a CSV
    return "" if value is None else str(value).strip().lower()


def generate_hash(data: Dict[str, Any]) -> str:
    """
    Generate unique hash for row deduplication.

    Uses: date + entity + metric + value, so re-uploading the same file
    is a no-op but a corrected value for the same day is a new row.
    """
    unique_string = "|".join(
        _hash_part(data.get(key)) for key in ("date", "entity", "metric", "value")
    )
    return hashlib.sha256(unique_string.encode()).hexdigest()


def to_standard_format(raw_row: Dict[str, Any], source: str = "csv") -> Dict[str, Any]:
    """
    Convert any source row to our standard shape. Values stay raw strings.

    Example:
        {"Day": "15.01.2025", "Store": "Store 12", "KPI": "Revenue", "Amount": "1 500,50"}
        -> {"date": "15.01.2025", "entity": "Store 12", "metric": "Revenue",
            "value": "1 500,50", "source": "csv", "row_hash": "...", "raw_payload": {...}}
    """
    standard = {
        "date": _pick(raw_row, "date"),
        "entity": _pick(raw_row, "entity"),
        "metric": _pick(raw_row, "metric"),
        "value": _pick(raw_row, "value"),
    }
    standard["source"] = source
    standard["row_hash"] = generate_hash(standard)
    standard["raw_payload"] = {
        "date": standard["date"],
        "entity": standard["entity"],
        "metric": standard["metric"],
        "value": standard["value"],
        "original": {str(k): v for k, v in raw_row.items()},
    }
    return standard


# ============================================================================
# STEP 3: SAVE TO STAGING
# ============================================================================


async def save_to_staging(
    rows: List[Dict[str, Any]], db: AsyncSession
) -> Dict[str, Any]:
    """
    Save raw rows to snapshot_staging AS-IS.

    Returns:
        Statistics: {saved: 10, duplicates: 2, errors: []}
    """
    saved = 0
    duplicates = 0
    errors = []
    seen = set()

    for idx, row in enumerate(rows, start=1):
        row_hash = row["row_hash"]
        if row_hash in seen:
            duplicates += 1
            continue

        existing = await db.execute(
            select(models.SnapshotStaging.id).where(
                models.SnapshotStaging.row_hash == row_hash
            )
        )
        if existing.first():
            duplicates += 1
            continue

        try:
            db.add(
                models.SnapshotStaging(
                    row_hash=row_hash,
                    raw_payload=row["raw_payload"],
                    source=row["source"],
                    processed=False,
                )
            )
            seen.add(row_hash)
            saved += 1
        except Exception as e:
            errors.append(f"Row {idx}: {str(e)}")

    try:
        await db.commit()
        logger.info(f"Staged {saved} rows, skipped {duplicates} duplicates")
    except Exception as e:
        await db.rollback()
        logger.error(f"Database error while staging rows: {e}")
        raise

    return {"saved": saved, "duplicates": duplicates, "errors": errors}


# ============================================================================
# MAIN FUNCTIONS - The ones you'll actually use
# ============================================================================


async def ingest_from_csv(file_content: bytes, db: AsyncSession) -> Dict[str, Any]:
    """CSV bytes → staged rows."""
    raw_rows = read_csv_file(file_content)
    rows = [to_standard_format(r, source="csv") for r in raw_rows]
    result = await save_to_staging(rows, db)
    result["total_rows"] = len(raw_rows)
    return result


async def ingest_from_api(
    url: str,
    db: AsyncSession,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    source: str = "api",
) -> Dict[str, Any]:
    """JSON API → staged rows."""
    raw_rows = await fetch_from_api(url, headers=headers, params=params)
    rows = [
        to_standard_format(r, source=source) for r in raw_rows if isinstance(r, dict)
    ]
    result = await save_to_staging(rows, db)
    result["total_rows"] = len(raw_rows)
    return result
