from datetime import date
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.core import models
from app.core.etl import ingest, transform

CSV = (
    "Day;Store;KPI;Amount\n"
    "15.01.2025;Store 12;Revenue;1 500,50\n"
    "16.01.2025;Store 12;Revenue;1 620,00\n"
    "16.01.2025;  Store   7 ;New Signups;(25)\n"
    "not a date;Store 12;Revenue;10\n"
).encode("utf-8")


# ============================================================================
# Transform helpers
# ============================================================================


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2025-01-15", date(2025, 1, 15)),
        ("2025-01-15T08:30:00Z", date(2025, 1, 15)),
        ("15.01.2025", date(2025, 1, 15)),
        ("15/01/2025", date(2025, 1, 15)),
        ("2025/01/15", date(2025, 1, 15)),
        ("1736899200", date(2025, 1, 15)),
        ("1736899200000", date(2025, 1, 15)),
        ("", None),
        ("yesterday", None),
    ],
)
def test_parse_date(raw, expected):
    assert transform.parse_date(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1,500,000", Decimal("1500000")),
        ("1,500.50", Decimal("1500.50")),
        ("1.500,50", Decimal("1500.50")),
        ("1 500,5", Decimal("1500.5")),
        ("(250)", Decimal("-250")),
        ("+12%", Decimal("12")),
        (42, Decimal("42")),
        ("n/a", None),
        (None, None),
    ],
)
def test_parse_number(raw, expected):
    assert transform.parse_number(raw) == expected


def test_normalize_names():
    assert transform.normalize_entity("  Store   12 ") == "Store 12"
    assert transform.normalize_metric("New Signups ") == "new_signups"
    assert transform.normalize_metric("  ") is None


def test_clean_row_reports_reason():
    with pytest.raises(ValueError, match="unparseable date"):
        transform.clean_row({"date": "soon", "entity": "A", "metric": "m", "value": 1})
    with pytest.raises(ValueError, match="missing entity"):
        transform.clean_row({"date": "2025-01-01", "metric": "m", "value": 1})


# ============================================================================
# Ingest helpers
# ============================================================================


def test_read_csv_semicolon_and_bom():
    rows = ingest.read_csv_file("﻿date;entity;metric;value\n2025-01-01;A;m;1\n\n".encode("utf-8"))
    assert rows == [{"date": "2025-01-01", "entity": "A", "metric": "m", "value": "1"}]


def test_read_csv_windows_1251():
    rows = ingest.read_csv_file("date,entity,metric,value\n2025-01-01,Магазин,m,1\n".encode("windows-1251"))
    assert rows[0]["entity"] == "Магазин"


def test_to_standard_format_maps_aliases():
    standard = ingest.to_standard_format(
        {"Day": "15.01.2025", "Store": "Store 12", "KPI": "Revenue", "Amount": "1 500,50"}
    )
    assert standard["date"] == "15.01.2025"
    assert standard["entity"] == "Store 12"
    assert standard["metric"] == "Revenue"
    assert standard["value"] == "1 500,50"
    assert standard["raw_payload"]["original"]["Store"] == "Store 12"
    assert len(standard["row_hash"]) == 64


def test_hash_ignores_case_and_padding():
    a = ingest.generate_hash({"date": "2025-01-01", "entity": "A", "metric": "m", "value": "1"})
    b = ingest.generate_hash({"date": "2025-01-01", "entity": " a ", "metric": "M", "value": "1"})
    c = ingest.generate_hash({"date": "2025-01-01", "entity": "A", "metric": "m", "value": "2"})
    assert a == b
    assert a != c


def test_hash_treats_numeric_zero_like_csv_zero():
    from_api = ingest.to_standard_format(
        {"date": "2025-01-01", "entity": "A", "metric": "m", "value": 0}, source="api"
    )
    from_csv = ingest.to_standard_format(
        {"date": "2025-01-01", "entity": "A", "metric": "m", "value": "0"}
    )
    empty = ingest.generate_hash({"date": "2025-01-01", "entity": "A", "metric": "m"})
    assert from_api["row_hash"] == from_csv["row_hash"]
    assert from_api["row_hash"] != empty


# ============================================================================
# Pipeline through the API
# ============================================================================


async def upload(client, headers, content):
    return await client.post(
        "/etl/run-csv",
        headers=headers,
        files={"file": ("daily.csv", content, "text/csv")},
    )


@pytest.mark.asyncio
async def test_run_csv_pipeline(client: AsyncClient, auth_headers_admin, db_session):
    response = await upload(client, auth_headers_admin, CSV)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["steps_run"] == ["ingest", "transform", "load"]

    steps = data["step_results"]
    assert steps["ingest"]["result"]["saved"] == 4
    assert steps["transform"]["result"]["cleaned"] == 3
    assert steps["transform"]["result"]["rejected"] == 1
    assert steps["load"]["result"]["inserted"] == 3
    assert steps["load"]["result"]["snapshot"]["metrics"] == 2

    result = await db_session.execute(
        select(models.DailyChangesSnapshot).order_by(models.DailyChangesSnapshot.id)
    )
    rows = result.scalars().all()
    assert [(r.snapshot_date, r.entity, r.metric) for r in rows] == [
        (date(2025, 1, 15), "Store 12", "revenue"),
        (date(2025, 1, 16), "Store 12", "revenue"),
        (date(2025, 1, 16), "Store 7", "new_signups"),
    ]
    assert rows[0].value == Decimal("1500.50")
    assert rows[2].value == Decimal("-25")


@pytest.mark.asyncio
async def test_reupload_is_deduplicated(client: AsyncClient, auth_headers_admin):
    await upload(client, auth_headers_admin, CSV)
    response = await upload(client, auth_headers_admin, CSV)

    steps = response.json()["step_results"]
    assert steps["ingest"]["result"]["saved"] == 0
    assert steps["ingest"]["result"]["duplicates"] == 4
    assert steps["load"]["result"]["rows_loaded"] == 0


@pytest.mark.asyncio
async def test_correction_updates_existing_day(
    client: AsyncClient, auth_headers_admin, db_session
):
    await upload(client, auth_headers_admin, b"date,entity,metric,value\n2025-01-01,A,revenue,10\n")
    response = await upload(
        client, auth_headers_admin, b"date,entity,metric,value\n2025-01-01,A,revenue,12\n"
    )

    assert response.json()["step_results"]["load"]["result"]["updated"] == 1

    result = await db_session.execute(select(models.DailyChangesSnapshot))
    rows = result.scalars().all()
    assert len(rows) == 1
    await db_session.refresh(rows[0])
    assert rows[0].value == Decimal("12")


@pytest.mark.asyncio
async def test_empty_upload_rejected(client: AsyncClient, auth_headers_admin):
    response = await upload(client, auth_headers_admin, b"")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_pipeline_requires_admin(client: AsyncClient, auth_headers_user):
    response = await upload(client, auth_headers_user, CSV)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_status_tracks_backlog(
    client: AsyncClient, auth_headers_admin, auth_headers_user, db_session
):
    raw = ingest.to_standard_format({"date": "2025-02-01", "entity": "A", "metric": "m", "value": "3"})
    await ingest.save_to_staging([raw], db_session)

    status = (await client.get("/etl/status", headers=auth_headers_user)).json()
    assert status["status"] == "needs_transform"
    assert status["unprocessed_rows"] == 1

    await client.post("/etl/transform-only", headers=auth_headers_admin)
    status = (await client.get("/etl/status", headers=auth_headers_user)).json()
    assert status["status"] == "needs_load"
    assert status["awaiting_load"] == 1

    await client.post("/etl/load-only", headers=auth_headers_admin)
    status = (await client.get("/etl/status", headers=auth_headers_user)).json()
    assert status["status"] == "ready"
    assert status["snapshot"]["rows"] == 1
    assert status["snapshot"]["first_day"] == "2025-02-01"


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient, auth_headers_admin, snapshot_rows):
    response = await client.get("/etl/health", headers=auth_headers_admin)

    assert response.status_code == 200
    data = response.json()
    assert data["overall_status"] == "healthy"
    assert data["queryable_tables"] == ["daily_changes_snapshot"]
    checks = {c["name"]: c["status"] for c in data["checks"]}
    assert checks["table_daily_changes_snapshot"] == "pass"


@pytest.mark.asyncio
async def test_health_check_flags_empty_queryable_table(
    client: AsyncClient, auth_headers_admin
):
    response = await client.get("/etl/health", headers=auth_headers_admin)

    data = response.json()
    assert data["overall_status"] == "degraded"
    checks = {c["name"]: c for c in data["checks"]}
    assert checks["table_daily_changes_snapshot"]["status"] == "warn"
    assert data["recommendations"]
