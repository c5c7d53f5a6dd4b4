"""Violation report query, export and cleanup API."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from csp_manager.api.auth import require_api_key
from csp_manager.store.postgres import StoreUnavailable
from csp_manager.store.reports import delete_violation_report, query_violation_reports
from csp_manager.utils.sanitize import strip_control_chars

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/reports",
    tags=["reports"],
    dependencies=[Depends(require_api_key)],
)

_CSV_COLUMNS = [
    "id", "created_at", "document_uri", "referrer", "blocked_uri",
    "violated_directive", "effective_directive", "source_file",
    "line_number", "column_number", "disposition", "status_code", "user_agent",
]

# Leading characters a spreadsheet would evaluate as a formula.
_CSV_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r", "|", ";")


def _parse_datetime(value: str | None, field_name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        safe_preview = strip_control_chars(value[:40]) + ("..." if len(value) > 40 else "")
        raise HTTPException(
            status_code=422,
            detail=f"Invalid ISO datetime for {field_name}: {safe_preview!r}",
        )


def _csv_safe(value: Any) -> str:
    """Quote cell values that a spreadsheet would otherwise run as formulas.

    Blocked URIs and source files are attacker-controlled, so every cell is
    checked after stripping leading whitespace.
    """
    s = str(value) if value is not None else ""
    stripped = s.lstrip()
    if stripped and stripped[0] in _CSV_FORMULA_PREFIXES:
        return f"'{s}"
    return s


def _rows_to_csv(rows: list[dict[str, Any]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(_CSV_COLUMNS)
    for row in rows:
        writer.writerow([_csv_safe(row.get(k, "")) for k in _CSV_COLUMNS])
    return buf.getvalue()


def _serialize(row: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in row.items()}


@router.get("/")
async def get_reports(
    document_uri: str | None = Query(None),
    violated_directive: str | None = Query(None, description="Directive name prefix"),
    blocked_uri: str | None = Query(None),
    start_time: str | None = Query(None, description="ISO datetime"),
    end_time: str | None = Query(None, description="ISO datetime"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    format: str = Query("json", pattern="^(json|csv)$"),
):
    """List violation reports, newest first. Supports JSON and CSV export."""
    try:
        rows, total = await query_violation_reports(
            document_uri=document_uri,
            violated_directive=violated_directive,
            blocked_uri=blocked_uri,
            start_time=_parse_datetime(start_time, "start_time"),
            end_time=_parse_datetime(end_time, "end_time"),
            limit=limit,
            offset=offset,
        )
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    except Exception:
        logger.exception("violation_report_query_failed")
        raise HTTPException(status_code=503, detail="Report query failed")

    if format == "csv":
        return StreamingResponse(
            iter([_rows_to_csv(rows)]),
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=csp_reports.csv"},
        )

    return {
        "data": [_serialize(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.delete("/{report_id}", status_code=204)
async def delete_report(report_id: int):
    """Delete a single violation report."""
    try:
        deleted = await delete_violation_report(report_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not deleted:
        raise HTTPException(status_code=404, detail="Report not found")
