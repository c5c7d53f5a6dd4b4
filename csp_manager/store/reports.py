"""Violation report storage: fire-and-forget insert, parameterized queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from csp_manager.models.violation import ViolationReport
from csp_manager.store.postgres import StoreUnavailable, get_pool

logger = structlog.get_logger()

_MAX_QUERY_LIMIT = 1000

_REPORT_FIELDS = (
    "id, document_uri, referrer, blocked_uri, violated_directive, effective_directive, "
    "original_policy, source_file, line_number, column_number, disposition, status_code, "
    "user_agent, created_at"
)


async def insert_violation_report(report: ViolationReport, user_agent: str = "") -> None:
    """Insert a violation report row. Fire-and-forget: catches all exceptions."""
    pool = get_pool()
    if pool is None:
        logger.warning(
            "violation_report_insert_skipped",
            reason="no db pool",
            violated_directive=report.violated_directive,
        )
        return
    try:
        async with pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO csp_violation_reports
                   (document_uri, referrer, blocked_uri, violated_directive,
                    effective_directive, original_policy, source_file, line_number,
                    column_number, disposition, status_code, user_agent)
                   VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10,$11,$12)""",
                report.document_uri, report.referrer, report.blocked_uri,
                report.violated_directive, report.effective_directive,
                report.original_policy, report.source_file, report.line_number,
                report.column_number, report.disposition, report.status_code,
                user_agent[:255],
            )
    except Exception:
        logger.exception("violation_report_insert_failed", document_uri=report.document_uri)


async def query_violation_reports(
    *,
    document_uri: str | None = None,
    violated_directive: str | None = None,
    blocked_uri: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    """Query violation reports, newest first. Returns (rows, total_count).

    All filters use parameterized SQL. Limit is clamped to 1000.
    """
    pool = get_pool()
    if pool is None:
        raise StoreUnavailable("Database connection pool not initialized")

    limit = max(1, min(limit, _MAX_QUERY_LIMIT))
    offset = max(0, offset)

    conditions: list[str] = []
    values: list[Any] = []

    def _add(clause: str, value: Any) -> None:
        values.append(value)
        conditions.append(clause.format(idx=len(values)))

    if document_uri is not None:
        _add("document_uri = ${idx}", document_uri)
    if violated_directive is not None:
        # Level 2 reports carry "script-src 'self'", level 3 only "script-src"
        escaped = violated_directive.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        _add("violated_directive LIKE ${idx}", f"{escaped}%")
    if blocked_uri is not None:
        _add("blocked_uri = ${idx}", blocked_uri)
    if start_time is not None:
        _add("created_at >= ${idx}", start_time)
    if end_time is not None:
        _add("created_at <= ${idx}", end_time)

    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    count_sql = f"SELECT COUNT(*) FROM csp_violation_reports {where}"
    data_sql = (
        f"SELECT {_REPORT_FIELDS} FROM csp_violation_reports {where} "
        f"ORDER BY created_at DESC, id DESC LIMIT ${len(values) + 1} OFFSET ${len(values) + 2}"
    )

    async with pool.acquire() as conn:
        total = await conn.fetchval(count_sql, *values)
        rows = await conn.fetch(data_sql, *values, limit, offset)
    return [dict(row) for row in rows], total


async def delete_violation_report(report_id: int) -> bool:
    """Delete a single report by ID."""
    pool = get_pool()
    if pool is None:
        raise StoreUnavailable("Database connection pool not initialized")
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM csp_violation_reports WHERE id = $1", report_id)
        return result == "DELETE 1"
