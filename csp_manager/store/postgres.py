"""PostgreSQL async connection pool and CRUD helpers for policies and directives."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import UUID

import asyncpg
import structlog

from csp_manager.models.policy import Directive, PageLink, Policy

logger = structlog.get_logger()

_pool: asyncpg.Pool | None = None

# Whitelisted column names for dynamic INSERT/UPDATE statements
_POLICY_COLUMNS = frozenset({
    "title", "enabled", "is_live", "is_base_policy", "report_only",
    "send_violation_reports", "alternate_report_uri", "delivery_method",
    "minimum_csp_level",
})
_DIRECTIVE_COLUMNS = frozenset({"key", "value", "enabled", "use_nonce"})

_POLICY_FIELDS = (
    "id, title, enabled, is_live, is_base_policy, report_only, send_violation_reports, "
    "alternate_report_uri, delivery_method, minimum_csp_level, created_at, updated_at"
)
_DIRECTIVE_FIELDS = "id, key, value, enabled, use_nonce, created_at, updated_at"

# Serializes writers that change which policy is the base policy.
_BASE_POLICY_LOCK_KEY = 0x4353505F42415345  # "CSP_BASE"


class StoreUnavailable(Exception):
    """Raised when the database connection pool is not available."""
    pass


async def init_postgres(url: str, min_size: int = 2, max_size: int = 10) -> asyncpg.Pool | None:
    """Initialize PostgreSQL connection pool."""
    global _pool
    try:
        _pool = await asyncpg.create_pool(url, min_size=min_size, max_size=max_size)
        logger.info("postgres_connected", min_size=min_size, max_size=max_size)
        return _pool
    except Exception as exc:
        logger.error("postgres_connect_failed", error=str(exc))
        _pool = None
        return None


def get_pool() -> asyncpg.Pool | None:
    """Return the current connection pool."""
    return _pool


def _require_pool() -> asyncpg.Pool:
    if _pool is None:
        raise StoreUnavailable("Database connection pool not initialized")
    return _pool


async def run_migrations() -> None:
    """Execute schema.sql against the database."""
    if _pool is None:
        logger.warning("postgres_migrations_skipped", reason="no pool")
        return
    schema_path = Path(__file__).parent.parent / "models" / "schema.sql"
    sql = schema_path.read_text()
    async with _pool.acquire() as conn:
        await conn.execute(sql)
    logger.info("postgres_migrations_complete")


def _check_columns(fields: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
    """Drop None values and reject column names outside *allowed*."""
    clean = {}
    for key, val in fields.items():
        if val is None:
            continue
        if key not in allowed:
            raise ValueError(f"Invalid column name: {key}")
        clean[key] = val
    return clean


def _db_value(val: Any) -> Any:
    # Enums are stored by value (DeliveryMethod -> 'Header', CspLevel -> 1)
    return getattr(val, "value", val)


async def _clear_base_policy(conn: asyncpg.Connection, keep_id: UUID | None = None) -> None:
    """Clear the base flag on every policy except *keep_id*. Caller holds a transaction."""
    await conn.execute("SELECT pg_advisory_xact_lock($1)", _BASE_POLICY_LOCK_KEY)
    await conn.execute(
        """UPDATE csp_policies SET is_base_policy = FALSE, updated_at = now()
           WHERE is_base_policy AND ($1::uuid IS NULL OR id <> $1)""",
        keep_id,
    )


async def _fetch_directives(conn: asyncpg.Connection, policy_ids: list[UUID]) -> dict[UUID, list[dict[str, Any]]]:
    rows = await conn.fetch(
        """SELECT pd.policy_id, d.id, d.key, d.value, d.enabled, d.use_nonce
           FROM csp_policy_directives pd
           JOIN csp_directives d ON d.id = pd.directive_id
           WHERE pd.policy_id = ANY($1::uuid[])
           ORDER BY pd.policy_id, pd.position, d.created_at""",
        policy_ids,
    )
    grouped: dict[UUID, list[dict[str, Any]]] = {pid: [] for pid in policy_ids}
    for row in rows:
        data = dict(row)
        grouped.setdefault(data.pop("policy_id"), []).append(data)
    return grouped


def to_policy(record: dict[str, Any]) -> Policy:
    """Build a frozen :class:`Policy` from a row dict with a ``directives`` list."""
    directives = tuple(
        Directive(
            id=d["id"], key=d["key"], value=d["value"],
            enabled=d["enabled"], use_nonce=d["use_nonce"],
        )
        for d in record.get("directives", [])
    )
    fields = {k: v for k, v in record.items() if k in _POLICY_COLUMNS}
    return Policy(id=record["id"], directives=directives, **fields)


# --- Policy CRUD ---

async def create_policy(**fields) -> dict[str, Any] | None:
    """Insert a new policy and return it. Becoming the base policy clears the flag elsewhere."""
    pool = _require_pool()
    values = {k: _db_value(v) for k, v in _check_columns(fields, _POLICY_COLUMNS).items()}
    columns = list(values)
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    sql = (
        f"INSERT INTO csp_policies ({', '.join(columns)}) VALUES ({placeholders}) "
        f"RETURNING {_POLICY_FIELDS}"
    )
    async with pool.acquire() as conn:
        async with conn.transaction():
            if values.get("is_base_policy"):
                await _clear_base_policy(conn)
            row = await conn.fetchrow(sql, *values.values())
    if row is None:
        return None
    logger.info("policy_created", policy_id=str(row["id"]), is_base_policy=row["is_base_policy"])
    return {**dict(row), "directives": []}


async def get_policy(policy_id: UUID) -> dict[str, Any] | None:
    """Fetch a policy with its ordered directives."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_POLICY_FIELDS} FROM csp_policies WHERE id = $1", policy_id
        )
        if row is None:
            return None
        directives = await _fetch_directives(conn, [policy_id])
    return {**dict(row), "directives": directives.get(policy_id, [])}


async def list_policies() -> list[dict[str, Any]]:
    """Fetch all policies with directives, in default sort order."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT {_POLICY_FIELDS} FROM csp_policies "
            "ORDER BY is_base_policy DESC, enabled DESC, title ASC"
        )
        directives = await _fetch_directives(conn, [row["id"] for row in rows])
    return [{**dict(row), "directives": directives.get(row["id"], [])} for row in rows]


async def update_policy(policy_id: UUID, **fields) -> dict[str, Any] | None:
    """Update a policy. Only non-None, whitelisted fields are updated."""
    pool = _require_pool()
    values = {k: _db_value(v) for k, v in _check_columns(fields, _POLICY_COLUMNS).items()}
    if not values:
        return await get_policy(policy_id)
    set_clauses = [f"{key} = ${idx}" for idx, key in enumerate(values, start=1)]
    set_clauses.append("updated_at = now()")
    sql = (
        f"UPDATE csp_policies SET {', '.join(set_clauses)} WHERE id = ${len(values) + 1} "
        f"RETURNING {_POLICY_FIELDS}"
    )
    async with pool.acquire() as conn:
        async with conn.transaction():
            if values.get("is_base_policy"):
                exists = await conn.fetchval(
                    "SELECT 1 FROM csp_policies WHERE id = $1 FOR UPDATE", policy_id
                )
                if not exists:
                    return None
                await _clear_base_policy(conn, keep_id=policy_id)
            row = await conn.fetchrow(sql, *values.values(), policy_id)
            if row is None:
                return None
            directives = await _fetch_directives(conn, [policy_id])
    return {**dict(row), "directives": directives.get(policy_id, [])}


async def set_base_policy(policy_id: UUID) -> bool:
    """Make *policy_id* the only base policy, atomically.

    Clearing the other rows and setting this one happen in a single
    transaction under an advisory lock, so concurrent writers are serialized
    and readers never observe two base policies.
    """
    pool = _require_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            exists = await conn.fetchval(
                "SELECT 1 FROM csp_policies WHERE id = $1 FOR UPDATE", policy_id
            )
            if not exists:
                return False
            await _clear_base_policy(conn, keep_id=policy_id)
            await conn.execute(
                "UPDATE csp_policies SET is_base_policy = TRUE, updated_at = now() WHERE id = $1",
                policy_id,
            )
    logger.info("base_policy_set", policy_id=str(policy_id))
    return True


async def delete_policy(policy_id: UUID) -> bool:
    """Delete a policy by ID. Directive links and page links cascade."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM csp_policies WHERE id = $1", policy_id)
        return result == "DELETE 1"


# --- Directive CRUD ---

async def create_directive(key: str, value: str = "", enabled: bool = True, use_nonce: bool = False) -> dict[str, Any] | None:
    """Insert a new directive and return it."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""INSERT INTO csp_directives (key, value, enabled, use_nonce)
               VALUES ($1, $2, $3, $4)
               RETURNING {_DIRECTIVE_FIELDS}""",
            key, value, enabled, use_nonce,
        )
        return dict(row) if row else None


async def get_directive(directive_id: UUID) -> dict[str, Any] | None:
    """Fetch a directive by ID."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_DIRECTIVE_FIELDS} FROM csp_directives WHERE id = $1", directive_id
        )
        return dict(row) if row else None


async def list_directives() -> list[dict[str, Any]]:
    """Fetch all directives ordered by name."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"SELECT {_DIRECTIVE_FIELDS} FROM csp_directives ORDER BY key, created_at"
        )
        return [dict(row) for row in rows]


async def update_directive(directive_id: UUID, **fields) -> dict[str, Any] | None:
    """Update a directive. Only non-None, whitelisted fields are updated."""
    pool = _require_pool()
    values = _check_columns(fields, _DIRECTIVE_COLUMNS)
    if not values:
        return await get_directive(directive_id)
    set_clauses = [f"{key} = ${idx}" for idx, key in enumerate(values, start=1)]
    set_clauses.append("updated_at = now()")
    sql = (
        f"UPDATE csp_directives SET {', '.join(set_clauses)} WHERE id = ${len(values) + 1} "
        f"RETURNING {_DIRECTIVE_FIELDS}"
    )
    async with pool.acquire() as conn:
        async with conn.transaction():
            if "key" in values:
                clash = await conn.fetchval(
                    """SELECT 1 FROM csp_policy_directives mine
                       JOIN csp_policy_directives other
                         ON other.policy_id = mine.policy_id AND other.directive_id <> mine.directive_id
                       JOIN csp_directives d ON d.id = other.directive_id
                       WHERE mine.directive_id = $1 AND d.key = $2""",
                    directive_id, values["key"],
                )
                if clash:
                    raise ValueError(f"A linked policy already has a '{values['key']}' directive")
            row = await conn.fetchrow(sql, *values.values(), directive_id)
        return dict(row) if row else None


async def delete_directive(directive_id: UUID) -> bool:
    """Delete a directive by ID."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM csp_directives WHERE id = $1", directive_id)
        return result == "DELETE 1"


async def attach_directive(policy_id: UUID, directive_id: UUID, position: int | None = None) -> bool:
    """Link a directive to a policy, appending it unless *position* is given.

    Raises ValueError when the policy already has another directive with the
    same key. Returns False when either record is missing.
    """
    pool = _require_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            directive = await conn.fetchrow("SELECT key FROM csp_directives WHERE id = $1", directive_id)
            policy_exists = await conn.fetchval("SELECT 1 FROM csp_policies WHERE id = $1", policy_id)
            if directive is None or not policy_exists:
                return False
            clash = await conn.fetchval(
                """SELECT 1 FROM csp_policy_directives pd
                   JOIN csp_directives d ON d.id = pd.directive_id
                   WHERE pd.policy_id = $1 AND d.key = $2 AND pd.directive_id <> $3""",
                policy_id, directive["key"], directive_id,
            )
            if clash:
                raise ValueError(f"Policy already has a '{directive['key']}' directive")
            if position is None:
                position = await conn.fetchval(
                    "SELECT COALESCE(MAX(position) + 1, 0) FROM csp_policy_directives WHERE policy_id = $1",
                    policy_id,
                )
            await conn.execute(
                """INSERT INTO csp_policy_directives (policy_id, directive_id, position)
                   VALUES ($1, $2, $3)
                   ON CONFLICT (policy_id, directive_id) DO UPDATE SET position = EXCLUDED.position""",
                policy_id, directive_id, position,
            )
    return True


async def detach_directive(policy_id: UUID, directive_id: UUID) -> bool:
    """Unlink a directive from a policy."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            "DELETE FROM csp_policy_directives WHERE policy_id = $1 AND directive_id = $2",
            policy_id, directive_id,
        )
        return result == "DELETE 1"


# --- Page links ---

async def upsert_page_link(path: str, policy_id: UUID) -> dict[str, Any] | None:
    """Link a path prefix to a page policy, replacing any existing link."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """INSERT INTO csp_page_links (path, policy_id) VALUES ($1, $2)
               ON CONFLICT (path) DO UPDATE SET policy_id = EXCLUDED.policy_id
               RETURNING path, policy_id""",
            path, policy_id,
        )
        return dict(row) if row else None


async def delete_page_link(path: str) -> bool:
    pool = _require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM csp_page_links WHERE path = $1", path)
        return result == "DELETE 1"


async def list_page_links() -> list[dict[str, Any]]:
    pool = _require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT path, policy_id FROM csp_page_links ORDER BY path")
        return [dict(row) for row in rows]


# --- Snapshot for request-time composition ---

async def load_snapshot() -> tuple[list[Policy], list[PageLink]]:
    """Read every policy, directive and page link from one consistent snapshot."""
    pool = _require_pool()
    async with pool.acquire() as conn:
        async with conn.transaction(isolation="repeatable_read", readonly=True):
            rows = await conn.fetch(
                f"SELECT {_POLICY_FIELDS} FROM csp_policies "
                "ORDER BY is_base_policy DESC, enabled DESC, title ASC"
            )
            directives = await _fetch_directives(conn, [row["id"] for row in rows])
            link_rows = await conn.fetch("SELECT path, policy_id FROM csp_page_links")
    policies = [
        to_policy({**dict(row), "directives": directives.get(row["id"], [])}) for row in rows
    ]
    links = [PageLink(path=r["path"], policy_id=r["policy_id"]) for r in link_rows]
    return policies, links


async def close_postgres() -> None:
    """Close the PostgreSQL connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("postgres_closed")
