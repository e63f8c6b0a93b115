"""
Lead store access for the reconciliation run.

Reads candidate leads with keyset pagination (never stops at a page-size
boundary) and applies ratchet updates in batches. The UPDATE statement
enforces the same one-way rules as the Python ratchet: flags are OR-ed,
first-reached timestamps and the appointment date are COALESCE-d, so an
overlapping run can never clear or overwrite history.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import asyncpg

from oppsync.engine.stages import ALL_STAGES, FLAG_COLUMNS, flag_column, timestamp_column

logger = logging.getLogger(__name__)


@dataclass
class LeadProgress:
    """The subset of a lead this engine reads and ratchets."""

    opportunity_id: Optional[str] = None
    external_contact_id: Optional[str] = None
    pipeline_stage: Optional[str] = None
    pipeline_updated_at: Optional[datetime] = None
    reached: dict[str, bool] = field(default_factory=lambda: {s: False for s in ALL_STAGES})
    reached_at: dict[str, Optional[datetime]] = field(
        default_factory=lambda: {s: None for s in ALL_STAGES}
    )
    appointment_date: Optional[datetime] = None
    appointment_occurred: Optional[bool] = None
    appointment_occurred_at: Optional[datetime] = None

    def copy(self) -> "LeadProgress":
        return LeadProgress(
            opportunity_id=self.opportunity_id,
            external_contact_id=self.external_contact_id,
            pipeline_stage=self.pipeline_stage,
            pipeline_updated_at=self.pipeline_updated_at,
            reached=dict(self.reached),
            reached_at=dict(self.reached_at),
            appointment_date=self.appointment_date,
            appointment_occurred=self.appointment_occurred,
            appointment_occurred_at=self.appointment_occurred_at,
        )


@dataclass
class LeadRecord:
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    location_id: Optional[str] = None
    objekt_id: Optional[str] = None
    progress: LeadProgress = field(default_factory=LeadProgress)


@dataclass(frozen=True)
class LeadScope:
    """Optional narrowing of a run to one lead or one objekt."""

    lead_id: Optional[str] = None
    objekt_id: Optional[str] = None

    def as_dict(self) -> dict[str, Optional[str]]:
        return {"lead_id": self.lead_id, "objekt_id": self.objekt_id}


@dataclass(frozen=True)
class LeadUpdate:
    """Changed columns for one lead. Only non-None values are written."""

    lead_id: str
    changes: dict[str, Any]


class LeadStore(Protocol):
    async def fetch_candidates(
        self,
        *,
        excluded_location_ids: Sequence[str],
        scope: LeadScope,
        after_id: Optional[str],
        limit: int,
    ) -> list[LeadRecord]: ...

    async def apply_updates(self, updates: Sequence[LeadUpdate]) -> None: ...


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_FLAG_SELECT = ",\n       ".join(
    f"{col}, {col}_at" for col in FLAG_COLUMNS.values()
)

FETCH_CANDIDATE_LEADS_SQL = f"""
SELECT id::text AS id, email, phone, ghl_location_id, objekt_id::text AS objekt_id,
       opportunity_id, external_contact_id, pipeline_stage, pipeline_updated_at,
       {_FLAG_SELECT},
       appointment_date, appointment_occurred, appointment_occurred_at
FROM leads
WHERE (email IS NOT NULL OR phone IS NOT NULL)
  AND (ghl_location_id IS NULL OR NOT (ghl_location_id = ANY($1::text[])))
  AND is_archived IS NOT TRUE
  AND ($2::uuid IS NULL OR id = $2::uuid)
  AND ($3::uuid IS NULL OR objekt_id = $3::uuid)
  AND ($4::uuid IS NULL OR id > $4::uuid)
ORDER BY id
LIMIT $5;
"""

# $1 lead id, $2..$5 linkage, then one (flag, at) pair per stage, then appointment facts
UPDATE_COLUMNS: tuple[str, ...] = (
    "opportunity_id",
    "external_contact_id",
    "pipeline_stage",
    "pipeline_updated_at",
    *[c for col in FLAG_COLUMNS.values() for c in (col, f"{col}_at")],
    "appointment_date",
    "appointment_occurred",
    "appointment_occurred_at",
)


_FLAG_NAMES = frozenset(FLAG_COLUMNS.values())


def _set_clause(column: str, param: int) -> str:
    p = f"${param}"
    if column in _FLAG_NAMES:
        return f"{column} = ({column} IS TRUE) OR COALESCE({p}::boolean, FALSE)"
    if column == "appointment_occurred":
        # NULL -> false -> true, never back
        return (
            f"{column} = CASE WHEN {column} IS TRUE THEN TRUE "
            f"ELSE COALESCE({p}::boolean, {column}) END"
        )
    if column == "pipeline_updated_at":
        return f"{column} = COALESCE({p}::timestamptz, {column})"
    if column.endswith("_at") or column == "appointment_date":
        return f"{column} = COALESCE({column}, {p}::timestamptz)"
    return f"{column} = COALESCE({p}::text, {column})"


UPDATE_LEAD_PROGRESS_SQL = (
    "UPDATE leads\nSET "
    + ",\n    ".join(_set_clause(col, i + 2) for i, col in enumerate(UPDATE_COLUMNS))
    + ",\n    updated_at = now()\nWHERE id = $1::uuid;"
)


def update_args(update: LeadUpdate) -> tuple[Any, ...]:
    return (update.lead_id, *(update.changes.get(col) for col in UPDATE_COLUMNS))


def record_from_row(row: Any) -> LeadRecord:
    progress = LeadProgress(
        opportunity_id=row["opportunity_id"],
        external_contact_id=row["external_contact_id"],
        pipeline_stage=row["pipeline_stage"],
        pipeline_updated_at=row["pipeline_updated_at"],
        reached={s: bool(row[flag_column(s)]) for s in ALL_STAGES},
        reached_at={s: row[timestamp_column(s)] for s in ALL_STAGES},
        appointment_date=row["appointment_date"],
        appointment_occurred=row["appointment_occurred"],
        appointment_occurred_at=row["appointment_occurred_at"],
    )
    return LeadRecord(
        id=row["id"],
        email=row["email"],
        phone=row["phone"],
        location_id=row["ghl_location_id"],
        objekt_id=row["objekt_id"],
        progress=progress,
    )


class PgLeadStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def fetch_candidates(
        self,
        *,
        excluded_location_ids: Sequence[str],
        scope: LeadScope,
        after_id: Optional[str],
        limit: int,
    ) -> list[LeadRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                FETCH_CANDIDATE_LEADS_SQL,
                list(excluded_location_ids),
                scope.lead_id,
                scope.objekt_id,
                after_id,
                limit,
            )
        return [record_from_row(r) for r in rows]

    async def apply_updates(self, updates: Sequence[LeadUpdate]) -> None:
        """Apply one batch atomically; any failure rolls back the whole batch."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    UPDATE_LEAD_PROGRESS_SQL, [update_args(u) for u in updates]
                )


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


async def paginate(
    fetch_page: Callable[[Optional[str], int], Awaitable[list[LeadRecord]]],
    page_size: int,
) -> list[LeadRecord]:
    """Keyset-paginate until a page comes back shorter than page_size."""
    if page_size < 1:
        raise ValueError("page_size must be positive")
    out: list[LeadRecord] = []
    after_id: Optional[str] = None
    while True:
        page = await fetch_page(after_id, page_size)
        out.extend(page)
        if len(page) < page_size:
            return out
        after_id = page[-1].id


async def fetch_all_candidates(
    store: LeadStore,
    *,
    excluded_location_ids: Sequence[str],
    scope: LeadScope,
    page_size: int,
) -> list[LeadRecord]:
    async def _page(after_id: Optional[str], limit: int) -> list[LeadRecord]:
        return await store.fetch_candidates(
            excluded_location_ids=excluded_location_ids,
            scope=scope,
            after_id=after_id,
            limit=limit,
        )

    leads = await paginate(_page, page_size)
    logger.info("fetched %d candidate leads (page size %d)", len(leads), page_size)
    return leads
