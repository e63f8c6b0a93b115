"""
Run log: one structured record per reconciliation run.

Written to ghl_sync_logs for operational visibility and mirrored to a
dedicated JSON logger. Neither path affects correctness; a failed insert
is logged and swallowed so it cannot fail a run that already committed.
"""
from __future__ import annotations

import json
import logging
import sys
from typing import Any, Optional, Protocol

import asyncpg

logger = logging.getLogger(__name__)

SYNC_TYPE = "sf_opportunities"

# Dedicated logger for run records (separate from operational logs)
_run_logger: Optional[logging.Logger] = None


def _get_run_logger() -> logging.Logger:
    global _run_logger
    if _run_logger is not None:
        return _run_logger

    _run_logger = logging.getLogger("oppsync.runlog")
    _run_logger.setLevel(logging.INFO)
    _run_logger.propagate = False

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            if isinstance(record.msg, dict):
                return json.dumps(record.msg, default=str, ensure_ascii=False)
            return super().format(record)

    handler.setFormatter(JsonFormatter())
    _run_logger.addHandler(handler)
    return _run_logger


class SyncLogSink(Protocol):
    async def record(
        self,
        *,
        connection_id: Optional[str],
        status: str,
        message: str,
        metadata: dict[str, Any],
    ) -> None: ...


INSERT_SYNC_LOG_SQL = """
INSERT INTO ghl_sync_logs (connection_id, sync_type, status, message, metadata)
VALUES ($1::uuid, $2::text, $3::text, $4::text, $5::jsonb);
"""


class PgSyncLogSink:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def record(
        self,
        *,
        connection_id: Optional[str],
        status: str,
        message: str,
        metadata: dict[str, Any],
    ) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    INSERT_SYNC_LOG_SQL, connection_id, SYNC_TYPE, status, message, metadata
                )
        except (asyncpg.PostgresError, OSError) as e:
            logger.error("failed to write sync log: %s", e)


def log_run(*, status: str, message: str, metadata: dict[str, Any]) -> None:
    _get_run_logger().info({
        "type": "reconciliation_run",
        "sync_type": SYNC_TYPE,
        "status": status,
        "message": message,
        **metadata,
    })
