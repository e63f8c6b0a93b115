"""
One-shot reconciliation runner.

Usage:
  python -m oppsync.runner [--lead-id UUID] [--objekt-id UUID]

Prints the run summary as JSON. Exits 1 if the run failed or exceeded
SYNC_RUN_TIMEOUT_SECONDS.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import httpx

from oppsync.adapters.ghl.auth import PgCredentialStore
from oppsync.config import ReconcileConfig, Settings, settings
from oppsync.db import close_db_pool, get_pool, init_db_pool
from oppsync.engine.leads import LeadScope, PgLeadStore
from oppsync.engine.reconcile import Reconciler, RunSummary
from oppsync.engine.sync_log import PgSyncLogSink

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 15.0


async def run_once(scope: Optional[LeadScope] = None, cfg: Settings = settings) -> RunSummary:
    """Run one reconciliation pass against the configured database and CRM."""
    config = ReconcileConfig.from_settings(cfg)
    pool = await get_pool()

    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as http:
        reconciler = Reconciler(
            config,
            credentials=PgCredentialStore(pool),
            leads=PgLeadStore(pool),
            sync_log=PgSyncLogSink(pool),
            http=http,
            client_id=cfg.ghl_client_id,
            client_secret=cfg.ghl_client_secret,
            base_url=cfg.ghl_base_url,
            api_version=cfg.ghl_api_version,
        )
        return await asyncio.wait_for(
            reconciler.run(scope), timeout=cfg.run_timeout_seconds
        )


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile CRM opportunities into lead funnel flags")
    parser.add_argument("--lead-id", help="Only reconcile this lead")
    parser.add_argument("--objekt-id", help="Only reconcile leads of this objekt")
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    scope = LeadScope(lead_id=args.lead_id, objekt_id=args.objekt_id)

    await init_db_pool()
    try:
        summary = await run_once(scope)
    except asyncio.TimeoutError:
        logger.error("reconciliation exceeded %ds budget", settings.run_timeout_seconds)
        return 1
    except Exception as e:
        logger.error("reconciliation failed: %s", e)
        return 1
    finally:
        await close_db_pool()

    print(json.dumps(summary.to_dict(), default=str, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    sys.exit(asyncio.run(main()))
