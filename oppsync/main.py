import asyncio
import hmac
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import settings
from .db import init_db_pool, close_db_pool
from .engine.leads import LeadScope
from .runner import run_once

app = FastAPI(title="Opportunity Sync", version="0.1.0")


class SyncRequest(BaseModel):
    lead_id: Optional[str] = None
    objekt_id: Optional[str] = None


@app.on_event("startup")
async def _startup():
    await init_db_pool()

@app.on_event("shutdown")
async def _shutdown():
    await close_db_pool()

@app.get("/health")
async def health():
    return {"ok": True, "service": settings.service_name, "env": settings.env}


def _authorized(cron_secret: Optional[str], authorization: Optional[str]) -> bool:
    if cron_secret and settings.cron_secret:
        return hmac.compare_digest(cron_secret, settings.cron_secret)
    # Bearer tokens are verified by the gateway in front of this service
    return bool(authorization and authorization.lower().startswith("bearer "))


@app.post("/sync/opportunities")
async def sync_opportunities(
    body: Optional[SyncRequest] = None,
    x_cron_secret: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
):
    if not _authorized(x_cron_secret, authorization):
        raise HTTPException(status_code=401, detail="Missing authorization")

    scope = LeadScope(
        lead_id=body.lead_id if body else None,
        objekt_id=body.objekt_id if body else None,
    )
    try:
        summary = await run_once(scope)
    except asyncio.TimeoutError:
        return JSONResponse(
            status_code=504,
            content={"error": "Reconciliation timed out", "details": f"{settings.run_timeout_seconds}s budget exceeded"},
        )
    except Exception as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Reconciliation failed", "details": str(e)},
        )
    return summary.to_dict()
