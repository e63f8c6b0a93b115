"""
GHL OAuth2 token management for the reconciliation run.

Loads the connection row from ghl_connections, checks expiry, refreshes
when the token expires within EXPIRY_BUFFER, and writes the new token set
back before the run touches the CRM. A failed refresh is fatal for the run.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Optional, Protocol

import asyncpg
import httpx

logger = logging.getLogger(__name__)

GHL_TOKEN_URL = "https://services.leadconnectorhq.com/oauth/token"

# Refresh if token expires within this window
EXPIRY_BUFFER = timedelta(minutes=5)


class CredentialsNotFound(RuntimeError):
    pass


class TokenRefreshError(RuntimeError):
    pass


@dataclass(frozen=True)
class GHLConnection:
    id: str
    location_id: str
    access_token: str
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]


class CredentialStore(Protocol):
    async def load(self, location_id: str) -> Optional[GHLConnection]: ...

    async def save(self, connection: GHLConnection) -> None: ...


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

LOAD_CONNECTION_SQL = """
SELECT id::text, location_id, access_token, refresh_token, token_expires_at
FROM ghl_connections
WHERE location_id = $1::text
  AND is_active = TRUE
LIMIT 1;
"""

UPDATE_CONNECTION_TOKENS_SQL = """
UPDATE ghl_connections
SET access_token = $2::text,
    refresh_token = $3::text,
    token_expires_at = $4::timestamptz,
    updated_at = now()
WHERE id = $1::uuid;
"""


class PgCredentialStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def load(self, location_id: str) -> Optional[GHLConnection]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(LOAD_CONNECTION_SQL, location_id)
        if not row or not row["access_token"]:
            return None
        return GHLConnection(
            id=row["id"],
            location_id=row["location_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=row["token_expires_at"],
        )

    async def save(self, connection: GHLConnection) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                UPDATE_CONNECTION_TOKENS_SQL,
                connection.id,
                connection.access_token,
                connection.refresh_token,
                connection.token_expires_at,
            )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_expiring(connection: GHLConnection, now: datetime) -> bool:
    """True if the expiry is unknown or falls within EXPIRY_BUFFER of now."""
    expires_at = connection.token_expires_at
    if expires_at is None:
        return True
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return now >= (expires_at - EXPIRY_BUFFER)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def get_valid_connection(
    store: CredentialStore,
    http: httpx.AsyncClient,
    *,
    location_id: str,
    client_id: str,
    client_secret: str,
    now: Callable[[], datetime] = _utcnow,
) -> GHLConnection:
    """
    Return a connection whose access_token is good for at least EXPIRY_BUFFER.

    Raises CredentialsNotFound when no active connection exists and
    TokenRefreshError when the token cannot be refreshed.
    """
    connection = await store.load(location_id)
    if connection is None:
        raise CredentialsNotFound(f"No active GHL connection for location {location_id}")

    if not is_expiring(connection, now()):
        return connection

    if not connection.refresh_token:
        raise TokenRefreshError(
            f"GHL token expired and no refresh_token for location {location_id}"
        )

    return await refresh_ghl_token(
        store,
        http,
        connection,
        client_id=client_id,
        client_secret=client_secret,
        now=now,
    )


async def refresh_ghl_token(
    store: CredentialStore,
    http: httpx.AsyncClient,
    connection: GHLConnection,
    *,
    client_id: str,
    client_secret: str,
    now: Callable[[], datetime] = _utcnow,
) -> GHLConnection:
    """Call the GHL OAuth2 refresh endpoint and persist the new token set."""
    if not client_id or not client_secret:
        raise TokenRefreshError("GHL_CLIENT_ID and GHL_CLIENT_SECRET must be set")

    request_body = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "refresh_token",
        "refresh_token": connection.refresh_token,
    }

    logger.info(json.dumps({
        "event": "ghl_token_refresh_request",
        "location_id": connection.location_id,
    }))

    try:
        resp = await http.post(
            GHL_TOKEN_URL,
            data=request_body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    except httpx.HTTPError as e:
        raise TokenRefreshError(f"GHL token refresh failed: {e}") from e

    if resp.status_code != 200:
        logger.error(json.dumps({
            "event": "ghl_token_refresh_failed",
            "location_id": connection.location_id,
            "status": resp.status_code,
            "body": resp.text[:500],
        }))
        raise TokenRefreshError(
            f"GHL token refresh failed: {resp.status_code} {resp.text[:200]}"
        )

    data: dict[str, Any] = resp.json()
    if not data.get("access_token"):
        raise TokenRefreshError("GHL token refresh returned no access_token")

    expires_in = int(data.get("expires_in", 86400))
    refreshed = replace(
        connection,
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or connection.refresh_token,
        token_expires_at=now() + timedelta(seconds=expires_in),
    )

    await store.save(refreshed)

    logger.info(json.dumps({
        "event": "ghl_token_refresh_success",
        "location_id": connection.location_id,
        "expires_at": refreshed.token_expires_at.isoformat(),
    }))

    return refreshed
