"""
GHL (LeadConnector) REST client for the opportunity reconciliation run.

One shared httpx.AsyncClient per run. Non-2xx responses raise GHLAPIError
carrying the endpoint, status and a truncated body for diagnostics.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from oppsync.engine.providers.ghl_parser import (
    Contact,
    Opportunity,
    Pipeline,
    opportunity_items,
    parse_contact,
    parse_opportunity,
    parse_pipelines_response,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://services.leadconnectorhq.com"
API_VERSION = "2021-07-28"


class GHLAPIError(RuntimeError):
    def __init__(self, endpoint: str, status: int, body: str):
        self.endpoint = endpoint
        self.status = status
        self.body = body[:300]
        super().__init__(f"{endpoint} -> {status}: {self.body[:200]}")


@dataclass
class OpportunityListing:
    opportunities: list[Opportunity] = field(default_factory=list)
    attempts: list[dict[str, Any]] = field(default_factory=list)
    skipped: int = 0

    @property
    def failed(self) -> bool:
        return bool(self.attempts) and all("error" in a for a in self.attempts)

    @property
    def truncated(self) -> bool:
        return any(a.get("truncated") for a in self.attempts)


class GHLClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        location_id: str,
        *,
        base_url: str = BASE_URL,
        api_version: str = API_VERSION,
    ):
        self.http = http
        self.location_id = location_id
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Version": api_version,
        }

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        endpoint = f"{method} {path}"
        resp = await self.http.request(
            method, url, params=params, json=json_body, headers=self.headers
        )

        logger.debug(json.dumps({
            "event": "ghl_request",
            "endpoint": endpoint,
            "status": resp.status_code,
        }))

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning(json.dumps({
                "event": "ghl_request_failed",
                "endpoint": endpoint,
                "status": resp.status_code,
                "body": resp.text[:500],
            }))
            raise GHLAPIError(endpoint, resp.status_code, resp.text)

        try:
            return resp.json()
        except ValueError as e:
            raise GHLAPIError(endpoint, resp.status_code, f"invalid JSON: {resp.text}") from e

    # -----------------------------------------------------------------------
    # Pipelines
    # -----------------------------------------------------------------------

    async def get_pipelines(self) -> list[Pipeline]:
        data = await self.request(
            "GET", "/opportunities/pipelines", params={"locationId": self.location_id}
        )
        return parse_pipelines_response(data)

    # -----------------------------------------------------------------------
    # Opportunities
    # -----------------------------------------------------------------------

    async def _search_page_post(
        self, page: int, page_size: int, pipeline_id: Optional[str]
    ) -> list[Any]:
        body: dict[str, Any] = {
            "locationId": self.location_id,
            "limit": page_size,
            "page": page,
        }
        if pipeline_id:
            body["pipelineId"] = pipeline_id
        data = await self.request("POST", "/opportunities/search", json_body=body)
        return opportunity_items(data)

    async def _search_page_get(
        self, page: int, page_size: int, pipeline_id: Optional[str]
    ) -> list[Any]:
        params: dict[str, Any] = {
            "location_id": self.location_id,
            "limit": page_size,
            "page": page,
        }
        if pipeline_id:
            params["pipeline_id"] = pipeline_id
        data = await self.request("GET", "/opportunities/search", params=params)
        return opportunity_items(data)

    async def _collect(
        self,
        fetch_page,
        endpoint: str,
        page_size: int,
        max_pages: int,
        pipeline_id: Optional[str],
        listing: OpportunityListing,
    ) -> Optional[list[Any]]:
        """Page through one listing strategy. Returns None if any page fails."""
        items: list[Any] = []
        pages = 0
        truncated = False
        try:
            while pages < max_pages:
                pages += 1
                batch = await fetch_page(pages, page_size, pipeline_id)
                items.extend(batch)
                if len(batch) < page_size:
                    break
            else:
                truncated = True
                logger.warning(
                    "opportunity listing hit page cap (%d pages of %d) via %s",
                    max_pages, page_size, endpoint,
                )
        except GHLAPIError as e:
            listing.attempts.append({
                "endpoint": endpoint,
                "status": e.status,
                "page": pages,
                "error": e.body,
            })
            return None
        except httpx.HTTPError as e:
            listing.attempts.append({
                "endpoint": endpoint,
                "status": None,
                "page": pages,
                "error": str(e)[:300],
            })
            return None

        listing.attempts.append({
            "endpoint": endpoint,
            "status": 200,
            "pages": pages,
            "count": len(items),
            "truncated": truncated,
        })
        return items

    async def list_opportunities(
        self,
        *,
        page_size: int,
        max_pages: int,
        pipeline_id: Optional[str] = None,
    ) -> OpportunityListing:
        """
        Fetch all opportunities for the location.

        Prefers the POST search; if any page of it fails, starts over with
        the GET listing. If both fail the listing is empty and `failed` is
        set, with the per-endpoint diagnostics in `attempts`.
        """
        listing = OpportunityListing()
        items = await self._collect(
            self._search_page_post, "POST /opportunities/search",
            page_size, max_pages, pipeline_id, listing,
        )
        if items is None:
            items = await self._collect(
                self._search_page_get, "GET /opportunities/search",
                page_size, max_pages, pipeline_id, listing,
            )
        if items is None:
            return listing

        seen: set[str] = set()
        for raw in items:
            try:
                opp = parse_opportunity(raw)
            except ValueError as e:
                listing.skipped += 1
                logger.warning("skipping malformed opportunity: %s", e)
                continue
            if opp.id in seen:
                continue
            if pipeline_id and opp.pipeline_id and opp.pipeline_id != pipeline_id:
                continue
            seen.add(opp.id)
            listing.opportunities.append(opp)
        return listing

    # -----------------------------------------------------------------------
    # Contacts
    # -----------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> Contact:
        data = await self.request("GET", f"/contacts/{contact_id}")
        return parse_contact(data)
