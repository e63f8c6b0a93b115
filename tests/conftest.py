"""Shared fakes: in-memory stores and a mock GHL API served through httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import httpx
import pytest

from oppsync.adapters.ghl.auth import GHLConnection
from oppsync.config import ReconcileConfig
from oppsync.engine.leads import LeadProgress, LeadRecord, LeadScope, LeadUpdate
from oppsync.engine.pacing import Pacer
from oppsync.engine.reconcile import Reconciler
from oppsync.engine.stages import ALL_STAGES, flag_column, timestamp_column

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SF_LOCATION = "loc-sf"
PIPELINE_ID = "pipe-1"

STAGE_IDS = {
    "st-beratung": "🟢 Finanzierungsberatung gebucht",
    "st-blockiert": "⛔ Finanzierung blockiert",
    "st-bestaetigung": "Finanzierungsbestätigung ausgestellt",
    "st-warte": "Warte auf Kreditentscheidung",
    "st-vertrag": "✍️ Vertrag unterschrieben",
    "st-auszahlung": "Auszahlung erhalten 💶",
    "st-neu": "Neuer Kontakt",
}


def ts(day: int, hour: int = 9) -> datetime:
    return datetime(2026, 2, day, hour, 0, tzinfo=timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def make_lead(lead_id: str, email: Optional[str] = None, phone: Optional[str] = None, **kw: Any) -> LeadRecord:
    return LeadRecord(id=lead_id, email=email, phone=phone, progress=LeadProgress(), **kw)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


def apply_changes(progress: LeadProgress, changes: dict[str, Any]) -> None:
    """Same one-way semantics as UPDATE_LEAD_PROGRESS_SQL."""
    for attr in ("opportunity_id", "external_contact_id", "pipeline_stage", "pipeline_updated_at"):
        if changes.get(attr) is not None:
            setattr(progress, attr, changes[attr])
    for stage in ALL_STAGES:
        if changes.get(flag_column(stage)):
            progress.reached[stage] = True
        if progress.reached_at[stage] is None and changes.get(timestamp_column(stage)) is not None:
            progress.reached_at[stage] = changes[timestamp_column(stage)]
    if progress.appointment_date is None:
        progress.appointment_date = changes.get("appointment_date")
    if progress.appointment_occurred is not True and changes.get("appointment_occurred") is not None:
        progress.appointment_occurred = changes["appointment_occurred"]
    if progress.appointment_occurred_at is None:
        progress.appointment_occurred_at = changes.get("appointment_occurred_at")


class FakeLeadStore:
    def __init__(self, leads: Sequence[LeadRecord] = (), *, archived: Sequence[str] = ()):
        self.leads = {lead.id: lead for lead in leads}
        self.archived = set(archived)
        self.applied: list[list[LeadUpdate]] = []
        self.fail_batches: set[int] = set()
        self.page_calls = 0
        self._batch_no = 0

    async def fetch_candidates(
        self,
        *,
        excluded_location_ids: Sequence[str],
        scope: LeadScope,
        after_id: Optional[str],
        limit: int,
    ) -> list[LeadRecord]:
        self.page_calls += 1
        rows = []
        for lead in sorted(self.leads.values(), key=lambda l: l.id):
            if not (lead.email or lead.phone):
                continue
            if lead.location_id in excluded_location_ids:
                continue
            if lead.id in self.archived:
                continue
            if scope.lead_id and lead.id != scope.lead_id:
                continue
            if scope.objekt_id and lead.objekt_id != scope.objekt_id:
                continue
            if after_id is not None and lead.id <= after_id:
                continue
            rows.append(_snapshot(lead))
        return rows[:limit]

    async def apply_updates(self, updates: Sequence[LeadUpdate]) -> None:
        self._batch_no += 1
        if self._batch_no in self.fail_batches:
            raise RuntimeError("connection reset during batch")
        self.applied.append(list(updates))
        for update in updates:
            apply_changes(self.leads[update.lead_id].progress, update.changes)

    @property
    def update_count(self) -> int:
        return sum(len(batch) for batch in self.applied)


def _snapshot(lead: LeadRecord) -> LeadRecord:
    return LeadRecord(
        id=lead.id,
        email=lead.email,
        phone=lead.phone,
        location_id=lead.location_id,
        objekt_id=lead.objekt_id,
        progress=lead.progress.copy(),
    )


class FakeCredentialStore:
    def __init__(self, connection: Optional[GHLConnection]):
        self.connection = connection
        self.saved: list[GHLConnection] = []

    async def load(self, location_id: str) -> Optional[GHLConnection]:
        if self.connection and self.connection.location_id == location_id:
            return self.connection
        return None

    async def save(self, connection: GHLConnection) -> None:
        self.saved.append(connection)
        self.connection = connection


class FakeSyncLog:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    async def record(self, *, connection_id, status, message, metadata) -> None:
        self.records.append({
            "connection_id": connection_id,
            "status": status,
            "message": message,
            "metadata": metadata,
        })


# ---------------------------------------------------------------------------
# Mock GHL API
# ---------------------------------------------------------------------------


class FakeGHL:
    def __init__(self) -> None:
        self.pipelines: list[dict[str, Any]] = [{
            "id": PIPELINE_ID,
            "name": "Simpli Finance",
            "stages": [
                {"id": sid, "name": name, "position": i}
                for i, (sid, name) in enumerate(STAGE_IDS.items())
            ],
        }]
        self.opportunities: list[dict[str, Any]] = []
        self.contacts: dict[str, dict[str, Any]] = {}
        self.calendars: list[dict[str, Any]] = [{"id": "cal-1", "name": "Beratung"}]
        self.events: dict[str, list[dict[str, Any]]] = {"cal-1": []}
        self.fail: dict[str, tuple[int, str]] = {}
        self.requests: list[httpx.Request] = []
        self.token_response: tuple[int, dict[str, Any]] = (200, {
            "access_token": "fresh-token",
            "refresh_token": "fresh-refresh",
            "expires_in": 86400,
        })

    def add_opportunity(self, opp_id: str, contact_id: str, stage_id: str, updated_at: datetime) -> None:
        self.opportunities.append({
            "id": opp_id,
            "name": f"Deal {opp_id}",
            "pipelineId": PIPELINE_ID,
            "pipelineStageId": stage_id,
            "status": "open",
            "contactId": contact_id,
            "createdAt": iso(updated_at - timedelta(days=10)),
            "updatedAt": iso(updated_at),
        })

    def set_stage(self, opp_id: str, stage_id: str, updated_at: datetime) -> None:
        for opp in self.opportunities:
            if opp["id"] == opp_id:
                opp["pipelineStageId"] = stage_id
                opp["updatedAt"] = iso(updated_at)

    def add_contact(self, contact_id: str, email: Optional[str] = None, phone: Optional[str] = None) -> None:
        self.contacts[contact_id] = {"id": contact_id, "email": email, "phone": phone}

    def add_event(self, contact_id: str, start: datetime, status: str = "confirmed", calendar_id: str = "cal-1") -> None:
        self.events.setdefault(calendar_id, []).append({
            "id": f"evt-{contact_id}-{len(self.events[calendar_id])}",
            "calendarId": calendar_id,
            "contactId": contact_id,
            "startTime": iso(start),
            "endTime": iso(start + timedelta(hours=1)),
            "appointmentStatus": status,
        })

    def _page(self, items: list[Any], page: int, limit: int) -> list[Any]:
        start = (page - 1) * limit
        return items[start:start + limit]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        key = f"{request.method} {path}"
        if key in self.fail:
            status, body = self.fail[key]
            return httpx.Response(status, text=body)

        if path == "/oauth/token":
            status, body = self.token_response
            return httpx.Response(status, json=body)
        if path == "/opportunities/pipelines":
            return httpx.Response(200, json={"pipelines": self.pipelines})
        if path == "/opportunities/search":
            if request.method == "POST":
                body = json.loads(request.content)
                page, limit = int(body.get("page", 1)), int(body.get("limit", 100))
                return httpx.Response(200, json={"opportunities": self._page(self.opportunities, page, limit)})
            params = request.url.params
            page, limit = int(params.get("page", 1)), int(params.get("limit", 100))
            return httpx.Response(200, json={"data": self._page(self.opportunities, page, limit)})
        if path.startswith("/contacts/"):
            contact_id = path.rsplit("/", 1)[-1]
            contact = self.contacts.get(contact_id)
            if contact is None:
                return httpx.Response(404, text='{"message":"Contact not found"}')
            return httpx.Response(200, json={"contact": contact})
        if path == "/calendars/":
            return httpx.Response(200, json={"calendars": self.calendars})
        if path == "/calendars/events":
            calendar_id = request.url.params.get("calendarId")
            return httpx.Response(200, json={"events": self.events.get(calendar_id, [])})
        return httpx.Response(404, text=f"no route for {key}")


@pytest.fixture()
def ghl() -> FakeGHL:
    return FakeGHL()


@pytest.fixture()
def connection() -> GHLConnection:
    return GHLConnection(
        id="00000000-0000-0000-0000-0000000000c1",
        location_id=SF_LOCATION,
        access_token="valid-token",
        refresh_token="refresh-1",
        token_expires_at=NOW + timedelta(hours=6),
    )


@pytest.fixture()
def config() -> ReconcileConfig:
    return ReconcileConfig(
        location_id=SF_LOCATION,
        excluded_location_ids=frozenset({SF_LOCATION}),
        request_interval=timedelta(0),
        lead_page_size=2,
        opportunity_page_size=2,
        update_batch_size=2,
    )


def build_reconciler(
    config: ReconcileConfig,
    ghl: FakeGHL,
    leads: FakeLeadStore,
    credentials: FakeCredentialStore,
    sync_log: FakeSyncLog,
    now: datetime = NOW,
) -> tuple[Reconciler, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(ghl.handler))
    reconciler = Reconciler(
        config,
        credentials=credentials,
        leads=leads,
        sync_log=sync_log,
        http=http,
        client_id="client-id",
        client_secret="client-secret",
        now=lambda: now,
        pacer=Pacer(timedelta(0)),
    )
    return reconciler, http
