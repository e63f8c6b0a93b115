"""
Opportunity reconciliation run.

Pulls pipelines, opportunities, contacts and calendar events from the
financing partner's GHL location, matches each opportunity to an internal
lead, and ratchets the lead's funnel flags forward. Safe to re-run: a second
pass over unchanged upstream data writes nothing.

Failure policy:
- fatal (raises): credentials cannot be loaded/refreshed, pipelines cannot be listed
- degraded (recorded, run continues): contact, calendar or event fetch
  failures, unmapped stages, no opportunities, no eligible leads
- isolated: a failed update batch is counted and the next batch still runs
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from oppsync.adapters.calendar.ghl import list_calendar_events, list_calendars
from oppsync.adapters.ghl.auth import CredentialStore, GHLConnection, get_valid_connection
from oppsync.adapters.ghl.client import GHLAPIError, GHLClient
from oppsync.config import ReconcileConfig
from oppsync.engine.appointments import AppointmentBook, AppointmentRules, correlate
from oppsync.engine.leads import (
    LeadProgress,
    LeadRecord,
    LeadScope,
    LeadStore,
    LeadUpdate,
    fetch_all_candidates,
)
from oppsync.engine.matcher import LeadIndex
from oppsync.engine.pacing import Pacer
from oppsync.engine.providers.ghl_parser import Contact, Opportunity, Pipeline
from oppsync.engine.ratchet import StageObservation, advance, build_update
from oppsync.engine.stage_mapper import StageMapper
from oppsync.engine.stages import CONSULTATION_BOOKED, PAST_CONSULTATION, is_funnel_stage
from oppsync.engine.sync_log import SyncLogSink, log_run

logger = logging.getLogger(__name__)

# Upstream errors that degrade a single unit of work
_UNIT_ERRORS = (GHLAPIError, httpx.HTTPError, ValueError)


@dataclass
class RunSummary:
    status: str = "success"
    message: str = ""
    opportunities_seen: int = 0
    contacts_resolved: int = 0
    candidate_leads: int = 0
    leads_matched: int = 0
    leads_updated: int = 0
    leads_failed: int = 0
    unmatched: int = 0
    appointments_seen: int = 0
    pipelines: list[dict[str, Any]] = field(default_factory=list)
    unmapped_stages: list[str] = field(default_factory=list)
    duplicate_identities: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    debug: dict[str, Any] = field(default_factory=dict)
    scope: dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status != "error"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data

    def log_metadata(self) -> dict[str, Any]:
        return {
            "total_opportunities": self.opportunities_seen,
            "contacts_resolved": self.contacts_resolved,
            "candidate_leads": self.candidate_leads,
            "matched": self.leads_matched,
            "updated": self.leads_updated,
            "failed": self.leads_failed,
            "unmatched": self.unmatched,
            "pipelines": [p["name"] for p in self.pipelines],
            "unmapped_stages": self.unmapped_stages,
            "duplicate_identities": len(self.duplicate_identities),
            "errors": self.errors[:50],
            "scope": self.scope,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: list[LeadUpdate], size: int) -> list[list[LeadUpdate]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class Reconciler:
    def __init__(
        self,
        config: ReconcileConfig,
        *,
        credentials: CredentialStore,
        leads: LeadStore,
        sync_log: SyncLogSink,
        http: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        base_url: str = "https://services.leadconnectorhq.com",
        api_version: str = "2021-07-28",
        now: Callable[[], datetime] = _utcnow,
        pacer: Optional[Pacer] = None,
    ):
        self.config = config
        self.credentials = credentials
        self.leads = leads
        self.sync_log = sync_log
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url
        self.api_version = api_version
        self.now = now
        self.pacer = pacer or Pacer(config.request_interval)
        self.mapper = StageMapper(config.stage_labels)
        self.rules = AppointmentRules(
            disqualifying_statuses=config.disqualifying_statuses,
            disqualifying_stage_keywords=config.disqualifying_stage_keywords,
        )

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    async def run(self, scope: Optional[LeadScope] = None) -> RunSummary:
        scope = scope or LeadScope()
        summary = RunSummary(scope=scope.as_dict())
        connection: Optional[GHLConnection] = None

        logger.info("=== SYNC OPPORTUNITIES (location %s) ===", self.config.location_id)
        try:
            connection = await get_valid_connection(
                self.credentials,
                self.http,
                location_id=self.config.location_id,
                client_id=self.client_id,
                client_secret=self.client_secret,
                now=self.now,
            )
            client = GHLClient(
                self.http,
                connection.access_token,
                self.config.location_id,
                base_url=self.base_url,
                api_version=self.api_version,
            )
            await self._run(client, scope, summary)
        except asyncio.CancelledError:
            summary.status = "error"
            summary.message = "Reconciliation cancelled (budget exceeded)"
            summary.errors.append({"kind": "fatal", "error": "cancelled"})
            logger.error("reconciliation run cancelled")
            await asyncio.shield(self._finish(connection, summary))
            raise
        except Exception as e:
            summary.status = "error"
            summary.message = f"Reconciliation failed: {e}"
            summary.errors.append({"kind": "fatal", "error": str(e)[:300]})
            logger.error("reconciliation run failed: %s", e)
            await self._finish(connection, summary)
            raise

        await self._finish(connection, summary)
        return summary

    async def _finish(self, connection: Optional[GHLConnection], summary: RunSummary) -> None:
        metadata = summary.log_metadata()
        log_run(status=summary.status, message=summary.message, metadata=metadata)
        await self.sync_log.record(
            connection_id=connection.id if connection else None,
            status=summary.status,
            message=summary.message,
            metadata=metadata,
        )

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def _run(self, client: GHLClient, scope: LeadScope, summary: RunSummary) -> None:
        pipelines = await client.get_pipelines()
        if self.config.pipeline_id:
            pipelines = [p for p in pipelines if p.id == self.config.pipeline_id]
        summary.pipelines = [
            {"id": p.id, "name": p.name, "stages": len(p.stages)} for p in pipelines
        ]
        logger.info("found %d pipelines", len(pipelines))
        if not pipelines:
            summary.message = "No pipelines found"
            return
        stage_names = self._stage_names(pipelines)

        listing = await client.list_opportunities(
            page_size=self.config.opportunity_page_size,
            max_pages=self.config.max_opportunity_pages,
            pipeline_id=self.config.pipeline_id,
        )
        summary.opportunities_seen = len(listing.opportunities)
        summary.debug["api_attempts"] = listing.attempts
        if listing.skipped:
            summary.errors.append({"kind": "opportunity_parse", "skipped": listing.skipped})
        if listing.truncated:
            summary.errors.append({
                "kind": "opportunities_truncated",
                "max_pages": self.config.max_opportunity_pages,
                "count": summary.opportunities_seen,
            })
        logger.info("total opportunities: %d", summary.opportunities_seen)
        if listing.failed:
            summary.status = "degraded"
            summary.errors.append({"kind": "opportunities", "attempts": listing.attempts})
        if not listing.opportunities:
            summary.message = "No opportunities found"
            return

        contacts = await self._fetch_contacts(client, listing.opportunities, summary)
        book = await self._fetch_appointments(client, summary)

        candidates = await fetch_all_candidates(
            self.leads,
            excluded_location_ids=sorted(self.config.excluded_location_ids),
            scope=scope,
            page_size=self.config.lead_page_size,
        )
        summary.candidate_leads = len(candidates)
        if not candidates:
            summary.message = "No eligible leads found"
            self._settle_status(summary)
            return

        index = LeadIndex.build(candidates)
        summary.duplicate_identities = [d.as_dict() for d in index.duplicates]

        updates = self._plan_updates(listing.opportunities, contacts, book, index, stage_names, summary)
        logger.info("matched %d opportunities, %d updates needed", summary.leads_matched, len(updates))

        await self._apply(updates, summary)
        summary.message = (
            f"Matched {summary.leads_matched} opportunities, "
            f"updated {summary.leads_updated} leads"
        )
        self._settle_status(summary)

    @staticmethod
    def _stage_names(pipelines: list[Pipeline]) -> dict[str, str]:
        names: dict[str, str] = {}
        for pipeline in pipelines:
            for stage in pipeline.stages:
                names[stage.id] = stage.name
        return names

    async def _fetch_contacts(
        self,
        client: GHLClient,
        opportunities: list[Opportunity],
        summary: RunSummary,
    ) -> dict[str, Contact]:
        contact_ids = list(dict.fromkeys(o.contact_id for o in opportunities if o.contact_id))
        contacts: dict[str, Contact] = {}
        for contact_id in contact_ids:
            await self.pacer.wait()
            try:
                contacts[contact_id] = await client.get_contact(contact_id)
            except _UNIT_ERRORS as e:
                logger.warning("contact %s could not be fetched: %s", contact_id, e)
                summary.errors.append({
                    "kind": "contact",
                    "contact_id": contact_id,
                    "error": str(e)[:300],
                })
        summary.contacts_resolved = len(contacts)
        logger.info("fetched %d/%d contacts", len(contacts), len(contact_ids))
        return contacts

    async def _fetch_appointments(self, client: GHLClient, summary: RunSummary) -> AppointmentBook:
        book = AppointmentBook()
        now = self.now()
        start_dt = now - self.config.appointment_past
        end_dt = now + self.config.appointment_future

        await self.pacer.wait()
        try:
            calendars = await list_calendars(client)
        except _UNIT_ERRORS as e:
            logger.warning("calendars could not be listed: %s", e)
            summary.errors.append({"kind": "calendars", "error": str(e)[:300]})
            return book

        for calendar in calendars:
            await self.pacer.wait()
            try:
                events = await list_calendar_events(client, calendar.id, start_dt, end_dt)
            except _UNIT_ERRORS as e:
                logger.warning("events for calendar %s could not be fetched: %s", calendar.id, e)
                summary.errors.append({
                    "kind": "calendar_events",
                    "calendar_id": calendar.id,
                    "error": str(e)[:300],
                })
                continue
            summary.appointments_seen += len(events)
            book.observe_all(events)

        logger.info(
            "fetched %d appointments across %d calendars (%d contacts)",
            summary.appointments_seen, len(calendars), len(book),
        )
        return book

    def _plan_updates(
        self,
        opportunities: list[Opportunity],
        contacts: dict[str, Contact],
        book: AppointmentBook,
        index: LeadIndex,
        stage_names: dict[str, str],
        summary: RunSummary,
    ) -> list[LeadUpdate]:
        now = self.now()
        originals: dict[str, LeadRecord] = {}
        states: dict[str, LeadProgress] = {}
        unmapped: set[str] = set()

        # Oldest first, so the latest stage change lands last for each lead
        for opp in sorted(opportunities, key=lambda o: o.updated_at):
            contact = contacts.get(opp.contact_id) if opp.contact_id else None
            match = index.match(contact) if contact is not None else None
            if match is None:
                summary.unmatched += 1
                continue
            summary.leads_matched += 1

            lead = match.lead
            originals.setdefault(lead.id, lead)
            state = states.get(lead.id, lead.progress)

            raw_label = stage_names.get(opp.stage_id or "") or opp.stage_id or ""
            stage = self.mapper.map(raw_label)
            if not is_funnel_stage(stage):
                unmapped.add(raw_label)

            facts = correlate(
                book.latest(opp.contact_id),
                stage=stage,
                consulted_before=bool(state.reached.get(CONSULTATION_BOOKED)),
                advanced_before=any(state.reached.get(s) for s in PAST_CONSULTATION),
                consultation_at=state.reached_at.get(CONSULTATION_BOOKED),
                source_timestamp=opp.updated_at,
                now=now,
                rules=self.rules,
            )
            states[lead.id] = advance(
                state,
                StageObservation(
                    opportunity_id=opp.id,
                    contact_id=opp.contact_id,
                    stage=stage,
                    source_timestamp=opp.updated_at,
                ),
                facts,
            )

        summary.unmapped_stages = sorted(unmapped)
        if unmapped:
            logger.warning("unmapped pipeline stages: %s", ", ".join(sorted(unmapped)))

        updates: list[LeadUpdate] = []
        for lead_id, state in states.items():
            update = build_update(lead_id, originals[lead_id].progress, state)
            if update is not None:
                updates.append(update)
        return updates

    async def _apply(self, updates: list[LeadUpdate], summary: RunSummary) -> None:
        for number, batch in enumerate(_chunks(updates, self.config.update_batch_size), start=1):
            try:
                await self.leads.apply_updates(batch)
            except Exception as e:
                lead_ids = [u.lead_id for u in batch]
                summary.leads_failed += len(batch)
                summary.errors.append({
                    "kind": "update_batch",
                    "batch": number,
                    "lead_ids": lead_ids,
                    "error": str(e)[:300],
                })
                logger.error("update batch %d failed (%s): %s", number, ", ".join(lead_ids), e)
                continue
            summary.leads_updated += len(batch)

    @staticmethod
    def _settle_status(summary: RunSummary) -> None:
        if summary.status == "success" and summary.errors:
            summary.status = "degraded"
