"""
Progress ratchet: folds stage observations into a lead's high-water marks.

Rules:
- observing a funnel stage at position k reaches every stage at <= k;
  BLOCKED reaches only itself; unmapped stages reach nothing
- flags only go false -> true
- a first-reached timestamp is set once, from the CRM's own updated_at,
  never from the wall clock of the run
- appointment facts merge first-write-wins; occurred goes None -> False -> True
- a lead is written only when something actually changed
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from oppsync.engine.appointments import AppointmentFacts
from oppsync.engine.leads import LeadProgress, LeadUpdate
from oppsync.engine.stages import ALL_STAGES, flag_column, implied_stages, timestamp_column


@dataclass(frozen=True)
class StageObservation:
    opportunity_id: str
    contact_id: Optional[str]
    stage: str
    source_timestamp: datetime


def merge_appointment(progress: LeadProgress, facts: AppointmentFacts) -> None:
    if progress.appointment_date is None and facts.date is not None:
        progress.appointment_date = facts.date

    if facts.occurred is True:
        progress.appointment_occurred = True
        if progress.appointment_occurred_at is None:
            progress.appointment_occurred_at = facts.occurred_at
    elif facts.occurred is False and progress.appointment_occurred is None:
        progress.appointment_occurred = False


def advance(
    progress: LeadProgress,
    observation: StageObservation,
    appointment: Optional[AppointmentFacts] = None,
) -> LeadProgress:
    """Return a new LeadProgress with the observation applied. Input is not mutated."""
    new = progress.copy()

    new.opportunity_id = observation.opportunity_id
    if observation.contact_id:
        new.external_contact_id = observation.contact_id
    new.pipeline_stage = observation.stage
    new.pipeline_updated_at = observation.source_timestamp

    for stage in implied_stages(observation.stage):
        if new.reached.get(stage):
            continue
        new.reached[stage] = True
        if new.reached_at.get(stage) is None:
            new.reached_at[stage] = observation.source_timestamp

    if appointment is not None:
        merge_appointment(new, appointment)

    return new


def diff(before: LeadProgress, after: LeadProgress) -> dict[str, Any]:
    """Column -> new value for every field that changed between the two states."""
    changes: dict[str, Any] = {}

    for attr in ("opportunity_id", "external_contact_id", "pipeline_stage", "pipeline_updated_at"):
        new_val = getattr(after, attr)
        if new_val is not None and new_val != getattr(before, attr):
            changes[attr] = new_val

    for stage in ALL_STAGES:
        if after.reached.get(stage) and not before.reached.get(stage):
            changes[flag_column(stage)] = True
        at = after.reached_at.get(stage)
        if at is not None and before.reached_at.get(stage) is None:
            changes[timestamp_column(stage)] = at

    if after.appointment_date is not None and before.appointment_date is None:
        changes["appointment_date"] = after.appointment_date
    if after.appointment_occurred is not None and after.appointment_occurred != before.appointment_occurred:
        changes["appointment_occurred"] = after.appointment_occurred
    if after.appointment_occurred_at is not None and before.appointment_occurred_at is None:
        changes["appointment_occurred_at"] = after.appointment_occurred_at

    return changes


def build_update(lead_id: str, before: LeadProgress, after: LeadProgress) -> Optional[LeadUpdate]:
    changes = diff(before, after)
    if not changes:
        return None
    return LeadUpdate(lead_id=lead_id, changes=changes)
