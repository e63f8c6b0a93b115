"""
Appointment correlation: which meeting belongs to a contact, and did it happen.

The "occurred" heuristics are business-defined and applied in this order:
1. start time passed, status not cancelled/no-show, stage not disqualifying
2. the stage, or the lead's high-water mark, is past consultation
3. newly blocked, but consultation had already been reached before the block
Otherwise the answer is unknown (None) for future or blocked-only cases and
False for past meetings that were cancelled or missed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from oppsync.engine.providers.ghl_parser import Appointment
from oppsync.engine.stage_mapper import normalize_stage_label
from oppsync.engine.stages import BLOCKED, PAST_CONSULTATION


@dataclass(frozen=True)
class AppointmentFacts:
    date: Optional[datetime]
    occurred: Optional[bool]
    occurred_at: Optional[datetime]


@dataclass(frozen=True)
class AppointmentRules:
    disqualifying_statuses: frozenset[str]
    disqualifying_stage_keywords: tuple[str, ...]

    def status_disqualifies(self, status: Optional[str]) -> bool:
        return (status or "").lower() in self.disqualifying_statuses

    def stage_disqualifies(self, stage: Optional[str]) -> bool:
        if stage == BLOCKED:
            return True
        key = normalize_stage_label(stage or "")
        return any(word in key for word in self.disqualifying_stage_keywords)


class AppointmentBook:
    """Latest-start appointment per contact, as observed during one run."""

    def __init__(self) -> None:
        self._latest: dict[str, Appointment] = {}

    def observe(self, appointment: Appointment) -> bool:
        current = self._latest.get(appointment.contact_id)
        if current is None or appointment.start_time > current.start_time:
            self._latest[appointment.contact_id] = appointment
            return True
        return False

    def observe_all(self, appointments: Iterable[Appointment]) -> None:
        for appointment in appointments:
            self.observe(appointment)

    def latest(self, contact_id: Optional[str]) -> Optional[Appointment]:
        if not contact_id:
            return None
        return self._latest.get(contact_id)

    def __len__(self) -> int:
        return len(self._latest)


def _meeting_time(appointment: Appointment, now: datetime) -> datetime:
    if appointment.end_time is not None and appointment.end_time <= now:
        return appointment.end_time
    return appointment.start_time


def correlate(
    appointment: Optional[Appointment],
    *,
    stage: str,
    consulted_before: bool,
    advanced_before: bool = False,
    consultation_at: Optional[datetime],
    source_timestamp: datetime,
    now: datetime,
    rules: AppointmentRules,
) -> Optional[AppointmentFacts]:
    """
    Derive appointment facts for one lead observation.

    `consulted_before` is the lead's consultation flag before this
    observation was applied; `advanced_before` is true when the lead had
    already reached a stage past consultation. Returns None when there is
    nothing to record.
    """
    date = appointment.start_time if appointment is not None else None
    started = appointment is not None and appointment.start_time <= now

    if (
        appointment is not None
        and started
        and not rules.status_disqualifies(appointment.status)
        and not rules.stage_disqualifies(stage)
    ):
        return AppointmentFacts(date, True, _meeting_time(appointment, now))

    inferred = (
        stage in PAST_CONSULTATION
        or advanced_before
        or (stage == BLOCKED and consulted_before)
    )
    if inferred:
        if started:
            occurred_at = appointment.start_time
        else:
            occurred_at = consultation_at or source_timestamp
        return AppointmentFacts(date, True, occurred_at)

    if appointment is None:
        return None
    if not started or stage == BLOCKED:
        return AppointmentFacts(date, None, None)
    return AppointmentFacts(date, False, None)
