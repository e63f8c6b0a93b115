"""
Parsers for GHL (LeadConnector) API payloads.

One function per upstream shape. Each returns a frozen dataclass or raises
ValueError when a required field is missing, so untyped JSON never reaches
the matching and ratchet logic.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass(frozen=True)
class PipelineStage:
    id: str
    name: str
    position: int


@dataclass(frozen=True)
class Pipeline:
    id: str
    name: str
    stages: tuple[PipelineStage, ...]


@dataclass(frozen=True)
class Opportunity:
    id: str
    pipeline_id: Optional[str]
    stage_id: Optional[str]
    contact_id: Optional[str]
    status: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class Contact:
    id: str
    email: Optional[str]
    phone: Optional[str]


@dataclass(frozen=True)
class Calendar:
    id: str
    name: Optional[str]


@dataclass(frozen=True)
class Appointment:
    id: str
    calendar_id: Optional[str]
    contact_id: str
    start_time: datetime
    end_time: Optional[datetime]
    status: Optional[str]


def _first_non_empty(payload: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        val = payload.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


def parse_dt(value: Any) -> Optional[datetime]:
    """Parse ISO strings or epoch (seconds or milliseconds). None if unparseable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        # GHL sends epoch milliseconds in calendar payloads
        if seconds > 1e11:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        txt = value.strip()
        if txt.isdigit():
            return parse_dt(int(txt))
        if txt.endswith("Z"):
            txt = txt[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(txt)
        except ValueError:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def _require_dict(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError(f"{what} payload is not an object")
    return payload


def _items(payload: Any, *keys: str) -> list[Any]:
    if not isinstance(payload, dict):
        return []
    for key in keys:
        val = payload.get(key)
        if isinstance(val, list):
            return val
    return []


def parse_pipeline(payload: Any) -> Pipeline:
    data = _require_dict(payload, "pipeline")
    pipeline_id = _first_non_empty(data, "id", "_id")
    if not pipeline_id:
        raise ValueError("pipeline without id")

    stages: list[PipelineStage] = []
    for idx, raw in enumerate(data.get("stages") or []):
        if not isinstance(raw, dict):
            continue
        stage_id = _first_non_empty(raw, "id", "_id")
        if not stage_id:
            continue
        position = raw.get("position")
        stages.append(PipelineStage(
            id=stage_id,
            name=_first_non_empty(raw, "name") or stage_id,
            position=position if isinstance(position, int) else idx,
        ))
    stages.sort(key=lambda s: s.position)

    return Pipeline(
        id=pipeline_id,
        name=_first_non_empty(data, "name") or pipeline_id,
        stages=tuple(stages),
    )


def parse_pipelines_response(payload: Any) -> list[Pipeline]:
    """Parse GET /opportunities/pipelines. Malformed pipelines are skipped."""
    out: list[Pipeline] = []
    for raw in _items(payload, "pipelines"):
        try:
            out.append(parse_pipeline(raw))
        except ValueError:
            continue
    return out


def parse_opportunity(payload: Any) -> Opportunity:
    data = _require_dict(payload, "opportunity")
    opp_id = _first_non_empty(data, "id", "_id")
    if not opp_id:
        raise ValueError("opportunity without id")

    contact = data.get("contact")
    contact_id = _first_non_empty(data, "contactId", "contact_id") or (
        _first_non_empty(contact, "id") if isinstance(contact, dict) else None
    )

    updated_at = (
        parse_dt(data.get("lastStageChangeAt"))
        or parse_dt(data.get("updatedAt"))
        or parse_dt(data.get("createdAt"))
    )
    if updated_at is None:
        raise ValueError(f"opportunity {opp_id} has no usable timestamp")

    return Opportunity(
        id=opp_id,
        pipeline_id=_first_non_empty(data, "pipelineId", "pipeline_id"),
        stage_id=_first_non_empty(data, "pipelineStageId", "pipeline_stage_id", "stageId"),
        contact_id=contact_id,
        status=_first_non_empty(data, "status"),
        updated_at=updated_at,
    )


def opportunity_items(payload: Any) -> list[Any]:
    """Raw opportunity items from a search response (`opportunities` or `data`)."""
    return _items(payload, "opportunities", "data")


def parse_contact(payload: Any) -> Contact:
    """Parse GET /contacts/{id}; accepts `{contact: {...}}` or a bare object."""
    data = _require_dict(payload, "contact")
    inner = data.get("contact")
    if isinstance(inner, dict):
        data = inner
    contact_id = _first_non_empty(data, "id", "_id")
    if not contact_id:
        raise ValueError("contact without id")
    return Contact(
        id=contact_id,
        email=_first_non_empty(data, "email"),
        phone=_first_non_empty(data, "phone"),
    )


def parse_calendars_response(payload: Any) -> list[Calendar]:
    out: list[Calendar] = []
    for raw in _items(payload, "calendars"):
        if not isinstance(raw, dict):
            continue
        cal_id = _first_non_empty(raw, "id", "_id")
        if cal_id:
            out.append(Calendar(id=cal_id, name=_first_non_empty(raw, "name")))
    return out


def parse_appointment(payload: Any) -> Appointment:
    data = _require_dict(payload, "event")
    event_id = _first_non_empty(data, "id", "_id")
    if not event_id:
        raise ValueError("event without id")
    contact_id = _first_non_empty(data, "contactId", "contact_id")
    if not contact_id:
        raise ValueError(f"event {event_id} has no contact")
    start_time = parse_dt(data.get("startTime"))
    if start_time is None:
        raise ValueError(f"event {event_id} has no start time")

    status = _first_non_empty(data, "appointmentStatus", "status")
    return Appointment(
        id=event_id,
        calendar_id=_first_non_empty(data, "calendarId", "calendar_id"),
        contact_id=contact_id,
        start_time=start_time,
        end_time=parse_dt(data.get("endTime")),
        status=status.lower() if status else None,
    )


def event_items(payload: Any) -> list[Any]:
    return _items(payload, "events")
