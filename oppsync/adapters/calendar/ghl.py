"""
GHL calendar reads for appointment correlation.

Calendars are listed per location; events are fetched per calendar within
a bounded window. GHL expects the window as Unix timestamps in milliseconds.
"""
from __future__ import annotations

import logging
from datetime import datetime

from oppsync.adapters.ghl.client import GHLClient
from oppsync.engine.providers.ghl_parser import (
    Appointment,
    Calendar,
    event_items,
    parse_appointment,
    parse_calendars_response,
)

logger = logging.getLogger(__name__)


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


async def list_calendars(client: GHLClient) -> list[Calendar]:
    data = await client.request(
        "GET", "/calendars/", params={"locationId": client.location_id}
    )
    return parse_calendars_response(data)


async def list_calendar_events(
    client: GHLClient,
    calendar_id: str,
    start_dt: datetime,
    end_dt: datetime,
) -> list[Appointment]:
    """Events on one calendar between start_dt and end_dt. Malformed events are dropped."""
    params = {
        "locationId": client.location_id,
        "calendarId": calendar_id,
        "startTime": _ms(start_dt),
        "endTime": _ms(end_dt),
    }
    data = await client.request("GET", "/calendars/events", params=params)

    appointments: list[Appointment] = []
    for raw in event_items(data):
        try:
            appointments.append(parse_appointment(raw))
        except ValueError as e:
            logger.debug("dropping calendar event on %s: %s", calendar_id, e)
    return appointments
