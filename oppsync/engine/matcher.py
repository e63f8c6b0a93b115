"""
Matches CRM contacts to internal leads by normalized identity.

Lookup tables are built once per run. They are last-write-wins, so two
leads sharing an identity key cannot both match; such collisions are
recorded and surfaced in the run summary as a data-quality issue.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from oppsync.engine.identity import normalize_email, normalize_phone
from oppsync.engine.leads import LeadRecord
from oppsync.engine.providers.ghl_parser import Contact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateIdentity:
    kind: str
    key: str
    lead_ids: tuple[str, ...]

    def as_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "key": self.key, "lead_ids": list(self.lead_ids)}


@dataclass(frozen=True)
class LeadMatch:
    lead: LeadRecord
    matched_by: str


@dataclass
class LeadIndex:
    by_email: dict[str, LeadRecord] = field(default_factory=dict)
    by_phone: dict[str, LeadRecord] = field(default_factory=dict)
    duplicates: list[DuplicateIdentity] = field(default_factory=list)
    size: int = 0

    @classmethod
    def build(cls, leads: Iterable[LeadRecord]) -> "LeadIndex":
        index = cls()
        seen: dict[tuple[str, str], list[str]] = {}
        for lead in leads:
            index.size += 1
            email = normalize_email(lead.email)
            phone = normalize_phone(lead.phone)
            if email:
                index.by_email[email] = lead
                seen.setdefault(("email", email), []).append(lead.id)
            if phone:
                index.by_phone[phone] = lead
                seen.setdefault(("phone", phone), []).append(lead.id)

        for (kind, key), ids in seen.items():
            if len(ids) > 1:
                index.duplicates.append(DuplicateIdentity(kind, key, tuple(ids)))
        if index.duplicates:
            logger.warning(
                "%d identity keys are shared by more than one lead", len(index.duplicates)
            )
        return index

    def match(self, contact: Contact) -> Optional[LeadMatch]:
        """Email first, then phone. None if neither key hits."""
        email = normalize_email(contact.email)
        if email:
            lead = self.by_email.get(email)
            if lead is not None:
                return LeadMatch(lead, "email")
        phone = normalize_phone(contact.phone)
        if phone:
            lead = self.by_phone.get(phone)
            if lead is not None:
                return LeadMatch(lead, "phone")
        return None
