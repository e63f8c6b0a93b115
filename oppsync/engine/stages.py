"""
Internal funnel stages, their ordering, and the lead columns they drive.

Stages are string constants. The five funnel stages are ordered; BLOCKED is
flagged independently and implies nothing about the others.
"""
from __future__ import annotations

# Funnel stages in progression order
CONSULTATION_BOOKED = "consultation_booked"
CONFIRMATION_ISSUED = "confirmation_issued"
AWAITING_CREDIT_DECISION = "awaiting_credit_decision"
CONTRACT_SIGNED = "contract_signed"
PAYOUT_RECEIVED = "payout_received"

# Out-of-band terminal (may be reached at any point, even after CONTRACT_SIGNED)
BLOCKED = "blocked"

FUNNEL_ORDER: tuple[str, ...] = (
    CONSULTATION_BOOKED,
    CONFIRMATION_ISSUED,
    AWAITING_CREDIT_DECISION,
    CONTRACT_SIGNED,
    PAYOUT_RECEIVED,
)

# stage -> position (0-indexed)
STAGE_INDEX: dict[str, int] = {s: i for i, s in enumerate(FUNNEL_ORDER)}

ALL_STAGES: frozenset[str] = frozenset(FUNNEL_ORDER) | {BLOCKED}

# Stages that can only be reached after the consultation meeting took place
PAST_CONSULTATION: frozenset[str] = frozenset(FUNNEL_ORDER[1:])

# stage -> flag column on leads; the timestamp column is f"{flag}_at"
FLAG_COLUMNS: dict[str, str] = {
    CONSULTATION_BOOKED: "reached_consultation",
    CONFIRMATION_ISSUED: "reached_confirmation",
    AWAITING_CREDIT_DECISION: "reached_awaiting_credit",
    CONTRACT_SIGNED: "reached_contract",
    PAYOUT_RECEIVED: "reached_payout",
    BLOCKED: "reached_blocked",
}

# Display labels used by the financing partner's pipeline (source locale: de)
DEFAULT_STAGE_LABELS: tuple[tuple[str, str], ...] = (
    ("Finanzierungsberatung gebucht", CONSULTATION_BOOKED),
    ("Finanzierung blockiert", BLOCKED),
    ("Finanzierungsbestätigung ausgestellt", CONFIRMATION_ISSUED),
    ("Warte auf Kreditentscheidung", AWAITING_CREDIT_DECISION),
    ("Vertrag unterschrieben", CONTRACT_SIGNED),
    ("Auszahlung erhalten", PAYOUT_RECEIVED),
)


def is_funnel_stage(stage: str | None) -> bool:
    return stage in ALL_STAGES


def implied_stages(stage: str) -> tuple[str, ...]:
    """
    Stages implied as reached by observing `stage`.

    A funnel stage at position k implies every stage at positions <= k.
    BLOCKED implies only itself. Anything else implies nothing.
    """
    if stage == BLOCKED:
        return (BLOCKED,)
    idx = STAGE_INDEX.get(stage)
    if idx is None:
        return ()
    return FUNNEL_ORDER[: idx + 1]


def flag_column(stage: str) -> str:
    return FLAG_COLUMNS[stage]


def timestamp_column(stage: str) -> str:
    return f"{FLAG_COLUMNS[stage]}_at"
