from __future__ import annotations

import pytest

from oppsync.engine.stage_mapper import StageMapper, normalize_stage_label
from oppsync.engine.stages import (
    AWAITING_CREDIT_DECISION,
    BLOCKED,
    CONFIRMATION_ISSUED,
    CONSULTATION_BOOKED,
    CONTRACT_SIGNED,
    DEFAULT_STAGE_LABELS,
    PAYOUT_RECEIVED,
)


@pytest.fixture()
def mapper() -> StageMapper:
    return StageMapper(DEFAULT_STAGE_LABELS)


class TestNormalizeStageLabel:
    def test_lowercases_and_folds_umlauts(self):
        assert normalize_stage_label("Finanzierungsbestätigung Ausgestellt") == (
            "finanzierungsbestaetigung ausgestellt"
        )

    def test_strips_emoji_and_collapses_whitespace(self):
        assert normalize_stage_label("🟢  Vertrag ✍️ unterschrieben ") == "vertrag unterschrieben"

    def test_strips_punctuation(self):
        assert normalize_stage_label("Auszahlung erhalten!!") == "auszahlung erhalten"

    def test_other_accents(self):
        assert normalize_stage_label("Réservé") == "reserve"


class TestStageMapper:
    @pytest.mark.parametrize("label,stage", [
        ("Finanzierungsberatung gebucht", CONSULTATION_BOOKED),
        ("🟢 FINANZIERUNGSBERATUNG GEBUCHT", CONSULTATION_BOOKED),
        ("Finanzierung blockiert ⛔", BLOCKED),
        ("Finanzierungsbestätigung ausgestellt", CONFIRMATION_ISSUED),
        ("Warte auf Kreditentscheidung", AWAITING_CREDIT_DECISION),
        ("✍️ Vertrag unterschrieben", CONTRACT_SIGNED),
        ("Auszahlung erhalten 💶", PAYOUT_RECEIVED),
    ])
    def test_known_labels(self, mapper, label, stage):
        assert mapper.map(label) == stage

    def test_unknown_label_passes_through_unchanged(self, mapper):
        assert mapper.map("🆕 Neuer Kontakt") == "🆕 Neuer Kontakt"
        assert mapper.lookup("🆕 Neuer Kontakt") is None

    @pytest.mark.parametrize("label", ["", " ", "🔥🔥", "ßßß", "́", "123"])
    def test_total_function(self, mapper, label):
        result = mapper.map(label)
        assert isinstance(result, str)

    def test_none_maps_to_empty_string(self, mapper):
        assert mapper.map(None) == ""

    def test_table_is_read_only(self, mapper):
        with pytest.raises(TypeError):
            mapper.table["x"] = CONSULTATION_BOOKED

    def test_custom_table(self):
        custom = StageMapper((("Beratung erfolgt", CONFIRMATION_ISSUED),))
        assert custom.map("beratung ERFOLGT") == CONFIRMATION_ISSUED
        assert custom.map("Finanzierungsberatung gebucht") == "Finanzierungsberatung gebucht"
