from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from oppsync.config import ReconcileConfig, settings


def test_from_settings_always_excludes_own_location():
    cfg = ReconcileConfig.from_settings(
        replace(settings, sf_location_id="loc-sf", excluded_location_ids=("loc-test",), sf_pipeline_id="")
    )
    assert cfg.location_id == "loc-sf"
    assert cfg.pipeline_id is None
    assert cfg.excluded_location_ids == frozenset({"loc-sf", "loc-test"})


def test_from_settings_converts_units():
    cfg = ReconcileConfig.from_settings(
        replace(settings, sf_location_id="loc-sf", request_delay_ms=120, appointment_past_days=7)
    )
    assert cfg.request_interval == timedelta(milliseconds=120)
    assert cfg.appointment_past == timedelta(days=7)


def test_location_required():
    with pytest.raises(RuntimeError):
        ReconcileConfig.from_settings(replace(settings, sf_location_id=""))


def test_config_is_immutable():
    cfg = ReconcileConfig(location_id="loc-sf")
    with pytest.raises(AttributeError):
        cfg.location_id = "other"
