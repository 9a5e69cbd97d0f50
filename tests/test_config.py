import json

import pytest
from pydantic import ValidationError

from src.processing.config import (
    DetectionThresholds, EngineConfig, PricingPolicy, ScoringWeights, load_config,
)
from src.serve.schemas import DrivingEventType


def test_defaults():
    cfg = load_config()
    assert cfg.fusion.pairing_window_ms == 500
    assert cfg.detection.hard_braking_mps2 == -4.0
    assert cfg.detection.speeding_min_duration_ms == 5000
    assert cfg.pricing.base_premium == 1200.0
    assert sum(cfg.scoring.overall_weights.values()) == pytest.approx(1.0)


def test_load_from_mapping_and_file(tmp_path):
    overrides = {"detection": {"speeding_tolerance_mps": 3.0}, "utc_offset_minutes": -300}
    assert load_config(overrides).detection.speeding_tolerance_mps == 3.0
    path = tmp_path / "engine.json"
    path.write_text(json.dumps(overrides), encoding="utf-8")
    cfg = load_config(path)
    assert cfg.utc_offset_minutes == -300
    assert cfg.detection.rapid_acceleration_mps2 == 3.5


def test_config_is_frozen():
    cfg = EngineConfig()
    with pytest.raises(ValidationError):
        cfg.channel_capacity = 1


def test_unknown_keys_rejected():
    with pytest.raises(ValidationError):
        load_config({"detection": {"speeding_tolerence_mps": 3.0}})


def test_invalid_thresholds_rejected():
    with pytest.raises(ValidationError):
        DetectionThresholds(hard_braking_mps2=4.0)
    with pytest.raises(ValidationError):
        DetectionThresholds(severity_ratios=(1.5, 1.25, 2.0))
    with pytest.raises(ValidationError):
        PricingPolicy(max_change=1.5)


def test_scoring_weights_validated():
    with pytest.raises(ValidationError):
        ScoringWeights(safety_weight=0.9)
    with pytest.raises(ValidationError):
        ScoringWeights(penalties={DrivingEventType.SPEEDING: {"comfort": 1.0}})
    w = ScoringWeights(safety_weight=0.25, legal_compliance_weight=0.25,
                       smoothness_weight=0.25, efficiency_weight=0.25)
    assert set(w.overall_weights.values()) == {0.25}
