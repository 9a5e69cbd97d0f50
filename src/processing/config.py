from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple, Union

from pydantic import BaseModel, Field, model_validator

from src.processing import feature_defs as fd
from src.serve.schemas import DrivingEventType, EventSeverity

_FROZEN = {"frozen": True, "extra": "forbid"}

SUB_SCORES = ("safety", "efficiency", "smoothness", "legal_compliance")


class FusionSettings(BaseModel):
    pairing_window_ms: int = Field(fd.PAIRING_WINDOW_MS, ge=0)
    max_buffer_size: int = Field(fd.MAX_BUFFER_SIZE, ge=1)
    max_pending_locations: int = Field(fd.MAX_PENDING_LOCATIONS, ge=1)
    location_timeout_ms: int = Field(fd.LOCATION_TIMEOUT_MS, ge=0)
    max_clock_jump_ms: int = Field(fd.MAX_CLOCK_JUMP_MS, gt=0)

    model_config = _FROZEN


class DetectionThresholds(BaseModel):
    speeding_tolerance_mps: float = Field(fd.SPEEDING_TOLERANCE_MPS, ge=0)
    speeding_min_duration_ms: int = Field(fd.SPEEDING_MIN_MS, ge=0)
    speeding_max_run_ms: int = Field(fd.SPEEDING_MAX_RUN_MS, gt=0)
    hard_braking_mps2: float = Field(fd.BRAKE_MPS2, lt=0, description="Signed, negative")
    rapid_acceleration_mps2: float = Field(fd.ACCEL_MPS2, gt=0)
    harsh_cornering_mps2: float = Field(fd.CORNER_MPS2, gt=0)
    phone_accel_mps2: float = Field(fd.PHONE_ACCEL, gt=0)
    phone_gyro_rad_s: float = Field(fd.PHONE_GYRO, gt=0)
    phone_min_ratio: float = Field(fd.PHONE_MIN_RATIO, gt=0, le=1)
    phone_max_speed_std_mps: float = Field(fd.PHONE_SPEED_STD_MPS, ge=0)
    smooth_max_accel_mps2: float = Field(fd.SMOOTH_ACCEL_MPS2, gt=0)
    smooth_min_speed_mps: float = Field(fd.SMOOTH_MIN_SPEED_MPS, ge=0)
    eco_max_accel_mps2: float = Field(fd.ECO_ACCEL_MPS2, gt=0)
    eco_min_gentle_ratio: float = Field(fd.ECO_GENTLE_RATIO, gt=0, le=1)
    eco_max_speed_mps: float = Field(fd.ECO_MAX_SPEED_MPS, gt=0)
    aggressive_min_events: int = Field(fd.AGGRESSIVE_MIN_EVENTS, ge=1)
    distracted_min_phone_events: int = Field(fd.DISTRACTED_MIN_PHONE_EVENTS, ge=1)
    fatigue_drive_ms: int = Field(fd.FATIGUE_DRIVE_MS, gt=0)
    fatigue_rest_ms: int = Field(fd.FATIGUE_REST_MS, gt=0)
    event_window_ms: int = Field(fd.EVENT_WINDOW_MS, gt=0)
    pattern_window_ms: int = Field(fd.PATTERN_WINDOW_MS, gt=0)
    nominal_fix_interval_ms: int = Field(fd.NOMINAL_FIX_INTERVAL_MS, gt=0)
    severity_ratios: Tuple[float, float, float] = fd.SEVERITY_RATIOS
    min_confidence: float = Field(fd.MIN_CONFIDENCE, ge=0, le=1)
    default_speed_limit_kph: float = Field(fd.DEFAULT_SPEED_LIMIT_KPH, gt=0)
    idle_speed_mps: float = Field(fd.LOW_SPEED_MPS, ge=0)
    night_start_hour: int = Field(fd.NIGHT_START_HOUR, ge=0, le=23)
    night_end_hour: int = Field(fd.NIGHT_END_HOUR, ge=0, le=23)

    model_config = _FROZEN

    @model_validator(mode="after")
    def _ratios_increase(self):
        r = self.severity_ratios
        if not (1.0 <= r[0] < r[1] < r[2]):
            raise ValueError("severity_ratios must be increasing and start at >= 1.0")
        return self


def _default_penalties() -> Dict[DrivingEventType, Dict[str, float]]:
    T = DrivingEventType
    return {
        T.SPEEDING: {"safety": 2.0, "legal_compliance": 4.0, "efficiency": 1.0},
        T.HARD_BRAKING: {"safety": 3.0, "smoothness": 3.0, "efficiency": 2.0},
        T.RAPID_ACCELERATION: {"safety": 2.0, "smoothness": 3.0, "efficiency": 3.0},
        T.HARSH_CORNERING: {"safety": 3.0, "smoothness": 3.0},
        T.PHONE_USAGE: {"safety": 6.0, "legal_compliance": 3.0},
        T.DISTRACTED_DRIVING: {"safety": 5.0, "legal_compliance": 2.0},
        T.FATIGUE_DETECTED: {"safety": 5.0},
        T.AGGRESSIVE_DRIVING: {"safety": 4.0, "smoothness": 2.0, "legal_compliance": 2.0},
        # negative points are bonuses; sub-scores stay capped at 100
        T.SMOOTH_DRIVING: {"smoothness": -2.0},
        T.ECO_DRIVING: {"efficiency": -2.0},
    }


def _default_risk_counts() -> Dict[DrivingEventType, int]:
    T = DrivingEventType
    return {
        T.SPEEDING: 2,
        T.HARD_BRAKING: 3,
        T.RAPID_ACCELERATION: 3,
        T.HARSH_CORNERING: 3,
        T.PHONE_USAGE: 1,
        T.DISTRACTED_DRIVING: 1,
        T.FATIGUE_DETECTED: 1,
        T.AGGRESSIVE_DRIVING: 1,
    }


class ScoringWeights(BaseModel):
    severity_multipliers: Dict[EventSeverity, float] = Field(
        default_factory=lambda: {
            EventSeverity.LOW: 1.0,
            EventSeverity.MEDIUM: 2.0,
            EventSeverity.HIGH: 4.0,
            EventSeverity.CRITICAL: 8.0,
        }
    )
    penalties: Dict[DrivingEventType, Dict[str, float]] = Field(default_factory=_default_penalties)
    safety_weight: float = Field(0.40, ge=0, le=1)
    legal_compliance_weight: float = Field(0.25, ge=0, le=1)
    smoothness_weight: float = Field(0.20, ge=0, le=1)
    efficiency_weight: float = Field(0.15, ge=0, le=1)
    risk_factor_min_count: Dict[DrivingEventType, int] = Field(default_factory=_default_risk_counts)
    risk_factor_min_severity: EventSeverity = EventSeverity.HIGH

    model_config = _FROZEN

    @model_validator(mode="after")
    def _check(self):
        total = (self.safety_weight + self.legal_compliance_weight
                 + self.smoothness_weight + self.efficiency_weight)
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"overall weights must sum to 1.0, got {total:.4f}")
        missing = set(EventSeverity) - set(self.severity_multipliers)
        if missing:
            raise ValueError(f"severity_multipliers missing {sorted(m.value for m in missing)}")
        for etype, points in self.penalties.items():
            unknown = set(points) - set(SUB_SCORES)
            if unknown:
                raise ValueError(f"penalties[{etype.value}] has unknown sub-scores {sorted(unknown)}")
        return self

    @property
    def overall_weights(self) -> Dict[str, float]:
        return {
            "safety": self.safety_weight,
            "efficiency": self.efficiency_weight,
            "smoothness": self.smoothness_weight,
            "legal_compliance": self.legal_compliance_weight,
        }


class PricingPolicy(BaseModel):
    base_premium: float = Field(1200.0, gt=0)
    min_premium: float = Field(300.0, ge=0)
    max_change: float = Field(0.15, ge=0, le=1, description="Cap around a prior premium")
    discount_threshold: float = Field(85.0, ge=0, le=100, description="Inclusive")
    # (risk score -> premium multiplier) anchors
    multiplier_anchors: Tuple[Tuple[float, float], ...] = (
        (0.0, 0.80),
        (25.0, 0.95),
        (50.0, 1.10),
        (75.0, 1.35),
        (100.0, 1.60),
    )
    # (min overall score, discount pct), first match wins
    discount_tiers: Tuple[Tuple[float, float], ...] = ((95.0, 25.0), (90.0, 20.0), (0.0, 15.0))

    model_config = _FROZEN


class EngineConfig(BaseModel):
    fusion: FusionSettings = Field(default_factory=FusionSettings)
    detection: DetectionThresholds = Field(default_factory=DetectionThresholds)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    pricing: PricingPolicy = Field(default_factory=PricingPolicy)
    channel_capacity: int = Field(1024, ge=1)
    inbox_capacity: int = Field(4096, ge=1)
    utc_offset_minutes: int = Field(0, ge=-14 * 60, le=14 * 60)

    model_config = _FROZEN


def load_config(source: Union[None, str, Path, Mapping[str, Any]] = None) -> EngineConfig:
    """Build an EngineConfig from defaults, a mapping, or a JSON file path."""
    if source is None:
        return EngineConfig()
    if isinstance(source, Mapping):
        return EngineConfig.model_validate(dict(source))
    data = json.loads(Path(source).read_text(encoding="utf-8"))
    return EngineConfig.model_validate(data)
