from __future__ import annotations
import math
from enum import Enum
from typing import List, Literal, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid4().hex


# --------- Closed enumerations ---------
class SensorKind(str, Enum):
    ACCELEROMETER = "accelerometer"
    GYROSCOPE = "gyroscope"
    MAGNETOMETER = "magnetometer"
    GRAVITY = "gravity"
    LINEAR_ACCELERATION = "linear_acceleration"
    ROTATION_VECTOR = "rotation_vector"
    GAME_ROTATION_VECTOR = "game_rotation_vector"
    GEOMAGNETIC_ROTATION_VECTOR = "geomagnetic_rotation_vector"
    ACCELEROMETER_UNCALIBRATED = "accelerometer_uncalibrated"
    GYROSCOPE_UNCALIBRATED = "gyroscope_uncalibrated"
    MAGNETOMETER_UNCALIBRATED = "magnetometer_uncalibrated"


class DrivingEventType(str, Enum):
    SPEEDING = "speeding"
    HARD_BRAKING = "hard_braking"
    RAPID_ACCELERATION = "rapid_acceleration"
    HARSH_CORNERING = "harsh_cornering"
    PHONE_USAGE = "phone_usage"
    DISTRACTED_DRIVING = "distracted_driving"
    FATIGUE_DETECTED = "fatigue_detected"
    AGGRESSIVE_DRIVING = "aggressive_driving"
    SMOOTH_DRIVING = "smooth_driving"
    ECO_DRIVING = "eco_driving"

    @property
    def is_positive(self) -> bool:
        return self in (DrivingEventType.SMOOTH_DRIVING, DrivingEventType.ECO_DRIVING)


class EventSeverity(str, Enum):
    """Ordered severity scale: low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(EventSeverity).index(self) + 1

    @classmethod
    def from_rank(cls, rank: int) -> "EventSeverity":
        members = list(cls)
        return members[min(max(int(rank), 1), len(members)) - 1]

    def __lt__(self, other):
        if not isinstance(other, EventSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, EventSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, EventSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, EventSeverity):
            return NotImplemented
        return self.rank >= other.rank


class RoadType(str, Enum):
    UNKNOWN = "unknown"
    RESIDENTIAL = "residential"
    ARTERIAL = "arterial"
    HIGHWAY = "highway"
    PARKING_LOT = "parking_lot"


class WeatherConditions(str, Enum):
    CLEAR = "clear"
    RAIN = "rain"
    SNOW = "snow"
    FOG = "fog"
    ICE = "ice"
    STORM = "storm"


class TrafficDensity(str, Enum):
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    CONGESTED = "congested"


class TimeOfDay(str, Enum):
    EARLY_MORNING = "early_morning"
    MORNING_RUSH = "morning_rush"
    MIDDAY = "midday"
    EVENING_RUSH = "evening_rush"
    EVENING = "evening"
    NIGHT = "night"

    @classmethod
    def for_hour(cls, hour: int) -> "TimeOfDay":
        for bucket, (start, end) in _TIME_OF_DAY_HOURS.items():
            if start <= hour < end:
                return bucket
        return cls.NIGHT


# [start_hour, end_hour) per bucket
_TIME_OF_DAY_HOURS = {
    TimeOfDay.EARLY_MORNING: (0, 6),
    TimeOfDay.MORNING_RUSH: (6, 10),
    TimeOfDay.MIDDAY: (10, 15),
    TimeOfDay.EVENING_RUSH: (15, 19),
    TimeOfDay.EVENING: (19, 22),
    TimeOfDay.NIGHT: (22, 24),
}


class RiskFactorType(str, Enum):
    SPEEDING = "speeding"
    HARD_BRAKING = "hard_braking"
    AGGRESSIVE_ACCELERATION = "aggressive_acceleration"
    HARSH_CORNERING = "harsh_cornering"
    PHONE_USAGE = "phone_usage"
    DISTRACTED_DRIVING = "distracted_driving"
    FATIGUE_INDICATORS = "fatigue_indicators"
    AGGRESSIVE_DRIVING = "aggressive_driving"


# --------- Raw inbound contracts (provider-shaped, unvalidated ranges) ---------
class RawLocationFix(BaseModel):
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    bearing: Optional[float] = None
    provider: str = "fused"
    timestamp: int = Field(..., description="Epoch millis")

    model_config = {
        "json_schema_extra": {
            "example": {
                "latitude": 40.0,
                "longitude": -74.0,
                "altitude": 12.5,
                "speed": 13.4,
                "accuracy": 4.0,
                "bearing": 87.0,
                "provider": "gps",
                "timestamp": 1757412182120,
            }
        }
    }


class RawSensorReading(BaseModel):
    type: Union[int, str] = Field(..., description="Provider sensor code or kind name")
    values: List[float] = []
    timestamp: int = Field(..., description="Epoch millis, sensor clock")

    model_config = {
        "json_schema_extra": {
            "example": {"type": 1, "values": [0.12, 9.79, 0.31], "timestamp": 1757412182125}
        }
    }


# --------- Normalized samples ---------
class LocationSample(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    altitude: Optional[float] = Field(None, description="Meters above sea level")
    speed: Optional[float] = Field(None, ge=0.0, description="m/s")
    accuracy: Optional[float] = Field(None, ge=0.0, description="Meters")
    bearing: Optional[float] = Field(None, ge=0.0, lt=360.0, description="Degrees")
    provider: str = "fused"
    timestamp: int = Field(..., ge=0, description="Epoch millis")

    model_config = {"frozen": True}


class MotionSample(BaseModel):
    kind: SensorKind
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    values: Tuple[float, ...] = ()
    timestamp: int = Field(..., ge=0, description="Epoch millis, sensor clock")
    accuracy: Literal["unknown", "unreliable", "low", "medium", "high"] = "unknown"

    model_config = {"frozen": True}

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)


class FusedTelemetrySnapshot(BaseModel):
    snapshot_id: str = Field(default_factory=_new_id)
    location: LocationSample
    motion: Tuple[MotionSample, ...] = ()

    model_config = {"frozen": True}

    @property
    def timestamp(self) -> int:
        return self.location.timestamp

    def readings(self, kind: SensorKind) -> List[MotionSample]:
        return [m for m in self.motion if m.kind == kind]


# --------- Detection output ---------
class EventContext(BaseModel):
    road_type: RoadType = RoadType.UNKNOWN
    weather: Optional[WeatherConditions] = None
    traffic_density: TrafficDensity = TrafficDensity.MODERATE
    time_of_day: TimeOfDay = TimeOfDay.MIDDAY
    is_rush_hour: bool = False
    school_zone: bool = False
    construction_zone: bool = False
    speed_limit_mps: Optional[float] = Field(None, gt=0.0, description="Posted limit, if known")

    model_config = {"frozen": True}


class DrivingEvent(BaseModel):
    event_id: str = Field(default_factory=_new_id)
    event_type: DrivingEventType
    severity: EventSeverity
    timestamp: int = Field(..., ge=0)
    duration_ms: int = Field(0, ge=0)
    magnitude: float = Field(..., description="Type dependent: m/s over limit, m/s^2, ratio")
    confidence: float = Field(..., ge=0.0, le=1.0)
    speed_mps: float = Field(0.0, ge=0.0)
    location: Optional[LocationSample] = None
    context: EventContext = Field(default_factory=EventContext)
    advisory: bool = False

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "example": {
                "event_id": "5b0e3c1f2a9d4e8f9c7b6a5d4e3f2a1b",
                "event_type": "speeding",
                "severity": "critical",
                "timestamp": 1757412182000,
                "duration_ms": 6000,
                "magnitude": 8.0,
                "confidence": 0.93,
                "speed_mps": 30.0,
                "context": {"road_type": "residential", "speed_limit_mps": 22.0},
                "advisory": False,
            }
        },
    }


# --------- Trip aggregates ---------
class TripStatistics(BaseModel):
    total_duration_ms: int = Field(0, ge=0)
    total_distance_km: float = Field(0.0, ge=0)
    average_speed_kph: float = Field(0.0, ge=0)
    max_speed_kph: float = Field(0.0, ge=0)
    speeding_duration_ms: int = Field(0, ge=0)
    idle_time_ms: int = Field(0, ge=0)
    night_driving_pct: float = Field(0.0, ge=0, le=100)
    high_risk_road_pct: float = Field(0.0, ge=0, le=100)
    location_samples: int = Field(0, ge=0)
    event_count: int = Field(0, ge=0)

    model_config = {"frozen": True}


class RiskFactor(BaseModel):
    kind: RiskFactorType
    weight: float = Field(..., ge=0, description="Penalty points attributed to this factor")
    frequency: int = Field(..., ge=0)
    description: str

    model_config = {"frozen": True}


class TripScore(BaseModel):
    trip_id: str = Field(default_factory=_new_id)
    overall_score: float = Field(..., ge=0, le=100)
    safety_score: float = Field(..., ge=0, le=100)
    efficiency_score: float = Field(..., ge=0, le=100)
    smoothness_score: float = Field(..., ge=0, le=100)
    legal_compliance_score: float = Field(..., ge=0, le=100)
    events: Tuple[DrivingEvent, ...] = ()
    risk_factors: Tuple[RiskFactor, ...] = ()
    statistics: TripStatistics = Field(default_factory=TripStatistics)

    model_config = {"frozen": True}


class InsuranceRiskAssessment(BaseModel):
    risk_score: float = Field(..., ge=0, le=100)
    base_premium: float = Field(..., ge=0)
    risk_multiplier: float = Field(..., gt=0)
    estimated_premium: float = Field(..., ge=0)
    discount_eligible: bool
    discount_pct: float = Field(0.0, ge=0, le=100)
    cap_reason: Optional[Literal["upper", "lower", "floor"]] = None
    recommendations: List[str] = []

    model_config = {"frozen": True}


class RiskCategory(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very_high"
