from __future__ import annotations
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Tuple
import numpy as np

from src.serve.schemas import EventContext, EventSeverity, RoadType, TimeOfDay


# ------------- Fusion (explicit, easy to tune) -------------
PAIRING_WINDOW_MS = 500        # +/- around each location fix
MAX_BUFFER_SIZE = 256          # per motion stream, FIFO eviction beyond
MAX_PENDING_LOCATIONS = 64     # fixes waiting for their window to close
LOCATION_TIMEOUT_MS = 5000     # motion older than this without a fix is expired
MAX_CLOCK_JUMP_MS = 10_000     # a sample further ahead of every stream needs a second one to confirm

# ------------- Detection thresholds -------------
SPEEDING_TOLERANCE_MPS = 2.2   # ~8 kph over the limit
SPEEDING_MIN_MS = 5000
SPEEDING_MAX_RUN_MS = 60_000   # long runs are split into separate events

BRAKE_MPS2 = -4.0
ACCEL_MPS2 = 3.5
CORNER_MPS2 = 4.0              # lateral, |yaw rate| * speed

PHONE_ACCEL = 1.5              # |accel - g|
PHONE_GYRO = 0.20              # rad/s
PHONE_MIN_RATIO = 0.6          # share of agitated samples in the event window
PHONE_SPEED_STD_MPS = 1.5

SMOOTH_ACCEL_MPS2 = 1.0
SMOOTH_MIN_SPEED_MPS = 5.0
ECO_ACCEL_MPS2 = 1.5
ECO_GENTLE_RATIO = 0.8
ECO_MAX_SPEED_MPS = 25.0

AGGRESSIVE_MIN_EVENTS = 3
DISTRACTED_MIN_PHONE_EVENTS = 2
FATIGUE_DRIVE_MS = 2 * 3600 * 1000   # continuous driving before fatigue is flagged
FATIGUE_REST_MS = 10 * 60 * 1000     # a stop this long resets the clock

EVENT_WINDOW_MS = 3000
PATTERN_WINDOW_MS = 30_000
NOMINAL_FIX_INTERVAL_MS = 1000  # 1 Hz location, used for sample density

SEVERITY_RATIOS: Tuple[float, float, float] = (1.25, 1.5, 2.0)  # medium / high / critical
MIN_CONFIDENCE = 0.5

# ------------- Trip context -------------
DEFAULT_SPEED_LIMIT_KPH = 50.0
ROAD_SPEED_LIMITS_KPH = {
    RoadType.RESIDENTIAL: 50.0,
    RoadType.ARTERIAL: 80.0,
    RoadType.HIGHWAY: 100.0,
}
LOW_SPEED_MPS = 1.0            # "stopped" threshold
NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 4             # inclusive
RUSH_HOURS = ((7, 9), (17, 19))
MAX_PLAUSIBLE_MPS = 90.0       # GPS jumps faster than this are not distance

GRAVITY_MPS2 = 9.80665


# ------------- Geo utilities -------------
def haversine_km(lat1, lon1, lat2, lon2) -> np.ndarray:
    """Vectorized haversine distance in kilometers."""
    R = 6371.0088
    lat1 = np.radians(lat1); lon1 = np.radians(lon1)
    lat2 = np.radians(lat2); lon2 = np.radians(lon2)
    dlat = lat2 - lat1; dlon = lon2 - lon1
    a = np.sin(dlat/2)**2 + np.cos(lat1)*np.cos(lat2)*np.sin(dlon/2)**2
    return 2 * R * np.arcsin(np.sqrt(a))


def bearing_delta_deg(b1: float, b2: float) -> float:
    """Signed smallest turn from b1 to b2, in (-180, 180]."""
    d = (b2 - b1 + 180.0) % 360.0 - 180.0
    return 180.0 if d == -180.0 else d


# ------------- Context helpers -------------
def speed_limit_mps(context: EventContext, default_kph: float = DEFAULT_SPEED_LIMIT_KPH) -> float:
    if context.speed_limit_mps is not None:
        return float(context.speed_limit_mps)
    return ROAD_SPEED_LIMITS_KPH.get(context.road_type, default_kph) / 3.6


def local_hour(timestamp_ms: int, utc_offset_minutes: int = 0) -> int:
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return (dt + timedelta(minutes=utc_offset_minutes)).hour


def is_rush_hour(hour: int) -> bool:
    return any(lo <= hour <= hi for lo, hi in RUSH_HOURS)


def is_night(hour: int, start: int = NIGHT_START_HOUR, end: int = NIGHT_END_HOUR) -> bool:
    # treat timestamps as local; night = start..23 or 0..end
    return hour >= start or hour <= end


def context_for_timestamp(timestamp_ms: int, utc_offset_minutes: int = 0, **overrides) -> EventContext:
    hour = local_hour(timestamp_ms, utc_offset_minutes)
    fields = {"time_of_day": TimeOfDay.for_hour(hour), "is_rush_hour": is_rush_hour(hour)}
    fields.update(overrides)
    return EventContext(**fields)


# ------------- Severity / confidence -------------
def severity_for(magnitude: float, threshold: float,
                 ratios: Sequence[float] = SEVERITY_RATIOS) -> EventSeverity:
    """
    Monotonic map from |magnitude| / |threshold| into the ordered severity scale.
    A ratio below ratios[0] is low, each further cut point adds one step.
    """
    ratio = abs(magnitude) / max(abs(threshold), 1e-9)
    rank = 1 + sum(1 for r in ratios if ratio >= r)
    return EventSeverity.from_rank(rank)


def accuracy_factor(accuracy_m: Optional[float]) -> float:
    if accuracy_m is None:
        return 0.8
    return float(np.interp(accuracy_m, [10.0, 100.0], [1.0, 0.3]))


def confidence_for(ratio: float, *, samples: int, expected: int,
                   accuracy_m: Optional[float] = None) -> float:
    """signal strength x sample density x location accuracy, clipped to [0, 1]."""
    signal = float(np.interp(ratio, [1.0, 3.0], [0.5, 1.0]))
    density = min(1.0, samples / expected) if expected > 0 else 1.0
    c = signal * density * accuracy_factor(accuracy_m)
    if not math.isfinite(c):
        return 0.0
    return float(min(1.0, max(0.0, c)))


# ------------- Phone motion -------------
def phone_motion_mask(accel_dev_mps2: np.ndarray, gyro_rad_s: np.ndarray,
                      accel_thr: float = PHONE_ACCEL, gyro_thr: float = PHONE_GYRO) -> np.ndarray:
    return ((np.abs(accel_dev_mps2) > accel_thr) | (np.abs(gyro_rad_s) > gyro_thr)).astype(int)


# ------------- Utilities -------------
def per100km(count: float, km: float) -> float:
    if km <= 1e-6:
        return 0.0
    return (count * 100.0) / km
