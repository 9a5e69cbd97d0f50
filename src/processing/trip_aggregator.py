from __future__ import annotations
import logging
from enum import Enum
from typing import Dict, List, Optional, Set
from uuid import uuid4

from src.processing.config import DetectionThresholds, ScoringWeights
from src.processing.errors import TripAlreadyFinalized, TripDiscarded, TripNotStarted, TripStateError
from src.processing.feature_defs import (
    MAX_PLAUSIBLE_MPS, haversine_km, is_night, local_hour, speed_limit_mps,
)
from src.serve.schemas import (
    DrivingEvent, EventContext, FusedTelemetrySnapshot, LocationSample,
    TripScore, TripStatistics, WeatherConditions,
)
from src.serve.scoring import score_trip

logger = logging.getLogger(__name__)

HAZARDOUS_WEATHER = {
    WeatherConditions.RAIN,
    WeatherConditions.SNOW,
    WeatherConditions.FOG,
    WeatherConditions.ICE,
    WeatherConditions.STORM,
}


class TripState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    FINALIZED = "finalized"
    DISCARDED = "discarded"


def _new_trip_id() -> str:
    return f"T_{uuid4().hex}"


def is_high_risk(context: EventContext) -> bool:
    return (context.school_zone or context.construction_zone
            or context.weather in HAZARDOUS_WEATHER)


class TripAggregator:
    """
    One trip lifetime: IDLE -> ACTIVE -> FINALIZED (or DISCARDED).

    observe() folds fused snapshots into running statistics, ingest() collects
    detected events (deduplicated by event_id), end_trip() freezes the statistics
    and scores the trip. The instance is inert once finalized or discarded.
    """

    def __init__(
        self,
        thresholds: Optional[DetectionThresholds] = None,
        weights: Optional[ScoringWeights] = None,
        *,
        utc_offset_minutes: int = 0,
    ):
        self.thr = thresholds or DetectionThresholds()
        self.weights = weights or ScoringWeights()
        self.utc_offset_minutes = utc_offset_minutes
        self.state = TripState.IDLE
        self.trip_id: Optional[str] = None
        self._score: Optional[TripScore] = None
        self._reset()

    def _reset(self) -> None:
        self._events: List[DrivingEvent] = []
        self._seen: Set[str] = set()
        self._prev: Optional[LocationSample] = None
        self._first_ts: Optional[int] = None
        self._last_ts: Optional[int] = None
        self._n_locations = 0
        self._distance_km = 0.0
        self._moving_ms = 0
        self._speed_time = 0.0        # sum(speed_mps * dt_s)
        self._max_speed = 0.0
        self._acc: Dict[str, int] = {"speeding": 0, "idle": 0, "night": 0, "high_risk": 0}

    # ---------- lifecycle ----------
    def start_trip(self, trip_id: Optional[str] = None, started_at: Optional[int] = None) -> str:
        if self.state is TripState.ACTIVE:
            raise TripStateError(f"trip {self.trip_id} is already active")
        self._check_open()
        self.trip_id = trip_id or _new_trip_id()
        self.state = TripState.ACTIVE
        logger.info("trip %s started", self.trip_id)
        return self.trip_id

    def end_trip(self) -> TripScore:
        if self.state is TripState.FINALIZED:
            return self._score
        self._check_active()
        stats = self.statistics()
        events = sorted(self._events, key=lambda e: e.timestamp)
        self._score = score_trip(events, stats, self.weights, trip_id=self.trip_id)
        self.state = TripState.FINALIZED
        self._reset()
        logger.info(
            "trip %s finalized: %d events, %.2f km, overall %.1f",
            self.trip_id, stats.event_count, stats.total_distance_km, self._score.overall_score,
        )
        return self._score

    def discard_trip(self) -> None:
        if self.state is TripState.DISCARDED:
            return
        if self.state is TripState.FINALIZED:
            raise TripAlreadyFinalized(f"trip {self.trip_id} is already finalized")
        self.state = TripState.DISCARDED
        self._reset()
        logger.info("trip %s discarded", self.trip_id)

    @property
    def score(self) -> Optional[TripScore]:
        return self._score

    @property
    def events(self) -> List[DrivingEvent]:
        return list(self._events)

    # ---------- folding ----------
    def ingest(self, event: DrivingEvent) -> bool:
        """Append an event; False when the event_id was already ingested."""
        self._check_active()
        if event.event_id in self._seen:
            return False
        self._seen.add(event.event_id)
        self._events.append(event)
        return True

    def observe(self, snapshot: FusedTelemetrySnapshot, context: Optional[EventContext] = None) -> None:
        self._check_active()
        loc = snapshot.location
        context = context or EventContext()
        self._n_locations += 1

        if self._prev is None:
            self._first_ts = self._last_ts = loc.timestamp
            self._prev = loc
            self._max_speed = max(self._max_speed, loc.speed or 0.0)
            return
        dt_ms = loc.timestamp - self._last_ts
        if dt_ms <= 0:
            return

        dt_s = dt_ms / 1000.0
        step_km = float(haversine_km(self._prev.latitude, self._prev.longitude,
                                     loc.latitude, loc.longitude))
        implied = step_km * 1000.0 / dt_s
        if implied <= MAX_PLAUSIBLE_MPS:
            self._distance_km += step_km
        else:
            logger.debug("skipping implausible GPS jump: %.1f m/s over %d ms", implied, dt_ms)
            implied = 0.0
        speed = loc.speed if loc.speed is not None else implied

        self._speed_time += speed * dt_s
        self._moving_ms += dt_ms
        self._max_speed = max(self._max_speed, speed)

        if speed > speed_limit_mps(context, self.thr.default_speed_limit_kph) + self.thr.speeding_tolerance_mps:
            self._acc["speeding"] += dt_ms
        if speed < self.thr.idle_speed_mps:
            self._acc["idle"] += dt_ms
        hour = local_hour(loc.timestamp, self.utc_offset_minutes)
        if is_night(hour, self.thr.night_start_hour, self.thr.night_end_hour):
            self._acc["night"] += dt_ms
        if is_high_risk(context):
            self._acc["high_risk"] += dt_ms

        self._prev = loc
        self._last_ts = loc.timestamp

    def statistics(self) -> TripStatistics:
        duration = (self._last_ts - self._first_ts) if self._first_ts is not None else 0
        secs = self._moving_ms / 1000.0
        avg = (self._speed_time / secs * 3.6) if secs > 0 else 0.0

        def pct(ms: int) -> float:
            return min(100.0, 100.0 * ms / self._moving_ms) if self._moving_ms > 0 else 0.0

        return TripStatistics(
            total_duration_ms=duration,
            total_distance_km=self._distance_km,
            average_speed_kph=avg,
            max_speed_kph=self._max_speed * 3.6,
            speeding_duration_ms=self._acc["speeding"],
            idle_time_ms=self._acc["idle"],
            night_driving_pct=pct(self._acc["night"]),
            high_risk_road_pct=pct(self._acc["high_risk"]),
            location_samples=self._n_locations,
            event_count=len(self._events),
        )

    # ---------- guards ----------
    def _check_open(self) -> None:
        if self.state is TripState.FINALIZED:
            raise TripAlreadyFinalized(f"trip {self.trip_id} is already finalized")
        if self.state is TripState.DISCARDED:
            raise TripDiscarded(f"trip {self.trip_id} was discarded")

    def _check_active(self) -> None:
        self._check_open()
        if self.state is TripState.IDLE:
            raise TripNotStarted("start_trip() has not been called")
