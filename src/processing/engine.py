from __future__ import annotations
import logging
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple, Union

from src.ingest.normalizer import normalize_location, normalize_motion
from src.processing.channels import BoundedChannel
from src.processing.config import EngineConfig
from src.processing.errors import (
    InvalidSample, OutOfOrderSnapshot, StaleSampleDropped, TripNotStarted, TripStateError,
    UnsupportedSensorKind,
)
from src.processing.event_detector import EventDetector
from src.processing.feature_defs import context_for_timestamp
from src.processing.fusion import FusionSynchronizer
from src.processing.trip_aggregator import TripAggregator
from src.serve.schemas import (
    DrivingEvent, EventContext, FusedTelemetrySnapshot, LocationSample,
    MotionSample, RawLocationFix, RawSensorReading, TripScore,
)

logger = logging.getLogger(__name__)

ContextProvider = Callable[[LocationSample], EventContext]


class TelematicsEngine:
    """
    Explicitly constructed pipeline for one trip at a time:
    normalizer -> synchronizer -> detector -> aggregator -> scoring.

    submit_*() only normalizes and enqueues, evicting the oldest queued sample
    when the inbox is full; samples arriving with no active trip are counted as
    idle_dropped and refused. process_pending() is the single consumer. Separate
    engine instances share nothing but the (read-only) config.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        context_provider: Optional[ContextProvider] = None,
        trip_id: Optional[str] = None,
    ):
        self.config = config or EngineConfig()
        self._context_provider = context_provider or self._default_context
        self._trip_id = trip_id
        self._inbox: Deque[Tuple[str, Union[LocationSample, MotionSample]]] = deque()
        self.counters: Counter = Counter()

        cap = self.config.channel_capacity
        self.snapshots: BoundedChannel[FusedTelemetrySnapshot] = BoundedChannel("snapshots", cap)
        self.events: BoundedChannel[DrivingEvent] = BoundedChannel("events", cap)
        self.trip_scores: BoundedChannel[TripScore] = BoundedChannel("trip_scores", cap)

        self._sync: Optional[FusionSynchronizer] = None
        self._detector: Optional[EventDetector] = None
        self._trip: Optional[TripAggregator] = None
        self._last_score: Optional[TripScore] = None

    # ---------- lifecycle ----------
    @property
    def active(self) -> bool:
        return self._trip is not None

    @property
    def trip_id(self) -> Optional[str]:
        return self._trip.trip_id if self._trip is not None else None

    def start_trip(self, trip_id: Optional[str] = None, started_at: Optional[int] = None) -> str:
        if self._trip is not None:
            raise TripStateError(f"trip {self._trip.trip_id} is still active; end or discard it first")
        self._inbox.clear()
        cfg = self.config
        self._sync = FusionSynchronizer(cfg.fusion, on_diagnostic=self._on_diagnostic)
        self._detector = EventDetector(cfg.detection)
        self._trip = TripAggregator(cfg.detection, cfg.scoring,
                                    utc_offset_minutes=cfg.utc_offset_minutes)
        self._last_score = None
        return self._trip.start_trip(trip_id or self._trip_id, started_at)

    def end_trip(self) -> TripScore:
        """Flush everything buffered, finalize and publish the TripScore."""
        if self._trip is None and self._last_score is not None:
            return self._last_score
        self._require_trip()
        self.process_pending()
        for snap in self._sync.flush():
            self._handle_snapshot(snap)
        for ev in self._detector.finish():
            self._emit_event(ev)
        score = self._trip.end_trip()
        self.trip_scores.publish(score)
        self._last_score = score
        self._teardown()
        return score

    def discard_trip(self) -> None:
        self._require_trip()
        self._trip.discard_trip()
        self.counters["discarded_samples"] += len(self._inbox)
        self._teardown()

    # ---------- producers ----------
    def submit_location(self, raw: Union[RawLocationFix, LocationSample, Mapping[str, Any]]) -> bool:
        try:
            sample = raw if isinstance(raw, LocationSample) else normalize_location(raw)
        except InvalidSample as e:
            self.counters["invalid_samples"] += 1
            logger.warning("dropped location sample: %s", e)
            return False
        return self._enqueue("location", sample)

    def submit_motion(self, raw: Union[RawSensorReading, MotionSample, Mapping[str, Any]]) -> bool:
        try:
            sample = raw if isinstance(raw, MotionSample) else normalize_motion(raw)
        except UnsupportedSensorKind as e:
            self.counters["unsupported_sensor"] += 1
            logger.warning("dropped motion sample, configuration gap: %s", e)
            return False
        except InvalidSample as e:
            self.counters["invalid_samples"] += 1
            logger.warning("dropped motion sample: %s", e)
            return False
        return self._enqueue("motion", sample)

    def _enqueue(self, stream: str, sample) -> bool:
        if self._trip is None:
            self.counters["idle_dropped"] += 1
            logger.debug("no active trip, dropped %s sample at t=%d", stream, sample.timestamp)
            return False
        self._inbox.append((stream, sample))
        if len(self._inbox) > self.config.inbox_capacity:
            self._inbox.popleft()
            self.counters["inbox_evicted"] += 1
        self.counters[f"{stream}_accepted"] += 1
        return True

    # ---------- consumer ----------
    def process_pending(self) -> List[DrivingEvent]:
        """Drain the inbox through the pipeline; returns the events detected."""
        self._require_trip()
        emitted: List[DrivingEvent] = []
        while self._inbox:
            stream, sample = self._inbox.popleft()
            if stream == "location":
                snaps = self._sync.push_location(sample)
            else:
                snaps = self._sync.push_motion(sample)
            for snap in snaps:
                emitted.extend(self._handle_snapshot(snap))
        return emitted

    def _handle_snapshot(self, snap: FusedTelemetrySnapshot) -> List[DrivingEvent]:
        context = self._context_provider(snap.location)
        try:
            events = self._detector.process(snap, context)
        except OutOfOrderSnapshot as e:
            self.counters["out_of_order_snapshots"] += 1
            logger.warning("dropped snapshot: %s", e)
            return []
        self._trip.observe(snap, context)
        self.snapshots.publish(snap)
        for ev in events:
            self._emit_event(ev)
        return events

    def _emit_event(self, ev: DrivingEvent) -> None:
        if self._trip.ingest(ev):
            self.events.publish(ev)
        else:
            self.counters["duplicate_events"] += 1

    # ---------- helpers ----------
    def _default_context(self, loc: LocationSample) -> EventContext:
        return context_for_timestamp(loc.timestamp, self.config.utc_offset_minutes)

    def _on_diagnostic(self, diag: StaleSampleDropped) -> None:
        self.counters[f"{diag.reason}_samples"] += 1

    def _require_trip(self) -> None:
        if self._trip is None:
            raise TripNotStarted("no active trip; call start_trip() first")

    def _teardown(self) -> None:
        self._inbox.clear()
        self._sync = None
        self._detector = None
        self._trip = None

    def counters_dict(self) -> Dict[str, int]:
        return dict(self.counters)
