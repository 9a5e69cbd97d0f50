from __future__ import annotations
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from src.processing.config import DetectionThresholds
from src.processing.errors import OutOfOrderSnapshot
from src.processing.feature_defs import (
    GRAVITY_MPS2, MAX_PLAUSIBLE_MPS, bearing_delta_deg, confidence_for, haversine_km,
    phone_motion_mask, severity_for, speed_limit_mps,
)
from src.serve.schemas import (
    DrivingEvent, DrivingEventType, EventContext, EventSeverity,
    FusedTelemetrySnapshot, LocationSample, SensorKind,
)

logger = logging.getLogger(__name__)

HARSH_TYPES = (
    DrivingEventType.HARD_BRAKING,
    DrivingEventType.RAPID_ACCELERATION,
    DrivingEventType.HARSH_CORNERING,
)
_ACCEL_KINDS = (SensorKind.ACCELEROMETER, SensorKind.ACCELEROMETER_UNCALIBRATED)
_GYRO_KINDS = (SensorKind.GYROSCOPE, SensorKind.GYROSCOPE_UNCALIBRATED)


@dataclass(frozen=True)
class Frame:
    """Kinematic state derived from one fused snapshot and its predecessor."""
    t: int
    location: LocationSample
    speed: float                 # m/s, GPS or derived from position
    accel: float                 # m/s^2, longitudinal (signed)
    jerk: float                  # m/s^3
    yaw_rate: float              # rad/s
    lateral: float               # m/s^2, |yaw_rate| * speed
    accel_dev: float             # m/s^2, handheld agitation off gravity
    handling_gyro: float         # rad/s, rotation off the vertical axis
    motion_samples: int
    speed_known: bool = True     # False on a first fix without speed or a GPS jump


def build_frame(snap: FusedTelemetrySnapshot, prev: Optional[Frame],
                max_speed_mps: float = MAX_PLAUSIBLE_MPS) -> Frame:
    """
    Speed comes from the fix, else from the position change since prev. It is
    unknown on a first fix without speed and on a GPS jump (implied speed over
    max_speed_mps); an unknown speed carries the previous value forward and
    yields no acceleration or jerk.
    """
    loc = snap.location
    dt = (loc.timestamp - prev.t) / 1000.0 if prev is not None else 0.0

    known = True
    if loc.speed is not None:
        speed = float(loc.speed)
    elif prev is not None and dt > 0:
        km = float(haversine_km(prev.location.latitude, prev.location.longitude,
                                loc.latitude, loc.longitude))
        speed = km * 1000.0 / dt
        if speed > max_speed_mps:
            logger.debug("ignoring implausible position speed %.1f m/s at t=%d", speed, loc.timestamp)
            speed = prev.speed
            known = False
    else:
        speed = 0.0
        known = False

    derivable = prev is not None and dt > 0 and known and prev.speed_known
    accel = (speed - prev.speed) / dt if derivable else 0.0
    jerk = (accel - prev.accel) / dt if derivable else 0.0

    gyros = [m for m in snap.motion if m.kind in _GYRO_KINDS]
    if gyros:
        yaw_rate = float(np.mean([g.z for g in gyros]))
        handling = float(np.mean([math.hypot(g.x, g.y) for g in gyros]))
    else:
        handling = 0.0
        if (prev is not None and dt > 0 and loc.bearing is not None
                and prev.location.bearing is not None):
            yaw_rate = math.radians(bearing_delta_deg(prev.location.bearing, loc.bearing)) / dt
        else:
            yaw_rate = 0.0

    devs = [abs(m.magnitude - GRAVITY_MPS2) for m in snap.motion if m.kind in _ACCEL_KINDS]
    devs += [m.magnitude for m in snap.motion if m.kind == SensorKind.LINEAR_ACCELERATION]
    accel_dev = float(np.mean(devs)) if devs else 0.0

    return Frame(
        t=loc.timestamp,
        location=loc,
        speed=speed,
        accel=accel,
        jerk=jerk,
        yaw_rate=yaw_rate,
        lateral=abs(yaw_rate) * speed,
        accel_dev=accel_dev,
        handling_gyro=handling,
        motion_samples=len(snap.motion),
        speed_known=known,
    )


def _event(etype: DrivingEventType, severity: EventSeverity, frame: Frame, context: EventContext,
           thr: DetectionThresholds, *, magnitude: float, confidence: float,
           duration_ms: int = 0, timestamp: Optional[int] = None,
           location: Optional[LocationSample] = None) -> DrivingEvent:
    return DrivingEvent(
        event_type=etype,
        severity=severity,
        timestamp=frame.t if timestamp is None else timestamp,
        duration_ms=max(0, int(duration_ms)),
        magnitude=float(magnitude),
        confidence=confidence,
        speed_mps=max(0.0, frame.speed),
        location=location or frame.location,
        context=context,
        advisory=confidence < thr.min_confidence,
    )


def _recent(frames: Sequence[Frame], span_ms: int) -> List[Frame]:
    cutoff = frames[-1].t - span_ms
    return [f for f in frames if f.t >= cutoff]


def _expected(span_ms: int, thr: DetectionThresholds) -> int:
    return max(1, span_ms // thr.nominal_fix_interval_ms)


def _span(frames: Sequence[Frame]) -> int:
    return frames[-1].t - frames[0].t if frames else 0


# ---------------- Rules (pure: window + context -> event or None) ----------------
Rule = Callable[[Sequence[Frame], EventContext, DetectionThresholds], Optional[DrivingEvent]]


def detect_hard_braking(frames, context, thr):
    cur = frames[-1]
    if len(frames) < 2 or cur.accel > thr.hard_braking_mps2:
        return None
    ratio = cur.accel / thr.hard_braking_mps2
    recent = _recent(frames, thr.event_window_ms)
    return _event(
        DrivingEventType.HARD_BRAKING,
        severity_for(cur.accel, thr.hard_braking_mps2, thr.severity_ratios),
        cur, context, thr,
        magnitude=-cur.accel,
        confidence=confidence_for(ratio, samples=len(recent),
                                  expected=_expected(thr.event_window_ms, thr),
                                  accuracy_m=cur.location.accuracy),
        duration_ms=cur.t - frames[-2].t,
    )


def detect_rapid_acceleration(frames, context, thr):
    cur = frames[-1]
    if len(frames) < 2 or cur.accel < thr.rapid_acceleration_mps2:
        return None
    ratio = cur.accel / thr.rapid_acceleration_mps2
    recent = _recent(frames, thr.event_window_ms)
    return _event(
        DrivingEventType.RAPID_ACCELERATION,
        severity_for(cur.accel, thr.rapid_acceleration_mps2, thr.severity_ratios),
        cur, context, thr,
        magnitude=cur.accel,
        confidence=confidence_for(ratio, samples=len(recent),
                                  expected=_expected(thr.event_window_ms, thr),
                                  accuracy_m=cur.location.accuracy),
        duration_ms=cur.t - frames[-2].t,
    )


def detect_harsh_cornering(frames, context, thr):
    cur = frames[-1]
    if cur.lateral < thr.harsh_cornering_mps2:
        return None
    ratio = cur.lateral / thr.harsh_cornering_mps2
    recent = _recent(frames, thr.event_window_ms)
    turning = [f for f in recent if f.lateral >= thr.harsh_cornering_mps2]
    return _event(
        DrivingEventType.HARSH_CORNERING,
        severity_for(cur.lateral, thr.harsh_cornering_mps2, thr.severity_ratios),
        cur, context, thr,
        magnitude=cur.lateral,
        confidence=confidence_for(ratio, samples=len(recent),
                                  expected=_expected(thr.event_window_ms, thr),
                                  accuracy_m=cur.location.accuracy),
        duration_ms=_span(turning),
    )


def detect_phone_usage(frames, context, thr):
    """Handheld agitation on most of the event window while the vehicle holds speed."""
    recent = _recent(frames, thr.event_window_ms)
    sensed = [f for f in recent if f.motion_samples > 0]
    if len(sensed) < 2:
        return None
    dev = np.array([f.accel_dev for f in sensed])
    gyro = np.array([f.handling_gyro for f in sensed])
    mask = phone_motion_mask(dev, gyro, thr.phone_accel_mps2, thr.phone_gyro_rad_s)
    share = float(mask.mean())
    if share < thr.phone_min_ratio:
        return None
    speeds = np.array([f.speed for f in recent])
    if float(speeds.mean()) < thr.idle_speed_mps or float(speeds.std()) > thr.phone_max_speed_std_mps:
        return None

    agitated = mask.astype(bool)
    intensity = float(np.mean(np.maximum(dev[agitated] / thr.phone_accel_mps2,
                                         gyro[agitated] / thr.phone_gyro_rad_s)))
    cur = frames[-1]
    conf = confidence_for(intensity, samples=len(sensed),
                          expected=_expected(thr.event_window_ms, thr),
                          accuracy_m=cur.location.accuracy) * share
    return _event(
        DrivingEventType.PHONE_USAGE,
        severity_for(intensity, 1.0, thr.severity_ratios),
        cur, context, thr,
        magnitude=intensity,
        confidence=conf,
        duration_ms=_span(sensed),
    )


def detect_smooth_driving(frames, context, thr):
    if _span(frames) < 0.9 * thr.pattern_window_ms or len(frames) < 3:
        return None
    accels = np.abs([f.accel for f in frames[1:]])
    mean_speed = float(np.mean([f.speed for f in frames]))
    if float(accels.max()) > thr.smooth_max_accel_mps2 or mean_speed <= thr.smooth_min_speed_mps:
        return None
    cur = frames[-1]
    return _event(
        DrivingEventType.SMOOTH_DRIVING, EventSeverity.LOW, cur, context, thr,
        magnitude=float(accels.max()),
        confidence=confidence_for(thr.smooth_max_accel_mps2 / max(float(accels.max()), 1e-3),
                                  samples=len(frames),
                                  expected=_expected(thr.pattern_window_ms, thr),
                                  accuracy_m=cur.location.accuracy),
        duration_ms=_span(frames),
        timestamp=frames[0].t,
        location=frames[0].location,
    )


def detect_eco_driving(frames, context, thr):
    if _span(frames) < 0.9 * thr.pattern_window_ms or len(frames) < 3:
        return None
    accels = np.abs([f.accel for f in frames[1:]])
    gentle = float(np.mean(accels <= thr.eco_max_accel_mps2))
    mean_speed = float(np.mean([f.speed for f in frames]))
    if (gentle < thr.eco_min_gentle_ratio or mean_speed > thr.eco_max_speed_mps
            or mean_speed <= thr.smooth_min_speed_mps):
        return None
    cur = frames[-1]
    return _event(
        DrivingEventType.ECO_DRIVING, EventSeverity.LOW, cur, context, thr,
        magnitude=gentle,
        confidence=confidence_for(1.0 + 2.0 * gentle, samples=len(frames),
                                  expected=_expected(thr.pattern_window_ms, thr),
                                  accuracy_m=cur.location.accuracy),
        duration_ms=_span(frames),
        timestamp=frames[0].t,
        location=frames[0].location,
    )


# evaluated on every window advance, in this order
KINEMATIC_RULES: Tuple[Tuple[DrivingEventType, Rule], ...] = (
    (DrivingEventType.HARD_BRAKING, detect_hard_braking),
    (DrivingEventType.RAPID_ACCELERATION, detect_rapid_acceleration),
    (DrivingEventType.HARSH_CORNERING, detect_harsh_cornering),
    (DrivingEventType.PHONE_USAGE, detect_phone_usage),
)
PATTERN_RULES: Tuple[Tuple[DrivingEventType, Rule], ...] = (
    (DrivingEventType.SMOOTH_DRIVING, detect_smooth_driving),
    (DrivingEventType.ECO_DRIVING, detect_eco_driving),
)


def detect_escalation(history: Sequence[DrivingEvent], frame: Frame, context: EventContext,
                      thr: DetectionThresholds, *, etype: DrivingEventType,
                      sources: Sequence[DrivingEventType], min_events: int,
                      min_severity: EventSeverity) -> Optional[DrivingEvent]:
    """Repeated source events inside the pattern window escalate into one pattern event."""
    cutoff = frame.t - thr.pattern_window_ms
    hits = [e for e in history
            if e.timestamp >= cutoff and e.event_type in sources and e.severity >= min_severity]
    if len(hits) < min_events:
        return None
    ratio = len(hits) / min_events
    conf = float(np.mean([e.confidence for e in hits]))
    return _event(
        etype, severity_for(len(hits), min_events, thr.severity_ratios), frame, context, thr,
        magnitude=float(len(hits)),
        confidence=min(1.0, conf * min(1.0, 0.75 + 0.25 * ratio)),
        duration_ms=hits[-1].timestamp - hits[0].timestamp,
        timestamp=hits[0].timestamp,
        location=hits[0].location,
    )


class EventDetector:
    """
    Stateful per-trip classifier over the fused snapshot stream.

    Holds a pattern-window of kinematic frames, runs the rule set on each advance
    and applies per-type cooldowns so one manoeuvre yields one event. Speeding is
    tracked as a run and emitted when the run ends, exceeds the max run length,
    or the trip finishes.
    """

    def __init__(self, thresholds: Optional[DetectionThresholds] = None):
        self.thr = thresholds or DetectionThresholds()
        self._frames: Deque[Frame] = deque()
        self._history: Deque[DrivingEvent] = deque()
        self._last_emit: Dict[DrivingEventType, int] = {}
        self._last_ts: Optional[int] = None
        # speeding run: (start frame, context at start, peak over-limit, last frame, frames)
        self._run: Optional[Tuple[Frame, EventContext, float, Frame, int]] = None
        # fatigue clock
        self._drive_start: Optional[int] = None
        self._stopped_since: Optional[int] = None

    @property
    def last_timestamp(self) -> Optional[int]:
        return self._last_ts

    def process(self, snapshot: FusedTelemetrySnapshot, context: Optional[EventContext] = None
                ) -> List[DrivingEvent]:
        ts = snapshot.timestamp
        if self._last_ts is not None and ts <= self._last_ts:
            raise OutOfOrderSnapshot(ts, self._last_ts)
        self._last_ts = ts
        context = context or EventContext()

        prev = self._frames[-1] if self._frames else None
        frame = build_frame(snapshot, prev)
        self._frames.append(frame)
        while self._frames and self._frames[0].t < ts - self.thr.pattern_window_ms:
            self._frames.popleft()
        frames = list(self._frames)

        out: List[DrivingEvent] = []
        out.extend(self._track_speeding(frame, context))
        for etype, rule in KINEMATIC_RULES:
            if self._cooling(etype, ts, self.thr.event_window_ms):
                continue
            ev = rule(frames, context, self.thr)
            if ev is not None:
                out.append(self._record(ev, ts))

        self._escalate(frame, context, out)

        if not self._recent_harsh(ts):
            for etype, rule in PATTERN_RULES:
                if self._cooling(etype, ts, self.thr.pattern_window_ms):
                    continue
                ev = rule(frames, context, self.thr)
                if ev is not None:
                    out.append(self._record(ev, ts))

        ev = self._track_fatigue(frame, context)
        if ev is not None:
            out.append(self._record(ev, ts))

        for ev in out:
            logger.debug("event %s %s t=%d conf=%.2f", ev.event_type.value,
                         ev.severity.value, ev.timestamp, ev.confidence)
        return out

    def finish(self) -> List[DrivingEvent]:
        """Close any open run; the detector keeps its window for inspection."""
        if self._run is None:
            return []
        ev = self._close_run()
        return [ev] if ev is not None else []

    # ---------- speeding ----------
    def _track_speeding(self, frame: Frame, context: EventContext) -> List[DrivingEvent]:
        thr = self.thr
        over = frame.speed - speed_limit_mps(context, thr.default_speed_limit_kph)
        out: List[DrivingEvent] = []
        if over > thr.speeding_tolerance_mps:
            if self._run is None:
                self._run = (frame, context, over, frame, 1)
            else:
                start, ctx, peak, _, n = self._run
                self._run = (start, ctx, max(peak, over), frame, n + 1)
            if frame.t - self._run[0].t >= thr.speeding_max_run_ms:
                ev = self._close_run()
                if ev is not None:
                    out.append(ev)
        elif self._run is not None:
            ev = self._close_run()
            if ev is not None:
                out.append(ev)
        return out

    def _close_run(self) -> Optional[DrivingEvent]:
        start, ctx, peak, last, n = self._run
        self._run = None
        duration = last.t - start.t
        if duration < self.thr.speeding_min_duration_ms:
            return None
        ratio = peak / max(self.thr.speeding_tolerance_mps, 1e-9)
        ev = _event(
            DrivingEventType.SPEEDING,
            severity_for(peak, self.thr.speeding_tolerance_mps, self.thr.severity_ratios),
            last, ctx, self.thr,
            magnitude=peak,
            confidence=confidence_for(ratio, samples=n,
                                      expected=_expected(duration, self.thr) + 1,
                                      accuracy_m=start.location.accuracy),
            duration_ms=duration,
            timestamp=start.t,
            location=start.location,
        )
        return self._record(ev, last.t)

    # ---------- escalation / fatigue ----------
    def _escalate(self, frame: Frame, context: EventContext, out: List[DrivingEvent]) -> None:
        specs = (
            (DrivingEventType.AGGRESSIVE_DRIVING, HARSH_TYPES,
             self.thr.aggressive_min_events, EventSeverity.MEDIUM),
            (DrivingEventType.DISTRACTED_DRIVING, (DrivingEventType.PHONE_USAGE,),
             self.thr.distracted_min_phone_events, EventSeverity.LOW),
        )
        for etype, sources, n, sev in specs:
            if self._cooling(etype, frame.t, self.thr.pattern_window_ms):
                continue
            ev = detect_escalation(list(self._history), frame, context, self.thr, etype=etype,
                                   sources=sources, min_events=n, min_severity=sev)
            if ev is not None:
                out.append(self._record(ev, frame.t))

    def _track_fatigue(self, frame: Frame, context: EventContext) -> Optional[DrivingEvent]:
        thr = self.thr
        if frame.speed < thr.idle_speed_mps:
            if self._stopped_since is None:
                self._stopped_since = frame.t
            if frame.t - self._stopped_since >= thr.fatigue_rest_ms:
                self._drive_start = None
            return None
        self._stopped_since = None
        if self._drive_start is None:
            self._drive_start = frame.t
            return None
        driven = frame.t - self._drive_start
        # one flag per fatigue_drive_ms of continuous driving
        if driven < thr.fatigue_drive_ms or self._cooling(
                DrivingEventType.FATIGUE_DETECTED, frame.t, thr.fatigue_drive_ms):
            return None
        ratio = driven / thr.fatigue_drive_ms
        return _event(
            DrivingEventType.FATIGUE_DETECTED,
            severity_for(ratio, 1.0, thr.severity_ratios),
            frame, context, thr,
            magnitude=driven / 3_600_000.0,
            confidence=confidence_for(ratio, samples=1, expected=1,
                                      accuracy_m=frame.location.accuracy),
            duration_ms=driven,
        )

    # ---------- bookkeeping ----------
    def _cooling(self, etype: DrivingEventType, ts: int, span_ms: int) -> bool:
        last = self._last_emit.get(etype)
        return last is not None and ts - last < span_ms

    def _recent_harsh(self, ts: int) -> bool:
        cutoff = ts - self.thr.pattern_window_ms
        return any(e.timestamp >= cutoff and e.event_type in HARSH_TYPES
                   and e.severity >= EventSeverity.MEDIUM for e in self._history)

    def _record(self, ev: DrivingEvent, ts: int) -> DrivingEvent:
        self._last_emit[ev.event_type] = ts
        self._history.append(ev)
        cutoff = ts - self.thr.pattern_window_ms
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()
        return ev
