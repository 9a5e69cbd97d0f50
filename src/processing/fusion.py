from __future__ import annotations
import logging
from collections import Counter, deque
from typing import Callable, Deque, Dict, List, Optional

from src.processing.config import FusionSettings
from src.processing.errors import StaleSampleDropped
from src.serve.schemas import FusedTelemetrySnapshot, LocationSample, MotionSample, SensorKind

logger = logging.getLogger(__name__)

LOCATION_STREAM = "location"


class FusionSynchronizer:
    """
    Pairs the location stream with the motion streams into FusedTelemetrySnapshot.

    Every snapshot is anchored on one location fix and carries each motion sample
    within +/- pairing_window_ms of it. A fix is held until the newest timestamp
    seen on any stream (the watermark) passes fix.t + window, so motion that
    arrives late relative to the fix is still paired. Motion buffers are bounded
    per sensor kind and evict FIFO; nothing here blocks or raises on bad timing.
    """

    def __init__(
        self,
        settings: Optional[FusionSettings] = None,
        on_diagnostic: Optional[Callable[[StaleSampleDropped], None]] = None,
    ):
        self.settings = settings or FusionSettings()
        self._on_diagnostic = on_diagnostic
        self._motion: Dict[SensorKind, Deque[MotionSample]] = {}
        self._last_motion_ts: Dict[SensorKind, int] = {}
        self._pending: Deque[LocationSample] = deque()
        self._last_location_ts: Optional[int] = None
        self._watermark: Optional[int] = None
        self._first_ts: Optional[int] = None
        self._stalled = False
        self._ahead: Dict[str, int] = {}
        self.diagnostics: Counter = Counter()

    # ---------- inputs ----------
    def push_location(self, loc: LocationSample) -> List[FusedTelemetrySnapshot]:
        if self._last_location_ts is not None and loc.timestamp < self._last_location_ts:
            self._drop(LOCATION_STREAM, loc.timestamp, "out_of_order")
            return []
        if not self._admit(LOCATION_STREAM, loc.timestamp):
            return []
        self._last_location_ts = loc.timestamp
        if self._stalled:
            logger.info("location stream resumed at t=%d", loc.timestamp)
            self._stalled = False
        self._pending.append(loc)
        self._advance(loc.timestamp)
        return self._release()

    def push_motion(self, sample: MotionSample) -> List[FusedTelemetrySnapshot]:
        last = self._last_motion_ts.get(sample.kind)
        if last is not None and sample.timestamp < last:
            self._drop(sample.kind.value, sample.timestamp, "out_of_order")
            return []
        if not self._admit(sample.kind.value, sample.timestamp):
            return []
        self._last_motion_ts[sample.kind] = sample.timestamp

        buf = self._motion.setdefault(sample.kind, deque())
        buf.append(sample)
        while len(buf) > self.settings.max_buffer_size:
            old = buf.popleft()
            self._drop(old.kind.value, old.timestamp, "evicted")
        self._advance(sample.timestamp)
        return self._release()

    def flush(self) -> List[FusedTelemetrySnapshot]:
        """Emit every held fix, then drop whatever motion is left unmatched."""
        out = [self._emit(self._pending.popleft()) for _ in range(len(self._pending))]
        for buf in self._motion.values():
            while buf:
                old = buf.popleft()
                self._drop(old.kind.value, old.timestamp, "expired")
        return out

    # ---------- introspection ----------
    @property
    def pending_locations(self) -> int:
        return len(self._pending)

    def buffered(self, kind: Optional[SensorKind] = None) -> int:
        if kind is not None:
            return len(self._motion.get(kind, ()))
        return sum(len(b) for b in self._motion.values())

    @property
    def location_stalled(self) -> bool:
        return self._stalled

    # ---------- internals ----------
    def _admit(self, stream: str, ts: int) -> bool:
        """
        False for a sample more than max_clock_jump_ms ahead of the watermark,
        unless the previous sample on the same stream was also ahead and close
        to it (the stream really moved on rather than one clock glitch).
        """
        limit = self.settings.max_clock_jump_ms
        if self._watermark is None or ts - self._watermark <= limit:
            self._ahead.pop(stream, None)
            return True
        prev = self._ahead.get(stream)
        if prev is not None and 0 <= ts - prev <= limit:
            del self._ahead[stream]
            logger.info("%s stream jumped ahead to t=%d", stream, ts)
            return True
        self._ahead[stream] = ts
        self._drop(stream, ts, "future")
        return False

    def _advance(self, ts: int) -> None:
        if self._first_ts is None:
            self._first_ts = ts
        if self._watermark is None or ts > self._watermark:
            self._watermark = ts

    def _release(self) -> List[FusedTelemetrySnapshot]:
        window = self.settings.pairing_window_ms
        out: List[FusedTelemetrySnapshot] = []
        while self._pending and (
            self._watermark >= self._pending[0].timestamp + window
            or len(self._pending) > self.settings.max_pending_locations
        ):
            out.append(self._emit(self._pending.popleft()))
        self._expire()
        return out

    def _emit(self, loc: LocationSample) -> FusedTelemetrySnapshot:
        lo = loc.timestamp - self.settings.pairing_window_ms
        hi = loc.timestamp + self.settings.pairing_window_ms
        matched: List[MotionSample] = []
        for buf in self._motion.values():
            while buf and buf[0].timestamp < lo:
                old = buf.popleft()
                self._drop(old.kind.value, old.timestamp, "expired")
            while buf and buf[0].timestamp <= hi:
                matched.append(buf.popleft())
        matched.sort(key=lambda m: m.timestamp)
        return FusedTelemetrySnapshot(location=loc, motion=tuple(matched))

    def _expire(self) -> None:
        window = self.settings.pairing_window_ms
        timeout = self.settings.location_timeout_ms
        if self._pending:
            floor = self._pending[0].timestamp - window
        else:
            floor = self._watermark - timeout
            if self._last_location_ts is not None:
                floor = max(floor, self._last_location_ts - window)
            self._check_stall()
        for buf in self._motion.values():
            while buf and buf[0].timestamp < floor:
                old = buf.popleft()
                self._drop(old.kind.value, old.timestamp, "expired")

    def _check_stall(self) -> None:
        if self._stalled or self._watermark is None:
            return
        since = self._last_location_ts
        if since is None:
            since = self._first_ts
        if self._watermark - since > self.settings.location_timeout_ms:
            self._stalled = True
            logger.warning(
                "no location fix for %d ms; buffering motion only",
                self._watermark - since,
            )

    def _drop(self, stream: str, ts: int, reason: str) -> None:
        self.diagnostics[reason] += 1
        logger.debug("dropped %s sample t=%d (%s)", stream, ts, reason)
        if self._on_diagnostic is not None:
            self._on_diagnostic(StaleSampleDropped(kind=stream, timestamp=ts, reason=reason))
