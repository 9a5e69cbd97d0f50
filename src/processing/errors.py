from __future__ import annotations
from dataclasses import dataclass
from typing import Literal, Optional


class TelematicsError(Exception):
    """Base class for everything the engine raises."""


class InvalidSample(TelematicsError, ValueError):
    """Raw input is malformed or out of range; the sample is dropped."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UnsupportedSensorKind(TelematicsError, ValueError):
    def __init__(self, code):
        super().__init__(f"unsupported sensor kind: {code!r}")
        self.code = code


class OutOfOrderSnapshot(TelematicsError):
    def __init__(self, timestamp: int, last_timestamp: int):
        super().__init__(
            f"snapshot at t={timestamp} is not after last processed t={last_timestamp}"
        )
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp


class TripStateError(TelematicsError, RuntimeError):
    pass


class TripNotStarted(TripStateError):
    pass


class TripAlreadyFinalized(TripStateError):
    pass


class TripDiscarded(TripStateError):
    pass


# Diagnostic record, never raised.
@dataclass(frozen=True)
class StaleSampleDropped:
    kind: str
    timestamp: int
    reason: Literal["expired", "evicted", "out_of_order", "future"]
