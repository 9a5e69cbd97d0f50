from __future__ import annotations
import json
import math
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from src.processing.feature_defs import per100km
from src.serve.schemas import (
    DrivingEvent, DrivingEventType, EventContext, EventSeverity, LocationSample,
    RoadType, TripScore,
)

EVENT_COLUMNS = [
    "event_id", "trip_id", "event_type", "severity", "timestamp", "duration_ms",
    "magnitude", "confidence", "speed_mps", "advisory",
    "latitude", "longitude", "altitude", "accuracy", "location_speed", "bearing",
    "provider", "location_timestamp",
    "road_type", "weather", "traffic_density", "time_of_day", "is_rush_hour",
    "school_zone", "construction_zone", "speed_limit_mps",
    "speeding_threshold_type", "speed_over_limit",
]

_THRESHOLD_CLASS = {
    RoadType.RESIDENTIAL: "urban",
    RoadType.ARTERIAL: "rural",
    RoadType.HIGHWAY: "highway",
}


def _opt(v):
    """None for missing values, including the NaN pandas puts in empty cells."""
    if v is None:
        return None
    if isinstance(v, float) and math.isnan(v):
        return None
    return v


# ------------- Events -------------
def event_to_record(event: DrivingEvent, trip_id: Optional[str] = None) -> Dict[str, Any]:
    loc = event.location
    ctx = event.context
    speeding = event.event_type == DrivingEventType.SPEEDING
    return {
        "event_id": event.event_id,
        "trip_id": trip_id,
        "event_type": event.event_type.value,
        "severity": event.severity.value,
        "timestamp": event.timestamp,
        "duration_ms": event.duration_ms,
        "magnitude": event.magnitude,
        "confidence": event.confidence,
        "speed_mps": event.speed_mps,
        "advisory": event.advisory,
        "latitude": loc.latitude if loc else None,
        "longitude": loc.longitude if loc else None,
        "altitude": loc.altitude if loc else None,
        "accuracy": loc.accuracy if loc else None,
        "location_speed": loc.speed if loc else None,
        "bearing": loc.bearing if loc else None,
        "provider": loc.provider if loc else None,
        "location_timestamp": loc.timestamp if loc else None,
        "road_type": ctx.road_type.value,
        "weather": ctx.weather.value if ctx.weather else None,
        "traffic_density": ctx.traffic_density.value,
        "time_of_day": ctx.time_of_day.value,
        "is_rush_hour": ctx.is_rush_hour,
        "school_zone": ctx.school_zone,
        "construction_zone": ctx.construction_zone,
        "speed_limit_mps": ctx.speed_limit_mps,
        # derived, ignored on the way back
        "speeding_threshold_type": _THRESHOLD_CLASS.get(ctx.road_type, "urban") if speeding else None,
        "speed_over_limit": event.magnitude if speeding else None,
    }


def event_from_record(row: Dict[str, Any]) -> DrivingEvent:
    location = None
    if _opt(row.get("latitude")) is not None and _opt(row.get("longitude")) is not None:
        location = LocationSample(
            latitude=row["latitude"],
            longitude=row["longitude"],
            altitude=_opt(row.get("altitude")),
            accuracy=_opt(row.get("accuracy")),
            speed=_opt(row.get("location_speed")),
            bearing=_opt(row.get("bearing")),
            provider=_opt(row.get("provider")) or "fused",
            timestamp=int(_opt(row.get("location_timestamp")) or row["timestamp"]),
        )
    context = EventContext(
        road_type=_opt(row.get("road_type")) or "unknown",
        weather=_opt(row.get("weather")),
        traffic_density=_opt(row.get("traffic_density")) or "moderate",
        time_of_day=_opt(row.get("time_of_day")) or "midday",
        is_rush_hour=bool(row.get("is_rush_hour", False)),
        school_zone=bool(row.get("school_zone", False)),
        construction_zone=bool(row.get("construction_zone", False)),
        speed_limit_mps=_opt(row.get("speed_limit_mps")),
    )
    return DrivingEvent(
        event_id=row["event_id"],
        event_type=row["event_type"],
        severity=row["severity"],
        timestamp=int(row["timestamp"]),
        duration_ms=int(row.get("duration_ms", 0)),
        magnitude=float(row["magnitude"]),
        confidence=float(row["confidence"]),
        speed_mps=float(row.get("speed_mps", 0.0)),
        location=location,
        context=context,
        advisory=bool(row.get("advisory", False)),
    )


def events_frame(events: Iterable[DrivingEvent], trip_id: Optional[str] = None) -> pd.DataFrame:
    rows = [event_to_record(e, trip_id) for e in events]
    return pd.DataFrame(rows, columns=EVENT_COLUMNS)


def events_from_frame(df: pd.DataFrame) -> List[DrivingEvent]:
    return [event_from_record(r) for r in df.to_dict(orient="records")]


# ------------- Trip summary -------------
def _max_magnitude(events: List[DrivingEvent], etype: DrivingEventType) -> float:
    vals = [e.magnitude for e in events if e.event_type == etype]
    return float(max(vals)) if vals else 0.0


def trip_summary_record(
    trip_score: TripScore,
    start_timestamp: Optional[int] = None,
    end_timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    events = list(trip_score.events)
    stats = trip_score.statistics
    by_type = Counter(e.event_type for e in events)
    by_sev = Counter(e.severity for e in events)
    located = [e.location for e in events if e.location is not None]
    phone = [e for e in events if e.event_type == DrivingEventType.PHONE_USAGE]
    speeding = [e for e in events if e.event_type == DrivingEventType.SPEEDING]

    if start_timestamp is None and events:
        start_timestamp = events[0].timestamp
    if end_timestamp is None and start_timestamp is not None:
        end_timestamp = start_timestamp + stats.total_duration_ms

    row: Dict[str, Any] = {
        "trip_id": trip_score.trip_id,
        "start_timestamp": start_timestamp,
        "end_timestamp": end_timestamp,
        "total_duration_ms": stats.total_duration_ms,
        "total_distance_km": stats.total_distance_km,
        "average_speed_kph": stats.average_speed_kph,
        "max_speed_kph": stats.max_speed_kph,
        "overall_score": trip_score.overall_score,
        "safety_score": trip_score.safety_score,
        "efficiency_score": trip_score.efficiency_score,
        "smoothness_score": trip_score.smoothness_score,
        "legal_compliance_score": trip_score.legal_compliance_score,
    }
    for t in DrivingEventType:
        row[f"{t.value}_count"] = by_type.get(t, 0)
    for s in EventSeverity:
        row[f"{s.value}_severity_count"] = by_sev.get(s, 0)
    row.update({
        "speeding_duration_ms": stats.speeding_duration_ms,
        "idle_time_ms": stats.idle_time_ms,
        "night_driving_pct": stats.night_driving_pct,
        "high_risk_road_pct": stats.high_risk_road_pct,
        "events_per_100km": per100km(len(events), stats.total_distance_km),
        "start_latitude": located[0].latitude if located else None,
        "start_longitude": located[0].longitude if located else None,
        "end_latitude": located[-1].latitude if located else None,
        "end_longitude": located[-1].longitude if located else None,
        "total_risk_factors": len(trip_score.risk_factors),
        "risk_factor_details": json.dumps([f.model_dump(mode="json") for f in trip_score.risk_factors]),
        "phone_usage_total_ms": int(sum(e.duration_ms for e in phone)),
        "phone_usage_confidence_avg": float(np.mean([e.confidence for e in phone])) if phone else 0.0,
        "phone_usage_confidence_max": float(max(e.confidence for e in phone)) if phone else 0.0,
        "max_speed_over_limit": float(max(e.magnitude for e in speeding)) if speeding else 0.0,
        "avg_speed_over_limit": float(np.mean([e.magnitude for e in speeding])) if speeding else 0.0,
        "urban_speeding_count": sum(1 for e in speeding if e.context.road_type == RoadType.RESIDENTIAL),
        "rural_speeding_count": sum(1 for e in speeding if e.context.road_type == RoadType.ARTERIAL),
        "highway_speeding_count": sum(1 for e in speeding if e.context.road_type == RoadType.HIGHWAY),
        "max_deceleration": _max_magnitude(events, DrivingEventType.HARD_BRAKING),
        "max_acceleration": _max_magnitude(events, DrivingEventType.RAPID_ACCELERATION),
        "max_lateral_acceleration": _max_magnitude(events, DrivingEventType.HARSH_CORNERING),
    })
    return row
