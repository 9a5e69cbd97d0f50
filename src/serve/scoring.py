# src/serve/scoring.py
from __future__ import annotations
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence

from src.processing.config import SUB_SCORES, ScoringWeights
from src.serve.schemas import (
    DrivingEvent, DrivingEventType, RiskFactor, RiskFactorType,
    TripScore, TripStatistics,
)
from src.serve.score_helpers import (
    exposure_weighted_avg, risk_category, risk_score_from_overall,
)

RISK_FACTOR_FOR: Dict[DrivingEventType, RiskFactorType] = {
    DrivingEventType.SPEEDING: RiskFactorType.SPEEDING,
    DrivingEventType.HARD_BRAKING: RiskFactorType.HARD_BRAKING,
    DrivingEventType.RAPID_ACCELERATION: RiskFactorType.AGGRESSIVE_ACCELERATION,
    DrivingEventType.HARSH_CORNERING: RiskFactorType.HARSH_CORNERING,
    DrivingEventType.PHONE_USAGE: RiskFactorType.PHONE_USAGE,
    DrivingEventType.DISTRACTED_DRIVING: RiskFactorType.DISTRACTED_DRIVING,
    DrivingEventType.FATIGUE_DETECTED: RiskFactorType.FATIGUE_INDICATORS,
    DrivingEventType.AGGRESSIVE_DRIVING: RiskFactorType.AGGRESSIVE_DRIVING,
}

_LABELS = {
    DrivingEventType.SPEEDING: "speeding",
    DrivingEventType.HARD_BRAKING: "hard braking",
    DrivingEventType.RAPID_ACCELERATION: "rapid acceleration",
    DrivingEventType.HARSH_CORNERING: "harsh cornering",
    DrivingEventType.PHONE_USAGE: "phone usage",
    DrivingEventType.DISTRACTED_DRIVING: "distracted driving",
    DrivingEventType.FATIGUE_DETECTED: "fatigue",
    DrivingEventType.AGGRESSIVE_DRIVING: "aggressive driving",
}


def _clip100(x: float) -> float:
    return float(round(max(0.0, min(100.0, x)), 2))


def penalty_points(event: DrivingEvent, weights: ScoringWeights) -> Dict[str, float]:
    """Signed points taken off each sub-score by one event (negative = bonus)."""
    mult = weights.severity_multipliers[event.severity]
    return {sub: p * mult for sub, p in weights.penalties.get(event.event_type, {}).items()}


def score_trip(
    events: Sequence[DrivingEvent],
    stats: Optional[TripStatistics] = None,
    weights: Optional[ScoringWeights] = None,
    *,
    trip_id: Optional[str] = None,
) -> TripScore:
    """
    Reduce a trip's events into sub-scores, overall score and risk factors.

    Every sub-score starts at 100 and loses penalty_points() per event. Advisory
    (low-confidence) events are kept on the TripScore but cost nothing. A trip
    with no events scores 100 everywhere with no risk factors.
    """
    weights = weights or ScoringWeights()
    stats = stats or TripStatistics()
    events = list(events)

    subs = {s: 100.0 for s in SUB_SCORES}
    by_type: Dict[DrivingEventType, List[DrivingEvent]] = defaultdict(list)
    cost: Dict[DrivingEventType, float] = defaultdict(float)
    for ev in events:
        if ev.advisory:
            continue
        by_type[ev.event_type].append(ev)
        for sub, pts in penalty_points(ev, weights).items():
            subs[sub] -= pts
            if pts > 0:
                cost[ev.event_type] += pts

    subs = {s: _clip100(v) for s, v in subs.items()}
    overall = _clip100(sum(w * subs[s] for s, w in weights.overall_weights.items()))

    factors: List[RiskFactor] = []
    for etype, kind in RISK_FACTOR_FOR.items():
        hits = by_type.get(etype, [])
        if not hits:
            continue
        worst = max(e.severity for e in hits)
        min_count = weights.risk_factor_min_count.get(etype, 1)
        if len(hits) < min_count and worst < weights.risk_factor_min_severity:
            continue
        factors.append(RiskFactor(
            kind=kind,
            weight=round(cost[etype], 2),
            frequency=len(hits),
            description=f"{len(hits)} {_LABELS[etype]} event(s), worst severity {worst.value}",
        ))
    factors.sort(key=lambda f: f.weight, reverse=True)

    fields: Dict[str, Any] = {
        "overall_score": overall,
        "safety_score": subs["safety"],
        "efficiency_score": subs["efficiency"],
        "smoothness_score": subs["smoothness"],
        "legal_compliance_score": subs["legal_compliance"],
        "events": tuple(events),
        "risk_factors": tuple(factors),
        "statistics": stats.model_copy(update={"event_count": len(events)}),
    }
    if trip_id is not None:
        fields["trip_id"] = trip_id
    return TripScore(**fields)


def summarize_driver(trip_scores: Iterable[TripScore]) -> Dict[str, Any]:
    """Distance-weighted roll-up of a driver's trips (equal weights if no distance)."""
    scores = list(trip_scores)
    if not scores:
        return {"n_trips": 0, "exposure_km": 0.0, "overall_score": 0.0,
                "risk_score": 0.0, "risk_category": None, "events_total": 0}

    km = [t.statistics.total_distance_km for t in scores]
    weights = km if sum(km) > 0 else [1.0] * len(scores)
    overall = exposure_weighted_avg((t.overall_score, w) for t, w in zip(scores, weights))
    risk = exposure_weighted_avg(
        (risk_score_from_overall(t.overall_score), w) for t, w in zip(scores, weights)
    )
    return {
        "n_trips": len(scores),
        "exposure_km": float(sum(km)),
        "overall_score": round(overall, 2),
        "risk_score": round(risk, 2),
        "risk_category": risk_category(overall),
        "events_total": sum(len(t.events) for t in scores),
    }
