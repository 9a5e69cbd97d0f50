# src/serve/api.py
from __future__ import annotations
from typing import Optional, Dict, List, Annotated

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from src.processing.config import EngineConfig, load_config
from src.processing.engine import TelematicsEngine
from src.serve.pricing import estimate_insurance_risk
from src.serve.schemas import (
    DrivingEvent, EventContext, InsuranceRiskAssessment, RawLocationFix,
    RawSensorReading, RiskCategory, TripScore, TripStatistics,
)
from src.serve.scoring import score_trip as score_trip_events, summarize_driver
from src.serve.settings import get_settings

app = FastAPI(title="Telematics Scoring API", version="0.2")

# ---------- Config ----------
CONFIG: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    global CONFIG
    if CONFIG is None:
        CONFIG = load_config(get_settings().telematics_config)
    return CONFIG


# ---------- Schemas ----------
FloatGT0 = Annotated[float, Field(gt=0)]


class TripEventsIn(BaseModel):
    trip_id: Optional[str] = None
    events: List[DrivingEvent] = []
    statistics: TripStatistics = Field(default_factory=TripStatistics)


class QuoteIn(BaseModel):
    trip_score: TripScore
    prior_premium: Optional[FloatGT0] = None


class ReplayIn(BaseModel):
    trip_id: Optional[str] = None
    locations: List[RawLocationFix] = []
    sensors: List[RawSensorReading] = []
    context: Optional[EventContext] = Field(None, description="Fixed context for every fix")


class ReplayOut(BaseModel):
    trip_score: TripScore
    risk: InsuranceRiskAssessment
    counters: Dict[str, int]


class DriverIn(BaseModel):
    trip_scores: List[TripScore]


class DriverScoreOut(BaseModel):
    n_trips: int
    exposure_km: float
    overall_score: float
    risk_score: float
    risk_category: Optional[RiskCategory]
    events_total: int


# ---------- Endpoints ----------
@app.get("/health")
def health():
    return {"ok": True}


@app.post("/score/trip", response_model=TripScore)
def score_trip(payload: TripEventsIn):
    cfg = get_config()
    return score_trip_events(payload.events, payload.statistics, cfg.scoring, trip_id=payload.trip_id)


@app.post("/price/quote", response_model=InsuranceRiskAssessment)
def price_quote(q: QuoteIn):
    cfg = get_config()
    return estimate_insurance_risk(q.trip_score, cfg.pricing, prior_premium=q.prior_premium)


@app.post("/trips/replay", response_model=ReplayOut)
def replay_trip(payload: ReplayIn):
    if not payload.locations:
        raise HTTPException(status_code=422, detail="At least one location fix is required")
    cfg = get_config()
    provider = (lambda _loc: payload.context) if payload.context is not None else None
    engine = TelematicsEngine(cfg, context_provider=provider)
    engine.start_trip(payload.trip_id)

    # interleave the two streams in time order, as a device would deliver them
    merged = [(r.timestamp, 1, r) for r in payload.locations]
    merged += [(r.timestamp, 0, r) for r in payload.sensors]
    merged.sort(key=lambda x: (x[0], x[1]))
    for i, (_, is_location, rec) in enumerate(merged, start=1):
        if is_location:
            engine.submit_location(rec)
        else:
            engine.submit_motion(rec)
        if i % 256 == 0:
            engine.process_pending()
    ts = engine.end_trip()
    risk = estimate_insurance_risk(ts, cfg.pricing)
    return {"trip_score": ts, "risk": risk, "counters": engine.counters_dict()}


@app.post("/score/driver", response_model=DriverScoreOut)
def score_driver(payload: DriverIn):
    out = summarize_driver(payload.trip_scores)
    if out["n_trips"] == 0:
        raise HTTPException(status_code=404, detail="No trips supplied for driver")
    return out
