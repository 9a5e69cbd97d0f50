from fastapi.testclient import TestClient

from src.serve.api import app
from src.simulator.generate_trips import generate_trip_records
client = TestClient(app)

SPEEDING_EVENT = {
    "event_type": "speeding", "severity": "critical", "timestamp": 1757412182000,
    "duration_ms": 6000, "magnitude": 8.0, "confidence": 0.93, "speed_mps": 30.0,
    "context": {"road_type": "residential", "speed_limit_mps": 22.0},
}


def _replay_payload(persona, duration_s=60, seed=7):
    recs = generate_trip_records(persona, duration_s, seed, sensor_hz=2)
    strip = lambda r: {k: v for k, v in r.items() if k != "stream"}
    return {
        "trip_id": f"{persona}-1",
        "locations": [strip(r) for r in recs if r["stream"] == "location"],
        "sensors": [strip(r) for r in recs if r["stream"] == "sensor"],
    }


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_score_trip_and_quote():
    r = client.post("/score/trip", json={"trip_id": "t1", "events": [SPEEDING_EVENT]})
    assert r.status_code == 200
    ts = r.json()
    assert ts["trip_id"] == "t1"
    assert ts["legal_compliance_score"] < 100.0
    assert ts["risk_factors"][0]["kind"] == "speeding"

    r = client.post("/price/quote", json={"trip_score": ts, "prior_premium": 1000.0})
    assert r.status_code == 200
    q = r.json()
    assert q["discount_eligible"] is False
    assert 850.0 <= q["estimated_premium"] <= 1150.0
    assert q["recommendations"]


def test_score_trip_rejects_bad_event():
    bad = dict(SPEEDING_EVENT, confidence=2.0)
    r = client.post("/score/trip", json={"events": [bad]})
    assert r.status_code == 422


def test_replay_safe_trip():
    r = client.post("/trips/replay", json=_replay_payload("safe"))
    assert r.status_code == 200
    out = r.json()
    assert out["trip_score"]["trip_id"] == "safe-1"
    assert out["trip_score"]["statistics"]["location_samples"] == 60
    assert out["trip_score"]["overall_score"] == 100.0
    assert out["risk"]["discount_eligible"] is True
    assert out["counters"]["location_accepted"] == 60


def test_replay_with_fixed_context():
    payload = _replay_payload("safe")
    payload["context"] = {"speed_limit_mps": 5.0}
    r = client.post("/trips/replay", json=payload)
    assert r.status_code == 200
    events = r.json()["trip_score"]["events"]
    assert any(e["event_type"] == "speeding" for e in events)


def test_replay_requires_locations():
    r = client.post("/trips/replay", json={"sensors": []})
    assert r.status_code == 422


def test_score_driver():
    trips = [client.post("/trips/replay", json=_replay_payload(p)).json()["trip_score"]
             for p in ("safe", "aggressive")]
    r = client.post("/score/driver", json={"trip_scores": trips})
    assert r.status_code == 200
    d = r.json()
    assert d["n_trips"] == 2
    assert d["exposure_km"] > 0
    assert 0.0 <= d["risk_score"] <= 100.0
    assert d["risk_category"] in {"very_low", "low", "moderate", "high", "very_high"}

    r = client.post("/score/driver", json={"trip_scores": []})
    assert r.status_code == 404
