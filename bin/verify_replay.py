#!/usr/bin/env python
# bin/verify_replay.py
import sys, pathlib

from fastapi.testclient import TestClient

# Ensure project root on path when running directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.ingest.ingest import replay
from src.serve.api import app
from src.simulator.generate_trips import PERSONAS, generate_trip_records
client = TestClient(app)


def _payload(persona: str, duration_s: int, seed: int):
    recs = generate_trip_records(persona, duration_s, seed)
    strip = lambda r: {k: v for k, v in r.items() if k != "stream"}
    return {
        "trip_id": f"verify-{persona}",
        "locations": [strip(r) for r in recs if r["stream"] == "location"],
        "sensors": [strip(r) for r in recs if r["stream"] == "sensor"],
    }, recs


def main() -> int:
    r = client.get("/health")
    assert r.status_code == 200 and r.json().get("ok") is True, "health failed"
    print("[VERIFY-REPLAY] /health ok")

    trips = []
    for persona in sorted(PERSONAS):
        payload, recs = _payload(persona, 180, seed=42)
        r = client.post("/trips/replay", json=payload)
        assert r.status_code == 200, f"/trips/replay http {r.status_code}"
        out = r.json()
        ts = out["trip_score"]
        # the API and the in-process replay must agree on the same stream
        local, _ = replay(recs, trip_id=payload["trip_id"])
        assert abs(local.overall_score - ts["overall_score"]) < 1e-6, "API and replay disagree"
        trips.append(ts)
        print(f"[VERIFY-REPLAY] {persona:<10} overall={ts['overall_score']:6.2f} "
              f"events={len(ts['events']):3d} premium={out['risk']['estimated_premium']:.2f}")

    by_name = {t["trip_id"]: t for t in trips}
    safe = by_name["verify-safe"]["overall_score"]
    for persona in ("aggressive", "distracted"):
        assert by_name[f"verify-{persona}"]["overall_score"] < safe, f"{persona} should score below safe"

    r = client.post("/score/driver", json={"trip_scores": trips})
    assert r.status_code == 200, f"/score/driver http {r.status_code}"
    d = r.json()
    print(f"[VERIFY-REPLAY] driver n_trips={d['n_trips']} overall={d['overall_score']:.2f} "
          f"category={d['risk_category']}")

    print("[VERIFY-REPLAY] OK: replay, scoring and pricing agree.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
