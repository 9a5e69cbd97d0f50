from __future__ import annotations
import argparse
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from src.processing.config import EngineConfig, load_config
from src.processing.engine import TelematicsEngine
from src.processing.records import events_frame, trip_summary_record
from src.serve.pricing import estimate_insurance_risk
from src.serve.schemas import TripScore

logger = logging.getLogger(__name__)

BATCH = 256


def read_ndjson(path) -> List[Dict]:
    rows = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            rows.append(json.loads(line))
    return rows


def replay(
    records: Iterable[Dict],
    config: Optional[EngineConfig] = None,
    *,
    trip_id: Optional[str] = None,
    engine: Optional[TelematicsEngine] = None,
) -> Tuple[TripScore, Dict[str, int]]:
    """Push a recorded raw stream through a fresh trip and return its score + counters."""
    engine = engine or TelematicsEngine(config)
    engine.start_trip(trip_id)
    for i, rec in enumerate(records, start=1):
        stream = rec.get("stream")
        payload = {k: v for k, v in rec.items() if k not in ("stream", "trip")}
        if stream == "location":
            engine.submit_location(payload)
        elif stream == "sensor":
            engine.submit_motion(payload)
        else:
            engine.counters["unknown_stream"] += 1
            logger.warning("skipping record with stream=%r", stream)
        if i % BATCH == 0:
            engine.process_pending()
    score = engine.end_trip()
    return score, engine.counters_dict()


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--input", type=str, required=True, help="NDJSON recording")
    ap.add_argument("--config", type=str, default=None, help="Engine config JSON")
    ap.add_argument("--trip-id", type=str, default=None)
    ap.add_argument("--out-score", type=str, default=None, help="Write TripScore JSON here")
    ap.add_argument("--events-csv", type=str, default=None, help="Write event rows here")
    args = ap.parse_args()

    cfg = load_config(args.config)
    records = read_ndjson(args.input)
    score, counters = replay(records, cfg, trip_id=args.trip_id)
    risk = estimate_insurance_risk(score, cfg.pricing)
    summary = trip_summary_record(score)

    print(f"[REPLAY] {len(records)} records -> trip {score.trip_id}")
    print(f"[REPLAY] overall={score.overall_score:.1f} safety={score.safety_score:.1f} "
          f"legal={score.legal_compliance_score:.1f} events={len(score.events)} "
          f"km={score.statistics.total_distance_km:.2f}")
    print(f"[REPLAY] premium={risk.estimated_premium:.2f} discount={risk.discount_pct:.0f}% "
          f"risk_factors={summary['total_risk_factors']}")
    print(f"[REPLAY] counters={json.dumps(counters, sort_keys=True)}")

    if args.out_score:
        out = Path(args.out_score)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(score.model_dump_json(indent=2), encoding="utf-8")
        print(f"[REPLAY] wrote {out}")
    if args.events_csv:
        out = Path(args.events_csv)
        out.parent.mkdir(parents=True, exist_ok=True)
        events_frame(score.events, score.trip_id).to_csv(out, index=False)
        print(f"[REPLAY] wrote {out}")


if __name__ == "__main__":
    main()
