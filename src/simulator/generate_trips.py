from __future__ import annotations
import argparse
import json
import math
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Tuple

from pydantic import ValidationError
from src.serve.schemas import RawLocationFix, RawSensorReading

GRAVITY = 9.80665

# ---------- Personas (tunable) ----------
PERSONAS = {
    "safe": {
        "base_speed_mps": (10, 13),       # under a 50 kph limit
        "brake_prob": 0.0,                # per second
        "accel_prob": 0.0,
        "turn_prob": 0.0,
        "phone_prob": 0.0,
    },
    "aggressive": {
        "base_speed_mps": (17, 21),       # well over a 50 kph limit
        "brake_prob": 0.04,
        "accel_prob": 0.04,
        "turn_prob": 0.03,
        "phone_prob": 0.0,
    },
    "distracted": {
        "base_speed_mps": (10, 13),
        "brake_prob": 0.0,
        "accel_prob": 0.0,
        "turn_prob": 0.0,
        "phone_prob": 0.05,               # chance a phone burst starts
    },
}

START_COORDS = (40.0, -74.0)
START_TS = datetime(2025, 9, 9, 10, 0, 0, tzinfo=timezone.utc)


def _step_coord(lat: float, lon: float, meters: float, bearing_deg: float) -> Tuple[float, float]:
    # flat-earth step; fine over one second
    b = math.radians(bearing_deg)
    dlat = meters * math.cos(b) / 111_111.0
    dlon = meters * math.sin(b) / (111_111.0 * math.cos(math.radians(lat)))
    return lat + dlat, lon + dlon


def _check(model, rec: Dict) -> Dict:
    payload = {k: v for k, v in rec.items() if k != "stream"}
    try:
        model.model_validate(payload)
    except ValidationError as e:
        raise RuntimeError(f"Bad {rec['stream']} record: {e}") from e
    return rec


def generate_trip_records(
    persona: str,
    duration_s: int,
    seed: int,
    start_ms: int = int(START_TS.timestamp() * 1000),
    sensor_hz: int = 10,
) -> List[Dict]:
    """Raw location fixes at 1 Hz plus accelerometer/gyroscope readings at sensor_hz."""
    p = PERSONAS[persona]
    rng = random.Random(seed)
    lat, lon = START_COORDS
    base = rng.uniform(*p["base_speed_mps"])
    speed = base
    bearing = rng.uniform(0, 360)
    phone_left = 0
    out: List[Dict] = []

    for sec in range(duration_s):
        t0 = start_ms + sec * 1000
        yaw = 0.0
        if sec > 0:
            speed += 0.15 * (base - speed) + rng.gauss(0.0, 0.2)
            if rng.random() < p["brake_prob"]:
                speed -= rng.uniform(5.5, 8.0)        # harsh brake over one second
            elif rng.random() < p["accel_prob"]:
                speed += rng.uniform(4.5, 6.0)
            if rng.random() < p["turn_prob"]:
                yaw = rng.uniform(0.35, 0.6) * rng.choice([1, -1])
            speed = max(0.0, speed)
        if phone_left == 0 and rng.random() < p["phone_prob"]:
            phone_left = rng.randint(6, 12)

        bearing = (bearing + math.degrees(yaw)) % 360.0
        lat, lon = _step_coord(lat, lon, speed, bearing)
        out.append(_check(RawLocationFix, {
            "stream": "location",
            "latitude": round(lat, 7),
            "longitude": round(lon, 7),
            "altitude": round(12.0 + rng.uniform(-0.5, 0.5), 2),
            "speed": round(speed, 3),
            "accuracy": round(rng.uniform(3.0, 6.0), 2),
            "bearing": round(bearing, 2),
            "provider": "gps",
            "timestamp": t0,
        }))

        handheld = phone_left > 0
        for k in range(sensor_hz):
            ts = t0 + k * (1000 // sensor_hz)
            if handheld:
                ax, ay = rng.uniform(-3.0, 3.0), rng.uniform(-3.0, 3.0)
                az = GRAVITY + rng.uniform(-3.5, 3.5)
                gx, gy = rng.uniform(-0.8, 0.8), rng.uniform(-0.8, 0.8)
            else:
                ax, ay = rng.gauss(0.0, 0.1), rng.gauss(0.0, 0.1)
                az = GRAVITY + rng.gauss(0.0, 0.1)
                gx, gy = rng.gauss(0.0, 0.01), rng.gauss(0.0, 0.01)
            gz = yaw + rng.gauss(0.0, 0.01)
            out.append(_check(RawSensorReading, {
                "stream": "sensor", "type": 1,
                "values": [round(ax, 4), round(ay, 4), round(az, 4)], "timestamp": ts,
            }))
            out.append(_check(RawSensorReading, {
                "stream": "sensor", "type": 4,
                "values": [round(gx, 4), round(gy, 4), round(gz, 4)], "timestamp": ts,
            }))
        if phone_left > 0:
            phone_left -= 1
    return out


def generate_ndjson(out_path: Path, persona: str, trips: int, duration_s: int, seed: int) -> int:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    start_ms = int(START_TS.timestamp() * 1000)
    with out_path.open("w", encoding="utf-8") as f:
        for t in range(trips):
            recs = generate_trip_records(persona, duration_s, seed + t,
                                         start_ms=start_ms + t * 3_600_000)
            for rec in recs:
                rec["trip"] = t
                f.write(json.dumps(rec) + "\n")
            n += len(recs)
    return n


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--persona", choices=sorted(PERSONAS), default="safe")
    parser.add_argument("--trips", type=int, default=1)
    parser.add_argument("--duration", type=int, default=300, help="Seconds per trip")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--out", type=str, default="data/tmp/trip.ndjson")
    args = parser.parse_args()

    out = Path(args.out)
    n = generate_ndjson(out, args.persona, args.trips, args.duration, args.seed)
    print(f"[SIM] wrote {n} records ({args.persona}, {args.trips} trip(s)) to {out}")


if __name__ == "__main__":
    main()
