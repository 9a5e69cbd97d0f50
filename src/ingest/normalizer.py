from __future__ import annotations
import math
from typing import Any, Dict, Mapping, Union

from pydantic import ValidationError

from src.processing.errors import InvalidSample, UnsupportedSensorKind
from src.serve.schemas import (
    LocationSample, MotionSample, RawLocationFix, RawSensorReading, SensorKind,
)

# Android Sensor.TYPE_* codes
SENSOR_CODES: Dict[int, SensorKind] = {
    1: SensorKind.ACCELEROMETER,
    2: SensorKind.MAGNETOMETER,
    4: SensorKind.GYROSCOPE,
    9: SensorKind.GRAVITY,
    10: SensorKind.LINEAR_ACCELERATION,
    11: SensorKind.ROTATION_VECTOR,
    14: SensorKind.MAGNETOMETER_UNCALIBRATED,
    15: SensorKind.GAME_ROTATION_VECTOR,
    16: SensorKind.GYROSCOPE_UNCALIBRATED,
    20: SensorKind.GEOMAGNETIC_ROTATION_VECTOR,
    35: SensorKind.ACCELEROMETER_UNCALIBRATED,
}


def _coerce(model, raw):
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise InvalidSample(f"malformed {model.__name__}: {e.errors()[0]['msg']}") from e


def _finite(name: str, value):
    if value is not None and not math.isfinite(value):
        raise InvalidSample(f"{name} is not finite", field=name)


def sensor_kind_for(code: Union[int, str, SensorKind]) -> SensorKind:
    """Map a provider code or kind name onto the closed SensorKind set."""
    if isinstance(code, SensorKind):
        return code
    if isinstance(code, bool):
        raise UnsupportedSensorKind(code)
    if isinstance(code, int):
        kind = SENSOR_CODES.get(code)
        if kind is None:
            raise UnsupportedSensorKind(code)
        return kind
    if isinstance(code, str):
        key = code.strip().lower()
        if key.isdigit():
            return sensor_kind_for(int(key))
        try:
            return SensorKind(key)
        except ValueError:
            raise UnsupportedSensorKind(code) from None
    raise UnsupportedSensorKind(code)


def normalize_location(raw: Union[RawLocationFix, Mapping[str, Any]]) -> LocationSample:
    fix = _coerce(RawLocationFix, raw)
    for name in ("latitude", "longitude", "altitude", "speed", "accuracy", "bearing"):
        _finite(name, getattr(fix, name))
    if not -90.0 <= fix.latitude <= 90.0:
        raise InvalidSample(f"latitude out of range: {fix.latitude}", field="latitude")
    if not -180.0 <= fix.longitude <= 180.0:
        raise InvalidSample(f"longitude out of range: {fix.longitude}", field="longitude")
    if fix.speed is not None and fix.speed < 0:
        raise InvalidSample(f"negative speed: {fix.speed}", field="speed")
    if fix.accuracy is not None and fix.accuracy < 0:
        raise InvalidSample(f"negative accuracy: {fix.accuracy}", field="accuracy")
    if fix.timestamp < 0:
        raise InvalidSample(f"negative timestamp: {fix.timestamp}", field="timestamp")

    bearing = None if fix.bearing is None else float(fix.bearing) % 360.0
    return LocationSample(
        latitude=fix.latitude,
        longitude=fix.longitude,
        altitude=fix.altitude,
        speed=fix.speed,
        accuracy=fix.accuracy,
        bearing=bearing,
        provider=fix.provider,
        timestamp=fix.timestamp,
    )


def normalize_motion(raw: Union[RawSensorReading, Mapping[str, Any]]) -> MotionSample:
    reading = _coerce(RawSensorReading, raw)
    kind = sensor_kind_for(reading.type)
    if reading.timestamp < 0:
        raise InvalidSample(f"negative timestamp: {reading.timestamp}", field="timestamp")
    values = tuple(float(v) for v in reading.values)
    for i, v in enumerate(values):
        _finite(f"values[{i}]", v)
    x, y, z = (values + (0.0, 0.0, 0.0))[:3]
    return MotionSample(kind=kind, x=x, y=y, z=z, values=values, timestamp=reading.timestamp)
