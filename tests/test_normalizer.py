import pytest

from src.ingest.normalizer import normalize_location, normalize_motion, sensor_kind_for
from src.processing.errors import InvalidSample, UnsupportedSensorKind
from src.serve.schemas import SensorKind


def _fix(**kw):
    base = dict(
        latitude=40.0,
        longitude=-74.0,
        altitude=12.5,
        speed=13.4,
        accuracy=4.0,
        bearing=87.0,
        provider="gps",
        timestamp=1000,
    )
    base.update(kw)
    return base


def test_location_fields_carried_over():
    loc = normalize_location(_fix())
    assert loc.latitude == 40.0 and loc.longitude == -74.0
    assert loc.altitude == 12.5
    assert loc.speed == pytest.approx(13.4)
    assert loc.accuracy == 4.0
    assert loc.bearing == 87.0
    assert loc.provider == "gps"
    assert loc.timestamp == 1000


def test_location_optionals_default_to_none():
    loc = normalize_location({"latitude": 0.0, "longitude": 0.0, "timestamp": 5})
    assert loc.speed is None and loc.accuracy is None and loc.altitude is None
    assert loc.provider == "fused"


@pytest.mark.parametrize("kw", [
    {"latitude": 90.5},
    {"latitude": -91.0},
    {"longitude": 180.01},
    {"longitude": -200.0},
    {"speed": -0.1},
    {"accuracy": -1.0},
    {"speed": float("nan")},
])
def test_location_rejects_out_of_range(kw):
    with pytest.raises(InvalidSample):
        normalize_location(_fix(**kw))


def test_location_rejects_malformed_payload():
    with pytest.raises(InvalidSample):
        normalize_location({"latitude": "north", "longitude": 0.0, "timestamp": 1})
    with pytest.raises(InvalidSample):
        normalize_location({"latitude": 1.0, "longitude": 0.0})


def test_bearing_wraps_into_range():
    assert normalize_location(_fix(bearing=360.0)).bearing == 0.0
    assert normalize_location(_fix(bearing=-90.0)).bearing == 270.0


def test_motion_from_android_codes():
    m = normalize_motion({"type": 1, "values": [0.1, 9.8, 0.2], "timestamp": 10})
    assert m.kind == SensorKind.ACCELEROMETER
    assert (m.x, m.y, m.z) == (0.1, 9.8, 0.2)
    assert m.values == (0.1, 9.8, 0.2)
    assert m.accuracy == "unknown"
    assert normalize_motion({"type": 4, "values": [0, 0, 1], "timestamp": 10}).kind == SensorKind.GYROSCOPE


def test_motion_accepts_names_and_numeric_strings():
    assert sensor_kind_for("gyroscope") == SensorKind.GYROSCOPE
    assert sensor_kind_for("LINEAR_ACCELERATION") == SensorKind.LINEAR_ACCELERATION
    assert sensor_kind_for("2") == SensorKind.MAGNETOMETER
    assert sensor_kind_for(35) == SensorKind.ACCELEROMETER_UNCALIBRATED


def test_motion_missing_components_default_to_zero():
    m = normalize_motion({"type": 4, "values": [0.5], "timestamp": 10})
    assert (m.x, m.y, m.z) == (0.5, 0.0, 0.0)
    assert m.values == (0.5,)


@pytest.mark.parametrize("code", [3, 99, "barometer", ""])
def test_unknown_sensor_codes_are_rejected(code):
    with pytest.raises(UnsupportedSensorKind):
        normalize_motion({"type": code, "values": [1.0, 2.0, 3.0], "timestamp": 10})


def test_motion_rejects_non_finite_values():
    with pytest.raises(InvalidSample):
        normalize_motion({"type": 1, "values": [float("nan"), 0.0, 0.0], "timestamp": 10})
