import pytest
from pydantic import ValidationError

from src.serve.schemas import (
    DrivingEvent, DrivingEventType, EventSeverity, FusedTelemetrySnapshot,
    LocationSample, MotionSample, RawLocationFix, RawSensorReading, SensorKind,
    TimeOfDay, TripScore,
)


def test_raw_examples_validate():
    fix = RawLocationFix.model_validate(
        RawLocationFix.model_config["json_schema_extra"]["example"])
    assert fix.provider == "gps"
    reading = RawSensorReading.model_validate(
        RawSensorReading.model_config["json_schema_extra"]["example"])
    assert reading.type == 1 and len(reading.values) == 3


def test_driving_event_example_validates():
    ev = DrivingEvent.model_validate(DrivingEvent.model_config["json_schema_extra"]["example"])
    assert ev.event_type == DrivingEventType.SPEEDING
    assert ev.severity == EventSeverity.CRITICAL
    assert ev.context.speed_limit_mps == 22.0


def test_location_ranges_enforced():
    with pytest.raises(ValidationError):
        LocationSample(latitude=91.0, longitude=0.0, timestamp=0)
    with pytest.raises(ValidationError):
        LocationSample(latitude=0.0, longitude=0.0, bearing=360.0, timestamp=0)
    with pytest.raises(ValidationError):
        LocationSample(latitude=0.0, longitude=0.0, speed=-1.0, timestamp=0)


def test_confidence_bounds():
    with pytest.raises(ValidationError):
        DrivingEvent(event_type=DrivingEventType.SPEEDING, severity=EventSeverity.LOW,
                     timestamp=0, magnitude=1.0, confidence=1.2)


def test_severity_ordering():
    assert EventSeverity.LOW < EventSeverity.MEDIUM < EventSeverity.HIGH < EventSeverity.CRITICAL
    assert max([EventSeverity.MEDIUM, EventSeverity.CRITICAL, EventSeverity.LOW]) == EventSeverity.CRITICAL
    assert EventSeverity.from_rank(9) == EventSeverity.CRITICAL
    assert EventSeverity.from_rank(0) == EventSeverity.LOW


def test_positive_event_types():
    assert DrivingEventType.SMOOTH_DRIVING.is_positive
    assert not DrivingEventType.HARD_BRAKING.is_positive


@pytest.mark.parametrize("hour,bucket", [
    (3, TimeOfDay.EARLY_MORNING), (8, TimeOfDay.MORNING_RUSH), (12, TimeOfDay.MIDDAY),
    (17, TimeOfDay.EVENING_RUSH), (20, TimeOfDay.EVENING), (23, TimeOfDay.NIGHT),
])
def test_time_of_day_buckets(hour, bucket):
    assert TimeOfDay.for_hour(hour) == bucket


def test_snapshot_helpers():
    loc = LocationSample(latitude=40.0, longitude=-74.0, timestamp=5000)
    acc = MotionSample(kind=SensorKind.ACCELEROMETER, x=3.0, y=4.0, z=0.0, timestamp=4900)
    gyro = MotionSample(kind=SensorKind.GYROSCOPE, timestamp=5100)
    snap = FusedTelemetrySnapshot(location=loc, motion=(acc, gyro))
    assert snap.timestamp == 5000
    assert snap.readings(SensorKind.ACCELEROMETER) == [acc]
    assert acc.magnitude == pytest.approx(5.0)
    with pytest.raises(ValidationError):
        snap.location = loc


def test_trip_score_round_trips_through_json():
    ts = TripScore(overall_score=90.0, safety_score=90.0, efficiency_score=90.0,
                   smoothness_score=90.0, legal_compliance_score=90.0)
    again = TripScore.model_validate_json(ts.model_dump_json())
    assert again == ts
    with pytest.raises(ValidationError):
        TripScore(overall_score=101.0, safety_score=0, efficiency_score=0,
                  smoothness_score=0, legal_compliance_score=0)
