import pytest

from src.processing.errors import (
    TripAlreadyFinalized, TripDiscarded, TripNotStarted, TripStateError,
)
from src.processing.trip_aggregator import TripAggregator, TripState, is_high_risk
from src.serve.schemas import (
    DrivingEvent, DrivingEventType, EventContext, EventSeverity,
    FusedTelemetrySnapshot, LocationSample, WeatherConditions,
)

NOON = 1757419200000  # 2025-09-09 12:00 UTC
MIDNIGHT = 1757376000000  # 2025-09-09 00:00 UTC


def _snap(i, speed=11.0, *, lat=None, base=NOON, step_deg=0.0001):
    loc = LocationSample(latitude=40.0 + i * step_deg if lat is None else lat, longitude=-74.0,
                         speed=speed, accuracy=5.0, timestamp=base + i * 1000)
    return FusedTelemetrySnapshot(location=loc)


def _event(t, etype=DrivingEventType.HARD_BRAKING, severity=EventSeverity.MEDIUM, **kw):
    return DrivingEvent(event_type=etype, severity=severity, timestamp=t,
                        magnitude=5.0, confidence=0.9, **kw)


def _active(**kw):
    agg = TripAggregator(**kw)
    agg.start_trip("trip-1")
    return agg


def test_statistics_accumulate_over_fixes():
    agg = _active()
    for i in range(3):
        agg.observe(_snap(i))
    stats = agg.statistics()
    assert stats.location_samples == 3
    assert stats.total_duration_ms == 2000
    assert stats.total_distance_km == pytest.approx(0.02224, rel=1e-2)
    assert stats.average_speed_kph == pytest.approx(39.6)
    assert stats.max_speed_kph == pytest.approx(39.6)
    assert stats.speeding_duration_ms == 0
    assert stats.night_driving_pct == 0.0


def test_speeding_idle_and_night_time():
    agg = _active()
    agg.observe(_snap(0, 0.0, base=MIDNIGHT))
    agg.observe(_snap(1, 0.5, base=MIDNIGHT))   # idle
    agg.observe(_snap(2, 20.0, base=MIDNIGHT))  # over 50 kph + tolerance
    agg.observe(_snap(3, 20.0, base=MIDNIGHT))
    stats = agg.statistics()
    assert stats.idle_time_ms == 1000
    assert stats.speeding_duration_ms == 2000
    assert stats.night_driving_pct == 100.0


def test_high_risk_share_is_time_weighted():
    agg = _active()
    school = EventContext(school_zone=True)
    agg.observe(_snap(0))
    agg.observe(_snap(1), school)
    agg.observe(_snap(2), EventContext(weather=WeatherConditions.RAIN))
    agg.observe(_snap(3), EventContext())
    assert agg.statistics().high_risk_road_pct == pytest.approx(66.67, abs=0.01)


def test_is_high_risk():
    assert is_high_risk(EventContext(construction_zone=True))
    assert is_high_risk(EventContext(weather=WeatherConditions.ICE))
    assert not is_high_risk(EventContext(weather=WeatherConditions.CLEAR))


def test_implausible_jump_adds_no_distance():
    agg = _active()
    agg.observe(_snap(0, None, lat=40.0))
    agg.observe(_snap(1, None, lat=41.0))
    agg.observe(_snap(2, None, lat=41.0001))
    stats = agg.statistics()
    assert stats.total_distance_km == pytest.approx(0.0111, rel=1e-2)
    assert stats.max_speed_kph < 90.0 * 3.6


def test_ingest_deduplicates_by_event_id():
    agg = _active()
    ev = _event(NOON)
    assert agg.ingest(ev) is True
    assert agg.ingest(ev) is False
    assert len(agg.events) == 1


def test_end_trip_sorts_events_and_is_idempotent():
    agg = _active()
    for i in range(3):
        agg.observe(_snap(i))
    agg.ingest(_event(NOON + 2000))
    agg.ingest(_event(NOON + 1000))
    score = agg.end_trip()
    assert score.trip_id == "trip-1"
    assert [e.timestamp for e in score.events] == [NOON + 1000, NOON + 2000]
    assert score.statistics.event_count == 2
    assert agg.state is TripState.FINALIZED
    assert agg.end_trip() is score


def test_zero_event_trip_scores_full_marks():
    agg = _active()
    agg.observe(_snap(0))
    score = agg.end_trip()
    assert score.overall_score == 100.0
    assert score.risk_factors == ()


def test_state_guards():
    agg = TripAggregator()
    with pytest.raises(TripNotStarted):
        agg.observe(_snap(0))
    with pytest.raises(TripNotStarted):
        agg.end_trip()
    agg.start_trip()
    assert agg.trip_id.startswith("T_")
    with pytest.raises(TripStateError):
        agg.start_trip()
    agg.end_trip()
    with pytest.raises(TripAlreadyFinalized):
        agg.ingest(_event(NOON))
    with pytest.raises(TripAlreadyFinalized):
        agg.discard_trip()


def test_discarded_trip_rejects_everything():
    agg = _active()
    agg.observe(_snap(0))
    agg.discard_trip()
    agg.discard_trip()
    assert agg.state is TripState.DISCARDED
    assert agg.score is None
    with pytest.raises(TripDiscarded):
        agg.end_trip()
    with pytest.raises(TripDiscarded):
        agg.observe(_snap(1))


def test_generated_trip_ids_are_distinct_for_same_start():
    a, b = TripAggregator(), TripAggregator()
    a.start_trip(started_at=NOON)
    b.start_trip(started_at=NOON)
    assert a.trip_id != b.trip_id
    assert len(a.trip_id) == len("T_") + 32
