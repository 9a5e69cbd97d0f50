from src.processing.config import FusionSettings
from src.processing.fusion import FusionSynchronizer
from src.serve.schemas import LocationSample, MotionSample, SensorKind


def _loc(t, **kw):
    return LocationSample(latitude=40.0, longitude=-74.0, speed=10.0, timestamp=t, **kw)


def _acc(t, kind=SensorKind.ACCELEROMETER):
    return MotionSample(kind=kind, x=0.0, y=0.0, z=9.81, timestamp=t)


def test_same_timestamp_pairs_into_exactly_one_snapshot():
    sync = FusionSynchronizer()
    assert sync.push_motion(_acc(1000)) == []
    assert sync.push_location(_loc(1000)) == []  # held until the window closes
    out = sync.flush()
    assert len(out) == 1
    assert out[0].timestamp == 1000
    assert [m.timestamp for m in out[0].motion] == [1000]


def test_fix_released_once_watermark_passes_window():
    sync = FusionSynchronizer()
    sync.push_location(_loc(1000))
    sync.push_motion(_acc(1200))
    out = sync.push_location(_loc(2000))
    assert [s.timestamp for s in out] == [1000]
    assert [m.timestamp for m in out[0].motion] == [1200]
    assert sync.pending_locations == 1


def test_motion_arriving_after_fix_still_pairs():
    sync = FusionSynchronizer()
    sync.push_location(_loc(1000))
    assert sync.push_motion(_acc(1400)) == []
    out = sync.push_motion(_acc(1600))
    assert len(out) == 1
    assert [m.timestamp for m in out[0].motion] == [1400]
    assert sync.buffered(SensorKind.ACCELEROMETER) == 1


def test_out_of_window_motion_is_dropped_never_emitted():
    diags = []
    sync = FusionSynchronizer(on_diagnostic=diags.append)
    snaps = []
    snaps += sync.push_motion(_acc(100))
    snaps += sync.push_location(_loc(1000))
    snaps += sync.push_location(_loc(2000))
    snaps += sync.flush()
    assert [s.timestamp for s in snaps] == [1000, 2000]
    assert all(len(s.motion) == 0 for s in snaps)
    assert any(d.timestamp == 100 and d.reason == "expired" for d in diags)
    assert sync.diagnostics["expired"] >= 1


def test_buffer_overflow_evicts_oldest_first():
    diags = []
    sync = FusionSynchronizer(FusionSettings(max_buffer_size=3), on_diagnostic=diags.append)
    for t in range(0, 50, 10):
        assert sync.push_motion(_acc(t)) == []
    assert sync.buffered(SensorKind.ACCELEROMETER) == 3
    assert sync.diagnostics["evicted"] == 2
    assert [d.timestamp for d in diags if d.reason == "evicted"] == [0, 10]

    sync.push_location(_loc(30))
    out = sync.flush()
    assert [m.timestamp for m in out[0].motion] == [20, 30, 40]


def test_same_stream_out_of_order_is_dropped():
    sync = FusionSynchronizer()
    sync.push_motion(_acc(1000))
    assert sync.push_motion(_acc(900)) == []
    assert sync.diagnostics["out_of_order"] == 1
    assert sync.buffered() == 1

    sync.push_location(_loc(2000))
    assert sync.push_location(_loc(1500)) == []
    assert sync.diagnostics["out_of_order"] == 2


def test_streams_are_ordered_independently():
    sync = FusionSynchronizer()
    sync.push_motion(_acc(1000))
    sync.push_motion(_acc(900, SensorKind.GYROSCOPE))
    assert sync.diagnostics["out_of_order"] == 0
    assert sync.buffered() == 2
    sync.push_location(_loc(950))
    out = sync.flush()
    kinds = sorted(m.kind.value for m in out[0].motion)
    assert kinds == ["accelerometer", "gyroscope"]


def test_motion_only_stream_never_emits_and_expires():
    sync = FusionSynchronizer(FusionSettings(location_timeout_ms=1000))
    for t in range(0, 3000, 100):
        assert sync.push_motion(_acc(t)) == []
    assert sync.location_stalled
    assert sync.diagnostics["expired"] > 0
    assert sync.buffered() < 30
    assert sync.flush() == []


def test_pending_overflow_releases_oldest_fix():
    sync = FusionSynchronizer(FusionSettings(max_pending_locations=2))
    assert sync.push_location(_loc(0)) == []
    assert sync.push_location(_loc(10)) == []
    out = sync.push_location(_loc(20))
    assert [s.timestamp for s in out] == [0]


def test_snapshot_ids_are_unique():
    sync = FusionSynchronizer()
    out = []
    for t in (0, 1000, 2000):
        out += sync.push_location(_loc(t))
    out += sync.flush()
    assert len(out) == 3
    assert len({s.snapshot_id for s in out}) == 3


def test_one_far_future_fix_does_not_block_the_stream():
    sync = FusionSynchronizer()
    out = []
    for t in range(0, 5000, 1000):
        out += sync.push_location(_loc(t))
    out += sync.push_location(_loc(10 ** 12))
    for t in range(5000, 60000, 1000):
        out += sync.push_location(_loc(t))
    out += sync.flush()
    assert sync.diagnostics["future"] == 1
    assert sync.diagnostics["out_of_order"] == 0
    assert len(out) == 60
    assert max(s.timestamp for s in out) == 59000


def test_far_future_motion_sample_is_dropped():
    sync = FusionSynchronizer()
    sync.push_location(_loc(0))
    sync.push_motion(_acc(100))
    assert sync.push_motion(_acc(10 ** 12)) == []
    sync.push_motion(_acc(200))
    assert sync.diagnostics["future"] == 1
    assert sync.diagnostics["out_of_order"] == 0
    assert sync.buffered() == 2


def test_genuine_gap_is_accepted_on_second_sample():
    sync = FusionSynchronizer()
    for t in (0, 1000, 2000):
        sync.push_location(_loc(t))
    resume = 2000 + 60_000
    assert sync.push_location(_loc(resume)) == []
    out = sync.push_location(_loc(resume + 1000))
    out += sync.flush()
    assert sync.diagnostics["future"] == 1
    assert [s.timestamp for s in out][-1] == resume + 1000
