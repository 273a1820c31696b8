import pytest

from domain import (
    CorruptTripRecordError,
    Position,
    Provider,
    RejectReason,
    TripEnded,
    TripPointRecorded,
    TripRecord,
    TripStarted,
    TripState,
    TripUpdated,
)
from recorder import TripRecorder


# (seconds, meters north, device speed km/h)
ROUTE = [
    (0, 0, 0),
    (2, 14, 25),
    (4, 56, 50),
    (6, 125, 75),
    (8, 229, 110),
    (10, 354, 120),
    (12, 471, 90),
    (14, 543, 40),
    (16, 571, 10),
    (18, 574, 0),
    # standing still at the destination
    (20, 574, 0),
    (22, 574, 0),
    (24, 574, 0),
    # two minutes later
    (144, 574, 0),
]


@pytest.fixture
def route_fixes(make_fix):
    return [make_fix(s * 1000, meters=m, speed_kmh=v) for s, m, v in ROUTE]


def run(recorder, fixes):
    events = []
    for fix in fixes:
        events += recorder.process_fix(fix).events
    return events


def test_city_drive_produces_one_complete_trip(route_fixes, trip_ids) -> None:
    rec = TripRecorder(trip_ids)
    events = run(rec, route_fixes)

    started = [e for e in events if isinstance(e, TripStarted)]
    ended = [e for e in events if isinstance(e, TripEnded)]
    points = [e for e in events if isinstance(e, TripPointRecorded)]
    assert len(started) == 1
    assert len(ended) == 1
    assert len(points) == 10
    assert len([e for e in events if isinstance(e, TripUpdated)]) == 1

    # third consecutive smoothed reading above 8 km/h is the 75 km/h fix
    assert started[0].start_time_ms == 6000

    stats = ended[0].final_stats
    assert ended[0].reason == "parked"
    assert stats.point_count == 10
    assert stats.max_speed_kmh == pytest.approx(120.0)
    assert stats.avg_speed_kmh == pytest.approx((75 + 110 + 120 + 90 + 40 + 10) / 6)
    assert stats.distance_m == pytest.approx(574 - 125, abs=0.5)
    assert stats.end_time_ms == 144_000
    assert stats.duration_ms == 144_000 - 6000
    assert rec.state is TripState.PARKED


def test_resume_gives_same_result_as_uninterrupted_session(route_fixes, trip_ids) -> None:
    fresh = TripRecorder(trip_ids)
    run(fresh, route_fixes[:6])
    record = fresh.snapshot()
    fresh_ended = [e for e in run(fresh, route_fixes[6:]) if isinstance(e, TripEnded)][0]

    restarted = TripRecorder(trip_ids)
    restarted.resume_active_trip(record)
    assert restarted.state is TripState.DRIVING
    assert restarted.last_position == Position(record.last_point.latitude, record.last_point.longitude)
    resumed_ended = [e for e in run(restarted, route_fixes[6:]) if isinstance(e, TripEnded)][0]

    a, b = fresh_ended.final_stats, resumed_ended.final_stats
    assert b.trip_id == a.trip_id
    assert b.distance_m == pytest.approx(a.distance_m)
    assert b.max_speed_kmh == a.max_speed_kmh
    assert b.avg_speed_kmh == pytest.approx(a.avg_speed_kmh)
    assert b.point_count == a.point_count
    assert b.moving_point_count == a.moving_point_count
    assert b.end_time_ms == a.end_time_ms
    assert b.duration_ms == a.duration_ms


@pytest.fixture
def distance_only_fixes(make_fix):
    # no device speed: 20 m every 2 s is 36 km/h, then a stop and two minutes parked
    drive = [make_fix(i * 2000, meters=i * 20.0) for i in range(12)]
    stop = [make_fix(t, meters=220.0) for t in (24_000, 26_000, 28_000)]
    return drive + stop + [make_fix(28_000 + 120_000, meters=220.0)]


def test_resume_with_distance_derived_speed(distance_only_fixes, trip_ids) -> None:
    fresh = TripRecorder(trip_ids)
    run(fresh, distance_only_fixes[:6])
    record = fresh.snapshot()
    fresh_ended = [e for e in run(fresh, distance_only_fixes[6:]) if isinstance(e, TripEnded)][0]

    restarted = TripRecorder(trip_ids)
    restarted.resume_active_trip(record)
    assert restarted.conditioner.last_fix.timestamp_ms == record.last_point.timestamp_ms
    assert restarted.current_speed_kmh == pytest.approx(36.0, rel=1e-3)

    first = restarted.process_fix(distance_only_fixes[6])
    assert first.conditioned.raw_value == pytest.approx(36.0, rel=1e-3)
    resumed_ended = [e for e in run(restarted, distance_only_fixes[7:]) if isinstance(e, TripEnded)][0]

    a, b = fresh_ended.final_stats, resumed_ended.final_stats
    assert a.point_count == 12
    assert a.moving_point_count == 9
    assert (b.point_count, b.moving_point_count) == (a.point_count, a.moving_point_count)
    assert b.avg_speed_kmh == pytest.approx(a.avg_speed_kmh)
    assert b.distance_m == pytest.approx(a.distance_m)
    assert b.end_time_ms == a.end_time_ms == 148_000


def test_replayed_fix_after_resume_is_out_of_order(route_fixes, trip_ids) -> None:
    fresh = TripRecorder(trip_ids)
    run(fresh, route_fixes[:6])

    restarted = TripRecorder(trip_ids)
    restarted.resume_active_trip(fresh.snapshot())
    result = restarted.process_fix(route_fixes[5])

    assert not result.accepted
    assert result.conditioned.reason is RejectReason.OUT_OF_ORDER
    assert restarted.snapshot().point_count == fresh.snapshot().point_count


def test_corrupt_resume_leaves_recorder_parked(trip_ids) -> None:
    rec = TripRecorder(trip_ids)
    with pytest.raises(CorruptTripRecordError) as exc:
        rec.resume_active_trip(TripRecord(trip_id=None, start_time_ms=1000))
    assert exc.value.ended.reason == "corrupt"
    assert rec.state is TripState.PARKED


def test_rejected_fix_still_moves_the_map_position(make_fix, trip_ids) -> None:
    rec = TripRecorder(trip_ids)
    result = rec.process_fix(make_fix(0, meters=40, accuracy=80.0))

    assert not result.accepted
    assert result.conditioned.reason is RejectReason.LOW_ACCURACY
    assert result.events == []
    assert rec.last_position == result.position
    assert rec.conditioner.last_fix is None


def test_secondary_fix_never_reaches_trip_logic(make_fix, trip_ids) -> None:
    rec = TripRecorder(trip_ids)
    for i in range(5):
        result = rec.process_fix(
            make_fix(i * 1000, meters=i * 20, speed_kmh=72, provider=Provider.SECONDARY)
        )
        assert not result.accepted
        assert result.conditioned.reason is RejectReason.SECONDARY_PROVIDER

    assert rec.state is TripState.PARKED
    assert rec.conditioner.last_fix is None
    assert rec.machine.consecutive_moving == 0
    # with no primary fix yet, secondary fixes still update the map
    assert rec.last_position == result.position
    assert rec.last_position.latitude == make_fix(4000, meters=80).latitude


def test_secondary_fix_only_used_when_primary_is_stale(make_fix, trip_ids) -> None:
    rec = TripRecorder(trip_ids)
    primary = make_fix(0, meters=0)
    rec.process_fix(primary)

    rec.process_fix(make_fix(5000, meters=300, provider=Provider.SECONDARY))
    assert rec.last_position == Position(primary.latitude, primary.longitude)

    late = make_fix(10_001, meters=300, provider=Provider.SECONDARY)
    rec.process_fix(late)
    assert rec.last_position == Position(late.latitude, late.longitude)


def test_shutdown_closes_trip(route_fixes, trip_ids) -> None:
    rec = TripRecorder(trip_ids)
    run(rec, route_fixes[:6])

    events = rec.shutdown()
    assert len(events) == 1
    assert events[0].reason == "shutdown"
    assert events[0].final_stats.end_time_ms == 10_000
    assert rec.shutdown() == []
