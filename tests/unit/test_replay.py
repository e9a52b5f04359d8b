"""Tests for recorded-track loading and replay."""
import json

import pytest

from runtrack.tracking.gps_filter import GpsFilterConfig, RejectReason
from runtrack.tracking.replay import load_track, replay_track

T0 = 1_740_000_000_000

GPX_TRACK = """<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="runtrack-tests" xmlns="http://www.topografix.com/GPX/1/1">
  <trk>
    <name>Morning Run</name>
    <trkseg>
      <trkpt lat="37.00000" lon="127.0"><time>2025-02-19T21:20:00Z</time></trkpt>
      <trkpt lat="37.00005" lon="127.0"><time>2025-02-19T21:20:02Z</time></trkpt>
      <trkpt lat="37.00007" lon="127.0"></trkpt>
      <trkpt lat="37.00010" lon="127.0"><time>2025-02-19T21:20:04Z</time></trkpt>
    </trkseg>
  </trk>
</gpx>
"""


@pytest.fixture(name="track")
def track_fixture(make_fix):
    """Two minutes of running at ~3 m/s with one low-accuracy fix and one spike."""
    positions, position = [], 0.0
    for i in range(40):
        position += 3.5 + (i % 3)
        positions.append(position)
    fixes = [make_fix(p, T0 + i * 1500) for i, p in enumerate(positions)]
    fixes[10] = make_fix(positions[10], fixes[10].timestamp_millis, accuracy=60.0)
    fixes[20] = make_fix(900.0, fixes[20].timestamp_millis)
    return fixes


class TestReplayTrack:
    def test_is_deterministic(self, track):
        first = replay_track(track)
        second = replay_track(track)
        assert first.total_distance_meters == second.total_distance_meters
        assert first.segments == second.segments

    def test_segment_sum_equals_total(self, track):
        result = replay_track(track)
        assert result.segment_distance_sum == pytest.approx(result.total_distance_meters, abs=1e-6)

    def test_reject_reasons_counted(self, track):
        result = replay_track(track)
        assert result.fix_count == 40
        assert result.reasons[RejectReason.NO_PREVIOUS_SAMPLE] == 1
        assert result.reasons[RejectReason.LOW_ACCURACY] == 1
        # the spike and the first fix after it, measured from the spike
        assert result.reasons[RejectReason.IMPLAUSIBLE_SPEED] == 2

    def test_stricter_config_counts_less(self, track):
        loose = replay_track(track)
        strict = replay_track(track, config=GpsFilterConfig(min_distance_meters=5.0))
        assert strict.total_distance_meters <= loose.total_distance_meters

    def test_threshold_changes_segment_count(self, track):
        assert len(replay_track(track, threshold_meters=50.0).segments) < len(replay_track(track).segments)

    def test_bad_anchor_adds_no_phantom_distance(self, make_fix):
        fixes = [make_fix(300, T0)] + [make_fix(i * 4, T0 + i * 1000) for i in range(1, 61)]
        result = replay_track(fixes)
        assert result.total_distance_meters == pytest.approx(236.0, abs=1e-3)
        assert result.reasons[RejectReason.IMPLAUSIBLE_SPEED] == 1

    def test_empty_track(self):
        result = replay_track([])
        assert result.total_distance_meters == 0.0
        assert result.segments == ()
        assert result.fix_count == 0


class TestLoadTrack:
    def test_json_camel_case(self, tmp_path, make_fix):
        path = tmp_path / "run.json"
        fixes = [make_fix(0, T0, speed=3.0), make_fix(5, T0 + 1000, speed=3.2)]
        path.write_text(json.dumps([f.to_dict() for f in fixes]))
        assert load_track(path) == fixes

    def test_json_snake_case(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps([
            {"latitude": 37.0, "longitude": 127.0, "timestamp_millis": T0},
        ]))
        (fix,) = load_track(path)
        assert fix.timestamp_millis == T0
        assert fix.speed_meters_per_second is None
        assert fix.accuracy_meters is None

    def test_gpx_skips_points_without_time(self, tmp_path):
        path = tmp_path / "run.gpx"
        path.write_text(GPX_TRACK)
        fixes = load_track(path)
        assert len(fixes) == 3
        assert fixes[1].timestamp_millis - fixes[0].timestamp_millis == 2000
        assert fixes[0].accuracy_meters is None

    def test_gpx_replay(self, tmp_path):
        path = tmp_path / "run.gpx"
        path.write_text(GPX_TRACK)
        result = replay_track(load_track(path))
        # 0.0001° of latitude ≈ 11.12 m
        assert result.total_distance_meters == pytest.approx(11.12, abs=0.01)
        assert len(result.segments) == 1

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "run.fit"
        path.write_bytes(b"\x0e\x10")
        with pytest.raises(ValueError):
            load_track(path)
