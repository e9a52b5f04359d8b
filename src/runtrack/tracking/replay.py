"""
Recorded-track replay.

Runs a recorded sequence of fixes through a fresh filter + segment engine.
Because both are deterministic, replaying the same track always yields the
same total distance and the same segment boundaries; this is how filter
thresholds are tuned offline against real runs.

Supported inputs:
  - .gpx  — parsed with gpxpy; every track point with a timestamp is a fix
  - .json — a list of LocationFix dicts (see LocationFix.from_dict)
"""
import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import gpxpy

from runtrack.models.location import LocationFix
from runtrack.models.session import Segment
from runtrack.tracking.gps_filter import DEFAULT_GPS_FILTER_CONFIG, GpsFilterConfig, RejectReason
from runtrack.tracking.segments import DEFAULT_SEGMENT_THRESHOLD_M, SegmentEngine


@dataclass
class ReplayResult:
    total_distance_meters: float
    segments: Tuple[Segment, ...]
    fix_count: int
    reasons: Dict[RejectReason, int] = field(default_factory=dict)

    @property
    def segment_distance_sum(self) -> float:
        return sum(s.distance_meters for s in self.segments)


def load_track(path: Path) -> List[LocationFix]:
    """Load fixes from a .gpx or .json file, in file order."""
    path = Path(path)
    if path.suffix.lower() == ".gpx":
        return _load_gpx(path)
    if path.suffix.lower() == ".json":
        data = json.loads(path.read_text())
        return [LocationFix.from_dict(d) for d in data]
    raise ValueError(f"Unsupported track format: {path.suffix}")


def _load_gpx(path: Path) -> List[LocationFix]:
    with open(path, "r") as f:
        gpx = gpxpy.parse(f)

    fixes: List[LocationFix] = []
    for track in gpx.tracks:
        for segment in track.segments:
            for p in segment.points:
                if p.time is None:
                    continue  # no timestamp → no speed; unusable for the filter
                fixes.append(LocationFix(
                    latitude=p.latitude,
                    longitude=p.longitude,
                    timestamp_millis=int(p.time.timestamp() * 1000),
                    speed_meters_per_second=p.speed,
                    # GPX carries DOP, not metres; accuracy stays unknown
                ))
    return fixes


def replay_track(
    fixes: Iterable[LocationFix],
    config: GpsFilterConfig = DEFAULT_GPS_FILTER_CONFIG,
    threshold_meters: float = DEFAULT_SEGMENT_THRESHOLD_M,
    end_timestamp_millis: Optional[int] = None,
) -> ReplayResult:
    """
    Replay `fixes` through a fresh SegmentEngine and finalize the last segment.

    Args:
        fixes: Ordered fixes.
        config: GPS filter thresholds.
        threshold_meters: Segment length.
        end_timestamp_millis: Stop time for the final partial segment.
            Defaults to the timestamp of the last fix.
    """
    engine = SegmentEngine(config=config, threshold_meters=threshold_meters)
    reasons: Counter = Counter()
    last_ts: Optional[int] = None
    count = 0

    for fix in fixes:
        result = engine.ingest(fix)
        reasons[result.decision.reject_reason] += 1
        last_ts = fix.timestamp_millis
        count += 1

    end_ts = end_timestamp_millis if end_timestamp_millis is not None else last_ts
    if end_ts is not None:
        engine.finalize(end_ts)

    return ReplayResult(
        total_distance_meters=engine.total_distance_meters,
        segments=engine.segments,
        fix_count=count,
        reasons=dict(reasons),
    )
