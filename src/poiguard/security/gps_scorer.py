"""GPS consistency scoring.

Each check raises at most one flag and every flag has a fixed penalty, so an
operator reading the audit trail can tell exactly which signal lowered a score.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from poiguard.security.flags import GPS_PENALTIES, VisitFlag
from poiguard.security.geo import haversine_meters, speed_kmh

PROXIMITY_WINDOW = 3
LOW_ACCURACY_WEIGHT = 0.5
# Sub-meter displacement at an identical timestamp is treated as noise.
MIN_DISPLACEMENT_METERS = 1.0


@dataclass(frozen=True)
class GPSSample:
    latitude: float
    longitude: float
    accuracy: float
    timestamp_ms: int
    altitude: float | None = None
    speed: float | None = None
    heading: float | None = None


@dataclass
class GPSScore:
    score: int
    flags: list[VisitFlag] = field(default_factory=list)
    distances: list[float] = field(default_factory=list)
    samples_evaluated: int = 0

    @property
    def out_of_range(self) -> bool:
        return VisitFlag.OUT_OF_RANGE in self.flags


def score_samples(
    samples: Sequence[GPSSample],
    target_lat: float,
    target_lon: float,
    *,
    proximity_threshold_m: float = 50.0,
    accuracy_ceiling_m: float = 100.0,
    max_speed_kmh: float = 300.0,
    min_span_ms: int = 500,
) -> GPSScore:
    """Score an ordered sample sequence against a target location."""
    if not samples:
        return GPSScore(
            score=max(0, 100 - GPS_PENALTIES[VisitFlag.OUT_OF_RANGE]),
            flags=[VisitFlag.OUT_OF_RANGE],
        )

    distances = [haversine_meters(s.latitude, s.longitude, target_lat, target_lon) for s in samples]
    flags: list[VisitFlag] = []

    if not _within_proximity(samples, distances, proximity_threshold_m, accuracy_ceiling_m):
        flags.append(VisitFlag.OUT_OF_RANGE)
    if _low_accuracy(samples, accuracy_ceiling_m):
        flags.append(VisitFlag.LOW_ACCURACY)
    if _impossible_speed(samples, max_speed_kmh):
        flags.append(VisitFlag.IMPOSSIBLE_SPEED)
    if _suspicious_timing(samples, min_span_ms):
        flags.append(VisitFlag.SUSPICIOUS_TIMING)
    if _static_coordinates(samples):
        flags.append(VisitFlag.STATIC_COORDINATES)

    score = 100 - sum(GPS_PENALTIES[f] for f in flags)
    return GPSScore(
        score=max(0, score),
        flags=flags,
        distances=[round(d, 2) for d in distances],
        samples_evaluated=len(samples),
    )


def _within_proximity(
    samples: Sequence[GPSSample],
    distances: Sequence[float],
    threshold_m: float,
    ceiling_m: float,
) -> bool:
    """At least two thirds of the (accuracy-weighted) last samples in range."""
    recent = list(zip(samples, distances))[-PROXIMITY_WINDOW:]
    total = 0.0
    in_range = 0.0
    for sample, distance in recent:
        weight = LOW_ACCURACY_WEIGHT if sample.accuracy > ceiling_m else 1.0
        total += weight
        if distance <= threshold_m:
            in_range += weight
    return in_range * 3 >= total * 2


def _low_accuracy(samples: Sequence[GPSSample], ceiling_m: float) -> bool:
    poor = sum(1 for s in samples if s.accuracy > ceiling_m)
    return poor * 2 > len(samples)


def _impossible_speed(samples: Sequence[GPSSample], max_speed_kmh: float) -> bool:
    for prev, cur in zip(samples, samples[1:]):
        distance = haversine_meters(prev.latitude, prev.longitude, cur.latitude, cur.longitude)
        elapsed = (cur.timestamp_ms - prev.timestamp_ms) / 1000
        if elapsed <= 0:
            if distance > MIN_DISPLACEMENT_METERS:
                return True
            continue
        if speed_kmh(distance, elapsed) > max_speed_kmh:
            return True
    return False


def _suspicious_timing(samples: Sequence[GPSSample], min_span_ms: int) -> bool:
    if len(samples) < 2:
        return False
    timestamps = [s.timestamp_ms for s in samples]
    if any(b < a for a, b in zip(timestamps, timestamps[1:])):
        return True
    return max(timestamps) - min(timestamps) < min_span_ms


def _static_coordinates(samples: Sequence[GPSSample]) -> bool:
    if len(samples) < 2:
        return False
    first = (samples[0].latitude, samples[0].longitude)
    return all((s.latitude, s.longitude) == first for s in samples[1:])
